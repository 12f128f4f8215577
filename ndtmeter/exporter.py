"""CSV export helpers for the speed test history."""

from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Optional

from .db import SpeedTestRecord, get_session


class CSVExporter:
    def __init__(self, session_factory):
        self.Session = session_factory

    def build_csv(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> io.StringIO:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(self._header())

        for row in self._iter_rows(start, end):
            writer.writerow(row)

        buffer.seek(0)
        return buffer

    def _header(self) -> list:
        return [
            "timestamp",
            "server",
            "city",
            "country",
            "download_mbps",
            "upload_mbps",
            "download_latency_ms",
            "upload_latency_ms",
            "bytes_used",
        ]

    def _iter_rows(self, start: Optional[datetime], end: Optional[datetime]):
        with get_session(self.Session) as session:
            query = session.query(SpeedTestRecord).order_by(SpeedTestRecord.timestamp)
            if start:
                query = query.filter(SpeedTestRecord.timestamp >= start)
            if end:
                query = query.filter(SpeedTestRecord.timestamp <= end)
            for record in query.all():
                yield self._row_for_record(record)

    @staticmethod
    def _row_for_record(record: SpeedTestRecord) -> list:
        return [
            record.timestamp.isoformat(),
            record.hostname,
            record.city,
            record.country,
            f"{record.download_mbps:.2f}",
            f"{record.upload_mbps:.2f}",
            f"{record.download_latency_ms:.1f}",
            f"{record.upload_latency_ms:.1f}",
            record.bytes_used,
        ]
