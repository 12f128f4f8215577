"""Speed test history persistence."""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import sessionmaker

from ..db import SpeedTestRecord, get_session
from .models import TestResult

LOGGER = logging.getLogger(__name__)


class HistoryStore:
    def __init__(self, session_factory: sessionmaker):
        self.Session = session_factory

    def save(self, result: TestResult) -> SpeedTestRecord:
        with get_session(self.Session) as session:
            record = SpeedTestRecord(
                timestamp=result.timestamp,
                download_mbps=result.download_mbps,
                upload_mbps=result.upload_mbps,
                download_latency_ms=result.download_latency_ms,
                upload_latency_ms=result.upload_latency_ms,
                hostname=result.hostname,
                city=result.city,
                country=result.country,
                bytes_used=result.bytes_used,
            )
            session.add(record)
            session.flush()
            LOGGER.info(
                "Stored speed test at %s (down %.2f Mbps / up %.2f Mbps)",
                result.timestamp.isoformat(),
                result.download_mbps,
                result.upload_mbps,
            )
            return record

    def recent(self, limit: int = 50) -> List[SpeedTestRecord]:
        """Newest first."""
        with get_session(self.Session) as session:
            return (
                session.query(SpeedTestRecord)
                .order_by(desc(SpeedTestRecord.timestamp), desc(SpeedTestRecord.id))
                .limit(limit)
                .all()
            )

    def latest(self) -> Optional[SpeedTestRecord]:
        rows = self.recent(limit=1)
        return rows[0] if rows else None

    def count(self) -> int:
        with get_session(self.Session) as session:
            return session.query(SpeedTestRecord).count()

    def clear(self) -> int:
        with get_session(self.Session) as session:
            deleted = session.query(SpeedTestRecord).delete()
            LOGGER.info("Cleared %d stored speed test(s)", deleted)
            return deleted

    def to_dict(self, record: SpeedTestRecord) -> dict:
        return {
            "id": record.id,
            "timestamp": record.timestamp.isoformat(),
            "download": record.download_mbps,
            "upload": record.upload_mbps,
            "download_latency": record.download_latency_ms,
            "upload_latency": record.upload_latency_ms,
            "server": record.hostname,
            "location": ", ".join(part for part in (record.city, record.country) if part),
            "bytes_used": record.bytes_used,
        }
