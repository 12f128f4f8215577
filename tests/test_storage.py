"""Tests for history persistence, CSV export and the signed last-result store."""

from __future__ import annotations

import csv
import json
from datetime import datetime, timedelta

from ndtmeter.db import init_db
from ndtmeter.exporter import CSVExporter
from ndtmeter.measurements.manager import HistoryStore
from ndtmeter.measurements.models import TestResult
from ndtmeter.secure_store import SignedResultStore


def _result(download: float = 94.2, when: datetime = datetime(2026, 10, 1, 12, 0, 0)) -> TestResult:
    return TestResult(
        download_mbps=download,
        upload_mbps=18.7,
        download_latency_ms=12.5,
        upload_latency_ms=14.0,
        hostname="mlab1-lhr09",
        city="London",
        country="GB",
        bytes_used=1500,
        timestamp=when,
    )


def test_history_store_orders_newest_first(tmp_path) -> None:
    store = HistoryStore(init_db(tmp_path))
    base = datetime(2026, 10, 1, 12, 0, 0)
    store.save(_result(10.0, base))
    store.save(_result(30.0, base + timedelta(hours=2)))
    store.save(_result(20.0, base + timedelta(hours=1)))

    rows = store.recent(limit=2)

    assert [r.download_mbps for r in rows] == [30.0, 20.0]
    assert store.latest().download_mbps == 30.0
    assert store.count() == 3


def test_history_store_to_dict_and_clear(tmp_path) -> None:
    store = HistoryStore(init_db(tmp_path))
    record = store.save(_result())

    row = store.to_dict(record)

    assert row["server"] == "mlab1-lhr09"
    assert row["location"] == "London, GB"
    assert row["download_latency"] == 12.5
    assert store.clear() == 1
    assert store.latest() is None


def test_csv_export_contains_saved_rows(tmp_path) -> None:
    session_factory = init_db(tmp_path)
    HistoryStore(session_factory).save(_result())

    rows = list(csv.reader(CSVExporter(session_factory).build_csv()))

    assert rows[0][:2] == ["timestamp", "server"]
    assert rows[1][1:6] == ["mlab1-lhr09", "London", "GB", "94.20", "18.70"]


def test_signed_store_round_trip(tmp_path) -> None:
    store = SignedResultStore(tmp_path)
    store.save(_result())

    stored = store.load()

    assert stored is not None
    assert stored.is_valid
    assert stored.result == _result()


def test_signed_store_detects_tampering(tmp_path) -> None:
    store = SignedResultStore(tmp_path)
    store.save(_result())
    data = json.loads(store.data_file.read_text(encoding="utf-8"))
    data["download_mbps"] = 940.2
    store.data_file.write_text(json.dumps(data), encoding="utf-8")

    stored = store.load()

    assert stored is not None
    assert not stored.is_valid
    assert stored.result.download_mbps == 940.2


def test_signed_store_key_persists_across_instances(tmp_path) -> None:
    SignedResultStore(tmp_path).save(_result())
    assert SignedResultStore(tmp_path).load().is_valid


def test_signed_store_missing_or_corrupt(tmp_path) -> None:
    store = SignedResultStore(tmp_path)
    assert store.load() is None
    store.data_file.write_text("{not json", encoding="utf-8")
    assert store.load() is None
    store.clear()
    assert not store.data_file.exists()
