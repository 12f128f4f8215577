"""Unit tests for the speed test orchestrator."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from ndtmeter.config import MeasurementConfig
from ndtmeter.errors import ConnectTimeoutError, DiscoveryError, PhaseError, TestRunError
from ndtmeter.measurements.models import (
    Direction,
    PhaseConfig,
    PhaseResult,
    ProgressSample,
    ServerInfo,
    TestProgress,
)
from ndtmeter.measurements.orchestrator import SpeedTestRunner

SERVER = ServerInfo(
    hostname="mlab1-lhr09.mlab-oti.measurement-lab.org",
    city="London",
    country="GB",
    download_url="wss://lhr09.example/ndt/v7/download",
    upload_url="wss://lhr09.example/ndt/v7/upload",
)


class FakeDiscovery:
    def __init__(self, server: Optional[ServerInfo] = SERVER, error: Optional[Exception] = None):
        self.server = server
        self.error = error
        self.calls = 0

    def locate(self) -> ServerInfo:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.server


class FakeEngine:
    def __init__(self, config: PhaseConfig, outcome, samples: List[ProgressSample]):
        self.config = config
        self.outcome = outcome
        self.samples = samples
        self.urls: List[str] = []

    async def run(self, url, on_progress=None) -> PhaseResult:
        self.urls.append(url)
        for sample in self.samples:
            on_progress(sample)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


class EngineFactory:
    def __init__(self, outcomes: Dict[Direction, object], samples: Dict[Direction, List[ProgressSample]] = None):
        self.outcomes = outcomes
        self.samples = samples or {}
        self.engines: List[FakeEngine] = []

    def __call__(self, config: PhaseConfig) -> FakeEngine:
        engine = FakeEngine(config, self.outcomes[config.direction], self.samples.get(config.direction, []))
        self.engines.append(engine)
        return engine


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


DOWNLOAD = PhaseResult(Direction.DOWNLOAD, throughput_mbps=94.2, latency_ms=12.5, bytes_transferred=1000)
UPLOAD = PhaseResult(Direction.UPLOAD, throughput_mbps=18.7, latency_ms=14.0, bytes_transferred=500)


def _runner(discovery, factory, sleep=None) -> SpeedTestRunner:
    return SpeedTestRunner(MeasurementConfig(), discovery, engine_factory=factory, sleep=sleep or RecordingSleep())


def test_full_run_aggregates_both_phases() -> None:
    factory = EngineFactory({Direction.DOWNLOAD: DOWNLOAD, Direction.UPLOAD: UPLOAD})
    sleep = RecordingSleep()

    result = asyncio.run(_runner(FakeDiscovery(), factory, sleep).run())

    assert result.download_mbps == 94.2
    assert result.upload_mbps == 18.7
    assert result.download_latency_ms == 12.5
    assert result.upload_latency_ms == 14.0
    assert (result.hostname, result.city, result.country) == (SERVER.hostname, "London", "GB")
    assert result.bytes_used == 1500
    assert [e.config.direction for e in factory.engines] == [Direction.DOWNLOAD, Direction.UPLOAD]
    assert factory.engines[0].urls == [SERVER.download_url]
    assert factory.engines[1].urls == [SERVER.upload_url]
    assert sleep.calls == [1.0]


def test_progress_labels_and_carried_download_values() -> None:
    factory = EngineFactory(
        {Direction.DOWNLOAD: DOWNLOAD, Direction.UPLOAD: UPLOAD},
        {
            Direction.DOWNLOAD: [ProgressSample(50.0, 90.0, 12.0)],
            Direction.UPLOAD: [ProgressSample(40.0, 17.0, None)],
        },
    )
    updates: List[TestProgress] = []

    asyncio.run(_runner(FakeDiscovery(), factory).run(updates.append))

    assert [u.phase for u in updates] == [
        "Locating server",
        "Locating server",
        "Download test",
        "Upload test",
    ]
    download_update, upload_update = updates[2], updates[3]
    assert download_update.throughput_mbps == 90.0
    assert download_update.download_mbps == 90.0
    assert upload_update.throughput_mbps == 17.0
    assert upload_update.latency_ms is None
    assert upload_update.download_mbps == 94.2
    assert upload_update.download_latency_ms == 12.5


def test_empty_discovery_starts_no_phase() -> None:
    factory = EngineFactory({Direction.DOWNLOAD: DOWNLOAD, Direction.UPLOAD: UPLOAD})
    discovery = FakeDiscovery(error=DiscoveryError("No ndt7 servers available"))

    with pytest.raises(TestRunError) as exc_info:
        asyncio.run(_runner(discovery, factory).run())

    assert exc_info.value.stage == "discovery"
    assert isinstance(exc_info.value.cause, DiscoveryError)
    assert exc_info.value.category == "Server discovery failed"
    assert factory.engines == []


def test_download_failure_aborts_before_upload() -> None:
    failure = ConnectTimeoutError(Direction.DOWNLOAD, "timed out")
    factory = EngineFactory({Direction.DOWNLOAD: failure, Direction.UPLOAD: UPLOAD})
    sleep = RecordingSleep()

    with pytest.raises(TestRunError) as exc_info:
        asyncio.run(_runner(FakeDiscovery(), factory, sleep).run())

    assert exc_info.value.stage == "download"
    assert exc_info.value.cause is failure
    assert exc_info.value.direction is Direction.DOWNLOAD
    assert len(factory.engines) == 1
    assert sleep.calls == []


def test_upload_failure_reports_upload_stage() -> None:
    failure = PhaseError(Direction.UPLOAD, "boom")
    factory = EngineFactory({Direction.DOWNLOAD: DOWNLOAD, Direction.UPLOAD: failure})

    with pytest.raises(TestRunError) as exc_info:
        asyncio.run(_runner(FakeDiscovery(), factory).run())

    assert exc_info.value.stage == "upload"
    assert "Upload test: boom" in str(exc_info.value)


def test_run_sync_wraps_event_loop() -> None:
    factory = EngineFactory({Direction.DOWNLOAD: DOWNLOAD, Direction.UPLOAD: UPLOAD})
    result = _runner(FakeDiscovery(), factory).run_sync()
    assert result.upload_mbps == 18.7


def test_phase_configs_follow_measurement_config() -> None:
    factory = EngineFactory({Direction.DOWNLOAD: DOWNLOAD, Direction.UPLOAD: UPLOAD})
    config = MeasurementConfig(test_duration=7.0, connect_timeout=3.0, overall_timeout=12.0, upload_payload_size=4096)
    runner = SpeedTestRunner(config, FakeDiscovery(), engine_factory=factory, sleep=RecordingSleep())

    asyncio.run(runner.run())

    upload_config = factory.engines[1].config
    assert upload_config.test_duration_seconds == 7.0
    assert upload_config.connect_timeout_seconds == 3.0
    assert upload_config.overall_timeout_seconds == 12.0
    assert upload_config.send_payload_size_bytes == 4096
