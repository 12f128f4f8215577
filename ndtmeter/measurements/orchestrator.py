"""Sequencing of a full speed test: locate, download, pause, upload."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..config import MeasurementConfig
from ..errors import DiscoveryError, PhaseError, TestRunError
from .discovery import ServerDiscovery
from .engine import PhaseEngine
from .models import Direction, PhaseConfig, PhaseResult, ProgressSample, TestProgress, TestResult

LOGGER = logging.getLogger(__name__)

LOCATING_LABEL = "Locating server"
PHASE_LABELS = {
    Direction.DOWNLOAD: "Download test",
    Direction.UPLOAD: "Upload test",
}

TestProgressCallback = Callable[[TestProgress], None]
EngineFactory = Callable[[PhaseConfig], PhaseEngine]


def _ignore(_progress: TestProgress) -> None:
    return None


class SpeedTestRunner:
    """Runs discovery and both measurement phases, one after the other.

    The runner owns no persistent state; storing the result is left to the
    caller. Failures are reported as ``TestRunError`` naming the stage.
    """

    def __init__(
        self,
        config: MeasurementConfig,
        discovery: ServerDiscovery,
        engine_factory: Optional[EngineFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.discovery = discovery
        self._engine_factory = engine_factory or PhaseEngine
        self._sleep = sleep

    async def run(self, on_progress: Optional[TestProgressCallback] = None) -> TestResult:
        emit = on_progress or _ignore

        emit(TestProgress(phase=LOCATING_LABEL, percent=0.0))
        try:
            server = await asyncio.to_thread(self.discovery.locate)
        except DiscoveryError as exc:
            LOGGER.error("Server discovery failed: %s", exc)
            raise TestRunError("discovery", exc) from exc
        emit(TestProgress(phase=LOCATING_LABEL, percent=100.0))

        download = await self._run_phase(Direction.DOWNLOAD, server.download_url, emit, None)

        # Give the server time to release the previous connection.
        await self._sleep(self.config.inter_phase_pause)

        upload = await self._run_phase(Direction.UPLOAD, server.upload_url, emit, download)

        result = TestResult(
            download_mbps=download.throughput_mbps,
            upload_mbps=upload.throughput_mbps,
            download_latency_ms=download.latency_ms,
            upload_latency_ms=upload.latency_ms,
            hostname=server.hostname,
            city=server.city,
            country=server.country,
            bytes_used=download.bytes_transferred + upload.bytes_transferred,
        )
        LOGGER.info(
            "Speed test complete against %s: down %.2f Mbps / up %.2f Mbps",
            server.hostname,
            result.download_mbps,
            result.upload_mbps,
        )
        return result

    def run_sync(self, on_progress: Optional[TestProgressCallback] = None) -> TestResult:
        return asyncio.run(self.run(on_progress))

    async def _run_phase(
        self,
        direction: Direction,
        url: str,
        emit: TestProgressCallback,
        download: Optional[PhaseResult],
    ) -> PhaseResult:
        label = PHASE_LABELS[direction]
        engine = self._engine_factory(self.config.phase_config(direction))

        def forward(sample: ProgressSample) -> None:
            if download is None:
                known_mbps, known_latency = sample.throughput_mbps, sample.latency_ms
            else:
                known_mbps, known_latency = download.throughput_mbps, download.latency_ms
            emit(
                TestProgress(
                    phase=label,
                    percent=sample.percent,
                    throughput_mbps=sample.throughput_mbps,
                    latency_ms=sample.latency_ms,
                    download_mbps=known_mbps,
                    download_latency_ms=known_latency,
                )
            )

        try:
            return await engine.run(url, forward)
        except PhaseError as exc:
            LOGGER.error("%s failed: %s", label, exc)
            raise TestRunError(direction.value, exc) from exc
