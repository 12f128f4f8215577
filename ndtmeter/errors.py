"""Exception hierarchy for speed test failures.

Every failure that leaves the measurement core is one of these types. Each
carries a short ``category`` suitable for showing to a user next to the
detailed message.
"""

from __future__ import annotations

from typing import Optional

from .measurements.models import Direction


class MeasurementError(Exception):
    """Base class for all speed test failures."""

    category = "Speed test failed"


class DiscoveryError(MeasurementError):
    """The locate service could not be reached, parsed, or had no servers."""

    category = "Server discovery failed"


class PhaseError(MeasurementError):
    """A single download or upload phase failed."""

    category = "Measurement failed"

    def __init__(self, direction: Direction, message: str):
        super().__init__(f"{direction.value.capitalize()} test: {message}")
        self.direction = direction


class ConnectTimeoutError(PhaseError):
    category = "Connection timed out"


class HandshakeRejectedError(PhaseError):
    category = "Server rejected connection"


class TransportError(PhaseError):
    category = "Connection lost"


class NoMeasurementsError(PhaseError):
    """The phase finished without a single usable throughput sample."""

    category = "No measurements received"


class PhaseTimeoutError(NoMeasurementsError):
    """The phase ran out of time before any usable throughput sample arrived."""

    category = "Measurement timed out"


class TestRunError(MeasurementError):
    """Raised by the orchestrator; names the stage that failed."""

    __test__ = False  # keep pytest from collecting this as a test class

    def __init__(self, stage: str, cause: MeasurementError):
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage
        self.cause = cause

    @property
    def category(self) -> str:  # type: ignore[override]
        return self.cause.category

    @property
    def direction(self) -> Optional[Direction]:
        return getattr(self.cause, "direction", None)
