"""Shared dataclasses for measurements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


NDT7_SUBPROTOCOL = "net.measurementlab.ndt.v7"


class Direction(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


@dataclass(frozen=True)
class ServerInfo:
    hostname: str
    city: str
    country: str
    download_url: str
    upload_url: str

    @property
    def location(self) -> str:
        return ", ".join(part for part in (self.city, self.country) if part)


@dataclass(frozen=True)
class PhaseConfig:
    direction: Direction
    test_duration_seconds: float = 10.0
    connect_timeout_seconds: float = 10.0
    overall_timeout_seconds: float = 25.0
    send_payload_size_bytes: int = 8192
    subprotocol: str = NDT7_SUBPROTOCOL
    user_agent: str = "ndtmeter/1.0"
    keepalive_interval_seconds: Optional[float] = 30.0
    max_message_size: Optional[int] = 1 << 24
    close_timeout_seconds: float = 2.0


@dataclass(frozen=True)
class PhaseResult:
    direction: Direction
    throughput_mbps: float
    latency_ms: float
    bytes_transferred: int = 0


@dataclass(frozen=True)
class ProgressSample:
    percent: float
    throughput_mbps: Optional[float]
    latency_ms: Optional[float]


@dataclass(frozen=True)
class TestProgress:
    """Progress snapshot handed to the caller of a full test run."""

    __test__ = False

    phase: str
    percent: float
    throughput_mbps: Optional[float] = None
    latency_ms: Optional[float] = None
    download_mbps: Optional[float] = None
    download_latency_ms: Optional[float] = None


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    download_mbps: float
    upload_mbps: float
    download_latency_ms: float
    upload_latency_ms: float
    hostname: str
    city: str
    country: str
    bytes_used: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)
