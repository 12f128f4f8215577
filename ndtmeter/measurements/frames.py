"""Decoding of ndt7 measurement text frames.

The server periodically sends JSON text messages describing what it observed
on the connection. Three sections matter to the client::

    {"AppInfo": {"NumBytes": 1250000, "ElapsedTime": 1000000}}
    {"TCPInfo": {"BytesSent": 1250000, "BytesReceived": 0, "ElapsedTime": 1000000}}
    {"BBRInfo": {"MinRTT": 23500}}

Any of them may also appear one level down under ``LastServerMeasurement``.
Times are in microseconds. Nothing in this module raises on bad input: a
frame that cannot be understood simply produces no samples.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .models import Direction

LOGGER = logging.getLogger(__name__)

WRAPPER_KEY = "LastServerMeasurement"


def throughput_mbps(num_bytes: int, elapsed_us: int) -> float:
    return (num_bytes * 8) / 1_000_000 / (elapsed_us / 1_000_000)


@dataclass(frozen=True)
class AppInfoSample:
    num_bytes: int
    elapsed_us: int

    @property
    def mbps(self) -> float:
        return throughput_mbps(self.num_bytes, self.elapsed_us)


@dataclass(frozen=True)
class TcpInfoSample:
    num_bytes: int
    elapsed_us: int

    @property
    def mbps(self) -> float:
        return throughput_mbps(self.num_bytes, self.elapsed_us)


@dataclass(frozen=True)
class RttSample:
    min_rtt_us: int

    @property
    def latency_ms(self) -> float:
        return self.min_rtt_us / 1000


@dataclass(frozen=True)
class Unrecognized:
    raw: str


MeasurementFrame = Union[AppInfoSample, TcpInfoSample, RttSample, Unrecognized]
ThroughputSample = Union[AppInfoSample, TcpInfoSample]


@dataclass(frozen=True)
class FrameSamples:
    throughput: Optional[ThroughputSample] = None
    rtt: Optional[RttSample] = None

    @property
    def throughput_mbps(self) -> Optional[float]:
        return self.throughput.mbps if self.throughput is not None else None

    @property
    def latency_ms(self) -> Optional[float]:
        return self.rtt.latency_ms if self.rtt is not None else None

    @property
    def empty(self) -> bool:
        return self.throughput is None and self.rtt is None


NO_SAMPLES = FrameSamples()


def _load(message: str) -> Optional[Dict[str, Any]]:
    try:
        root = json.loads(message)
    except ValueError as exc:
        LOGGER.debug("Ignoring undecodable measurement frame: %s", exc)
        return None
    if not isinstance(root, dict):
        LOGGER.debug("Ignoring measurement frame with %s root", type(root).__name__)
        return None
    return root


def _section(root: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    """Find ``name`` at top level, else one level under the wrapper key."""
    if name in root:
        value = root[name]
    else:
        wrapper = root.get(WRAPPER_KEY)
        if not isinstance(wrapper, dict) or name not in wrapper:
            return None
        value = wrapper[name]
    return value if isinstance(value, dict) else {}


def _counter(section: Dict[str, Any], key: str) -> Optional[int]:
    value = section.get(key)
    # bool is an int subclass; true/false are never valid counters
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(value)


def _throughput(section: Dict[str, Any], byte_keys: List[str], cls) -> Optional[ThroughputSample]:
    elapsed = _counter(section, "ElapsedTime")
    if not elapsed:
        return None
    for key in byte_keys:
        num_bytes = _counter(section, key)
        if num_bytes is not None:
            return cls(num_bytes=num_bytes, elapsed_us=elapsed)
    return None


def _tcp_byte_keys(direction: Direction) -> List[str]:
    if direction is Direction.UPLOAD:
        return ["BytesReceived", "BytesSent"]
    return ["BytesSent", "BytesReceived"]


def _rtt(root: Dict[str, Any]) -> Optional[RttSample]:
    section = _section(root, "BBRInfo")
    if section is None:
        return None
    min_rtt = _counter(section, "MinRTT")
    if min_rtt is None:
        return None
    return RttSample(min_rtt_us=min_rtt)


def _samples(root: Dict[str, Any], direction: Direction) -> FrameSamples:
    app_info = _section(root, "AppInfo")
    if app_info is not None:
        # AppInfo present, even if unusable: TCPInfo is never consulted
        throughput = _throughput(app_info, ["NumBytes"], AppInfoSample)
    else:
        tcp_info = _section(root, "TCPInfo")
        throughput = (
            _throughput(tcp_info, _tcp_byte_keys(direction), TcpInfoSample)
            if tcp_info is not None
            else None
        )
    return FrameSamples(throughput=throughput, rtt=_rtt(root))


def decode_frame(message: str, direction: Direction = Direction.DOWNLOAD) -> FrameSamples:
    """Extract the throughput and latency samples carried by one text frame."""
    root = _load(message)
    if root is None:
        return NO_SAMPLES
    return _samples(root, direction)


def classify_frame(message: str, direction: Direction = Direction.DOWNLOAD) -> List[MeasurementFrame]:
    """Return every recognised sample in a frame, or a single Unrecognized.

    Diagnostic view of a frame; the measurement loop itself uses decode_frame.
    """
    root = _load(message)
    if root is None:
        return [Unrecognized(raw=message)]
    samples = _samples(root, direction)
    frames: List[MeasurementFrame] = [s for s in (samples.throughput, samples.rtt) if s is not None]
    return frames or [Unrecognized(raw=message)]
