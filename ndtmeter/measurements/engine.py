"""ndt7 measurement phase engine.

One ``PhaseEngine.run`` call drives a single WebSocket connection for one
direction::

    IDLE -> CONNECTING -> MEASURING -> CLOSING -> DONE
                  \\            \\           \\
                   +------------+-----------+--> FAILED

Download phases run a single receive loop. Upload phases additionally run a
sender task that floods the connection with binary payloads while the receive
loop collects the server's view of the transfer. Both loops share one stop
event and one clock, and every blocking call is raced against both so that
the phase never outlives its overall deadline.

Only the receive loop writes the measured values: the server, not the
client, reports how fast data actually arrived.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    WebSocketException,
)
from websockets.protocol import State
from websockets.typing import Subprotocol

from ..errors import (
    ConnectTimeoutError,
    HandshakeRejectedError,
    NoMeasurementsError,
    PhaseTimeoutError,
    TransportError,
)
from .frames import FrameSamples, decode_frame
from .models import Direction, PhaseConfig, PhaseResult, ProgressSample

LOGGER = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000

ProgressCallback = Callable[[ProgressSample], None]
Connector = Callable[[str, PhaseConfig], Awaitable[Any]]


class PhaseState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    MEASURING = "measuring"
    CLOSING = "closing"
    DONE = "done"
    FAILED = "failed"


class LoopEnd(str, Enum):
    CLOSED = "server closed"
    DURATION = "test duration reached"
    DEADLINE = "overall deadline reached"
    STOPPED = "stopped"
    ERROR = "receive error"


async def open_websocket(url: str, config: PhaseConfig):
    """Default connector: the ``websockets`` asyncio client."""
    return await connect(
        url,
        subprotocols=[Subprotocol(config.subprotocol)],
        user_agent_header=config.user_agent,
        compression=None,
        open_timeout=None,
        ping_interval=config.keepalive_interval_seconds,
        max_size=config.max_message_size,
        close_timeout=config.close_timeout_seconds,
    )


class _Interrupted(Exception):
    def __init__(self, reason: LoopEnd):
        super().__init__(reason.value)
        self.reason = reason


@dataclass
class _Session:
    started: float
    end: float
    deadline: float
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    throughput_mbps: float = 0.0
    latency_ms: Optional[float] = None
    bytes_received: int = 0
    bytes_sent: int = 0
    error: Optional[BaseException] = None


def _is_open(ws) -> bool:
    return getattr(ws, "state", State.OPEN) is State.OPEN


def _discard(aw) -> None:
    close = getattr(aw, "close", None)
    if asyncio.iscoroutine(aw) and close is not None:
        close()


class PhaseEngine:
    """Runs one download or upload measurement over a single connection."""

    def __init__(
        self,
        config: PhaseConfig,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
        payload: Optional[bytes] = None,
    ):
        self.config = config
        self.direction = config.direction
        self.state = PhaseState.IDLE
        self._connector = connector or open_websocket
        self._clock = clock
        if payload is None and config.direction is Direction.UPLOAD:
            payload = os.urandom(config.send_payload_size_bytes)
        self._payload = payload or b""

    def _set_state(self, state: PhaseState) -> None:
        LOGGER.debug("%s phase: %s -> %s", self.direction.value, self.state.value, state.value)
        self.state = state

    async def run(self, url: str, on_progress: Optional[ProgressCallback] = None) -> PhaseResult:
        phase_start = self._clock()
        deadline = phase_start + self.config.overall_timeout_seconds
        LOGGER.info("Starting %s test against %s", self.direction.value, url)

        try:
            ws = await self._connect(url, deadline)
        except BaseException:
            self._set_state(PhaseState.FAILED)
            raise

        failed = True
        try:
            now = self._clock()
            session = _Session(
                started=now,
                end=min(now + self.config.test_duration_seconds, deadline),
                deadline=deadline,
            )
            self._set_state(PhaseState.MEASURING)
            if self.direction is Direction.UPLOAD:
                ended = await self._measure_upload(ws, session, on_progress)
            else:
                ended = await self._receive_loop(ws, session, on_progress)
            result = self._outcome(session, ended)
            failed = False
        finally:
            self._set_state(PhaseState.CLOSING)
            await self._close(ws)
            self._set_state(PhaseState.FAILED if failed else PhaseState.DONE)

        if on_progress is not None:
            on_progress(ProgressSample(100.0, result.throughput_mbps, session.latency_ms))
        LOGGER.info(
            "%s test finished: %.2f Mbps, %.1f ms",
            self.direction.value.capitalize(),
            result.throughput_mbps,
            result.latency_ms,
        )
        return result

    async def _connect(self, url: str, deadline: float):
        self._set_state(PhaseState.CONNECTING)
        timeout = max(0.0, min(self.config.connect_timeout_seconds, deadline - self._clock()))
        try:
            ws = await asyncio.wait_for(self._connector(url, self.config), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectTimeoutError(
                self.direction, f"connection to server timed out after {timeout:.0f} seconds"
            ) from exc
        except (InvalidHandshake, ConnectionClosed) as exc:
            raise HandshakeRejectedError(
                self.direction, f"server closed connection during handshake ({exc}); it may be overloaded"
            ) from exc
        except (WebSocketException, OSError) as exc:
            raise TransportError(self.direction, f"could not connect: {exc}") from exc
        LOGGER.info("%s test connected", self.direction.value.capitalize())
        return ws

    async def _guarded(self, aw, session: _Session):
        """Await ``aw`` unless the stop event fires or the measurement window closes first."""
        if session.stop.is_set():
            _discard(aw)
            raise _Interrupted(LoopEnd.STOPPED)
        remaining = session.end - self._clock()
        if remaining <= 0:
            _discard(aw)
            raise _Interrupted(self._expiry(session))

        op = asyncio.ensure_future(aw)
        stopper = asyncio.ensure_future(session.stop.wait())
        try:
            done, _ = await asyncio.wait(
                {op, stopper}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stopper.cancel()
            if not op.done():
                op.cancel()
                await asyncio.wait({op})

        if op in done:
            return op.result()
        if session.stop.is_set():
            raise _Interrupted(LoopEnd.STOPPED)
        raise _Interrupted(self._expiry(session))

    def _expiry(self, session: _Session) -> LoopEnd:
        # end is already capped at deadline; a capped window means the deadline won
        return LoopEnd.DEADLINE if session.end >= session.deadline else LoopEnd.DURATION

    def _progress(self, session: _Session) -> float:
        elapsed = self._clock() - session.started
        return max(0.0, min(100.0, elapsed / self.config.test_duration_seconds * 100))

    def _apply(self, samples: FrameSamples, session: _Session) -> None:
        if samples.rtt is not None:
            session.latency_ms = samples.latency_ms
        mbps = samples.throughput_mbps
        if mbps is not None and mbps > 0:
            session.throughput_mbps = mbps

    async def _receive_loop(
        self, ws, session: _Session, on_progress: Optional[ProgressCallback]
    ) -> LoopEnd:
        while True:
            try:
                message = await self._guarded(ws.recv(), session)
            except _Interrupted as exc:
                LOGGER.debug("%s receive loop ended: %s", self.direction.value, exc.reason.value)
                return exc.reason
            except ConnectionClosedOK:
                LOGGER.info("Server closed %s connection normally", self.direction.value)
                return LoopEnd.CLOSED
            except (WebSocketException, OSError) as exc:
                LOGGER.warning("%s connection failed while receiving: %s", self.direction.value, exc)
                session.error = exc
                return LoopEnd.ERROR

            if isinstance(message, (bytes, bytearray, memoryview)):
                session.bytes_received += len(message)
                continue

            samples = decode_frame(message, self.direction)
            if samples.empty:
                continue
            self._apply(samples, session)
            if on_progress is not None:
                on_progress(
                    ProgressSample(
                        self._progress(session),
                        session.throughput_mbps or None,
                        session.latency_ms,
                    )
                )

    async def _send_loop(self, ws, session: _Session) -> None:
        payload = self._payload
        while _is_open(ws):
            try:
                await self._guarded(ws.send(payload), session)
            except _Interrupted as exc:
                LOGGER.debug("Upload sender stopped: %s", exc.reason.value)
                return
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.debug("Upload sender stopped after send error: %s", exc)
                return
            session.bytes_sent += len(payload)
        LOGGER.debug("Upload sender stopped: connection no longer open")

    async def _measure_upload(
        self, ws, session: _Session, on_progress: Optional[ProgressCallback]
    ) -> LoopEnd:
        sender = asyncio.ensure_future(self._send_loop(ws, session))
        try:
            return await self._receive_loop(ws, session, on_progress)
        finally:
            session.stop.set()
            await sender

    def _outcome(self, session: _Session, ended: LoopEnd) -> PhaseResult:
        if session.throughput_mbps > 0:
            if ended is LoopEnd.ERROR:
                LOGGER.warning(
                    "%s test ended early (%s); keeping last measurement %.2f Mbps",
                    self.direction.value.capitalize(),
                    session.error,
                    session.throughput_mbps,
                )
            elif ended is LoopEnd.DEADLINE:
                LOGGER.info(
                    "%s test timed out (got %.2f Mbps before timeout)",
                    self.direction.value.capitalize(),
                    session.throughput_mbps,
                )
            transferred = (
                session.bytes_sent if self.direction is Direction.UPLOAD else session.bytes_received
            )
            return PhaseResult(
                direction=self.direction,
                throughput_mbps=session.throughput_mbps,
                latency_ms=session.latency_ms or 0.0,
                bytes_transferred=transferred,
            )

        if ended is LoopEnd.ERROR:
            raise TransportError(
                self.direction, f"connection lost before any measurement: {session.error}"
            ) from session.error
        if ended in (LoopEnd.DURATION, LoopEnd.DEADLINE):
            raise PhaseTimeoutError(
                self.direction,
                f"timed out with no measurements ({ended.value})",
            )
        raise NoMeasurementsError(self.direction, "no valid speed measurements received from server")

    async def _close(self, ws) -> None:
        if getattr(ws, "state", None) is State.CLOSED:
            return
        try:
            await asyncio.wait_for(
                ws.close(code=NORMAL_CLOSURE, reason="Test complete"),
                timeout=self.config.close_timeout_seconds,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.debug("Error closing %s websocket: %s", self.direction.value, exc)
