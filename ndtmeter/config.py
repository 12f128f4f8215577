"""Configuration loading helpers for the ndt7 speed test client."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .measurements.discovery import DEFAULT_LOCATE_URL
from .measurements.models import NDT7_SUBPROTOCOL, Direction, PhaseConfig


@dataclass
class PathsConfig:
    data_dir: Path
    logs_dir: Path


@dataclass
class MeasurementConfig:
    locate_url: str = DEFAULT_LOCATE_URL
    locate_timeout: float = 10.0
    test_duration: float = 10.0
    connect_timeout: float = 10.0
    overall_timeout: float = 25.0
    upload_payload_size: int = 8192
    inter_phase_pause: float = 1.0
    keepalive_interval: float = 30.0
    close_timeout: float = 2.0
    max_message_size: int = 1 << 24
    subprotocol: str = NDT7_SUBPROTOCOL
    user_agent: str = "ndtmeter/1.0"

    def phase_config(self, direction: Direction) -> PhaseConfig:
        return PhaseConfig(
            direction=direction,
            test_duration_seconds=self.test_duration,
            connect_timeout_seconds=self.connect_timeout,
            overall_timeout_seconds=self.overall_timeout,
            send_payload_size_bytes=self.upload_payload_size,
            subprotocol=self.subprotocol,
            user_agent=self.user_agent,
            keepalive_interval_seconds=self.keepalive_interval,
            max_message_size=self.max_message_size,
            close_timeout_seconds=self.close_timeout,
        )


@dataclass
class HistoryConfig:
    enabled: bool = True
    limit: int = 50
    csv_name: str = "history.csv"


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    measurement: MeasurementConfig
    history: HistoryConfig
    logging: LoggingConfig


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    path = (base / maybe_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load application configuration from YAML file."""

    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / "config.yaml"
    if not source_path.exists():
        raise FileNotFoundError(f"Missing configuration file at {source_path}")

    with source_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    paths_data = data.get("paths") or {}
    paths = PathsConfig(
        data_dir=_as_path(root_dir, paths_data.get("data_dir", "data")),
        logs_dir=_as_path(root_dir, paths_data.get("logs_dir", "logs")),
    )

    measurement = MeasurementConfig(**(data.get("measurement") or {}))
    if measurement.overall_timeout < measurement.connect_timeout:
        raise ValueError("measurement.overall_timeout must not be shorter than connect_timeout")
    if measurement.test_duration <= 0:
        raise ValueError("measurement.test_duration must be positive")

    return AppConfig(
        root_dir=root_dir,
        paths=paths,
        measurement=measurement,
        history=HistoryConfig(**(data.get("history") or {})),
        logging=LoggingConfig(**(data.get("logging") or {})),
    )
