"""Application bootstrap helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .db import init_db
from .exporter import CSVExporter
from .logging_setup import configure_logging
from .measurements.discovery import ServerDiscovery
from .measurements.manager import HistoryStore
from .measurements.models import TestResult
from .measurements.orchestrator import SpeedTestRunner, TestProgressCallback
from .secure_store import SignedResultStore


class ApplicationContext:
    """Holds the collaborators wired for one process."""

    def __init__(self, config: AppConfig, log_level: Optional[str] = None):
        self.config = config
        configure_logging(config, log_level)
        self.Session = init_db(config.paths.data_dir)
        self.history = HistoryStore(self.Session)
        self.exporter = CSVExporter(self.Session)
        self.last_result = SignedResultStore(config.paths.data_dir)
        self.discovery = ServerDiscovery(
            locate_url=config.measurement.locate_url,
            timeout=config.measurement.locate_timeout,
            user_agent=config.measurement.user_agent,
        )
        self.runner = SpeedTestRunner(config.measurement, self.discovery)

    def run_test(self, on_progress: Optional[TestProgressCallback] = None, save: bool = True) -> TestResult:
        result = self.runner.run_sync(on_progress)
        if save:
            self.last_result.save(result)
            if self.config.history.enabled:
                self.history.save(result)
        return result


def bootstrap(config_path: Optional[str] = None, log_level: Optional[str] = None) -> ApplicationContext:
    """Load configuration and wire dependencies."""

    config_file = Path(config_path).resolve() if config_path else None
    config = load_config(str(config_file)) if config_file else load_config()
    return ApplicationContext(config, log_level)
