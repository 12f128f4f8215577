"""Tamper-evident storage of the most recent speed test result.

The last result is kept as JSON next to an HMAC-SHA256 signature keyed by a
secret generated once per installation. Editing the numbers by hand leaves
the file readable but marks it invalid on load.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .measurements.models import TestResult

LOGGER = logging.getLogger(__name__)

DATA_FILE = "last_result_secure.json"
KEY_FILE = ".signature_key"


@dataclass(frozen=True)
class StoredResult:
    result: TestResult
    signature: str
    is_valid: bool


class SignedResultStore:
    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.data_file = self.data_dir / DATA_FILE
        self._secret_key = self._load_or_create_key(self.data_dir / KEY_FILE)

    @staticmethod
    def _load_or_create_key(key_path: Path) -> str:
        if key_path.exists():
            return key_path.read_text(encoding="utf-8").strip()
        key = secrets.token_hex(16)
        key_path.write_text(key, encoding="utf-8")
        key_path.chmod(0o600)
        LOGGER.info("Generated new result signature key at %s", key_path)
        return key

    def _sign(self, result: TestResult) -> str:
        message = "|".join(
            [
                f"{result.download_mbps:.10f}",
                f"{result.upload_mbps:.10f}",
                f"{result.download_latency_ms:.10f}",
                f"{result.upload_latency_ms:.10f}",
                result.timestamp.isoformat(),
                result.hostname,
                result.city,
                result.country,
            ]
        )
        digest = hmac.new(self._secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def save(self, result: TestResult) -> None:
        payload = {
            "download_mbps": result.download_mbps,
            "upload_mbps": result.upload_mbps,
            "download_latency_ms": result.download_latency_ms,
            "upload_latency_ms": result.upload_latency_ms,
            "timestamp": result.timestamp.isoformat(),
            "server": result.hostname,
            "city": result.city,
            "country": result.country,
            "bytes_used": result.bytes_used,
            "signature": self._sign(result),
        }
        self.data_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def load(self) -> Optional[StoredResult]:
        """Return the stored result, or None when missing or unreadable."""
        if not self.data_file.exists():
            return None

        try:
            data = json.loads(self.data_file.read_text(encoding="utf-8"))
            result = TestResult(
                download_mbps=float(data["download_mbps"]),
                upload_mbps=float(data["upload_mbps"]),
                download_latency_ms=float(data.get("download_latency_ms", 0.0)),
                upload_latency_ms=float(data.get("upload_latency_ms", 0.0)),
                hostname=str(data["server"]),
                city=str(data.get("city", "")),
                country=str(data.get("country", "")),
                bytes_used=int(data.get("bytes_used", 0)),
                timestamp=datetime.fromisoformat(data["timestamp"]),
            )
            signature = str(data.get("signature", ""))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Could not read stored result from %s: %s", self.data_file, exc)
            return None

        is_valid = hmac.compare_digest(signature, self._sign(result))
        if not is_valid:
            LOGGER.warning("Stored result at %s failed signature check", self.data_file)
        return StoredResult(result=result, signature=signature, is_valid=is_valid)

    def clear(self) -> None:
        if self.data_file.exists():
            self.data_file.unlink()
