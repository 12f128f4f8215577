"""Server discovery through the M-Lab locate service."""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from ..errors import DiscoveryError
from .models import ServerInfo

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCATE_URL = "https://locate.measurementlab.net/v2/nearest/ndt/ndt7"
DOWNLOAD_URL_KEY = "wss:///ndt/v7/download"
UPLOAD_URL_KEY = "wss:///ndt/v7/upload"


def parse_locate_response(payload: Any) -> ServerInfo:
    """Build a ServerInfo from the first candidate of a locate response."""

    results = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(results, list):
        raise DiscoveryError("Server location response did not contain a results list.")
    if not results:
        raise DiscoveryError("No ndt7 servers available in your region. Please try again later.")

    # Candidates are taken in the order the locate service returns them.
    first = results[0]
    try:
        location = first.get("location") or {}
        urls = first["urls"]
        hostname = first.get("machine") or first["hostname"]
        return ServerInfo(
            hostname=str(hostname),
            city=str(location.get("city", "")),
            country=str(location.get("country", "")),
            download_url=str(urls[DOWNLOAD_URL_KEY]),
            upload_url=str(urls[UPLOAD_URL_KEY]),
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise DiscoveryError(f"Server location response is missing field {exc}.") from exc


class ServerDiscovery:
    def __init__(
        self,
        locate_url: str = DEFAULT_LOCATE_URL,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        user_agent: Optional[str] = None,
    ):
        self.locate_url = locate_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.user_agent = user_agent

    def locate(self) -> ServerInfo:
        headers = {"User-Agent": self.user_agent} if self.user_agent else None
        LOGGER.info("Locating nearest ndt7 server via %s", self.locate_url)
        try:
            response = self.session.get(self.locate_url, timeout=self.timeout, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise DiscoveryError("Failed to locate ndt7 server. Check your internet connection.") from exc
        except ValueError as exc:
            raise DiscoveryError(
                "Failed to parse server location response. The locate service may be temporarily unavailable."
            ) from exc

        server = parse_locate_response(payload)
        LOGGER.info("Selected server %s (%s)", server.hostname, server.location)
        return server
