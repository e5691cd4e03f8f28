"""Region discovery for cloud-hosted servers."""

from __future__ import annotations

import json
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Dict, List

SETTINGS_CACHE_TIME = 3.0


class RegionError(Exception):
    """Region settings could not be fetched, decoded or used."""


@dataclass
class _HostnameSettings:
    region_urls: List[str]
    updated_at: float
    region_url_attempts: Dict[str, int] = field(default_factory=dict)


def is_cloud(hostname: str) -> bool:
    return hostname.endswith("livekit.cloud") or hostname.endswith("livekit.io")


def parse_cloud_url(server_url: str) -> str:
    """Return the hostname of a cloud server URL; raise RegionError otherwise."""
    try:
        hostname = urllib.parse.urlparse(server_url).hostname or ""
    except ValueError as exc:
        raise RegionError(f"invalid server url ({server_url}): {exc}") from exc
    if not is_cloud(hostname):
        raise RegionError("not a cloud url")
    return hostname


def _decode_region_urls(body: bytes) -> List[str]:
    try:
        document = json.loads(body)
    except ValueError as exc:
        raise RegionError(
            f"refreshRegionSettings failed to decode region settings: {exc}"
        ) from exc
    if not isinstance(document, dict):
        raise RegionError("refreshRegionSettings failed to decode region settings: not an object")
    regions = document.get("regions", [])
    if not isinstance(regions, list) or not all(isinstance(r, dict) for r in regions):
        raise RegionError("refreshRegionSettings failed to decode region settings: bad regions")
    return [str(region.get("url", "")) for region in regions]


class RegionUrlProvider:
    """Fetches and caches the region list for each cloud hostname."""

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._cache: Dict[str, _HostnameSettings] = {}
        self._lock = threading.Lock()

    def refresh_region_settings(self, cloud_hostname: str, token: str) -> None:
        """Fetch the region list unless it was fetched in the last few seconds."""
        with self._lock:
            cached = self._cache.get(cloud_hostname)
        if cached is not None and time.monotonic() - cached.updated_at < SETTINGS_CACHE_TIME:
            return

        settings_url = f"https://{cloud_hostname}/settings/regions"
        request = urllib.request.Request(
            settings_url, headers={"Authorization": "Bearer " + token}, method="GET"
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                status = response.status
                reason = getattr(response, "reason", "")
                if status != 200:
                    raise RegionError(
                        "refreshRegionSettings failed to fetch region settings. "
                        f"http status: {status} {reason}"
                    )
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise RegionError(
                "refreshRegionSettings failed to fetch region settings. "
                f"http status: {exc.code} {exc.reason}"
            ) from exc
        except urllib.error.URLError as exc:
            raise RegionError(f"refreshRegionSettings request failed: {exc.reason}") from exc

        urls = _decode_region_urls(body)
        with self._lock:
            self._cache[cloud_hostname] = _HostnameSettings(urls, time.monotonic())

    def pop_best_url(self, cloud_hostname: str, token: str) -> str:
        """Remove and return the best remaining region URL.

        Raises RegionError once the list is exhausted; refresh to repopulate it.
        """
        with self._lock:
            settings = self._cache.get(cloud_hostname)
            if settings is None or not settings.region_urls:
                raise RegionError("no regions available")
            return settings.region_urls.pop(0)