from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import structlog

from parliament_monitor.models import Cluster
from parliament_monitor.settings import SettingsProvider


logger = structlog.get_logger(__name__)

HEALTH_PATH = "/eshealth.json"
STATS_PATH = "/stats.json"


class FetchFailure(str, Enum):
    NETWORK = "network"  # connection errors and timeouts
    HTTP_STATUS = "http_status"
    PARSE = "parse"


@dataclass(frozen=True)
class FetchResult:
    ok: bool
    document: dict[str, Any] | None = None
    error: str | None = None
    failure: FetchFailure | None = None
    elapsed_ms: float | None = None

    @property
    def is_parse_failure(self) -> bool:
        return self.failure is FetchFailure.PARSE

    @property
    def is_fetch_failure(self) -> bool:
        return self.failure in (FetchFailure.NETWORK, FetchFailure.HTTP_STATUS)


class ClusterHealthClient:
    """
    Fetches the health and stats documents of one cluster. Every failure is
    returned as a classified FetchResult; nothing is raised to the caller.
    """

    def __init__(self, http_client: httpx.AsyncClient, settings: SettingsProvider):
        self.http_client = http_client
        self.settings = settings

    def _timeout_seconds(self) -> float:
        # Re-read on every call so operators can change it live.
        try:
            return max(0.1, float(self.settings.get("es_query_timeout")))
        except (TypeError, ValueError):
            return 5.0

    async def fetch_health(self, cluster: Cluster) -> FetchResult:
        return await self._fetch_json(f"{cluster.base_url}{HEALTH_PATH}")

    async def fetch_stats(self, cluster: Cluster) -> FetchResult:
        return await self._fetch_json(f"{cluster.base_url}{STATS_PATH}")

    async def _fetch_json(self, url: str) -> FetchResult:
        timeout = self._timeout_seconds()
        started = time.perf_counter()

        def _elapsed() -> float:
            return round((time.perf_counter() - started) * 1000.0, 3)

        try:
            resp = await asyncio.wait_for(self.http_client.get(url, timeout=timeout), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"timeout of {timeout:g}s exceeded"
            logger.warning("Cluster request timed out", url=url, timeout_seconds=timeout)
            return FetchResult(ok=False, error=error, failure=FetchFailure.NETWORK, elapsed_ms=_elapsed())
        except httpx.TimeoutException as e:
            error = f"timeout of {timeout:g}s exceeded ({type(e).__name__})"
            logger.warning("Cluster request timed out", url=url, timeout_seconds=timeout)
            return FetchResult(ok=False, error=error, failure=FetchFailure.NETWORK, elapsed_ms=_elapsed())
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning("Cluster request failed", url=url, error=error)
            return FetchResult(ok=False, error=error, failure=FetchFailure.NETWORK, elapsed_ms=_elapsed())
        except httpx.InvalidURL as e:
            # Not an HTTPError subclass; raised before any request is sent.
            error = f"InvalidURL: {e}"
            logger.warning("Cluster URL is invalid", url=url, error=error)
            return FetchResult(ok=False, error=error, failure=FetchFailure.NETWORK, elapsed_ms=_elapsed())

        if not (200 <= resp.status_code < 300):
            error = f"HTTP {resp.status_code} {resp.reason_phrase}".strip()
            logger.warning("Cluster request returned error status", url=url, status_code=resp.status_code)
            return FetchResult(ok=False, error=error, failure=FetchFailure.HTTP_STATUS, elapsed_ms=_elapsed())

        try:
            document = json.loads(resp.text)
        except ValueError:
            logger.warning("Bad response from cluster", url=url)
            return FetchResult(ok=False, error="unparsable body", failure=FetchFailure.PARSE, elapsed_ms=_elapsed())
        if not isinstance(document, dict):
            logger.warning("Bad response from cluster", url=url)
            return FetchResult(ok=False, error="body is not a JSON object", failure=FetchFailure.PARSE, elapsed_ms=_elapsed())

        return FetchResult(ok=True, document=document, elapsed_ms=_elapsed())
