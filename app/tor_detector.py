from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable

import httpx

from app.database import DatabaseError
from app.security_repository import SecurityRepository, parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TOR_LIST_SOURCES = (
    "https://check.torproject.org/torbulkexitlist",
    "https://www.dan.me.uk/torlist/?exit",
)
DEFAULT_TOR_CACHE_TTL_SECONDS = 6 * 60 * 60
DEFAULT_TOR_FETCH_TIMEOUT_SECONDS = 5.0
DEFAULT_TOR_RETENTION_SECONDS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class TorDetectorSettings:
    sources: tuple[str, ...] = DEFAULT_TOR_LIST_SOURCES
    cache_ttl_seconds: int = DEFAULT_TOR_CACHE_TTL_SECONDS
    fetch_timeout_seconds: float = DEFAULT_TOR_FETCH_TIMEOUT_SECONDS
    retention_seconds: int = DEFAULT_TOR_RETENTION_SECONDS

    def __post_init__(self) -> None:
        if not self.sources:
            raise ValueError("TOR_LIST_SOURCES must contain at least one URL.")
        if self.cache_ttl_seconds <= 0:
            raise ValueError("TOR_CACHE_TTL_SECONDS must be greater than 0.")
        if self.fetch_timeout_seconds <= 0:
            raise ValueError("TOR_FETCH_TIMEOUT_SECONDS must be greater than 0.")
        if self.retention_seconds < self.cache_ttl_seconds:
            raise ValueError("TOR_RETENTION_SECONDS must not be shorter than TOR_CACHE_TTL_SECONDS.")

    @classmethod
    def from_env(cls) -> "TorDetectorSettings":
        raw_sources = os.getenv("TOR_LIST_SOURCES", "").strip()
        sources = (
            tuple(source.strip() for source in raw_sources.split(",") if source.strip())
            if raw_sources
            else DEFAULT_TOR_LIST_SOURCES
        )
        try:
            cache_ttl_seconds = int(os.getenv("TOR_CACHE_TTL_SECONDS", str(DEFAULT_TOR_CACHE_TTL_SECONDS)).strip())
            fetch_timeout_seconds = float(
                os.getenv("TOR_FETCH_TIMEOUT_SECONDS", str(DEFAULT_TOR_FETCH_TIMEOUT_SECONDS)).strip()
            )
            retention_seconds = int(os.getenv("TOR_RETENTION_SECONDS", str(DEFAULT_TOR_RETENTION_SECONDS)).strip())
        except ValueError as exc:
            raise ValueError(
                "TOR_CACHE_TTL_SECONDS, TOR_FETCH_TIMEOUT_SECONDS, and TOR_RETENTION_SECONDS must be numeric."
            ) from exc
        return cls(
            sources=sources,
            cache_ttl_seconds=cache_ttl_seconds,
            fetch_timeout_seconds=fetch_timeout_seconds,
            retention_seconds=retention_seconds,
        )


@dataclass(frozen=True)
class TorRefreshResult:
    count: int
    source: str
    refreshed_at: datetime | None


@dataclass(frozen=True)
class TorLookupResult:
    is_tor: bool
    confidence: str
    cache_age_seconds: float | None = None


@dataclass(frozen=True)
class TorCacheStats:
    total_nodes: int
    last_refresh: datetime | None
    fresh: bool


def parse_exit_list(text: str) -> list[str]:
    addresses: list[str] = []
    for line in text.splitlines():
        candidate = line.strip()
        if not candidate or candidate.startswith("#"):
            continue
        try:
            addresses.append(str(ipaddress.ip_address(candidate)))
        except ValueError:
            continue
    return list(dict.fromkeys(addresses))


def _source_label(source: str) -> str:
    if "torproject" in source:
        return "torproject"
    try:
        return httpx.URL(source).host or source
    except httpx.InvalidURL:
        return source


class TorExitNodeCache:
    """Tor exit-node membership backed by the ``tor_exit_nodes`` table.

    The table is the cache: its newest ``last_seen`` is the refresh timestamp.
    Only one refresh runs per process at a time; callers arriving during a
    refresh read whatever is already stored. Refreshes upsert by IP, so
    concurrent refreshes from other processes are harmless.
    """

    def __init__(
        self,
        repository: SecurityRepository,
        settings: TorDetectorSettings,
        http_client: httpx.Client,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._http_client = http_client
        self._clock = clock
        self._refresh_lock = Lock()

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._settings.cache_ttl_seconds)

    def _is_fresh(self, refreshed_at: datetime | None) -> bool:
        return refreshed_at is not None and self._clock() - refreshed_at < self.ttl

    def _last_refresh(self) -> datetime | None:
        try:
            return self._repository.get_latest_tor_refresh()
        except DatabaseError as exc:
            logger.warning("tor_cache_read_failed error=%s", str(exc))
            return None

    def _fetch_source(self, source: str) -> list[str]:
        response = self._http_client.get(source, timeout=self._settings.fetch_timeout_seconds)
        response.raise_for_status()
        return parse_exit_list(response.text)

    def refresh(self, force: bool = False) -> TorRefreshResult:
        last_refresh = self._last_refresh()
        if not force and self._is_fresh(last_refresh):
            return TorRefreshResult(count=0, source="cache_hit", refreshed_at=last_refresh)

        if not self._refresh_lock.acquire(blocking=False):
            logger.info("tor_refresh_in_progress serving_stale_cache=true")
            return TorRefreshResult(count=0, source="refresh_in_progress", refreshed_at=last_refresh)

        try:
            for source in self._settings.sources:
                try:
                    addresses = self._fetch_source(source)
                except httpx.HTTPError as exc:
                    logger.warning("tor_source_failed source=%s error=%s", source, str(exc))
                    continue

                if not addresses:
                    logger.warning("tor_source_empty source=%s", source)
                    continue

                refreshed_at = self._clock()
                label = _source_label(source)
                rows = [
                    {"ip_address": address, "last_seen": to_iso(refreshed_at), "source": label}
                    for address in addresses
                ]
                try:
                    self._repository.upsert_tor_exit_nodes(rows)
                except DatabaseError as exc:
                    logger.error("tor_cache_write_failed source=%s error=%s", source, str(exc))
                    return TorRefreshResult(count=0, source="write_failed", refreshed_at=last_refresh)

                try:
                    self._repository.delete_tor_exit_nodes_seen_before(
                        refreshed_at - timedelta(seconds=self._settings.retention_seconds)
                    )
                except DatabaseError as exc:
                    logger.warning("tor_cache_prune_failed error=%s", str(exc))

                logger.info("tor_refresh_complete source=%s count=%s", source, len(addresses))
                return TorRefreshResult(count=len(addresses), source=source, refreshed_at=refreshed_at)

            logger.warning("tor_refresh_all_sources_failed serving_stale_cache=true")
            return TorRefreshResult(count=0, source="all_failed", refreshed_at=last_refresh)
        finally:
            self._refresh_lock.release()

    def lookup(self, ip_address: str | None) -> TorLookupResult:
        if not ip_address or ip_address == "unknown":
            return TorLookupResult(is_tor=False, confidence="LOW")
        try:
            normalized = str(ipaddress.ip_address(ip_address.strip()))
        except ValueError:
            return TorLookupResult(is_tor=False, confidence="LOW")

        refresh_result = self.refresh()
        confidence = "HIGH" if self._is_fresh(refresh_result.refreshed_at) else "MEDIUM"

        try:
            node = self._repository.get_tor_exit_node(normalized)
        except DatabaseError as exc:
            logger.warning("tor_lookup_failed ip=%s error=%s", ip_address, str(exc))
            return TorLookupResult(is_tor=False, confidence="LOW")

        if not node:
            return TorLookupResult(is_tor=False, confidence=confidence)

        cache_age = (self._clock() - parse_timestamp(node["last_seen"])).total_seconds()
        return TorLookupResult(is_tor=True, confidence=confidence, cache_age_seconds=cache_age)

    def stats(self) -> TorCacheStats:
        total_nodes = self._repository.count_tor_exit_nodes()
        last_refresh = self._repository.get_latest_tor_refresh()
        return TorCacheStats(total_nodes=total_nodes, last_refresh=last_refresh, fresh=self._is_fresh(last_refresh))
