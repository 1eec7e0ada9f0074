"""Background refresh of cached weather data on a sync trigger."""

import logging
from dataclasses import dataclass, field

from .classifier import RequestClassifier
from .models import Request
from .network import Fetcher, NetworkError, mask_url
from .store import CacheStore, CacheStoreError
from .strategies import FetchStrategyEngine

logger = logging.getLogger(__name__)

# Sync tag registered by the dashboard when connectivity returns.
WEATHER_SYNC_TAG = "weather-sync"


@dataclass
class SyncReport:
    """Outcome of one refresh cycle.

    Attributes:
        refreshed: URLs whose cache entry was overwritten with fresh data.
        failed: URL (or cache key, when the entry was unreadable) -> failure reason.
    """

    refreshed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.refreshed) + len(self.failed)


class BackgroundRefreshCoordinator:
    """Re-fetches every cached weather entry, one attempt per key."""

    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        engine: FetchStrategyEngine,
        classifier: RequestClassifier,
        dynamic_namespace: str,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._engine = engine
        self._classifier = classifier
        self._dynamic_namespace = dynamic_namespace

    def refresh(self) -> SyncReport:
        """Run one refresh cycle over the dynamic namespace.

        A failing key is logged and skipped; it never aborts the cycle.
        """
        report = SyncReport()

        try:
            keys = self._store.keys(self._dynamic_namespace)
        except CacheStoreError as e:
            logger.error("Background sync failed: %s", e)
            return report

        logger.info("Background sync of %d cached weather entries", len(keys))

        for key in keys:
            try:
                entry = self._store.get(self._dynamic_namespace, key)
            except CacheStoreError as e:
                logger.warning("Failed to read cached entry %s: %s", mask_url(key), e)
                report.failed[key] = str(e)
                continue

            # Expired between listing and reading.
            if entry is None:
                continue
            if not self._classifier.is_dynamic_url(entry.url):
                continue

            url = entry.url
            try:
                response = self._fetcher.fetch(Request(url=url, method=entry.method))
            except NetworkError as e:
                logger.warning("Failed to sync weather data for %s: %s", mask_url(url), e)
                report.failed[url] = str(e)
                continue
            except Exception as e:
                logger.error("Unexpected error syncing %s: %s", mask_url(url), e)
                report.failed[url] = str(e)
                continue

            if not response.ok:
                logger.warning("Failed to sync weather data for %s: HTTP %d", mask_url(url), response.status)
                report.failed[url] = f"HTTP {response.status}"
                continue

            if self._engine.cache_dynamic(Request(url=url, method=entry.method), response):
                report.refreshed.append(url)
            else:
                report.failed[url] = "cache write failed"

        logger.info(
            "Background sync finished: %d refreshed, %d failed",
            len(report.refreshed),
            len(report.failed),
        )
        return report
