"""Per-category fetch strategies.

Handles caching strategy:
- Weather data (upstream API): Network-first with cache fallback, write-through and TTL
- Static assets (app shell, bundles, icons): Cache-first with network fallback
- Everything else: Network-only with an offline fallback

Every path ends in a concrete Response; network failures never propagate
to the caller.
"""

import json
import logging
from collections.abc import Callable

from .expiry import ExpiryScheduler
from .models import CacheEntry, Request, RequestCategory, Response, cache_key
from .network import Fetcher, NetworkError, mask_url
from .store import CacheStore, CacheStoreError

logger = logging.getLogger(__name__)

OFFLINE_WEATHER_ERROR = "Weather data not available offline"
OFFLINE_WEATHER_MESSAGE = "Please check your internet connection"


def offline_weather_response() -> Response:
    """503 returned for weather data when neither network nor cache can answer."""
    body = json.dumps({"error": OFFLINE_WEATHER_ERROR, "message": OFFLINE_WEATHER_MESSAGE})
    return Response(
        status=503,
        body=body.encode("utf-8"),
        headers={"Content-Type": "application/json"},
        status_text="Service Unavailable",
    )


def static_unavailable_response() -> Response:
    """404 returned for a static asset that is neither cached nor reachable."""
    return Response(
        status=404,
        body=b"Static file not available",
        headers={"Content-Type": "text/plain"},
        status_text="Not Found",
    )


def offline_content_response() -> Response:
    """503 returned for passthrough requests while offline."""
    return Response(
        status=503,
        body=b"Offline content not available",
        headers={"Content-Type": "text/plain"},
        status_text="Service Unavailable",
    )


class FetchStrategyEngine:
    """Applies the caching strategy of a request category.

    The engine reads and writes cache entries; it never creates or deletes
    namespaces, and dynamic entries are removed by the ExpiryScheduler.
    """

    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        expiry: ExpiryScheduler,
        static_namespace: str,
        offline_document_urls: list[str],
        clock: Callable[[], float],
    ) -> None:
        """Initialize the engine.

        Args:
            store: Cache store shared with the lifecycle manager.
            fetcher: Network access.
            expiry: Expiry scheduler owning the dynamic namespace.
            static_namespace: Name of the current static namespace.
            offline_document_urls: Root document URLs tried, in order, as offline page.
            clock: Returns the current time in epoch seconds.
        """
        self._store = store
        self._fetcher = fetcher
        self._expiry = expiry
        self._static_namespace = static_namespace
        self._dynamic_namespace = expiry.namespace
        self._offline_document_urls = offline_document_urls
        self._clock = clock

    def handle(self, request: Request, category: RequestCategory) -> Response:
        """Answer a request using the strategy for its category."""
        if category is RequestCategory.DYNAMIC_DATA:
            return self.network_first(request)
        if category is RequestCategory.STATIC_ASSET:
            return self.cache_first(request)
        return self.network_only(request)

    def network_first(self, request: Request) -> Response:
        """Weather data: fresh from the network, cached copy when offline."""
        cached = self._read(self._dynamic_namespace, request.key)

        try:
            response = self._fetcher.fetch(request)
        except NetworkError as e:
            logger.info("Network request failed, using cached data: %s", e)
        else:
            if response.ok:
                self.cache_dynamic(request, response)
                return response
            logger.info(
                "Upstream returned %d for %s, using cached data",
                response.status,
                mask_url(request.url),
            )

        if cached is not None:
            return cached.response

        return offline_weather_response()

    def cache_first(self, request: Request) -> Response:
        """Static assets: cached copy without touching the network."""
        cached = self._read(self._static_namespace, request.key)
        if cached is not None:
            return cached.response

        try:
            response = self._fetcher.fetch(request)
        except NetworkError as e:
            logger.info("Failed to fetch static file: %s", e)
            return static_unavailable_response()

        if response.ok:
            self._write(self._static_namespace, self._entry(request, response, ttl=None))
        return response

    def network_only(self, request: Request) -> Response:
        """Passthrough requests, with the cached app shell as offline page."""
        try:
            return self._fetcher.fetch(request)
        except NetworkError as e:
            logger.debug("Passthrough request failed: %s", e)

        if request.expects_document:
            document = self.offline_document()
            if document is not None:
                return document

        return offline_content_response()

    def offline_document(self) -> Response | None:
        """Cached root document, if any namespace holds one."""
        for url in self._offline_document_urls:
            try:
                entry = self._store.match(cache_key("GET", url))
            except CacheStoreError as e:
                logger.error("Failed to read offline document: %s", e)
                return None
            if entry is not None:
                return entry.response
        return None

    def cache_dynamic(self, request: Request, response: Response) -> bool:
        """Store a fresh weather response and (re)arm its TTL.

        Returns:
            True if the entry was written.
        """
        entry = self._entry(request, response, ttl=self._expiry.ttl)
        if not self._write(self._dynamic_namespace, entry):
            return False
        self._expiry.arm(entry.key)
        return True

    def _entry(self, request: Request, response: Response, ttl: float | None) -> CacheEntry:
        return CacheEntry(
            key=request.key,
            url=request.url,
            method=request.method.upper(),
            response=response.snapshot(),
            stored_at=self._clock(),
            ttl=ttl,
        )

    def _read(self, namespace: str, key: str) -> CacheEntry | None:
        try:
            entry = self._store.get(namespace, key)
        except CacheStoreError as e:
            logger.error("Cache read failed for %s: %s", mask_url(key), e)
            return None

        # Entries written by another process may have no local timer.
        if entry is not None and entry.is_expired(self._clock()):
            logger.debug("Dropping expired cached entry %s", mask_url(key))
            self._expiry.cancel(key)
            try:
                self._store.delete(namespace, key)
            except CacheStoreError as e:
                logger.error("Failed to delete expired entry %s: %s", mask_url(key), e)
            return None
        return entry

    def _write(self, namespace: str, entry: CacheEntry) -> bool:
        try:
            self._store.put(namespace, entry)
            return True
        except CacheStoreError as e:
            logger.error("Cache write failed for %s: %s", mask_url(entry.key), e)
            return False
