"""Cache controller: single entry point for every cache event.

The controller wires the classifier, strategy engine, expiry scheduler,
lifecycle manager, background refresh and notification bridge together and
exposes one method per event. Platform wiring (HTTP server, CLI) stays
outside and only calls these methods.

Example:
    controller = CacheController(config)
    controller.on_install()
    response = controller.handle_request(Request(url="http://localhost:5173/"))
    controller.close()
"""

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any
from urllib.parse import quote

from .classifier import RequestClassifier
from .config import CacheConfig, Config, NotificationsConfig
from .expiry import ExpiryScheduler
from .lifecycle import InstallError, LifecycleError, LifecycleManager
from .models import Notification, Request, Response
from .network import Fetcher, NetworkError, UrllibFetcher, mask_url
from .notifications import LogNotifier, NotificationBridge, Notifier, WebhookNotifier
from .scheduler import Scheduler, TimerScheduler
from .store import CacheStore, CacheStoreError, MemoryCacheStore, SqliteCacheStore
from .strategies import FetchStrategyEngine, offline_content_response
from .sync import WEATHER_SYNC_TAG, BackgroundRefreshCoordinator, SyncReport

logger = logging.getLogger(__name__)

MESSAGE_SKIP_WAITING = "SKIP_WAITING"
MESSAGE_CACHE_WEATHER = "CACHE_WEATHER"

# Current weather and forecast are fetched side by side.
CACHE_WEATHER_WORKERS = 2


def create_store(config: CacheConfig) -> CacheStore:
    """Build the configured cache store backend.

    Raises:
        CacheStoreError: If the persistent store cannot be opened.
    """
    if config.store == "sqlite":
        return SqliteCacheStore(config.path)
    return MemoryCacheStore()


def create_notifier(config: NotificationsConfig) -> Notifier:
    """Use webhooks when configured, the log otherwise."""
    if config.webhooks:
        return WebhookNotifier(config.webhooks)
    return LogNotifier()


class CacheController:
    """Dispatches install, activate, fetch, sync, push and message events."""

    def __init__(
        self,
        config: Config,
        store: CacheStore | None = None,
        fetcher: Fetcher | None = None,
        scheduler: Scheduler | None = None,
        notifier: Notifier | None = None,
        opener: Callable[[str], object] | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            config: Application configuration.
            store: Cache store, defaults to the configured backend.
            fetcher: Network access, defaults to urllib.
            scheduler: Timer capability, defaults to threading timers.
            notifier: Notification delivery, defaults to webhooks or the log.
            opener: Opens the root page on notification clicks.
        """
        self._config = config
        cache = config.cache

        self.store = store if store is not None else create_store(cache)
        self.fetcher = fetcher if fetcher is not None else UrllibFetcher(
            timeout=config.network.timeout,
            user_agent=config.network.user_agent,
        )
        self.scheduler = scheduler if scheduler is not None else TimerScheduler()

        self.classifier = RequestClassifier.from_config(config)
        self.expiry = ExpiryScheduler(
            self.store,
            cache.dynamic_namespace,
            cache.dynamic_ttl_seconds,
            self.scheduler,
        )
        self.engine = FetchStrategyEngine(
            self.store,
            self.fetcher,
            self.expiry,
            static_namespace=cache.static_namespace,
            offline_document_urls=[config.app.resolve("/index.html"), config.app.resolve("/")],
            clock=self.scheduler.now,
        )
        self.lifecycle = LifecycleManager(
            self.store,
            self.fetcher,
            self.scheduler,
            static_namespace=cache.static_namespace,
            dynamic_namespace=cache.dynamic_namespace,
            manifest_urls=[config.app.resolve(path) for path in cache.static_manifest],
            skip_waiting=cache.skip_waiting,
        )
        self.background_sync = BackgroundRefreshCoordinator(
            self.store,
            self.fetcher,
            self.engine,
            self.classifier,
            cache.dynamic_namespace,
        )

        bridge_kwargs: dict[str, Any] = {"title": config.notifications.title}
        if opener is not None:
            bridge_kwargs["opener"] = opener
        self.notifications = NotificationBridge(
            notifier if notifier is not None else create_notifier(config.notifications),
            root_url=config.app.resolve("/"),
            **bridge_kwargs,
        )

    @property
    def config(self) -> Config:
        return self._config

    def on_install(self) -> bool:
        """Pre-populate the static namespace, activating when allowed.

        Returns:
            True if install succeeded. Failures are logged, not retried.
        """
        logger.info("Installing cache version %s", self._config.cache.version)
        try:
            self.lifecycle.install()
        except InstallError as e:
            logger.error("Failed to cache static files: %s", e)
            return False
        except LifecycleError as e:
            logger.warning("Install skipped: %s", e)
            return False

        if self.lifecycle.ready_to_activate:
            return self.on_activate()

        logger.info("Cache version %s installed, waiting to activate", self._config.cache.version)
        return True

    def on_activate(self) -> bool:
        """Evict namespaces of other versions and take control of requests."""
        logger.info("Activating cache version %s", self._config.cache.version)
        try:
            self.lifecycle.activate()
            self.expiry.restore()
        except (LifecycleError, CacheStoreError) as e:
            logger.error("Activation failed: %s", e)
            return False

        logger.info("Cache version %s activated", self._config.cache.version)
        return True

    def handle_request(self, request: Request) -> Response:
        """Answer an intercepted request. Never raises for network failures."""
        if not self.lifecycle.is_active:
            try:
                return self.fetcher.fetch(request)
            except NetworkError as e:
                logger.debug("Uncontrolled request failed: %s", e)
                return offline_content_response()

        category = self.classifier.classify(request)
        logger.debug("%s %s -> %s", request.method, mask_url(request.url), category.value)
        return self.engine.handle(request, category)

    def on_sync(self, tag: str = WEATHER_SYNC_TAG) -> SyncReport | None:
        """Refresh cached weather data when the weather sync tag fires."""
        if tag != WEATHER_SYNC_TAG:
            logger.debug("Ignoring sync tag %s", tag)
            return None
        logger.info("Background sync triggered")
        return self.background_sync.refresh()

    def on_push(self, payload: bytes | str | None) -> Notification:
        return self.notifications.on_push(payload)

    def on_notification_click(self, action: str | None) -> bool:
        return self.notifications.on_notification_click(action)

    def on_message(self, message: Any) -> None:
        """Handle a message posted by the page.

        Recognized types are SKIP_WAITING and CACHE_WEATHER (with a
        "location" field); anything else is ignored.
        """
        if not isinstance(message, dict):
            logger.debug("Ignoring malformed message: %r", message)
            return

        message_type = message.get("type")
        if message_type == MESSAGE_SKIP_WAITING:
            if self.lifecycle.skip_waiting():
                self.on_activate()
        elif message_type == MESSAGE_CACHE_WEATHER:
            location = message.get("location")
            if not isinstance(location, str) or not location.strip():
                logger.warning("CACHE_WEATHER message without a location")
                return
            self.cache_weather(location)
        else:
            logger.debug("Ignoring message of type %r", message_type)

    def weather_urls(self, location: str) -> list[str]:
        """Upstream current-weather and forecast URLs for a location."""
        upstream = self._config.upstream
        query = (
            f"q={quote(location, safe='')}"
            f"&appid={quote(upstream.api_key, safe='')}"
            f"&units={quote(upstream.units, safe='')}"
        )
        return [f"{upstream.weather_url}?{query}", f"{upstream.forecast_url}?{query}"]

    def cache_weather(self, location: str) -> list[str]:
        """Fetch and cache current weather and forecast for a location.

        Returns:
            URLs that were cached; failed fetches are logged and skipped.
        """
        cached: list[str] = []
        with ThreadPoolExecutor(max_workers=CACHE_WEATHER_WORKERS) as executor:
            futures = {
                executor.submit(self.fetcher.fetch, Request(url=url)): url for url in self.weather_urls(location)
            }

            for future in as_completed(futures):
                url = futures[future]
                try:
                    response = future.result()
                except NetworkError as e:
                    logger.error("Failed to cache weather data for %s: %s", location, e)
                    continue
                except Exception as e:
                    logger.error("Unexpected error caching %s: %s", mask_url(url), e)
                    continue

                if not response.ok:
                    logger.warning("Upstream returned %d for %s", response.status, mask_url(url))
                    continue
                if self.engine.cache_dynamic(Request(url=url), response):
                    cached.append(url)

        logger.info("Weather data cached for %s (%d of %d responses)", location, len(cached), len(futures))
        return cached

    def status(self) -> dict[str, Any]:
        """Lifecycle state, version and entry count per namespace."""
        namespaces = {name: len(self.store.keys(name)) for name in self.store.namespaces()}
        return {
            "state": self.lifecycle.state.value,
            "version": self._config.cache.version,
            "namespaces": namespaces,
        }

    def close(self) -> None:
        """Cancel pending expiry timers and release the store."""
        self.expiry.cancel_all()
        self.store.close()
