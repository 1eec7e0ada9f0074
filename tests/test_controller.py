"""Tests for the cache controller event surface."""

from unittest.mock import Mock

import pytest

from meteoracache.config import CacheConfig, Config, NotificationsConfig
from meteoracache.controller import CacheController, create_notifier, create_store
from meteoracache.lifecycle import LifecycleState
from meteoracache.models import CacheEntry, Request, Response
from meteoracache.network import NetworkError
from meteoracache.notifications import LogNotifier, WebhookNotifier
from meteoracache.store import MemoryCacheStore, SqliteCacheStore

from conftest import API, APP, FakeFetcher, FakeScheduler, manifest_routes, ok

WEATHER = f"{API}/weather?q=London&appid=secret&units=metric"
FORECAST = f"{API}/forecast?q=London&appid=secret&units=metric"


def make_controller(
    config: Config,
    store: MemoryCacheStore,
    fetcher: FakeFetcher,
    scheduler: FakeScheduler,
    opener: Mock | None = None,
) -> CacheController:
    return CacheController(
        config,
        store=store,
        fetcher=fetcher,
        scheduler=scheduler,
        notifier=LogNotifier(),
        opener=opener or Mock(),
    )


@pytest.fixture
def controller(
    config: Config,
    store: MemoryCacheStore,
    fetcher: FakeFetcher,
    scheduler: FakeScheduler,
) -> CacheController:
    """Installed and active controller."""
    controller = make_controller(config, store, fetcher, scheduler)
    assert controller.on_install()
    return controller


def seed_previous_version(store: MemoryCacheStore) -> None:
    entry = CacheEntry(key="GET http://old/", url="http://old/", method="GET", response=ok(), stored_at=0)
    store.put("meteora-static-v0.9.0", entry)
    store.put("meteora-weather-data-v0.9.0", entry)


class TestLifecycleEvents:
    """Tests for install, activate and SKIP_WAITING."""

    def test_first_install_activates(self, controller: CacheController, store: MemoryCacheStore, config: Config) -> None:
        """A first install takes control right away."""
        assert controller.lifecycle.state is LifecycleState.ACTIVE
        assert set(store.namespaces()) == {config.cache.static_namespace, config.cache.dynamic_namespace}

    def test_upgrade_with_skip_waiting_evicts_old_version(
        self,
        config: Config,
        store: MemoryCacheStore,
        fetcher: FakeFetcher,
        scheduler: FakeScheduler,
    ) -> None:
        """Deploying a new version removes every namespace of the previous one."""
        seed_previous_version(store)
        controller = make_controller(config, store, fetcher, scheduler)

        assert controller.on_install()

        assert controller.lifecycle.is_active
        assert "meteora-static-v0.9.0" not in store.namespaces()
        assert "meteora-weather-data-v0.9.0" not in store.namespaces()

    def test_upgrade_waits_then_skip_waiting_message(
        self,
        store: MemoryCacheStore,
        scheduler: FakeScheduler,
    ) -> None:
        """Without skip_waiting the new version waits for SKIP_WAITING."""
        config = Config(cache=CacheConfig(version="1.1.0", skip_waiting=False))
        fetcher = FakeFetcher(manifest_routes(config))
        seed_previous_version(store)
        controller = make_controller(config, store, fetcher, scheduler)

        assert controller.on_install()
        assert controller.lifecycle.state is LifecycleState.WAITING
        assert "meteora-static-v0.9.0" in store.namespaces()

        controller.on_message({"type": "SKIP_WAITING"})

        assert controller.lifecycle.is_active
        assert store.namespaces() == [config.cache.static_namespace, config.cache.dynamic_namespace]

    def test_failed_install_leaves_controller_uncontrolled(
        self,
        config: Config,
        store: MemoryCacheStore,
        scheduler: FakeScheduler,
    ) -> None:
        """If install fails nothing is cached and requests pass through."""
        fetcher = FakeFetcher({f"{APP}/api/ping": ok("pong")})
        controller = make_controller(config, store, fetcher, scheduler)

        assert controller.on_install() is False
        assert controller.lifecycle.state is LifecycleState.REDUNDANT
        assert store.keys(config.cache.static_namespace) == []

        response = controller.handle_request(Request(url=f"{APP}/api/ping"))
        assert response.body == b"pong"

    def test_activation_restores_expiry_timers(
        self,
        config: Config,
        store: MemoryCacheStore,
        fetcher: FakeFetcher,
        scheduler: FakeScheduler,
    ) -> None:
        """Weather entries already in the store get timers on activation."""
        store.put(
            config.cache.dynamic_namespace,
            CacheEntry(
                key=f"GET {WEATHER}", url=WEATHER, method="GET", response=ok(), stored_at=scheduler.now(), ttl=300
            ),
        )
        controller = make_controller(config, store, fetcher, scheduler)

        controller.on_install()

        assert controller.expiry.pending() == [f"GET {WEATHER}"]
        scheduler.advance(301)
        assert store.keys(config.cache.dynamic_namespace) == []


class TestHandleRequest:
    """Tests for request interception."""

    def test_uncontrolled_requests_pass_through(
        self,
        config: Config,
        store: MemoryCacheStore,
        scheduler: FakeScheduler,
    ) -> None:
        """Before activation nothing is cached."""
        fetcher = FakeFetcher({WEATHER: ok("{}")})
        controller = make_controller(config, store, fetcher, scheduler)

        response = controller.handle_request(Request(url=WEATHER))

        assert response.status == 200
        assert store.namespaces() == []

    def test_uncontrolled_network_failure(self, config: Config, store: MemoryCacheStore, scheduler: FakeScheduler) -> None:
        """Uncontrolled requests still get a response offline."""
        controller = make_controller(config, store, FakeFetcher(), scheduler)

        response = controller.handle_request(Request(url=f"{APP}/"))

        assert response.status == 503

    def test_routes_by_category(self, controller: CacheController, fetcher: FakeFetcher, config: Config) -> None:
        """Weather data is cached, static assets come from the cache."""
        fetcher.routes[WEATHER] = ok('{"temp": 4}')
        fetcher.calls.clear()

        assert controller.handle_request(Request(url=WEATHER)).json() == {"temp": 4}
        assert controller.store.get(config.cache.dynamic_namespace, f"GET {WEATHER}") is not None

        response = controller.handle_request(Request(url=f"{APP}/static/js/bundle.js"))
        assert response.body == b"asset /static/js/bundle.js"
        assert fetcher.urls() == [WEATHER]

    def test_offline_app_shell(self, controller: CacheController, fetcher: FakeFetcher) -> None:
        """Offline navigations get the cached index page."""
        fetcher.offline = True

        response = controller.handle_request(Request(url=f"{APP}/forecast/london", destination="document"))

        assert response.body == b"asset /index.html"


class TestCacheWeather:
    """Tests for the CACHE_WEATHER message."""

    def test_weather_urls(self, controller: CacheController) -> None:
        """Location is URL-encoded into both endpoint URLs."""
        urls = controller.weather_urls("São Paulo")

        assert urls == [
            f"{API}/weather?q=S%C3%A3o%20Paulo&appid=secret&units=metric",
            f"{API}/forecast?q=S%C3%A3o%20Paulo&appid=secret&units=metric",
        ]

    def test_caches_weather_and_forecast(
        self,
        controller: CacheController,
        fetcher: FakeFetcher,
        config: Config,
        scheduler: FakeScheduler,
    ) -> None:
        """Both responses are cached with a TTL."""
        fetcher.routes[WEATHER] = ok('{"now": 1}')
        fetcher.routes[FORECAST] = ok('{"list": []}')

        controller.on_message({"type": "CACHE_WEATHER", "location": "London"})

        keys = controller.store.keys(config.cache.dynamic_namespace)
        assert sorted(keys) == sorted([f"GET {WEATHER}", f"GET {FORECAST}"])
        assert sorted(controller.expiry.pending()) == sorted(keys)

        scheduler.advance(301)
        assert controller.store.keys(config.cache.dynamic_namespace) == []

    def test_partial_success(self, controller: CacheController, fetcher: FakeFetcher) -> None:
        """A failed forecast fetch doesn't prevent caching current weather."""
        fetcher.routes[WEATHER] = ok('{"now": 1}')
        fetcher.routes[FORECAST] = NetworkError("timeout")

        assert controller.cache_weather("London") == [WEATHER]

    def test_error_status_not_cached(self, controller: CacheController, fetcher: FakeFetcher) -> None:
        """Upstream errors are not cached."""
        fetcher.routes[WEATHER] = Response(status=401, body=b"invalid key")
        fetcher.routes[FORECAST] = ok("{}")

        assert controller.cache_weather("London") == [FORECAST]

    @pytest.mark.parametrize("message", [{"type": "CACHE_WEATHER"}, {"type": "CACHE_WEATHER", "location": "  "}])
    def test_missing_location_ignored(self, controller: CacheController, fetcher: FakeFetcher, message: dict) -> None:
        """CACHE_WEATHER without a location fetches nothing."""
        fetcher.calls.clear()

        controller.on_message(message)

        assert fetcher.calls == []

    @pytest.mark.parametrize("message", [{"type": "PING"}, "SKIP_WAITING", None, {}])
    def test_unknown_messages_ignored(self, controller: CacheController, message: object) -> None:
        """Unrecognized messages are ignored without errors."""
        controller.on_message(message)

        assert controller.lifecycle.is_active


class TestSyncAndPush:
    """Tests for sync, push and notification click events."""

    def test_weather_sync_tag(self, controller: CacheController, fetcher: FakeFetcher) -> None:
        """The weather-sync tag refreshes cached weather data."""
        fetcher.routes[WEATHER] = ok("old")
        controller.handle_request(Request(url=WEATHER))
        fetcher.routes[WEATHER] = ok("new")

        report = controller.on_sync("weather-sync")

        assert report is not None
        assert report.refreshed == [WEATHER]

    def test_other_sync_tags_ignored(self, controller: CacheController) -> None:
        """Other tags do nothing."""
        assert controller.on_sync("outbox") is None

    def test_push_and_click(
        self,
        config: Config,
        store: MemoryCacheStore,
        fetcher: FakeFetcher,
        scheduler: FakeScheduler,
    ) -> None:
        """Push shows a notification and explore opens the app root."""
        opener = Mock()
        controller = make_controller(config, store, fetcher, scheduler, opener=opener)

        notification = controller.on_push(b"Rain at 5pm")

        assert notification.body == "Rain at 5pm"
        assert controller.on_notification_click("explore") is True
        opener.assert_called_once_with(f"{APP}/")


class TestStatus:
    """Tests for CacheController.status()."""

    def test_reports_namespaces(self, controller: CacheController, config: Config) -> None:
        """Status lists namespaces with entry counts."""
        status = controller.status()

        assert status["state"] == "active"
        assert status["version"] == "1.0.0"
        assert status["namespaces"] == {
            config.cache.static_namespace: len(config.cache.static_manifest),
            config.cache.dynamic_namespace: 0,
        }

    def test_close_cancels_timers(self, controller: CacheController, fetcher: FakeFetcher) -> None:
        """close() leaves no pending expiry timers."""
        fetcher.routes[WEATHER] = ok("{}")
        controller.handle_request(Request(url=WEATHER))

        controller.close()

        assert controller.expiry.pending() == []


class TestSharedSqliteStore:
    """Two processes (server and CLI) writing to one sqlite file."""

    @pytest.fixture
    def shared_config(self, config: Config, tmp_path) -> Config:
        return Config(
            app=config.app,
            cache=CacheConfig(version="1.0.0", store="sqlite", path=str(tmp_path / "cache.db")),
            upstream=config.upstream,
        )

    def _controller(self, config: Config, fetcher: FakeFetcher, scheduler: FakeScheduler) -> CacheController:
        return make_controller(config, SqliteCacheStore(config.cache.path), fetcher, scheduler)

    def test_entry_cached_by_other_process_expires(self, shared_config: Config) -> None:
        """Weather cached by the CLI is not served once its TTL has passed."""
        server_scheduler = FakeScheduler()
        server_fetcher = FakeFetcher(manifest_routes(shared_config))
        server = self._controller(shared_config, server_fetcher, server_scheduler)
        assert server.on_install()

        cli_fetcher = FakeFetcher({WEATHER: ok('{"t": 1}'), FORECAST: ok("{}")})
        cli = self._controller(shared_config, cli_fetcher, FakeScheduler())
        assert len(cli.cache_weather("London")) == 2
        cli.close()

        server_fetcher.offline = True
        try:
            assert server.handle_request(Request(url=WEATHER)).status == 200

            server_scheduler.advance(301)

            assert server.handle_request(Request(url=WEATHER)).status == 503
        finally:
            server.close()

    def test_timer_follows_entry_rewritten_by_other_process(self, shared_config: Config) -> None:
        """A sync in another process extends the entry; the server's timer still removes it."""
        server_scheduler = FakeScheduler()
        server_fetcher = FakeFetcher(manifest_routes(shared_config))
        server_fetcher.routes[WEATHER] = ok("old")
        server = self._controller(shared_config, server_fetcher, server_scheduler)
        assert server.on_install()
        server.handle_request(Request(url=WEATHER))

        cli_scheduler = FakeScheduler()
        cli_scheduler.advance(10)
        cli = self._controller(shared_config, FakeFetcher({WEATHER: ok("new")}), cli_scheduler)
        report = cli.on_sync()
        cli.close()
        assert report is not None
        assert report.refreshed == [WEATHER]

        namespace = shared_config.cache.dynamic_namespace
        try:
            server_scheduler.advance(301)
            assert server.store.get(namespace, f"GET {WEATHER}") is not None
            assert server.expiry.pending() == [f"GET {WEATHER}"]

            server_scheduler.advance(10)
            assert server.store.get(namespace, f"GET {WEATHER}") is None
            assert server.expiry.pending() == []
        finally:
            server.close()


class TestFactories:
    """Tests for backend factories."""

    def test_create_store(self, tmp_path) -> None:
        """The store setting selects the backend."""
        assert isinstance(create_store(CacheConfig()), MemoryCacheStore)

        sqlite_store = create_store(CacheConfig(store="sqlite", path=str(tmp_path / "cache.db")))
        try:
            assert isinstance(sqlite_store, SqliteCacheStore)
        finally:
            sqlite_store.close()

    def test_create_notifier(self) -> None:
        """Webhooks are used when configured."""
        assert isinstance(create_notifier(NotificationsConfig()), LogNotifier)
        assert isinstance(create_notifier(NotificationsConfig(webhooks=["https://h.example.com"])), WebhookNotifier)
