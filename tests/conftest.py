"""Shared fixtures: a manual clock and a scripted network."""

from collections.abc import Callable

import pytest

from meteoracache.config import AppConfig, CacheConfig, Config, UpstreamConfig
from meteoracache.models import Request, Response
from meteoracache.network import Fetcher, NetworkError
from meteoracache.scheduler import ScheduledTask, Scheduler
from meteoracache.store import MemoryCacheStore

APP = "http://localhost:5173"
API = "https://api.openweathermap.org/data/2.5"


class FakeTask(ScheduledTask):
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler(Scheduler):
    """Scheduler driven by advance() instead of wall-clock time."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self._now = start
        self.tasks: list[FakeTask] = []

    def now(self) -> float:
        return self._now

    def after(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = FakeTask(self._now + delay, callback)
        self.tasks.append(task)
        return task

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due callbacks in order."""
        target = self._now + seconds
        while True:
            due = [t for t in self.tasks if not t.cancelled and t.due <= target]
            if not due:
                break
            task = min(due, key=lambda t: t.due)
            self.tasks.remove(task)
            self._now = max(self._now, task.due)
            task.callback()
        self._now = target

    @property
    def active(self) -> list[FakeTask]:
        return [t for t in self.tasks if not t.cancelled]


class FakeFetcher(Fetcher):
    """Answers from a URL -> Response map; unknown URLs or exceptions simulate failures."""

    def __init__(self, routes: dict[str, Response | Exception] | None = None) -> None:
        self.routes: dict[str, Response | Exception] = dict(routes or {})
        self.calls: list[Request] = []
        self.offline = False

    def fetch(self, request: Request) -> Response:
        self.calls.append(request)
        if self.offline:
            raise NetworkError(f"{request.method} {request.url}: offline")
        result = self.routes.get(request.url)
        if result is None:
            raise NetworkError(f"{request.method} {request.url}: connection refused")
        if isinstance(result, Exception):
            raise result
        return result

    def urls(self) -> list[str]:
        return [r.url for r in self.calls]


def ok(body: bytes | str = b"ok", content_type: str = "text/plain") -> Response:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return Response(status=200, body=body, headers={"Content-Type": content_type}, status_text="OK")


def manifest_routes(config: Config) -> dict[str, Response | Exception]:
    """Successful responses for every static manifest entry."""
    return {config.app.resolve(path): ok(f"asset {path}") for path in config.cache.static_manifest}


@pytest.fixture
def config() -> Config:
    """Default configuration with a fixed API key."""
    return Config(
        app=AppConfig(origin=APP),
        cache=CacheConfig(version="1.0.0"),
        upstream=UpstreamConfig(base_url=API, api_key="secret"),
    )


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def store() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture
def fetcher(config: Config) -> FakeFetcher:
    """Fetcher that can serve every static manifest file."""
    return FakeFetcher(manifest_routes(config))
