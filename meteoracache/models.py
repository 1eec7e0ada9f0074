"""Data models for intercepted requests, response snapshots and cache entries."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlsplit, urlunsplit


class RequestCategory(str, Enum):
    """Caching policy bucket a request falls into."""

    DYNAMIC_DATA = "dynamic-data"
    STATIC_ASSET = "static-asset"
    OTHER = "other"


def normalize_url(url: str) -> str:
    """Normalize an absolute URL for use in cache keys.

    Scheme and host are lower-cased, the fragment is dropped and an empty
    path becomes "/". The query string is kept verbatim.
    """
    parts = urlsplit(url)
    path = parts.path or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def cache_key(method: str, url: str) -> str:
    """Build the cache key for a (method, URL) pair."""
    return f"{method.upper()} {normalize_url(url)}"


@dataclass(frozen=True)
class Request:
    """An outgoing request issued by the page.

    Attributes:
        url: Absolute URL, query string included.
        method: HTTP method.
        destination: Destination hint such as "document" or "script", empty if unknown.
        headers: Request headers forwarded on network fetches.
        body: Request body, or None for body-less requests.
    """

    url: str
    method: str = "GET"
    destination: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @property
    def key(self) -> str:
        """Normalized request identity used as the cache key."""
        return cache_key(self.method, self.url)

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    @property
    def expects_document(self) -> bool:
        """Whether the request navigates to a full page."""
        if self.destination:
            return self.destination == "document"
        return self.method.upper() == "GET" and "text/html" in self.header("Accept")


@dataclass(frozen=True)
class Response:
    """HTTP-shaped response, either from the network, a cache or synthesized.

    Attributes:
        status: HTTP status code.
        body: Raw response body.
        headers: Response headers.
        status_text: HTTP reason phrase (e.g., "OK", "Service Unavailable").
    """

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    status_text: str = ""

    @property
    def ok(self) -> bool:
        """True for 2xx responses."""
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)

    def snapshot(self) -> "Response":
        """Return a copy detached from the caller's header mapping."""
        return Response(
            status=self.status,
            body=bytes(self.body),
            headers=dict(self.headers),
            status_text=self.status_text,
        )


@dataclass(frozen=True)
class CacheEntry:
    """One stored response.

    Attributes:
        key: Normalized request identity (see cache_key()).
        url: Absolute URL the response was fetched from.
        method: HTTP method of the original request.
        response: Response snapshot captured at write time.
        stored_at: Write time in epoch seconds.
        ttl: Lifetime in seconds for dynamic-data entries, None for static ones.
    """

    key: str
    url: str
    method: str
    response: Response
    stored_at: float
    ttl: float | None = None

    @property
    def expires_at(self) -> float | None:
        if self.ttl is None:
            return None
        return self.stored_at + self.ttl

    def is_expired(self, now: float) -> bool:
        """Check whether the entry outlived its TTL at the given time."""
        expires_at = self.expires_at
        return expires_at is not None and now >= expires_at


@dataclass(frozen=True)
class NotificationAction:
    """A button shown on a notification."""

    action: str
    title: str
    icon: str | None = None


@dataclass(frozen=True)
class Notification:
    """A user-facing notification raised from a push event.

    Attributes:
        title: Notification title.
        body: Notification text.
        icon: Icon path relative to the app origin.
        badge: Badge path relative to the app origin.
        vibrate: Vibration pattern in milliseconds.
        data: Extra data attached to the notification.
        actions: Buttons offered to the user.
    """

    title: str
    body: str
    icon: str
    badge: str
    vibrate: tuple[int, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)
    actions: tuple[NotificationAction, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "title": self.title,
            "body": self.body,
            "icon": self.icon,
            "badge": self.badge,
            "vibrate": list(self.vibrate),
            "data": dict(self.data),
            "actions": [
                {"action": a.action, "title": a.title, "icon": a.icon} for a in self.actions
            ],
        }
