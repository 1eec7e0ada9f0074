"""Network fetching for intercepted requests.

A fetch resolves to a Response for every HTTP status, error statuses
included. Only transport failures (DNS, refused connections, timeouts,
resets) raise NetworkError.
"""

import http.client
import logging
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .models import Request, Response

logger = logging.getLogger(__name__)

# Hop-by-hop headers never forwarded in either direction.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# Query parameters holding credentials, masked in log output.
SENSITIVE_PARAMS = ("appid", "api_key", "apikey", "key", "token")


class NetworkError(Exception):
    """Raised when a request cannot reach the network at all."""

    pass


def mask_url(url: str) -> str:
    """Mask credentials in a URL's query string for logging."""
    try:
        parts = urlsplit(url)
        if not parts.query:
            return url
        query = [
            (name, "***" if name.lower() in SENSITIVE_PARAMS and value else value)
            for name, value in parse_qsl(parts.query, keep_blank_values=True)
        ]
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query, safe="*"), parts.fragment))
    except ValueError:
        return "***"


def _filter_headers(headers: object) -> dict[str, str]:
    if headers is None:
        return {}
    return {name: value for name, value in headers.items() if name.lower() not in HOP_BY_HOP_HEADERS}


class Fetcher(ABC):
    """Performs real network requests."""

    @abstractmethod
    def fetch(self, request: Request) -> Response:
        """Send the request and return the network response.

        Raises:
            NetworkError: If the network could not be reached.
        """


class UrllibFetcher(Fetcher):
    """Fetcher built on urllib.request, following redirects."""

    def __init__(self, timeout: float = 30, user_agent: str = "meteoracache/0.1") -> None:
        self._timeout = timeout
        self._user_agent = user_agent
        self._opener = urllib.request.build_opener()

    def fetch(self, request: Request) -> Response:
        headers = _filter_headers(request.headers)
        if not any(name.lower() == "user-agent" for name in headers):
            headers["User-Agent"] = self._user_agent

        url_request = urllib.request.Request(
            request.url,
            data=request.body,
            method=request.method.upper(),
            headers=headers,
        )

        try:
            with self._opener.open(url_request, timeout=self._timeout) as response:
                return Response(
                    status=response.status,
                    body=response.read(),
                    headers=_filter_headers(response.headers),
                    status_text=getattr(response, "reason", "") or "",
                )

        except urllib.error.HTTPError as e:
            try:
                body = e.read()
            except (OSError, http.client.HTTPException):
                body = b""
            return Response(
                status=e.code,
                body=body,
                headers=_filter_headers(e.headers),
                status_text=str(e.reason or ""),
            )

        except urllib.error.URLError as e:
            reason = str(e.reason) if e.reason else "Connection failed"
            raise NetworkError(f"{request.method} {mask_url(request.url)}: {reason}") from e

        except TimeoutError as e:
            raise NetworkError(f"{request.method} {mask_url(request.url)}: timeout after {self._timeout}s") from e

        except (OSError, http.client.HTTPException) as e:
            raise NetworkError(f"{request.method} {mask_url(request.url)}: {e}") from e
