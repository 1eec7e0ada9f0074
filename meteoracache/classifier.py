"""Request classification into caching categories."""

import re

from .config import Config
from .models import Request, RequestCategory, normalize_url


class RequestClassifier:
    """Decides which caching policy applies to a request.

    Checks run in a fixed order: upstream weather endpoints first, then the
    static asset manifest and directories, everything else is passthrough.
    Only GET requests are ever cached, so other methods are always OTHER.
    """

    def __init__(
        self,
        dynamic_prefixes: list[str],
        static_manifest: tuple[str, ...],
        static_prefixes: tuple[str, ...],
    ) -> None:
        self._dynamic_patterns = [re.compile("^" + re.escape(normalize_url(p).rstrip("/"))) for p in dynamic_prefixes]
        self._static_manifest = frozenset(static_manifest)
        self._static_prefixes = tuple(static_prefixes)

    @classmethod
    def from_config(cls, config: Config) -> "RequestClassifier":
        return cls(
            dynamic_prefixes=[config.upstream.endpoint_url(e) for e in config.upstream.endpoints],
            static_manifest=config.cache.static_manifest,
            static_prefixes=config.cache.static_prefixes,
        )

    def is_dynamic_url(self, url: str) -> bool:
        """Whether the URL points at one of the upstream weather endpoints."""
        href = normalize_url(url)
        return any(pattern.match(href) for pattern in self._dynamic_patterns)

    def is_static_path(self, path: str) -> bool:
        return path in self._static_manifest or path.startswith(self._static_prefixes)

    def classify(self, request: Request) -> RequestCategory:
        """Return the single category that applies to the request."""
        if request.method.upper() != "GET":
            return RequestCategory.OTHER
        if self.is_dynamic_url(request.url):
            return RequestCategory.DYNAMIC_DATA
        if self.is_static_path(request.path):
            return RequestCategory.STATIC_ASSET
        return RequestCategory.OTHER
