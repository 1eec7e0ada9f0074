"""Version lifecycle: install, activate and adopt.

A cache version moves through PARSED -> INSTALLING -> WAITING -> ACTIVE.
A failed install, or activation of a later version, leaves it REDUNDANT.
Namespace names embed the version, so activating a new version evicts every
namespace left behind by earlier ones without diffing individual entries.
"""

import logging
import threading
from enum import Enum

from .models import CacheEntry, Request, Response
from .network import Fetcher, NetworkError, mask_url
from .scheduler import Scheduler
from .store import CacheStore, CacheStoreError

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    WAITING = "waiting"
    ACTIVE = "active"
    REDUNDANT = "redundant"


class LifecycleError(Exception):
    """Raised when a lifecycle transition is not allowed."""

    pass


class InstallError(LifecycleError):
    """Raised when the static namespace cannot be pre-populated."""

    pass


class LifecycleManager:
    """Owns namespace creation and destruction for one cache version."""

    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        scheduler: Scheduler,
        static_namespace: str,
        dynamic_namespace: str,
        manifest_urls: list[str],
        skip_waiting: bool = False,
    ) -> None:
        """Initialize the lifecycle manager.

        Args:
            store: Cache store holding every namespace.
            fetcher: Network access used to pre-populate the static namespace.
            scheduler: Clock source for entry timestamps.
            static_namespace: Current static namespace name.
            dynamic_namespace: Current dynamic namespace name.
            manifest_urls: Absolute URLs cached on install.
            skip_waiting: Activate right after install even if an older version is present.
        """
        self._store = store
        self._fetcher = fetcher
        self._scheduler = scheduler
        self._static_namespace = static_namespace
        self._dynamic_namespace = dynamic_namespace
        self._manifest_urls = list(manifest_urls)
        self._skip_waiting = skip_waiting
        self._previous_version_present = False
        self._state = LifecycleState.PARSED
        self._lock = threading.Lock()

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        return self.state is LifecycleState.ACTIVE

    @property
    def current_namespaces(self) -> tuple[str, str]:
        return self._static_namespace, self._dynamic_namespace

    @property
    def ready_to_activate(self) -> bool:
        """Whether a WAITING version may activate without an explicit adopt signal."""
        with self._lock:
            return self._state is LifecycleState.WAITING and (
                self._skip_waiting or not self._previous_version_present
            )

    def _set_state(self, state: LifecycleState) -> None:
        with self._lock:
            self._state = state

    def install(self) -> None:
        """Fetch every manifest URL and store them all in the static namespace.

        All-or-nothing: nothing is written unless every fetch returns 2xx,
        and a failed write removes the entries already written.

        Raises:
            InstallError: If any fetch or write fails.
            LifecycleError: If the version was already installed.
        """
        with self._lock:
            if self._state is not LifecycleState.PARSED:
                raise LifecycleError(f"Cannot install from state {self._state.value}")
            self._state = LifecycleState.INSTALLING

        current = {self._static_namespace, self._dynamic_namespace}
        try:
            self._previous_version_present = any(name not in current for name in self._store.namespaces())
        except CacheStoreError as e:
            self._set_state(LifecycleState.REDUNDANT)
            raise InstallError(f"Failed to inspect cache namespaces: {e}") from e

        logger.info("Caching %d static files in %s", len(self._manifest_urls), self._static_namespace)

        fetched: list[tuple[Request, Response]] = []
        for url in self._manifest_urls:
            request = Request(url=url)
            try:
                response = self._fetcher.fetch(request)
            except NetworkError as e:
                self._set_state(LifecycleState.REDUNDANT)
                raise InstallError(f"Failed to fetch {mask_url(url)}: {e}") from e
            if not response.ok:
                self._set_state(LifecycleState.REDUNDANT)
                raise InstallError(f"Failed to fetch {mask_url(url)}: HTTP {response.status}")
            fetched.append((request, response))

        written: list[str] = []
        try:
            self._store.open(self._static_namespace)
            for request, response in fetched:
                entry = CacheEntry(
                    key=request.key,
                    url=request.url,
                    method=request.method,
                    response=response.snapshot(),
                    stored_at=self._scheduler.now(),
                )
                self._store.put(self._static_namespace, entry)
                written.append(entry.key)
        except CacheStoreError as e:
            self._rollback(written)
            self._set_state(LifecycleState.REDUNDANT)
            raise InstallError(f"Failed to store static files: {e}") from e

        self._set_state(LifecycleState.WAITING)
        logger.info("Static files cached")

    def _rollback(self, keys: list[str]) -> None:
        for key in keys:
            try:
                self._store.delete(self._static_namespace, key)
            except CacheStoreError as e:
                logger.error("Failed to roll back static entry %s: %s", key, e)

    def activate(self) -> list[str]:
        """Delete every namespace not belonging to this version.

        Returns:
            Names of the deleted namespaces.

        Raises:
            LifecycleError: If the version has not finished installing.
        """
        with self._lock:
            if self._state not in (LifecycleState.WAITING, LifecycleState.ACTIVE):
                raise LifecycleError(f"Cannot activate a version in state {self._state.value}")

        current = {self._static_namespace, self._dynamic_namespace}
        deleted: list[str] = []
        for name in self._store.namespaces():
            if name not in current:
                logger.info("Deleting old cache %s", name)
                self._store.delete_namespace(name)
                deleted.append(name)

        self._store.open(self._static_namespace)
        self._store.open(self._dynamic_namespace)

        self._set_state(LifecycleState.ACTIVE)
        self._previous_version_present = False
        return deleted

    def skip_waiting(self) -> bool:
        """Adopt immediately instead of waiting for older versions to go away.

        Returns:
            True if the version is WAITING and should be activated now.
        """
        with self._lock:
            self._skip_waiting = True
            return self._state is LifecycleState.WAITING
