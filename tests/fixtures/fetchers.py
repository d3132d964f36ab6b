"""Scripted fetchers for cache and scheduler tests."""

import threading
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from widget_integration_core.fetchers.base import Fetcher, FetchResult
from widget_integration_core.schemas.integration_schema import IntegrationDefinition
from widget_integration_core.utils.logger import get_logger


class StubFetcher(Fetcher):
    """
    Fetcher returning queued results in order.

    A queued exception is raised instead of returned. With nothing queued
    the payload is ``{"call": n}``. ``block()`` holds every fetch until
    ``unblock()`` is called.
    """

    name = "stub"

    def __init__(self, definition: Optional[IntegrationDefinition] = None):
        self.definition = definition
        self.logger = get_logger()
        self.results: Deque[Any] = deque()
        self.calls: List[Tuple[Optional[Dict[str, Any]], Dict[str, Any]]] = []
        self.refresh_calls: List[Dict[str, Any]] = []
        self.refreshed_credentials: Optional[Dict[str, Any]] = None
        self.started = threading.Event()
        self._release = threading.Event()
        self._release.set()
        self._lock = threading.Lock()

    def bind(self, definition: IntegrationDefinition) -> "StubFetcher":
        self.definition = definition
        return self

    def queue(self, *results: Any) -> None:
        self.results.extend(results)

    def block(self) -> None:
        self.started.clear()
        self._release.clear()

    def unblock(self) -> None:
        self._release.set()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def fetch(
        self, credentials: Optional[Mapping[str, Any]], options: Mapping[str, Any]
    ) -> FetchResult:
        with self._lock:
            self.calls.append((dict(credentials) if credentials else None, dict(options)))
            call = len(self.calls)
            result = self.results.popleft() if self.results else None

        self.started.set()
        self._release.wait(timeout=10)

        if isinstance(result, Exception):
            raise result
        if result is None:
            return FetchResult(data={"call": call})
        if isinstance(result, FetchResult):
            return result
        return FetchResult(data=result)

    def refresh_credentials(self, credentials: Mapping[str, Any]) -> Dict[str, Any]:
        self.refresh_calls.append(dict(credentials))
        if self.refreshed_credentials is None:
            return super().refresh_credentials(credentials)
        return dict(self.refreshed_credentials)


class RefreshingStubFetcher(StubFetcher):
    supports_refresh = True
