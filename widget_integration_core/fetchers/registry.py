"""
Fetcher registry.

Integration definitions name their fetcher in ``pull_config["fetcher"]``.
Only names registered here can be resolved, so a definition can never load
arbitrary code. Definitions without a name use the generic HTTP fetcher.
"""

from typing import Callable, Dict, Optional

import requests

from ..exceptions import FetcherNotAllowedError
from ..schemas.integration_schema import IntegrationDefinition
from .base import Fetcher
from .http_json import HttpJsonFetcher
from .oauth_bearer import OAuthBearerFetcher
from .rss import RssFeedFetcher
from .stock_quotes import StockQuoteFetcher

FetcherFactory = Callable[[IntegrationDefinition], Fetcher]

DEFAULT_FETCHER = HttpJsonFetcher.name


class FetcherRegistry:
    """Name to fetcher factory mapping."""

    def __init__(self, http: Optional[requests.Session] = None):
        self.http = http
        self._factories: Dict[str, FetcherFactory] = {}

    @classmethod
    def with_builtin_fetchers(cls, http: Optional[requests.Session] = None) -> "FetcherRegistry":
        registry = cls(http)
        for fetcher_class in (HttpJsonFetcher, RssFeedFetcher, StockQuoteFetcher, OAuthBearerFetcher):
            registry.register(fetcher_class.name, fetcher_class)
        return registry

    def register(self, name: str, factory: Callable[..., Fetcher]) -> None:
        self._factories[name] = factory

    def names(self):
        return sorted(self._factories)

    def create(self, definition: IntegrationDefinition) -> Fetcher:
        """
        Build the fetcher for a definition.

        Raises:
            FetcherNotAllowedError: The named fetcher is not registered
        """
        name = definition.fetcher_name or DEFAULT_FETCHER
        factory = self._factories.get(name)
        if factory is None:
            raise FetcherNotAllowedError(name, integration_id=definition.id)
        if self.http is not None and isinstance(factory, type):
            return factory(definition, http=self.http)
        return factory(definition)
