"""Pluggable fetchers that retrieve integration payloads from third-party APIs."""

from .base import Fetcher, FetchResult
from .http_json import HttpJsonFetcher
from .oauth_bearer import OAuthBearerFetcher
from .registry import FetcherRegistry
from .rss import RssFeedFetcher
from .stock_quotes import StockQuoteFetcher

__all__ = [
    "Fetcher",
    "FetchResult",
    "FetcherRegistry",
    "HttpJsonFetcher",
    "OAuthBearerFetcher",
    "RssFeedFetcher",
    "StockQuoteFetcher",
]
