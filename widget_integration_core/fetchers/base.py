"""
Fetcher interface.

A fetcher turns (credentials, widget options) into a payload for one
integration. Failures are raised as FetchError subclasses; the cache turns
them into entry status. A fetcher that rotates credentials returns them in
FetchResult.credentials (or on the raised FetchError) so they get persisted.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import requests
from pydantic import BaseModel, Field

from ..constants import Timeouts
from ..exceptions import FetchAuthError, FetchTimeoutError, FetchTransportError
from ..schemas.integration_schema import IntegrationDefinition
from ..utils.logger import get_logger

USER_AGENT = "widget-integration-core/0.1"


class FetchResult(BaseModel):
    """Successful fetch outcome."""

    data: Dict[str, Any] = Field(default_factory=dict)
    # None means unchanged
    credentials: Optional[Dict[str, Any]] = None


class Fetcher(ABC):
    """Base class for integration fetchers."""

    name: str = ""
    supports_refresh: bool = False

    def __init__(
        self, definition: IntegrationDefinition, http: Optional[requests.Session] = None
    ):
        self.definition = definition
        self.http = http or requests.Session()
        self.timeout = float(definition.pull_config.get("timeout_seconds", Timeouts.FETCH))
        self.logger = get_logger()

    @abstractmethod
    def fetch(
        self, credentials: Optional[Mapping[str, Any]], options: Mapping[str, Any]
    ) -> FetchResult:
        """
        Fetch the current payload.

        Raises:
            FetchTimeoutError: The upstream did not answer in time
            FetchTransportError: Network failure or unexpected response
            FetchAuthError: The upstream rejected the credentials
        """

    def refresh_credentials(self, credentials: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Exchange stale credentials for fresh ones.

        Raises:
            FetchAuthError: Refresh is unsupported or was rejected
        """
        raise FetchAuthError(
            f"Fetcher {self.name} cannot refresh credentials",
            service_name=self.name,
            integration_id=self.definition.id,
        )

    def _get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """
        GET ``url`` and map transport and status failures onto FetchError types.
        """
        request_headers = {"User-Agent": USER_AGENT, **(headers or {})}
        try:
            response = self.http.get(
                url, headers=request_headers, params=params, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise FetchTimeoutError(
                f"Timed out fetching {self.definition.name}",
                service_name=self.name,
                cause=e,
                integration_id=self.definition.id,
            ) from e
        except requests.RequestException as e:
            raise FetchTransportError(
                f"Request failed for {self.definition.name}: {type(e).__name__}",
                service_name=self.name,
                cause=e,
                integration_id=self.definition.id,
            ) from e

        return self._check_status(response)

    def _check_status(self, response: requests.Response) -> requests.Response:
        if response.status_code in (401, 403):
            raise FetchAuthError(
                f"Upstream rejected credentials (HTTP {response.status_code})",
                service_name=self.name,
                integration_id=self.definition.id,
                http_status=response.status_code,
            )
        if response.status_code >= 400:
            raise FetchTransportError(
                f"Upstream returned HTTP {response.status_code}",
                service_name=self.name,
                integration_id=self.definition.id,
                http_status=response.status_code,
            )
        return response
