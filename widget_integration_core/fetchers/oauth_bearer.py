"""
Bearer-token JSON fetcher with OAuth 2.0 refresh-token support.

Credentials: ``access_token``, ``refresh_token``, ``client_id``,
``client_secret`` and ``expires_at`` (epoch seconds). The token endpoint
comes from ``pull_config["token_endpoint"]``.

Tokens that expire within REFRESH_MARGIN_SECONDS are refreshed before the
request; refreshed credentials are returned so the store can persist them.
A 401 after that surfaces as FetchAuthError, which makes the cache call
refresh_credentials() and retry once.
"""

import time
from typing import Any, Dict, Mapping, Optional

import requests

from ..exceptions import ErrorCode, FetchAuthError, FetchTimeoutError, FetchTransportError
from .base import Fetcher, FetchResult

REFRESH_MARGIN_SECONDS = 300


class OAuthBearerFetcher(Fetcher):
    name = "oauth_bearer"
    supports_refresh = True

    def _needs_refresh(self, credentials: Mapping[str, Any]) -> bool:
        expires_at = credentials.get("expires_at")
        if not expires_at:
            return False
        return time.time() >= float(expires_at) - REFRESH_MARGIN_SECONDS

    def refresh_credentials(self, credentials: Mapping[str, Any]) -> Dict[str, Any]:
        token_endpoint = self.definition.pull_config.get("token_endpoint")
        refresh_token = credentials.get("refresh_token")
        client_id = credentials.get("client_id")
        client_secret = credentials.get("client_secret")

        if not (token_endpoint and refresh_token and client_id and client_secret):
            raise FetchAuthError(
                "Cannot refresh token: missing refresh_token, client credentials or token endpoint",
                service_name=self.name,
                integration_id=self.definition.id,
            )

        try:
            response = self.http.post(
                token_endpoint,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=(client_id, client_secret),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise FetchTimeoutError(
                "Timed out refreshing token", service_name=self.name, cause=e
            ) from e
        except requests.RequestException as e:
            raise FetchTransportError(
                f"Token refresh request failed: {type(e).__name__}", service_name=self.name, cause=e
            ) from e

        if response.status_code != 200:
            raise FetchAuthError(
                f"Token refresh rejected (HTTP {response.status_code})",
                service_name=self.name,
                integration_id=self.definition.id,
                http_status=response.status_code,
            )

        token = response.json()
        refreshed = dict(credentials)
        refreshed["access_token"] = token["access_token"]
        refreshed["expires_at"] = int(time.time()) + int(token.get("expires_in", 3600))
        # Some providers rotate the refresh token as well
        if token.get("refresh_token"):
            refreshed["refresh_token"] = token["refresh_token"]

        self.logger.info(
            "OAuth token refreshed",
            extra={"integration_id": self.definition.id, "expires_at": refreshed["expires_at"]},
        )
        return refreshed

    def fetch(
        self, credentials: Optional[Mapping[str, Any]], options: Mapping[str, Any]
    ) -> FetchResult:
        if not credentials or not credentials.get("access_token"):
            raise FetchAuthError(
                "Missing access_token",
                service_name=self.name,
                integration_id=self.definition.id,
                error_code=ErrorCode.AUTHENTICATION_FAILED,
            )

        updated: Optional[Dict[str, Any]] = None
        if self._needs_refresh(credentials):
            updated = self.refresh_credentials(credentials)
            credentials = updated

        headers = {
            "Authorization": f"Bearer {credentials['access_token']}",
            "Accept": "application/json",
        }
        try:
            response = self._get(self.definition.pull_endpoint, headers=headers)
        except (FetchAuthError, FetchTransportError, FetchTimeoutError) as e:
            e.updated_credentials = updated
            raise

        if response.status_code == 204 or not response.content:
            return FetchResult(data={}, credentials=updated)

        body = response.json()
        return FetchResult(
            data=body if isinstance(body, dict) else {"data": body}, credentials=updated
        )
