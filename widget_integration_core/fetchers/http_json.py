"""
Generic HTTP fetcher.

GETs the integration's pull endpoint. ``{{name}}`` placeholders in the URL
and in ``pull_config["headers"]`` are filled from the widget options and the
credentials (credentials win on conflicts). JSON bodies are returned as the
payload, anything else is wrapped as ``{"raw": body}``.
"""

import re
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

from ..exceptions import ErrorCode, ValidationError
from .base import Fetcher, FetchResult

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


def render_template(template: str, values: Mapping[str, Any], url_encode: bool = False) -> str:
    """
    Replace ``{{name}}`` placeholders in ``template``.

    Raises:
        ValidationError: A placeholder has no value
    """

    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if values.get(key) is None:
            raise ValidationError(
                f"No value for placeholder '{key}'",
                field=key,
                error_code=ErrorCode.MISSING_REQUIRED,
            )
        value = str(values[key])
        return quote(value, safe="") if url_encode else value

    return _PLACEHOLDER.sub(substitute, template)


class HttpJsonFetcher(Fetcher):
    name = "http"

    def fetch(
        self, credentials: Optional[Mapping[str, Any]], options: Mapping[str, Any]
    ) -> FetchResult:
        values: Dict[str, Any] = {**options, **(credentials or {})}

        url = render_template(self.definition.pull_endpoint, values, url_encode=True)
        headers = {
            name: render_template(str(value), values)
            for name, value in self.definition.pull_config.get("headers", {}).items()
        }
        headers.setdefault("Accept", "application/json")

        response = self._get(url, headers=headers)

        try:
            body = response.json()
        except ValueError:
            return FetchResult(data={"raw": response.text})

        if not isinstance(body, dict):
            body = {"data": body}
        return FetchResult(data=body)
