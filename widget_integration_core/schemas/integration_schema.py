"""
Schemas for integration definitions and widget instances.

IntegrationDefinition is the immutable snapshot the cache and the scheduler
work from. Its validator enforces the definition invariants, so an invalid
row can never reach the fetch path.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)

from ..constants import CredentialScope, IntegrationMode, SharingPolicy
from ..db.db_base import ensure_utc
from ..exceptions import ErrorCode, ValidationError

# Widget options are a closed set of scalar types
OptionValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr, None]

_OPTIONAL_AUTH_TYPES = {"optional", "none"}


class IntegrationDefinition(BaseModel):
    """Read-only integration definition snapshot."""

    id: str
    widget_id: str
    name: str
    description: Optional[str] = None

    integration_type: IntegrationMode
    credential_scope: CredentialScope = CredentialScope.ORGANIZATION
    discriminator_type: SharingPolicy = SharingPolicy.WIDGET_CONFIG
    discriminator_key: Optional[str] = None

    pull_endpoint: Optional[str] = None
    pull_interval_seconds: Optional[int] = None
    pull_config: Dict[str, Any] = Field(default_factory=dict)
    push_webhook_path: Optional[str] = None
    push_config: Dict[str, Any] = Field(default_factory=dict)

    is_active: bool = True

    model_config = ConfigDict(from_attributes=True, frozen=True, extra="ignore")

    @field_validator("pull_config", "push_config", mode="before")
    def default_empty_config(cls, v: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return v or {}

    @model_validator(mode="after")
    def validate_definition(self) -> "IntegrationDefinition":
        if self.integration_type.includes_pull:
            if not self.pull_endpoint:
                raise ValidationError(
                    "pull_endpoint is required for pull integrations",
                    field="pull_endpoint",
                    error_code=ErrorCode.MISSING_REQUIRED,
                    integration_id=self.id,
                )
            if not self.pull_interval_seconds or self.pull_interval_seconds <= 0:
                raise ValidationError(
                    "pull_interval_seconds must be a positive integer for pull integrations",
                    field="pull_interval_seconds",
                    error_code=ErrorCode.CONSTRAINT_VIOLATION,
                    integration_id=self.id,
                    value=self.pull_interval_seconds,
                )

        if self.integration_type.includes_push and not self.push_webhook_path:
            raise ValidationError(
                "push_webhook_path is required for push integrations",
                field="push_webhook_path",
                error_code=ErrorCode.MISSING_REQUIRED,
                integration_id=self.id,
            )

        if self.discriminator_type == SharingPolicy.WIDGET_OPTION and not self.discriminator_key:
            raise ValidationError(
                "discriminator_key is required when sharing by widget option",
                field="discriminator_key",
                error_code=ErrorCode.MISSING_REQUIRED,
                integration_id=self.id,
            )

        return self

    @property
    def interval_seconds(self) -> int:
        """Pull interval. Only meaningful for integrations that pull."""
        return self.pull_interval_seconds or 0

    @property
    def credentials_optional(self) -> bool:
        """True when the integration may be fetched without stored credentials."""
        return str(self.pull_config.get("auth_type", "")).lower() in _OPTIONAL_AUTH_TYPES

    @property
    def fetcher_name(self) -> Optional[str]:
        return self.pull_config.get("fetcher")


class WidgetConfigRead(BaseModel):
    """A configured widget instance."""

    id: str
    organization_id: str
    widget_id: str
    options: Dict[str, OptionValue] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("options", mode="before")
    def default_empty_options(cls, v: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return v or {}

    @field_validator("created_at")
    def normalize_created_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)
