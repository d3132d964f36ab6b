"""
Schemas for cached integration data.

IntegrationDataRead is a detached snapshot of an entry. WidgetDataView is
what a display client gets back from the read API, and
IntegrationDataUpdated is the notification emitted after a successful
commit.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import EntryStatus
from ..db.db_base import ensure_utc, utc_now


class IntegrationDataRead(BaseModel):
    """
    Committed state of one cache line.

    ``version`` counts committed successful fetches and starts at 1. An entry
    created by a failed first fetch has version 0 and an empty payload until
    a fetch succeeds.
    """

    id: str
    integration_id: str
    organization_id: str
    discriminator_id: str
    widget_id: Optional[str] = None

    payload: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    status: EntryStatus = EntryStatus.PENDING
    error_message: Optional[str] = None
    consecutive_failures: int = 0

    fetched_at: Optional[datetime] = None
    refresh_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    widget_options: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("payload", "widget_options", mode="before")
    def default_empty_map(cls, v: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return v or {}

    @field_validator("fetched_at", "refresh_at", "last_used_at")
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """True when a reader should treat the entry as outdated: failed or past refresh_at."""
        if self.status == EntryStatus.ERROR or self.refresh_at is None:
            return True
        return (now or utc_now()) >= self.refresh_at

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """
        True when a fetch may run at ``now``.

        Unlike is_stale this honors the backoff of a failed entry, whose
        refresh_at is the earliest retry.
        """
        if self.refresh_at is None:
            return True
        return (now or utc_now()) >= self.refresh_at


class IntegrationDataUpdated(BaseModel):
    """Event emitted after a successful fetch was committed."""

    integration_id: str
    discriminator_id: str
    organization_id: str
    version: int
    widget_id: Optional[str] = None
    fetched_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class WidgetDataView(BaseModel):
    """Device-facing view of the current data for a widget instance."""

    widget_config_id: str
    integration_id: str
    discriminator_id: str
    status: EntryStatus
    payload: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    fetched_at: Optional[datetime] = None
    refresh_at: Optional[datetime] = None
    error_message: Optional[str] = None
    stale: bool = False
