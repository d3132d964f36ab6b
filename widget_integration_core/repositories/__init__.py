"""Repositories: session-bound data access returning pydantic snapshots."""

from .base_repository import BaseRepository
from .credential_repository import CredentialRepository
from .integration_data_repository import IntegrationDataRepository
from .integration_repository import IntegrationRepository
from .widget_config_repository import WidgetConfigRepository

__all__ = [
    "BaseRepository",
    "CredentialRepository",
    "IntegrationDataRepository",
    "IntegrationRepository",
    "WidgetConfigRepository",
]
