"""Service layer for credentials and the device-facing widget data API."""

from .credential_service import CredentialService, credential_scope_for
from .widget_data_service import WidgetDataService

__all__ = [
    "CredentialService",
    "WidgetDataService",
    "credential_scope_for",
]
