"""Database layer: base types, connection management and models."""

from .db_base import JSON, EncryptedBinary, TimestampMixin, UUIDMixin, ensure_utc, utc_now
from .db_config import (
    Base,
    DatabaseConfig,
    DatabaseManager,
    close_db,
    get_db_manager,
    get_development_config,
    get_production_config,
    import_all_models,
    initialize_db,
    set_db_manager,
)
from .db_integration_models import (
    IntegrationCredential,
    IntegrationDataEntry,
    WidgetConfig,
    WidgetIntegration,
)

__all__ = [
    # Base definitions
    "Base",
    "JSON",
    "EncryptedBinary",
    "TimestampMixin",
    "UUIDMixin",
    "ensure_utc",
    "utc_now",
    # Configuration
    "DatabaseConfig",
    "DatabaseManager",
    "close_db",
    "get_db_manager",
    "get_development_config",
    "get_production_config",
    "import_all_models",
    "initialize_db",
    "set_db_manager",
    # Models
    "IntegrationCredential",
    "IntegrationDataEntry",
    "WidgetConfig",
    "WidgetIntegration",
]
