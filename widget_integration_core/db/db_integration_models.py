"""
Models for widget integrations, their credentials and cached data.

Just the data structure. Invariants are enforced by the schemas and the
repositories, the database backs the uniqueness ones.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .db_base import JSON, EncryptedBinary, TimestampMixin, UUIDMixin
from .db_config import Base


class WidgetIntegration(Base, UUIDMixin, TimestampMixin):
    """Integration definition attached to a widget type."""

    __tablename__ = "widget_integrations"

    widget_id = Column(String(100), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    integration_type = Column(String(10), nullable=False)
    credential_scope = Column(String(20), nullable=False, default="organization")
    discriminator_type = Column(String(20), nullable=False, default="widget_config")
    discriminator_key = Column(String(100), nullable=True)

    pull_endpoint = Column(Text, nullable=True)
    pull_interval_seconds = Column(Integer, nullable=True)
    pull_config = Column(JSON, nullable=True)
    push_webhook_path = Column(String(255), nullable=True)
    push_config = Column(JSON, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("widget_id", "name", name="uq_widget_integration_name"),
        CheckConstraint(
            "pull_interval_seconds IS NULL OR pull_interval_seconds > 0",
            name="ck_widget_integration_interval_positive",
        ),
    )


class WidgetConfig(Base, UUIDMixin, TimestampMixin):
    """A configured widget instance inside an organization."""

    __tablename__ = "widget_configs"

    organization_id = Column(String(100), nullable=False, index=True)
    widget_id = Column(String(100), nullable=False, index=True)
    options = Column(JSON, nullable=False, default=dict)


class IntegrationCredential(Base, UUIDMixin, TimestampMixin):
    """Encrypted credential bundle owned by one organization or one widget instance."""

    __tablename__ = "integration_credentials"

    integration_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(100), nullable=False, index=True)
    scope_type = Column(String(20), nullable=False)
    scope_id = Column(String(100), nullable=False)
    encrypted_credentials = Column(EncryptedBinary, nullable=False)

    is_valid = Column(Boolean, nullable=False, default=True)
    validated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_integration_credential_scope", "integration_id", "scope_type", "scope_id", unique=True),
        CheckConstraint(
            "scope_type IN ('organization', 'widget')", name="ck_integration_credential_scope"
        ),
    )


class IntegrationDataEntry(Base, UUIDMixin, TimestampMixin):
    """Cached fetch result for one (integration, discriminator) key."""

    __tablename__ = "integration_data"

    integration_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(100), nullable=False, index=True)
    discriminator_id = Column(String(512), nullable=False)
    widget_id = Column(String(100), nullable=True)

    payload = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=0)
    status = Column(String(10), nullable=False, default="pending")
    error_message = Column(Text, nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)

    fetched_at = Column(DateTime(timezone=True), nullable=True)
    refresh_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Options used for the last fetch, needed to rebuild poll jobs after a restart
    widget_options = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("integration_id", "discriminator_id", name="uq_integration_data_key"),
        CheckConstraint("version >= 0", name="ck_integration_data_version"),
        CheckConstraint(
            "status <> 'error' OR (error_message IS NOT NULL AND error_message <> '')",
            name="ck_integration_data_error_message",
        ),
    )
