"""
Repository for cached integration data entries.

Entries are keyed by (integration_id, discriminator_id). Reads return
detached IntegrationDataRead snapshots so callers never hold live rows
across sessions or threads.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

from ..db.db_integration_models import IntegrationDataEntry
from ..schemas.integration_data_schema import IntegrationDataRead
from .base_repository import BaseRepository

_WRITABLE_FIELDS = frozenset(
    {
        "organization_id",
        "widget_id",
        "payload",
        "version",
        "status",
        "error_message",
        "consecutive_failures",
        "fetched_at",
        "refresh_at",
        "last_used_at",
        "widget_options",
    }
)


class IntegrationDataRepository(BaseRepository[IntegrationDataEntry]):
    """Persistence for IntegrationDataEntry rows."""

    def __init__(self, session: Session):
        super().__init__(session, IntegrationDataEntry)

    def _get_row(self, integration_id: str, discriminator_id: str) -> Optional[IntegrationDataEntry]:
        with self._session_operation("get_integration_data", is_read_only=True) as session:
            return session.scalars(
                select(IntegrationDataEntry).where(
                    IntegrationDataEntry.integration_id == integration_id,
                    IntegrationDataEntry.discriminator_id == discriminator_id,
                )
            ).first()

    def get(self, integration_id: str, discriminator_id: str) -> Optional[IntegrationDataRead]:
        row = self._get_row(integration_id, discriminator_id)
        return IntegrationDataRead.model_validate(row) if row else None

    def upsert(self, integration_id: str, discriminator_id: str, **fields: Any) -> IntegrationDataRead:
        """
        Insert the entry or update it in place.

        Raises:
            ValueError: An unknown column was passed
            RepositoryError: duplicate key when a concurrent insert won
            PersistenceError: Any other database failure
        """
        unknown = set(fields) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown integration data fields: {sorted(unknown)}")

        row = self._get_row(integration_id, discriminator_id)
        with self._session_operation("upsert_integration_data", row.id if row else None) as session:
            if row is None:
                row = IntegrationDataEntry(
                    integration_id=integration_id, discriminator_id=discriminator_id, **fields
                )
                session.add(row)
            else:
                for key, value in fields.items():
                    setattr(row, key, value)

        return IntegrationDataRead.model_validate(row)

    def touch(self, integration_id: str, discriminator_id: str, now: datetime) -> bool:
        """Set last_used_at. Returns False when no entry exists."""
        with self._session_operation("touch_integration_data") as session:
            result = session.execute(
                update(IntegrationDataEntry)
                .where(
                    IntegrationDataEntry.integration_id == integration_id,
                    IntegrationDataEntry.discriminator_id == discriminator_id,
                )
                .values(last_used_at=now)
            )
        return result.rowcount > 0

    def list_unused_since(self, cutoff: datetime) -> List[IntegrationDataRead]:
        """Entries last used before ``cutoff``, or never used and created before it."""
        with self._session_operation("list_unused_integration_data", is_read_only=True) as session:
            rows = session.scalars(
                select(IntegrationDataEntry).where(_unused_since(cutoff))
            ).all()
        return [IntegrationDataRead.model_validate(row) for row in rows]

    def delete_if_unused(self, integration_id: str, discriminator_id: str, cutoff: datetime) -> bool:
        """
        Delete the entry only if it is still unused since ``cutoff``.

        The usage condition is re-evaluated in the DELETE itself, so a read
        that touched the entry after it was listed keeps it alive.
        """
        with self._session_operation("delete_integration_data") as session:
            result = session.execute(
                delete(IntegrationDataEntry).where(
                    IntegrationDataEntry.integration_id == integration_id,
                    IntegrationDataEntry.discriminator_id == discriminator_id,
                    _unused_since(cutoff),
                )
            )
        return result.rowcount > 0

    def list_all(self, integration_id: Optional[str] = None) -> List[IntegrationDataRead]:
        with self._session_operation("list_integration_data", is_read_only=True) as session:
            query = select(IntegrationDataEntry)
            if integration_id:
                query = query.where(IntegrationDataEntry.integration_id == integration_id)
            rows = session.scalars(query.order_by(IntegrationDataEntry.refresh_at)).all()
        return [IntegrationDataRead.model_validate(row) for row in rows]

    def list_due(self, now: datetime) -> List[IntegrationDataRead]:
        """Entries whose refresh_at has passed."""
        with self._session_operation("list_due_integration_data", is_read_only=True) as session:
            rows = session.scalars(
                select(IntegrationDataEntry)
                .where(IntegrationDataEntry.refresh_at <= now)
                .order_by(IntegrationDataEntry.refresh_at)
            ).all()
        return [IntegrationDataRead.model_validate(row) for row in rows]


def _unused_since(cutoff: datetime):
    return or_(
        IntegrationDataEntry.last_used_at < cutoff,
        and_(IntegrationDataEntry.last_used_at.is_(None), IntegrationDataEntry.created_at < cutoff),
    )
