import uuid
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.db_integration_models import WidgetIntegration
from ..exceptions import not_found
from ..schemas.integration_schema import IntegrationDefinition
from .base_repository import BaseRepository


class IntegrationRepository(BaseRepository[WidgetIntegration]):
    """Access to integration definitions."""

    def __init__(self, session: Session):
        super().__init__(session, WidgetIntegration)

    def create(self, **fields: Any) -> IntegrationDefinition:
        """
        Validate and insert a definition.

        Raises:
            ValidationError: The definition breaks a definition invariant
        """
        fields.setdefault("id", str(uuid.uuid4()))
        definition = IntegrationDefinition.model_validate(fields)

        with self._session_operation("create_integration", definition.id) as session:
            session.add(WidgetIntegration(**definition.model_dump(mode="json")))

        return definition

    def get(self, integration_id: str) -> Optional[IntegrationDefinition]:
        row = self._get_by_id(integration_id)
        return IntegrationDefinition.model_validate(row) if row else None

    def list_active(self) -> List[IntegrationDefinition]:
        with self._session_operation("list_active_integrations", is_read_only=True) as session:
            rows = session.scalars(
                select(WidgetIntegration).where(WidgetIntegration.is_active.is_(True))
            ).all()
        return [IntegrationDefinition.model_validate(row) for row in rows]

    def set_active(self, integration_id: str, is_active: bool) -> None:
        with self._session_operation("set_integration_active", integration_id) as session:
            result = session.execute(
                update(WidgetIntegration)
                .where(WidgetIntegration.id == integration_id)
                .values(is_active=is_active)
            )
        if result.rowcount == 0:
            raise not_found("WidgetIntegration", integration_id=integration_id)
