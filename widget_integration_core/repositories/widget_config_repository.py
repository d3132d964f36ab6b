import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.db_integration_models import WidgetConfig
from ..exceptions import not_found
from ..schemas.integration_schema import WidgetConfigRead
from .base_repository import BaseRepository


class WidgetConfigRepository(BaseRepository[WidgetConfig]):
    """Lookup of configured widget instances."""

    def __init__(self, session: Session):
        super().__init__(session, WidgetConfig)

    def create(
        self,
        organization_id: str,
        widget_id: str,
        options: Optional[Dict[str, Any]] = None,
        widget_config_id: Optional[str] = None,
    ) -> WidgetConfigRead:
        config = WidgetConfigRead(
            id=widget_config_id or str(uuid.uuid4()),
            organization_id=organization_id,
            widget_id=widget_id,
            options=options or {},
        )
        row = WidgetConfig(
            id=config.id,
            organization_id=config.organization_id,
            widget_id=config.widget_id,
            options=config.options,
        )
        with self._session_operation("create_widget_config", config.id) as session:
            session.add(row)
        return WidgetConfigRead.model_validate(row)

    def get(self, widget_config_id: str) -> Optional[WidgetConfigRead]:
        row = self._get_by_id(widget_config_id)
        return WidgetConfigRead.model_validate(row) if row else None

    def list_for_widget(self, widget_id: str) -> List[WidgetConfigRead]:
        """All live instances of a widget type, across organizations."""
        with self._session_operation("list_widget_configs", is_read_only=True) as session:
            rows = session.scalars(
                select(WidgetConfig).where(WidgetConfig.widget_id == widget_id)
            ).all()
        return [WidgetConfigRead.model_validate(row) for row in rows]

    def update_options(self, widget_config_id: str, options: Dict[str, Any]) -> WidgetConfigRead:
        row = self._get_by_id(widget_config_id)
        if row is None:
            raise not_found("WidgetConfig", widget_config_id=widget_config_id)
        validated = WidgetConfigRead(
            id=row.id, organization_id=row.organization_id, widget_id=row.widget_id, options=options
        )
        with self._session_operation("update_widget_config", widget_config_id):
            row.options = validated.options
        return WidgetConfigRead.model_validate(row)

    def delete(self, widget_config_id: str) -> bool:
        row = self._get_by_id(widget_config_id)
        if row is None:
            return False
        with self._session_operation("delete_widget_config", widget_config_id) as session:
            session.delete(row)
        return True
