"""
Immutable snapshot of active integration definitions.

The scheduler, the reaper and the read API all resolve definitions through
one registry. Reloading replaces the whole snapshot at once, so a reader
sees either the old set or the new set, never a mix.
"""

import threading
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional

from ..db.db_config import DatabaseManager
from ..repositories.integration_repository import IntegrationRepository
from ..schemas.integration_schema import IntegrationDefinition
from ..utils.logger import get_logger


class DefinitionRegistry:
    """Lookup of active integration definitions by ID."""

    def __init__(
        self,
        definitions: Iterable[IntegrationDefinition] = (),
        db_manager: Optional[DatabaseManager] = None,
    ):
        self.db_manager = db_manager
        self.logger = get_logger()
        self._reload_lock = threading.Lock()
        self._snapshot: Mapping[str, IntegrationDefinition] = self._build(definitions)

    @classmethod
    def from_database(cls, db_manager: DatabaseManager) -> "DefinitionRegistry":
        registry = cls(db_manager=db_manager)
        registry.reload()
        return registry

    @staticmethod
    def _build(definitions: Iterable[IntegrationDefinition]) -> Mapping[str, IntegrationDefinition]:
        return MappingProxyType({d.id: d for d in definitions if d.is_active})

    def reload(self, definitions: Optional[Iterable[IntegrationDefinition]] = None) -> int:
        """
        Replace the snapshot.

        Args:
            definitions: New definitions. Loaded from the database when omitted.

        Returns:
            Number of active definitions in the new snapshot
        """
        with self._reload_lock:
            if definitions is None:
                if self.db_manager is None:
                    raise ValueError("No definitions given and no database to load them from")
                with self.db_manager.session_scope() as session:
                    definitions = IntegrationRepository(session).list_active()

            self._snapshot = self._build(definitions)

        self.logger.info("Integration definitions loaded", extra={"active_count": len(self._snapshot)})
        return len(self._snapshot)

    def get(self, integration_id: str) -> Optional[IntegrationDefinition]:
        """Active definition, or None when unknown or deactivated."""
        return self._snapshot.get(integration_id)

    def for_widget(self, widget_id: str) -> List[IntegrationDefinition]:
        return [d for d in self._snapshot.values() if d.widget_id == widget_id]

    def active(self) -> List[IntegrationDefinition]:
        return list(self._snapshot.values())

    def __len__(self) -> int:
        return len(self._snapshot)
