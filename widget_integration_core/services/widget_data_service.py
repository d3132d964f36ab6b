"""
Device-facing read API for widget integration data.

Reads never trigger a synchronous fetch: a stale or missing entry is served
as-is and a background refresh is requested from the poll scheduler.
"""

from typing import TYPE_CHECKING, List, Optional

from ..cache.discriminator import resolve_discriminator
from ..constants import EntryStatus, PollTrigger
from ..context.operation_context import operation
from ..db.db_config import DatabaseManager
from ..exceptions import TenantIsolationViolationError, not_found
from ..repositories.widget_config_repository import WidgetConfigRepository
from ..schemas.integration_data_schema import WidgetDataView
from ..schemas.integration_schema import IntegrationDefinition, WidgetConfigRead
from ..schemas.poll_schema import PollJob
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..cache.integration_data_cache import IntegrationDataCache
    from ..scheduling.definitions import DefinitionRegistry
    from ..scheduling.poll_scheduler import PollScheduler


class WidgetDataService:
    """Current data lookup and on-demand polls for widget instances."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        cache: "IntegrationDataCache",
        definitions: "DefinitionRegistry",
        scheduler: "PollScheduler",
    ):
        self.db_manager = db_manager
        self.cache = cache
        self.definitions = definitions
        self.scheduler = scheduler
        self.logger = get_logger()

    def _widget_config(self, widget_config_id: str) -> WidgetConfigRead:
        with self.db_manager.session_scope() as session:
            config = WidgetConfigRepository(session).get(widget_config_id)
        if config is None:
            raise not_found("WidgetConfig", widget_config_id=widget_config_id)
        return config

    def _pull_definitions(
        self, config: WidgetConfigRead, integration_id: Optional[str] = None
    ) -> List[IntegrationDefinition]:
        """Active pulling integrations of the widget, optionally narrowed to one."""
        definitions = [
            d
            for d in self.definitions.for_widget(config.widget_id)
            if d.integration_type.includes_pull
            and (integration_id is None or d.id == integration_id)
        ]
        if not definitions:
            raise not_found(
                "WidgetIntegration",
                widget_id=config.widget_id,
                integration_id=integration_id or "",
            )
        return sorted(definitions, key=lambda d: d.name)

    def _job(
        self,
        definition: IntegrationDefinition,
        config: WidgetConfigRead,
        discriminator_id: str,
        trigger: PollTrigger,
    ) -> PollJob:
        return PollJob(
            organization_id=config.organization_id,
            integration_id=definition.id,
            discriminator_id=discriminator_id,
            widget_options=config.options,
            widget_config_id=config.id,
            widget_id=config.widget_id,
            trigger=trigger,
        )

    def get_current_data(
        self, widget_config_id: str, integration_id: Optional[str] = None
    ) -> WidgetDataView:
        """
        Return the committed data for a widget instance.

        Args:
            widget_config_id: Widget instance asking for data
            integration_id: Integration to read when the widget has several.
                Defaults to the first one by name.

        Returns:
            The entry's payload, version and status. ``stale`` is set when the
            entry failed or is past refresh_at. A poll is requested, but a
            failed entry is not retried before its backoff expires.

        Raises:
            RepositoryError: Unknown widget instance or integration (404)
            MissingDiscriminatorKeyError: The widget lacks the option its
                integration shares data by
        """
        config = self._widget_config(widget_config_id)
        definition = self._pull_definitions(config, integration_id)[0]
        discriminator_id = resolve_discriminator(
            definition, config.organization_id, config.options, config.id
        )

        entry = self.cache.get(definition.id, discriminator_id)
        if entry is not None:
            if entry.organization_id != config.organization_id:
                raise TenantIsolationViolationError(
                    "Integration data belongs to another organization",
                    integration_id=definition.id,
                    tenant_id=config.organization_id,
                )
            self.cache.touch(definition.id, discriminator_id)

        stale = self.cache.needs_refresh(entry)
        if stale:
            self.scheduler.request_poll(
                self._job(definition, config, discriminator_id, PollTrigger.ON_DEMAND)
            )

        if entry is None:
            return WidgetDataView(
                widget_config_id=config.id,
                integration_id=definition.id,
                discriminator_id=discriminator_id,
                status=EntryStatus.PENDING,
                stale=True,
            )

        return WidgetDataView(
            widget_config_id=config.id,
            integration_id=definition.id,
            discriminator_id=discriminator_id,
            status=entry.status,
            payload=entry.payload,
            version=entry.version,
            fetched_at=entry.fetched_at,
            refresh_at=entry.refresh_at,
            error_message=entry.error_message,
            stale=stale,
        )

    @operation()
    def trigger_poll(
        self,
        organization_id: str,
        widget_config_id: str,
        integration_id: Optional[str] = None,
        force: bool = False,
    ) -> bool:
        """
        Request a refresh of the widget instance's data.

        Args:
            organization_id: Organization making the request
            widget_config_id: Widget instance to refresh
            integration_id: Limit the refresh to one integration of the widget
            force: Refresh even entries that are still fresh

        Returns:
            True when at least one poll job was scheduled

        Raises:
            TenantIsolationViolationError: The widget belongs to another organization
        """
        config = self._widget_config(widget_config_id)
        if config.organization_id != organization_id:
            raise TenantIsolationViolationError(
                "Widget belongs to another organization",
                widget_config_id=widget_config_id,
                tenant_id=organization_id,
            )

        scheduled = False
        for definition in self._pull_definitions(config, integration_id):
            discriminator_id = resolve_discriminator(
                definition, organization_id, config.options, config.id
            )
            trigger = PollTrigger.ADMIN if force else PollTrigger.ON_DEMAND
            job = self._job(definition, config, discriminator_id, trigger)
            scheduled = self.scheduler.request_poll(job, force=force) or scheduled

        return scheduled
