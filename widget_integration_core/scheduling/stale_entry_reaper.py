"""
Stale entry reaper.

Deletes integration data entries that nobody has read within the retention
window and that no live widget configuration resolves to any more. Runs
periodically off the request path. A failed sweep is logged and retried on
the next interval.
"""

import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

from pydantic import BaseModel

from ..cache.discriminator import resolve_discriminator
from ..cache.integration_data_cache import IntegrationDataCache
from ..cache.key_locks import KeyedLockPool
from ..config import ReaperConfig, get_config
from ..db.db_base import utc_now
from ..db.db_config import DatabaseManager
from ..exceptions import RepositoryError, ValidationError
from ..repositories.integration_data_repository import IntegrationDataRepository
from ..repositories.widget_config_repository import WidgetConfigRepository
from ..schemas.metric_model import FetchMetric
from ..utils.logger import get_logger
from ..utils.metrics_utils import process_metrics
from .definitions import DefinitionRegistry
from .poll_scheduler import PollScheduler


class ReaperResult(BaseModel):
    """Counts from one sweep."""

    scanned: int = 0
    deleted: int = 0
    kept_referenced: int = 0
    skipped_in_flight: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


class StaleEntryReaper:
    """Periodic deletion of unused integration data entries."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        definitions: DefinitionRegistry,
        lock_pool: KeyedLockPool,
        scheduler: Optional[PollScheduler] = None,
        reaper_config: Optional[ReaperConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_manager = db_manager
        self.definitions = definitions
        self.lock_pool = lock_pool
        self.scheduler = scheduler
        self.config = reaper_config or get_config().reaper
        self.clock = clock
        self.logger = get_logger()

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _referenced_discriminators(self, integration_id: str) -> Set[str]:
        """Discriminators that live widget configurations resolve to for an integration."""
        definition = self.definitions.get(integration_id)
        if definition is None:
            return set()

        with self.db_manager.session_scope() as session:
            configs = WidgetConfigRepository(session).list_for_widget(definition.widget_id)

        referenced = set()
        for config in configs:
            try:
                referenced.add(
                    resolve_discriminator(
                        definition, config.organization_id, config.options, config.id
                    )
                )
            except ValidationError:
                # Misconfigured widget, it cannot reference any entry
                continue
        return referenced

    def sweep(self, now: Optional[datetime] = None) -> ReaperResult:
        """
        Delete every unreferenced entry unused for longer than the retention window.

        Entries whose fetch is in flight are skipped. The unused condition is
        re-checked in the delete, so a read racing the sweep keeps its entry.
        """
        started = time.monotonic()
        now = now or self.clock()
        cutoff = now - timedelta(days=self.config.retention_days)
        result = ReaperResult()

        with self.db_manager.session_scope() as session:
            candidates = IntegrationDataRepository(session).list_unused_since(cutoff)

        referenced: Dict[str, Set[str]] = {}
        for entry in candidates:
            result.scanned += 1

            if entry.integration_id not in referenced:
                referenced[entry.integration_id] = self._referenced_discriminators(entry.integration_id)
            if entry.discriminator_id in referenced[entry.integration_id]:
                result.kept_referenced += 1
                continue

            key = IntegrationDataCache.lock_key(entry.integration_id, entry.discriminator_id)
            if self.lock_pool.is_locked(key) or not self.lock_pool.acquire(key, blocking=False):
                result.skipped_in_flight += 1
                continue

            try:
                with self.db_manager.session_scope() as session:
                    deleted = IntegrationDataRepository(session).delete_if_unused(
                        entry.integration_id, entry.discriminator_id, cutoff
                    )
            except RepositoryError as e:
                self.logger.error(
                    f"Failed to delete stale entry: {e.message}",
                    extra={"integration_id": entry.integration_id, "discriminator_id": entry.discriminator_id},
                )
                result.errors += 1
                continue
            finally:
                self.lock_pool.release(key)

            if deleted:
                result.deleted += 1
                if self.scheduler is not None:
                    self.scheduler.cancel(entry.integration_id, entry.discriminator_id)

        result.duration_seconds = time.monotonic() - started
        self.logger.info(
            "Stale entry sweep completed",
            extra={"retention_days": self.config.retention_days, **result.model_dump()},
        )
        self._record_metric(result)
        return result

    def run_once(self) -> Optional[ReaperResult]:
        """Sweep, logging instead of raising on failure."""
        try:
            return self.sweep()
        except Exception as e:
            self.logger.error(
                "Stale entry sweep failed",
                extra={"error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            return None

    def _record_metric(self, result: ReaperResult) -> None:
        app_config = get_config()
        if not app_config.features.enable_metrics or not app_config.queue.connection_string:
            return
        process_metrics([FetchMetric.entries_reaped(result.deleted)])

    def start(self, interval_seconds: Optional[float] = None) -> None:
        """Sweep every ``interval_seconds`` on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        interval = interval_seconds or self.config.interval_seconds
        self._stop.clear()

        def loop() -> None:
            while not self._stop.wait(interval):
                self.run_once()

        self._thread = threading.Thread(target=loop, name="stale-entry-reaper", daemon=True)
        self._thread.start()
        self.logger.info("Stale entry reaper started", extra={"interval_seconds": interval})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
