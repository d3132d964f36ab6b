"""
Poll scheduler.

Each (integration, discriminator) key moves through IDLE -> SCHEDULED ->
RUNNING -> IDLE. Timers are kept in a due-time heap. The dispatcher thread
pops due keys and hands them to a worker pool, and each finished job re-arms
its key at the entry's refresh_at, which already includes failure backoff.

A key is never SCHEDULED or RUNNING twice, so timer fires and on-demand
requests for the same key collapse into one job.
"""

import heapq
import itertools
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..cache.integration_data_cache import IntegrationDataCache
from ..config import SchedulerConfig, get_config
from ..constants import Limits, PollState, PollTrigger, SharingPolicy
from ..context.tenant_context import tenant_context
from ..db.db_config import DatabaseManager
from ..fetchers.registry import FetcherRegistry
from ..repositories.integration_data_repository import IntegrationDataRepository
from ..schemas.integration_data_schema import IntegrationDataRead
from ..schemas.integration_schema import IntegrationDefinition
from ..schemas.poll_schema import PollJob
from ..utils.logger import get_logger
from .definitions import DefinitionRegistry

Key = Tuple[str, str]

# Upper bound on a dispatcher sleep so an injected clock is re-read regularly
_MAX_IDLE_WAIT_SECONDS = 1.0


class PollScheduler:
    """Timer and on-demand driven refreshes of integration data entries."""

    def __init__(
        self,
        cache: IntegrationDataCache,
        definitions: DefinitionRegistry,
        fetchers: Optional[FetcherRegistry] = None,
        db_manager: Optional[DatabaseManager] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cache = cache
        self.definitions = definitions
        self.fetchers = fetchers or FetcherRegistry.with_builtin_fetchers()
        self.db_manager = db_manager or cache.db_manager
        self.config = scheduler_config or get_config().scheduler
        self.clock = clock or cache.clock
        self.logger = get_logger()

        self._condition = threading.Condition()
        self._states: Dict[Key, PollState] = {}
        self._jobs: Dict[Key, PollJob] = {}
        self._armed: Dict[Key, Tuple[datetime, int]] = {}
        self._heap: List[Tuple[datetime, int, Key]] = []
        self._sequence = itertools.count()
        self._cancelled: Set[Key] = set()

        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._running = False

    # ==================== STATE ====================

    def state(self, integration_id: str, discriminator_id: str) -> PollState:
        with self._condition:
            return self._states.get((integration_id, discriminator_id), PollState.IDLE)

    def next_due(self, integration_id: str, discriminator_id: str) -> Optional[datetime]:
        with self._condition:
            armed = self._armed.get((integration_id, discriminator_id))
            return armed[0] if armed else None

    def _arm(self, key: Key, due: datetime) -> None:
        """Set the key's timer, replacing any earlier one. Caller holds the condition."""
        sequence = next(self._sequence)
        self._armed[key] = (due, sequence)
        heapq.heappush(self._heap, (due, sequence, key))
        self._condition.notify_all()

    def _forget(self, key: Key) -> None:
        self._states.pop(key, None)
        self._jobs.pop(key, None)
        self._armed.pop(key, None)

    def _peek_due(self) -> Optional[datetime]:
        """Earliest live timer, dropping replaced heap entries on the way."""
        while self._heap:
            due, sequence, key = self._heap[0]
            if self._armed.get(key) == (due, sequence):
                return due
            heapq.heappop(self._heap)
        return None

    # ==================== REQUESTS ====================

    def request_poll(self, job: PollJob, force: bool = False) -> bool:
        """
        Ask for a refresh of the job's key.

        Args:
            job: Key and fetch parameters
            force: Refresh even when the entry is still fresh

        Returns:
            True when a job was scheduled, False when one is already scheduled
            or running, the entry is fresh or backing off after a failure, or
            the integration does not pull.
        """
        definition = self.definitions.get(job.integration_id)
        if definition is None or not definition.integration_type.includes_pull:
            self.logger.debug(
                "Ignoring poll request for inactive or push-only integration",
                extra={"integration_id": job.integration_id},
            )
            return False

        entry = None if force else self.cache.get(job.integration_id, job.discriminator_id)
        if force:
            job = job.model_copy(update={"trigger": PollTrigger.ADMIN})

        with self._condition:
            key = job.key
            if self._states.get(key, PollState.IDLE) != PollState.IDLE:
                return False

            if not force and not self.cache.is_due(entry, self.clock()):
                # Fresh or backing off. Arm a timer if none exists, e.g. after a restart
                if key not in self._armed:
                    self._jobs[key] = job.model_copy(update={"trigger": PollTrigger.TIMER})
                    self._arm(key, entry.refresh_at)
                return False

            self._states[key] = PollState.SCHEDULED
            self._jobs[key] = job
            self._arm(key, self.clock())

        self.logger.info(
            "Poll scheduled",
            extra={
                "integration_id": job.integration_id,
                "discriminator_id": job.discriminator_id,
                "trigger": job.trigger.value,
            },
        )
        return True

    def schedule_at(self, job: PollJob, due: datetime) -> bool:
        """Arm a timer for an idle key. Returns False when the key is busy."""
        with self._condition:
            if self._states.get(job.key, PollState.IDLE) != PollState.IDLE:
                return False
            self._jobs[job.key] = job
            self._arm(job.key, due)
        return True

    def cancel(self, integration_id: str, discriminator_id: Optional[str] = None) -> int:
        """
        Drop scheduled jobs and timers of an integration, or of one of its keys.

        A running job finishes, but its key is not re-armed.

        Returns:
            Number of keys affected
        """
        with self._condition:
            keys = {
                key
                for key in itertools.chain(self._states, self._armed)
                if key[0] == integration_id and (discriminator_id is None or key[1] == discriminator_id)
            }
            for key in keys:
                if self._states.get(key) == PollState.RUNNING:
                    self._cancelled.add(key)
                else:
                    self._forget(key)

        if keys:
            self.logger.info(
                "Poll jobs cancelled",
                extra={"integration_id": integration_id, "cancelled_count": len(keys)},
            )
        return len(keys)

    def sync_definitions(self) -> int:
        """Cancel every key whose integration is no longer active."""
        with self._condition:
            stale = {key[0] for key in itertools.chain(self._states, self._armed)}
        return sum(
            self.cancel(integration_id)
            for integration_id in stale
            if self.definitions.get(integration_id) is None
        )

    def bootstrap(self) -> int:
        """
        Arm timers for every persisted entry of an active pulling integration.

        Returns:
            Number of keys armed
        """
        with self.db_manager.session_scope() as session:
            entries = IntegrationDataRepository(session).list_all()

        armed = 0
        now = self.clock()
        for entry in entries:
            definition = self.definitions.get(entry.integration_id)
            if definition is None or not definition.integration_type.includes_pull:
                continue
            job = self._job_for_entry(definition, entry)
            if self.schedule_at(job, entry.refresh_at or now):
                armed += 1

        self.logger.info("Poll timers restored", extra={"armed_count": armed, "entry_count": len(entries)})
        return armed

    @staticmethod
    def _job_for_entry(definition: IntegrationDefinition, entry: IntegrationDataRead) -> PollJob:
        per_widget = definition.discriminator_type == SharingPolicy.WIDGET_CONFIG
        return PollJob(
            organization_id=entry.organization_id,
            integration_id=entry.integration_id,
            discriminator_id=entry.discriminator_id,
            widget_options=entry.widget_options,
            widget_config_id=entry.discriminator_id if per_widget else None,
            widget_id=entry.widget_id,
            trigger=PollTrigger.BOOTSTRAP,
        )

    # ==================== DISPATCH ====================

    def dispatch_due(self, now: Optional[datetime] = None) -> int:
        """
        Start every job whose timer is due.

        Runs the jobs on the worker pool when the scheduler is started, or
        inline otherwise.

        Returns:
            Number of jobs dispatched
        """
        now = now or self.clock()
        jobs: List[PollJob] = []

        with self._condition:
            while True:
                due = self._peek_due()
                if due is None or due > now:
                    break
                _, _, key = heapq.heappop(self._heap)
                self._armed.pop(key, None)
                job = self._jobs.get(key)
                if job is None:
                    continue
                self._states[key] = PollState.SCHEDULED
                jobs.append(job)

        executor = self._executor
        for index, job in enumerate(jobs):
            if executor is None:
                self.run_job(job)
                continue
            try:
                executor.submit(self.run_job, job)
            except RuntimeError:
                # Worker pool shut down while dispatching
                released = self._release_scheduled(j.key for j in jobs[index:])
                self.logger.warning(
                    "Scheduler shut down during dispatch, jobs released",
                    extra={"released_count": released},
                )
                return index
        return len(jobs)

    def _release_scheduled(self, keys: Iterable[Key]) -> int:
        """Return SCHEDULED keys whose job will never start to IDLE, due now."""
        released = 0
        with self._condition:
            for key in keys:
                if self._states.get(key) == PollState.SCHEDULED:
                    self._states[key] = PollState.IDLE
                    self._arm(key, self.clock())
                    released += 1
        return released

    def run_job(self, job: PollJob) -> Optional[IntegrationDataRead]:
        """
        Run one scheduled job and re-arm its key.

        Returns:
            The committed entry, or None when the job was cancelled or failed
        """
        key = job.key
        with self._condition:
            if self._states.get(key) != PollState.SCHEDULED:
                self.logger.debug(
                    "Skipping job no longer scheduled",
                    extra={"integration_id": job.integration_id, "discriminator_id": job.discriminator_id},
                )
                return None
            self._states[key] = PollState.RUNNING

        definition = self.definitions.get(job.integration_id)
        entry: Optional[IntegrationDataRead] = None
        next_due: Optional[datetime] = None

        try:
            if definition is None:
                self.logger.info(
                    "Integration deactivated, dropping job",
                    extra={"integration_id": job.integration_id},
                )
                return None

            with tenant_context(job.organization_id):
                entry = self.cache.fetch_and_store(
                    definition,
                    job.discriminator_id,
                    job.organization_id,
                    self.fetchers.create(definition),
                    job.widget_options,
                    widget_config_id=job.widget_config_id,
                    widget_id=job.widget_id,
                    skip_if_fresh=job.trigger != PollTrigger.ADMIN,
                )
            if entry is not None:
                next_due = entry.refresh_at
            return entry

        except Exception as e:
            # The committed entry is unchanged, retry one interval later
            self.logger.error(
                f"Poll job failed: {type(e).__name__}: {e}",
                extra={"integration_id": job.integration_id, "discriminator_id": job.discriminator_id},
                exc_info=True,
            )
            return None

        finally:
            self._finish(job, definition, next_due)

    def _finish(
        self, job: PollJob, definition: Optional[IntegrationDefinition], next_due: Optional[datetime]
    ) -> None:
        key = job.key
        with self._condition:
            cancelled = key in self._cancelled
            self._cancelled.discard(key)

            if cancelled or definition is None:
                self._forget(key)
                return

            interval = definition.interval_seconds or Limits.DEFAULT_PULL_INTERVAL_SECONDS
            self._states[key] = PollState.IDLE
            self._jobs[key] = job.model_copy(update={"trigger": PollTrigger.TIMER})
            self._arm(key, next_due or self.clock() + timedelta(seconds=interval))

    # ==================== LIFECYCLE ====================

    def start(self, bootstrap: bool = True) -> None:
        """Start the worker pool and the dispatcher thread."""
        if self._running:
            return

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="poll-worker"
        )
        self._running = True
        if bootstrap:
            self.bootstrap()

        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="poll-dispatcher", daemon=True
        )
        self._dispatcher.start()
        self.logger.info("Poll scheduler started", extra={"workers": self.config.workers})

    def _dispatch_loop(self) -> None:
        while True:
            with self._condition:
                if not self._running:
                    return
                due = self._peek_due()
                wait = (
                    _MAX_IDLE_WAIT_SECONDS
                    if due is None
                    else min((due - self.clock()).total_seconds(), _MAX_IDLE_WAIT_SECONDS)
                )
                if wait > 0:
                    self._condition.wait(timeout=wait)
                    continue

            try:
                self.dispatch_due()
            except Exception:
                self.logger.exception("Poll dispatch failed")

    def shutdown(self, wait: bool = True) -> None:
        """Stop dispatching. Running jobs finish unless ``wait`` is False."""
        with self._condition:
            self._running = False
            self._condition.notify_all()

        if self._dispatcher is not None:
            self._dispatcher.join(timeout=self.config.shutdown_grace_seconds)
            self._dispatcher = None

        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)
            # Jobs cancelled while queued
            with self._condition:
                scheduled = [k for k, s in self._states.items() if s == PollState.SCHEDULED]
            self._release_scheduled(scheduled)

        self.logger.info("Poll scheduler stopped")
