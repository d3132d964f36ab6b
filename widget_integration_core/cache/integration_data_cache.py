"""
Integration data cache.

Holds the committed fetch result for every (integration, discriminator)
key and coordinates refreshes so that at most one fetch per key is in
flight. Readers always get the last committed entry and never wait on a
fetch. A caller that finds a fetch in flight waits for it and returns its
result instead of fetching again.

Failed fetches keep the last good payload and version, record the error and
schedule an earlier retry via the backoff policy.
"""

import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..config import CacheConfig, get_config
from ..constants import EntryStatus, Limits
from ..context.operation_context import OperationHandler
from ..context.tenant_context import tenant_context
from ..db.db_base import utc_now
from ..db.db_config import DatabaseManager
from ..exceptions import (
    BaseError,
    CredentialNotFoundError,
    ErrorCode,
    FetchAuthError,
    FetchError,
    FetchTimeoutError,
    PersistenceError,
    RepositoryError,
)
from ..fetchers.base import Fetcher, FetchResult
from ..notifications import NotificationHub
from ..repositories.integration_data_repository import IntegrationDataRepository
from ..repositories.integration_repository import IntegrationRepository
from ..schemas.integration_data_schema import IntegrationDataRead, IntegrationDataUpdated
from ..schemas.integration_schema import IntegrationDefinition
from ..schemas.metric_model import FetchMetric
from ..services.credential_service import CredentialService, ScopeRef, credential_scope_for
from ..utils.backoff import calculate_refresh_backoff
from ..utils.logger import get_logger
from ..utils.metrics_utils import process_metrics
from .key_locks import KeyedLockPool

DefinitionLookup = Callable[[str], Optional[IntegrationDefinition]]


def describe_error(error: Exception) -> str:
    """Non-empty, bounded error message for an entry."""
    message = error.message if isinstance(error, BaseError) else str(error)
    message = message or type(error).__name__
    return message[: Limits.MAX_ERROR_MESSAGE_LENGTH]


class IntegrationDataCache:
    """Single-flight cache of integration fetch results."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        credential_service: Optional[CredentialService] = None,
        lock_pool: Optional[KeyedLockPool] = None,
        notifications: Optional[NotificationHub] = None,
        definition_lookup: Optional[DefinitionLookup] = None,
        cache_config: Optional[CacheConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            db_manager: Source of sessions for entry reads and commits
            credential_service: Credential store. Without one every fetch runs
                without credentials.
            lock_pool: Per-key locks, shared with the credential service and the reaper
            notifications: Receives an event after every successful commit
            definition_lookup: Current definition by ID, used to drop results of
                integrations deactivated while their fetch was running.
                Defaults to a database lookup.
            cache_config: Timeouts and backoff tuning (defaults to the global config)
            clock: Returns the current UTC time
        """
        self.db_manager = db_manager
        self.lock_pool = lock_pool or (credential_service.lock_pool if credential_service else KeyedLockPool())
        self.credentials = credential_service
        self.notifications = notifications or NotificationHub()
        self.definition_lookup = definition_lookup
        self.config = cache_config or get_config().cache
        self.clock = clock
        self.logger = get_logger()
        self._calls: Set[threading.Thread] = set()
        self._calls_lock = threading.Lock()

    @staticmethod
    def lock_key(integration_id: str, discriminator_id: str) -> Tuple[str, str, str]:
        return ("entry", integration_id, discriminator_id)

    # ==================== READ PATH ====================

    def get(self, integration_id: str, discriminator_id: str) -> Optional[IntegrationDataRead]:
        """Latest committed entry. Never waits for an in-flight fetch."""
        with self.db_manager.session_scope() as session:
            return IntegrationDataRepository(session).get(integration_id, discriminator_id)

    def needs_refresh(self, entry: Optional[IntegrationDataRead], now: Optional[datetime] = None) -> bool:
        if entry is None:
            return True
        return entry.is_stale(now or self.clock())

    def is_due(self, entry: Optional[IntegrationDataRead], now: Optional[datetime] = None) -> bool:
        """True when a fetch for the entry may start, respecting failure backoff."""
        if entry is None:
            return True
        return entry.is_due(now or self.clock())

    def touch(self, integration_id: str, discriminator_id: str) -> bool:
        """Record a read of the entry. Returns False when there is no entry yet."""
        with self.db_manager.session_scope() as session:
            return IntegrationDataRepository(session).touch(
                integration_id, discriminator_id, self.clock()
            )

    def is_in_flight(self, integration_id: str, discriminator_id: str) -> bool:
        return self.lock_pool.is_locked(self.lock_key(integration_id, discriminator_id))

    # ==================== REFRESH PATH ====================

    def fetch_and_store(
        self,
        definition: IntegrationDefinition,
        discriminator_id: str,
        organization_id: str,
        fetcher: Fetcher,
        options: Optional[Mapping[str, Any]] = None,
        widget_config_id: Optional[str] = None,
        widget_id: Optional[str] = None,
        skip_if_fresh: bool = False,
    ) -> Optional[IntegrationDataRead]:
        """
        Fetch and commit a new entry, or join the fetch already in flight.

        Args:
            definition: Integration to fetch for
            discriminator_id: Cache line to refresh
            organization_id: Organization the fetch runs for
            fetcher: Fetcher built for the definition
            options: Widget options passed to the fetcher
            widget_config_id: Widget instance the request came from, needed for
                widget-scoped credentials
            widget_id: Widget type, stored on the entry
            skip_if_fresh: Return the committed entry without fetching when it
                is not due for a refresh

        Returns:
            The committed entry. None only when a waiter timed out and nothing
            was ever committed for the key.

        Raises:
            PersistenceError: The entry could not be committed
        """
        key = self.lock_key(definition.id, discriminator_id)

        if not self.lock_pool.acquire(key, blocking=False):
            return self._wait_for_flight(key, definition.id, discriminator_id)

        try:
            with tenant_context(organization_id), OperationHandler(self.logger).operation(
                "integration_data_cache.fetch_and_store",
                integration_id=definition.id,
                discriminator_id=discriminator_id,
            ):
                if skip_if_fresh:
                    current = self.get(definition.id, discriminator_id)
                    if not self.is_due(current):
                        return current

                return self._refresh(
                    definition,
                    discriminator_id,
                    organization_id,
                    fetcher,
                    dict(options or {}),
                    widget_config_id,
                    widget_id,
                )
        finally:
            self.lock_pool.release(key)

    def _wait_for_flight(
        self, key: Tuple[str, str, str], integration_id: str, discriminator_id: str
    ) -> Optional[IntegrationDataRead]:
        timeout = self.config.lock_timeout_seconds
        if self.lock_pool.acquire(key, timeout=timeout):
            self.lock_pool.release(key)
        else:
            self.logger.warning(
                "Timed out waiting for in-flight fetch, serving last committed entry",
                extra={
                    "integration_id": integration_id,
                    "discriminator_id": discriminator_id,
                    "timeout_seconds": timeout,
                },
            )
        return self.get(integration_id, discriminator_id)

    def _refresh(
        self,
        definition: IntegrationDefinition,
        discriminator_id: str,
        organization_id: str,
        fetcher: Fetcher,
        options: Dict[str, Any],
        widget_config_id: Optional[str],
        widget_id: Optional[str],
    ) -> Optional[IntegrationDataRead]:
        started = time.monotonic()
        try:
            result = self._fetch_with_credentials(
                definition, organization_id, fetcher, options, widget_config_id
            )
        except Exception as e:
            self.logger.warning(
                f"Fetch failed: {type(e).__name__}: {describe_error(e)}",
                extra={"integration_id": definition.id, "discriminator_id": discriminator_id},
            )
            self._record_metric(definition.id, organization_id, "error", started)
            return self._commit_failure(
                definition, discriminator_id, organization_id, options, widget_id, e
            )

        self._record_metric(definition.id, organization_id, "success", started)

        if not self._is_active(definition.id):
            self.logger.info(
                "Integration deactivated during fetch, discarding result",
                extra={"integration_id": definition.id, "discriminator_id": discriminator_id},
            )
            return self.get(definition.id, discriminator_id)

        entry = self._commit_success(
            definition, discriminator_id, organization_id, options, widget_id, result
        )
        self.notifications.publish(
            IntegrationDataUpdated(
                integration_id=entry.integration_id,
                discriminator_id=entry.discriminator_id,
                organization_id=entry.organization_id,
                version=entry.version,
                widget_id=entry.widget_id,
                fetched_at=entry.fetched_at,
                payload=entry.payload,
            )
        )
        return entry

    def _fetch_with_credentials(
        self,
        definition: IntegrationDefinition,
        organization_id: str,
        fetcher: Fetcher,
        options: Dict[str, Any],
        widget_config_id: Optional[str],
    ) -> FetchResult:
        scope = (
            credential_scope_for(definition, organization_id, widget_config_id)
            if self.credentials
            else None
        )

        if scope is None:
            self._require_credentials(definition, None)
            return self._call(fetcher.fetch, None, options)

        # Held from read to write so a rotated token is never lost to a concurrent fetch
        with self.credentials.scope_lock(definition.id, scope):
            credentials = self.credentials.get_credentials(definition.id, organization_id, scope)
            self._require_credentials(definition, credentials)

            try:
                result = self._fetch_with_auth_retry(
                    definition, organization_id, fetcher, options, scope, credentials
                )
            except FetchError as e:
                if e.updated_credentials:
                    self.credentials.store_credentials(
                        definition.id, organization_id, scope, e.updated_credentials
                    )
                raise

            if result.credentials and result.credentials != credentials:
                self.credentials.store_credentials(
                    definition.id, organization_id, scope, result.credentials
                )
            return result

    def _fetch_with_auth_retry(
        self,
        definition: IntegrationDefinition,
        organization_id: str,
        fetcher: Fetcher,
        options: Dict[str, Any],
        scope: ScopeRef,
        credentials: Optional[Dict[str, Any]],
    ) -> FetchResult:
        try:
            return self._call(fetcher.fetch, credentials, options)
        except FetchAuthError as e:
            if not fetcher.supports_refresh or not credentials:
                raise
            stale = e.updated_credentials or credentials

        self.logger.info(
            "Upstream rejected credentials, refreshing once",
            extra={"integration_id": definition.id, "scope_type": scope[0]},
        )
        try:
            refreshed = self._call(fetcher.refresh_credentials, stale)
        except FetchError:
            self.credentials.mark_invalid(definition.id, scope)
            raise

        try:
            result = self._call(fetcher.fetch, refreshed, options)
        except FetchError as e:
            e.updated_credentials = e.updated_credentials or refreshed
            raise

        if result.credentials is None:
            result = result.model_copy(update={"credentials": refreshed})
        return result

    @staticmethod
    def _require_credentials(
        definition: IntegrationDefinition, credentials: Optional[Dict[str, Any]]
    ) -> None:
        if credentials is None and not definition.credentials_optional:
            raise CredentialNotFoundError(
                "No credentials configured for integration",
                integration_id=definition.id,
                credential_scope=definition.credential_scope.value,
            )

    def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        """
        Run a fetcher call on its own thread, bounded by the fetch timeout.

        The timeout starts with the call. A call that overruns is abandoned and
        its thread ends when the fetcher's transport timeout fires. Calls for
        other keys never queue behind it.
        """
        timeout = self.config.fetch_timeout_seconds
        outcome: Dict[str, Any] = {}

        def run() -> None:
            try:
                outcome["result"] = func(*args)
            except Exception as e:
                outcome["error"] = e
            finally:
                with self._calls_lock:
                    self._calls.discard(worker)

        worker = threading.Thread(target=run, name="integration-fetch", daemon=True)
        with self._calls_lock:
            self._calls.add(worker)
        worker.start()
        worker.join(timeout)

        if worker.is_alive():
            self.logger.warning(
                "Abandoning fetch call that exceeded its timeout",
                extra={"timeout_seconds": timeout, "call": getattr(func, "__name__", type(func).__name__)},
            )
            raise FetchTimeoutError(f"Fetch exceeded {timeout}s")
        if "error" in outcome:
            raise outcome["error"]

        result = outcome.get("result")
        if isinstance(result, Mapping) and not isinstance(result, FetchResult):
            return FetchResult(data=dict(result))
        return result

    # ==================== COMMIT ====================

    def _is_active(self, integration_id: str) -> bool:
        if self.definition_lookup is not None:
            current = self.definition_lookup(integration_id)
        else:
            with self.db_manager.session_scope() as session:
                current = IntegrationRepository(session).get(integration_id)
        return current is not None and current.is_active

    def _interval(self, definition: IntegrationDefinition) -> int:
        return definition.interval_seconds or Limits.DEFAULT_PULL_INTERVAL_SECONDS

    def _commit_success(
        self,
        definition: IntegrationDefinition,
        discriminator_id: str,
        organization_id: str,
        options: Dict[str, Any],
        widget_id: Optional[str],
        result: FetchResult,
    ) -> IntegrationDataRead:
        now = self.clock()

        def write(repository: IntegrationDataRepository) -> IntegrationDataRead:
            previous = repository.get(definition.id, discriminator_id)
            return repository.upsert(
                definition.id,
                discriminator_id,
                organization_id=organization_id,
                widget_id=widget_id or (previous.widget_id if previous else definition.widget_id),
                payload=result.data,
                version=(previous.version if previous else 0) + 1,
                status=EntryStatus.OK.value,
                error_message=None,
                consecutive_failures=0,
                fetched_at=now,
                refresh_at=now + timedelta(seconds=self._interval(definition)),
                widget_options=options,
                **({} if previous else {"last_used_at": now}),
            )

        entry = self._commit(definition.id, discriminator_id, write)
        self.logger.info(
            "Integration data committed",
            extra={
                "integration_id": definition.id,
                "discriminator_id": discriminator_id,
                "version": entry.version,
            },
        )
        return entry

    def _commit_failure(
        self,
        definition: IntegrationDefinition,
        discriminator_id: str,
        organization_id: str,
        options: Dict[str, Any],
        widget_id: Optional[str],
        error: Exception,
    ) -> IntegrationDataRead:
        now = self.clock()

        def write(repository: IntegrationDataRepository) -> IntegrationDataRead:
            previous = repository.get(definition.id, discriminator_id)
            failures = (previous.consecutive_failures if previous else 0) + 1
            delay = calculate_refresh_backoff(self._interval(definition), failures, self.config)
            fields: Dict[str, Any] = {
                "organization_id": organization_id,
                "status": EntryStatus.ERROR.value,
                "error_message": describe_error(error),
                "consecutive_failures": failures,
                "fetched_at": now,
                "refresh_at": now + timedelta(seconds=delay),
                "widget_options": options,
            }
            if previous is None:
                # Payload and version stay untouched on existing entries
                fields.update(
                    payload={},
                    version=0,
                    widget_id=widget_id or definition.widget_id,
                    last_used_at=now,
                )
            return repository.upsert(definition.id, discriminator_id, **fields)

        return self._commit(definition.id, discriminator_id, write)

    def _commit(
        self,
        integration_id: str,
        discriminator_id: str,
        write: Callable[[IntegrationDataRepository], IntegrationDataRead],
    ) -> IntegrationDataRead:
        try:
            with self.db_manager.session_scope() as session:
                return write(IntegrationDataRepository(session))
        except PersistenceError:
            raise
        except (RepositoryError, SQLAlchemyError) as e:
            raise PersistenceError(
                "Failed to commit integration data",
                error_code=ErrorCode.DATABASE_ERROR,
                cause=e,
                integration_id=integration_id,
                discriminator_id=discriminator_id,
            ) from e

    def _record_metric(self, integration_id: str, organization_id: str, status: str, started: float):
        app_config = get_config()
        if not app_config.features.enable_metrics or not app_config.queue.connection_string:
            return
        process_metrics(
            [
                FetchMetric.fetch_duration(
                    integration_id, organization_id, status, (time.monotonic() - started) * 1000
                )
            ]
        )

    def shutdown(self, wait: bool = True) -> None:
        """Wait up to one fetch timeout for calls still running, abandoned ones included."""
        if not wait:
            return
        with self._calls_lock:
            calls = list(self._calls)
        deadline = time.monotonic() + self.config.fetch_timeout_seconds
        for call in calls:
            call.join(max(deadline - time.monotonic(), 0))
