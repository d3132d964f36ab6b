"""
Shared test fixtures.

Provides a file-backed SQLite database (tables created and dropped per
test), an isolated configuration, a controllable clock and the wired-up
cache, scheduler and services the tests exercise.
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from tests.fixtures.factories import configure_factories
from tests.fixtures.fetchers import StubFetcher
from widget_integration_core.cache.integration_data_cache import IntegrationDataCache
from widget_integration_core.cache.key_locks import KeyedLockPool
from widget_integration_core.config import (
    AppConfig,
    CacheConfig,
    FeatureFlags,
    QueueConfig,
    ReaperConfig,
    SchedulerConfig,
    reset_config,
    set_config,
)
from widget_integration_core.db import (
    DatabaseConfig,
    DatabaseManager,
    import_all_models,
    set_db_manager,
)
from widget_integration_core.db.db_config import Base
from widget_integration_core.exceptions import clear_correlation_id
from widget_integration_core.fetchers.registry import FetcherRegistry
from widget_integration_core.notifications import NotificationHub
from widget_integration_core.scheduling import DefinitionRegistry, PollScheduler, StaleEntryReaper
from widget_integration_core.services import CredentialService, WidgetDataService
from widget_integration_core.utils.logger import reset_logging


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


# ==================== CONFIGURATION ====================


@pytest.fixture(autouse=True)
def app_config():
    """Isolated configuration with queues and metrics switched off."""
    config = AppConfig(
        environment="test",
        queue=QueueConfig(connection_string=""),
        features=FeatureFlags(
            enable_metrics=False, enable_logs_queue=False, enable_update_notifications_queue=False
        ),
        cache=CacheConfig(fetch_timeout_seconds=2, lock_timeout_seconds=5),
        scheduler=SchedulerConfig(workers=2, shutdown_grace_seconds=5),
        reaper=ReaperConfig(retention_days=30),
    )
    set_config(config)
    yield config
    reset_config()
    reset_logging()
    clear_correlation_id()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ==================== DATABASE ====================


@pytest.fixture(scope="session")
def db_config(tmp_path_factory) -> DatabaseConfig:
    """File-backed SQLite so worker threads share one database."""
    return DatabaseConfig(
        db_type="sqlite",
        database=str(tmp_path_factory.mktemp("db") / "widget_integrations.db"),
        echo=False,
        development_mode=True,
    )


@pytest.fixture(scope="session")
def db_manager(db_config: DatabaseConfig) -> DatabaseManager:
    import_all_models()
    manager = DatabaseManager(db_config)
    set_db_manager(manager)
    yield manager
    set_db_manager(None)
    manager.close()


@pytest.fixture
def db_session(db_manager: DatabaseManager) -> Session:
    """
    Session for factories and direct assertions.

    Tables are created before and dropped after every test.
    """
    Base.metadata.create_all(db_manager.engine)
    session = db_manager.session_factory()
    configure_factories(session)

    yield session

    session.rollback()
    session.close()
    Base.metadata.drop_all(db_manager.engine)


# ==================== COMPONENTS ====================


@pytest.fixture
def lock_pool() -> KeyedLockPool:
    return KeyedLockPool()


@pytest.fixture
def notifications() -> NotificationHub:
    return NotificationHub()


@pytest.fixture
def credential_service(db_session, db_manager, lock_pool) -> CredentialService:
    return CredentialService(db_manager, lock_pool=lock_pool, lock_timeout=5)


@pytest.fixture
def definitions(db_session, db_manager) -> DefinitionRegistry:
    return DefinitionRegistry(db_manager=db_manager)


@pytest.fixture
def stub_fetcher() -> StubFetcher:
    return StubFetcher()


@pytest.fixture
def fetchers(stub_fetcher) -> FetcherRegistry:
    """Built-in fetchers plus "stub", which always returns the shared stub_fetcher."""
    registry = FetcherRegistry.with_builtin_fetchers()
    registry.register(StubFetcher.name, stub_fetcher.bind)
    return registry


@pytest.fixture
def cache(db_manager, credential_service, lock_pool, notifications, definitions, app_config, clock):
    cache = IntegrationDataCache(
        db_manager,
        credential_service=credential_service,
        lock_pool=lock_pool,
        notifications=notifications,
        definition_lookup=definitions.get,
        cache_config=app_config.cache,
        clock=clock,
    )
    yield cache
    cache.shutdown(wait=False)


@pytest.fixture
def scheduler(cache, definitions, fetchers, app_config):
    scheduler = PollScheduler(
        cache, definitions, fetchers, scheduler_config=app_config.scheduler
    )
    yield scheduler
    scheduler.shutdown(wait=True)


@pytest.fixture
def reaper(db_manager, definitions, lock_pool, scheduler, app_config, clock):
    return StaleEntryReaper(
        db_manager,
        definitions,
        lock_pool,
        scheduler=scheduler,
        reaper_config=app_config.reaper,
        clock=clock,
    )


@pytest.fixture
def widget_data_service(db_manager, cache, definitions, scheduler):
    return WidgetDataService(db_manager, cache, definitions, scheduler)


# ==================== TEST DATA ====================


@pytest.fixture
def organization_id() -> str:
    return "org-acme"


@pytest.fixture
def make_integration(db_session, definitions):
    """
    Create an integration row and reload the definition registry.

    Returns the IntegrationDefinition snapshot.
    """
    from tests.fixtures.factories import WidgetIntegrationFactory
    from widget_integration_core.schemas import IntegrationDefinition

    def _make(**overrides) -> IntegrationDefinition:
        row = WidgetIntegrationFactory.create(**overrides)
        definitions.reload()
        return IntegrationDefinition.model_validate(row)

    return _make


@pytest.fixture
def make_widget_config(db_session):
    from tests.fixtures.factories import WidgetConfigFactory
    from widget_integration_core.schemas import WidgetConfigRead

    def _make(**overrides) -> WidgetConfigRead:
        return WidgetConfigRead.model_validate(WidgetConfigFactory.create(**overrides))

    return _make
