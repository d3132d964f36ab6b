"""
Integration tests for IntegrationDataCache against the SQLite database.

Fetches are scripted through StubFetcher; concurrency tests use real
threads, a Barrier and the cache's own lock pool.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from tests.fixtures.fetchers import RefreshingStubFetcher, StubFetcher
from widget_integration_core.cache.integration_data_cache import IntegrationDataCache
from widget_integration_core.config import CacheConfig
from widget_integration_core.constants import EntryStatus
from widget_integration_core.exceptions import FetchAuthError, FetchTransportError, PersistenceError
from widget_integration_core.fetchers import FetchResult
from widget_integration_core.repositories import IntegrationDataRepository, IntegrationRepository

ORG = "org-acme"

pytestmark = pytest.mark.integration


@pytest.fixture
def definition(make_integration):
    return make_integration()


@pytest.fixture
def fetch(cache, stub_fetcher):
    """fetch_and_store for the organization-shared key with the stub fetcher."""

    def _fetch(definition, discriminator_id=ORG, fetcher=None, target=None, **kwargs):
        fetcher = (fetcher or stub_fetcher).bind(definition)
        return (target or cache).fetch_and_store(definition, discriminator_id, ORG, fetcher, **kwargs)

    return _fetch


class TestFetchAndStore:
    def test_first_success(self, definition, fetch, clock):
        entry = fetch(definition)

        assert entry.status == EntryStatus.OK
        assert entry.version == 1
        assert entry.payload == {"call": 1}
        assert entry.error_message is None
        assert entry.fetched_at == clock.now
        assert entry.last_used_at == clock.now
        assert entry.widget_id == "weather"

    def test_refresh_at_is_one_interval_after_fetch(self, definition, fetch):
        entry = fetch(definition)

        assert entry.refresh_at - entry.fetched_at == timedelta(seconds=definition.pull_interval_seconds)

    def test_version_counts_successes(self, definition, fetch, cache, clock):
        for _ in range(5):
            clock.advance(definition.pull_interval_seconds)
            fetch(definition)

        entry = cache.get(definition.id, ORG)
        assert entry.version == 5
        assert entry.payload == {"call": 5}

    def test_options_snapshot_is_stored(self, definition, fetch, stub_fetcher):
        entry = fetch(definition, options={"city": "Paris", "units": "metric"})

        assert entry.widget_options == {"city": "Paris", "units": "metric"}
        assert stub_fetcher.calls[0][1] == {"city": "Paris", "units": "metric"}

    def test_skip_if_fresh(self, definition, fetch, stub_fetcher, clock):
        fetch(definition)

        entry = fetch(definition, skip_if_fresh=True)
        assert entry.version == 1
        assert stub_fetcher.call_count == 1

        clock.advance(definition.pull_interval_seconds)
        assert fetch(definition, skip_if_fresh=True).version == 2

    def test_reads_do_not_extend_existing_usage(self, definition, fetch, clock):
        first = fetch(definition)
        clock.advance(definition.pull_interval_seconds)

        second = fetch(definition)

        assert second.last_used_at == first.last_used_at

    def test_notification_after_commit(self, definition, fetch, notifications):
        listener = Mock()
        notifications.subscribe(listener)

        entry = fetch(definition)

        event = listener.call_args.args[0]
        assert (event.integration_id, event.discriminator_id, event.organization_id) == (definition.id, ORG, ORG)
        assert event.version == entry.version
        assert event.payload == {"call": 1}

    def test_failing_listener_does_not_fail_fetch(self, definition, fetch, notifications):
        notifications.subscribe(Mock(side_effect=RuntimeError("listener down")))

        assert fetch(definition).status == EntryStatus.OK


class TestFailures:
    def test_failure_keeps_last_good_payload(self, definition, fetch, stub_fetcher, clock):
        good = fetch(definition)
        clock.advance(definition.pull_interval_seconds)
        stub_fetcher.queue(FetchTransportError("Upstream returned HTTP 503"))

        failed = fetch(definition)

        assert failed.status == EntryStatus.ERROR
        assert failed.error_message == "Upstream returned HTTP 503"
        assert failed.payload == good.payload
        assert failed.version == good.version
        assert failed.consecutive_failures == 1
        assert failed.fetched_at == clock.now

    def test_backoff_is_earlier_than_interval(self, definition, fetch, stub_fetcher, clock):
        interval = timedelta(seconds=definition.pull_interval_seconds)
        stub_fetcher.queue(*[FetchTransportError("down")] * 4)

        delays = []
        for _ in range(4):
            entry = fetch(definition)
            delays.append(entry.refresh_at - entry.fetched_at)
            clock.advance(delays[-1].total_seconds())

        assert delays[0] == timedelta(seconds=30)
        assert delays[1] == timedelta(seconds=60)
        assert all(delay < interval for delay in delays)
        assert delays == sorted(delays)

    def test_backoff_gives_up_after_failure_budget(self, definition, fetch, stub_fetcher, app_config):
        budget = app_config.cache.max_consecutive_failures
        stub_fetcher.queue(*[FetchTransportError("down")] * (budget + 1))

        for _ in range(budget + 1):
            entry = fetch(definition)

        assert entry.consecutive_failures == budget + 1
        assert entry.refresh_at - entry.fetched_at == timedelta(seconds=definition.pull_interval_seconds)

    def test_success_clears_error(self, definition, fetch, stub_fetcher, clock):
        stub_fetcher.queue(FetchTransportError("down"))
        fetch(definition)
        clock.advance(30)

        entry = fetch(definition)

        assert entry.status == EntryStatus.OK
        assert entry.error_message is None
        assert entry.consecutive_failures == 0
        assert entry.version == 1

    def test_skip_if_fresh_waits_out_backoff(self, definition, fetch, stub_fetcher, clock):
        stub_fetcher.queue(FetchTransportError("down"))
        failed = fetch(definition)

        assert fetch(definition, skip_if_fresh=True).consecutive_failures == 1
        assert stub_fetcher.call_count == 1

        clock.advance((failed.refresh_at - clock.now).total_seconds())
        assert fetch(definition, skip_if_fresh=True).status == EntryStatus.OK
        assert stub_fetcher.call_count == 2

    def test_first_fetch_failure_creates_error_entry(self, definition, fetch, stub_fetcher):
        stub_fetcher.queue(ValueError("unexpected body"))

        entry = fetch(definition)

        assert entry.status == EntryStatus.ERROR
        assert entry.version == 0
        assert entry.payload == {}
        assert entry.error_message == "unexpected body"

    def test_no_notification_on_failure(self, definition, fetch, stub_fetcher, notifications):
        listener = Mock()
        notifications.subscribe(listener)
        stub_fetcher.queue(FetchTransportError("down"))

        fetch(definition)

        listener.assert_not_called()

    def test_fetch_timeout(
        self, definition, fetch, stub_fetcher, db_manager, lock_pool, definitions, clock
    ):
        slow_cache = IntegrationDataCache(
            db_manager,
            lock_pool=lock_pool,
            definition_lookup=definitions.get,
            cache_config=CacheConfig(fetch_timeout_seconds=0.2, lock_timeout_seconds=1),
            clock=clock,
        )
        stub_fetcher.block()
        try:
            entry = fetch(definition, target=slow_cache)
        finally:
            stub_fetcher.unblock()
            slow_cache.shutdown(wait=True)

        assert entry.status == EntryStatus.ERROR
        assert "0.2s" in entry.error_message
        assert not slow_cache.is_in_flight(definition.id, ORG)

    def test_hung_fetches_do_not_time_out_other_keys(
        self, make_integration, fetch, db_manager, lock_pool, definitions, clock
    ):
        hung_definitions = [make_integration() for _ in range(3)]
        healthy = make_integration()
        short_cache = IntegrationDataCache(
            db_manager,
            lock_pool=lock_pool,
            definition_lookup=definitions.get,
            cache_config=CacheConfig(fetch_timeout_seconds=0.5, lock_timeout_seconds=1),
            clock=clock,
        )
        hung = StubFetcher()
        hung.block()
        try:
            timed_out = [fetch(d, fetcher=hung, target=short_cache) for d in hung_definitions]
            entry = fetch(healthy, fetcher=StubFetcher(), target=short_cache)
        finally:
            hung.unblock()
            short_cache.shutdown(wait=True)

        assert [e.status for e in timed_out] == [EntryStatus.ERROR] * 3
        assert entry.status == EntryStatus.OK
        assert entry.payload == {"call": 1}

    def test_persistence_error_releases_lock(self, definition, fetch, cache):
        with patch.object(IntegrationDataRepository, "upsert", side_effect=SQLAlchemyError("disk I/O error")):
            with pytest.raises(PersistenceError):
                fetch(definition)

        assert not cache.is_in_flight(definition.id, ORG)
        assert fetch(definition).version == 1


class TestSingleFlight:
    def test_concurrent_callers_share_one_fetch(self, definition, fetch, stub_fetcher, cache):
        callers = 8
        barrier = threading.Barrier(callers)
        stub_fetcher.block()

        def call():
            barrier.wait(5)
            return fetch(definition)

        with ThreadPoolExecutor(max_workers=callers) as pool:
            futures = [pool.submit(call) for _ in range(callers)]
            assert stub_fetcher.started.wait(5)
            # Let every caller reach the lock before the leader commits
            threading.Event().wait(0.3)
            assert cache.is_in_flight(definition.id, ORG)
            stub_fetcher.unblock()
            entries = [f.result(timeout=10) for f in futures]

        assert stub_fetcher.call_count == 1
        assert {e.version for e in entries} == {1}
        assert not cache.is_in_flight(definition.id, ORG)

    def test_readers_see_last_committed_entry_during_fetch(self, definition, fetch, stub_fetcher, cache, clock):
        fetch(definition)
        clock.advance(definition.pull_interval_seconds)
        stub_fetcher.block()

        refresher = threading.Thread(target=fetch, args=(definition,))
        refresher.start()
        try:
            assert stub_fetcher.started.wait(5)
            during = cache.get(definition.id, ORG)
            assert cache.needs_refresh(during)
        finally:
            stub_fetcher.unblock()
            refresher.join(10)

        assert during.version == 1
        assert cache.get(definition.id, ORG).version == 2

    def test_waiter_timeout_serves_last_committed_entry(
        self, definition, fetch, stub_fetcher, db_manager, lock_pool, definitions, clock
    ):
        impatient = IntegrationDataCache(
            db_manager,
            lock_pool=lock_pool,
            definition_lookup=definitions.get,
            cache_config=CacheConfig(fetch_timeout_seconds=2, lock_timeout_seconds=0.2),
            clock=clock,
        )
        fetch(definition, target=impatient)
        acquired = threading.Event()
        release = threading.Event()

        def hold():
            with lock_pool.hold(IntegrationDataCache.lock_key(definition.id, ORG)):
                acquired.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        acquired.wait(5)
        try:
            entry = fetch(definition, target=impatient)
        finally:
            release.set()
            holder.join()
            impatient.shutdown()

        assert entry.version == 1
        assert stub_fetcher.call_count == 1

    def test_different_keys_fetch_in_parallel(self, make_integration, fetch, stub_fetcher):
        definition = make_integration(discriminator_type="widget_config", credential_scope="widget")
        stub_fetcher.block()

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(fetch, definition, f"wc-{i}", widget_config_id=f"wc-{i}") for i in range(2)
            ]
            threading.Event().wait(0.3)
            assert stub_fetcher.call_count == 2
            stub_fetcher.unblock()
            assert [f.result(timeout=10).version for f in futures] == [1, 1]


class TestDeactivation:
    def test_result_discarded_when_deactivated_during_fetch(
        self, definition, fetch, stub_fetcher, cache, db_manager, definitions, notifications
    ):
        listener = Mock()
        notifications.subscribe(listener)
        stub_fetcher.block()
        results = []

        fetcher_thread = threading.Thread(target=lambda: results.append(fetch(definition)))
        fetcher_thread.start()
        try:
            assert stub_fetcher.started.wait(5)
            with db_manager.session_scope() as session:
                IntegrationRepository(session).set_active(definition.id, False)
            definitions.reload()
        finally:
            stub_fetcher.unblock()
            fetcher_thread.join(10)

        assert results == [None]
        assert cache.get(definition.id, ORG) is None
        listener.assert_not_called()

    def test_committed_entry_untouched_when_deactivated(
        self, definition, fetch, stub_fetcher, cache, db_manager, clock
    ):
        fetch(definition)
        clock.advance(definition.pull_interval_seconds)
        with db_manager.session_scope() as session:
            IntegrationRepository(session).set_active(definition.id, False)

        # No definition lookup: falls back to the database
        db_cache = IntegrationDataCache(db_manager, lock_pool=cache.lock_pool, clock=clock)
        try:
            entry = fetch(definition, target=db_cache)
        finally:
            db_cache.shutdown()

        assert entry.version == 1
        assert entry.payload == {"call": 1}


class TestCredentials:
    @pytest.fixture
    def definition(self, make_integration):
        return make_integration(
            widget_id="social",
            credential_scope="widget",
            discriminator_type="widget_config",
            pull_config={"fetcher": "stub", "auth_type": "oauth2"},
        )

    @pytest.fixture
    def scope(self):
        return ("widget", "wc-1")

    def test_missing_credentials_fail_without_fetching(self, definition, fetch, stub_fetcher):
        entry = fetch(definition, "wc-1", widget_config_id="wc-1")

        assert entry.status == EntryStatus.ERROR
        assert entry.error_message == "No credentials configured for integration"
        assert stub_fetcher.call_count == 0

    def test_widget_scope_without_widget_instance(self, definition, fetch, stub_fetcher):
        entry = fetch(definition, "wc-1")

        assert entry.status == EntryStatus.ERROR
        assert stub_fetcher.call_count == 0

    def test_fetch_uses_scope_credentials(self, definition, fetch, stub_fetcher, credential_service, scope):
        credential_service.store_credentials(definition.id, ORG, scope, {"access_token": "t1"})

        entry = fetch(definition, "wc-1", widget_config_id="wc-1")

        assert entry.status == EntryStatus.OK
        assert stub_fetcher.calls[0][0] == {"access_token": "t1"}

    def test_rotated_credentials_are_persisted(self, definition, fetch, stub_fetcher, credential_service, scope):
        credential_service.store_credentials(definition.id, ORG, scope, {"access_token": "t1"})
        stub_fetcher.queue(FetchResult(data={"posts": []}, credentials={"access_token": "t2"}))

        fetch(definition, "wc-1", widget_config_id="wc-1")

        assert credential_service.get_credentials(definition.id, ORG, scope) == {"access_token": "t2"}

    def test_credentials_rotated_before_failure_are_persisted(
        self, definition, fetch, stub_fetcher, credential_service, scope
    ):
        credential_service.store_credentials(definition.id, ORG, scope, {"access_token": "t1"})
        stub_fetcher.queue(FetchTransportError("down", updated_credentials={"access_token": "t2"}))

        entry = fetch(definition, "wc-1", widget_config_id="wc-1")

        assert entry.status == EntryStatus.ERROR
        assert credential_service.get_credentials(definition.id, ORG, scope) == {"access_token": "t2"}

    def test_auth_failure_refreshes_once_and_retries(self, definition, fetch, credential_service, scope):
        fetcher = RefreshingStubFetcher()
        fetcher.refreshed_credentials = {"access_token": "t2", "refresh_token": "r1"}
        fetcher.queue(FetchAuthError(), {"posts": [1]})
        credential_service.store_credentials(
            definition.id, ORG, scope, {"access_token": "t1", "refresh_token": "r1"}
        )

        entry = fetch(definition, "wc-1", fetcher=fetcher, widget_config_id="wc-1")

        assert entry.status == EntryStatus.OK
        assert entry.payload == {"posts": [1]}
        assert fetcher.refresh_calls == [{"access_token": "t1", "refresh_token": "r1"}]
        assert fetcher.calls[1][0]["access_token"] == "t2"
        assert credential_service.get_credentials(definition.id, ORG, scope)["access_token"] == "t2"

    def test_failed_refresh_marks_credentials_invalid(self, definition, fetch, credential_service, scope):
        fetcher = RefreshingStubFetcher()
        fetcher.queue(FetchAuthError())
        credential_service.store_credentials(definition.id, ORG, scope, {"access_token": "t1"})

        entry = fetch(definition, "wc-1", fetcher=fetcher, widget_config_id="wc-1")

        assert entry.status == EntryStatus.ERROR
        assert fetcher.call_count == 1
        assert credential_service.get_credentials(definition.id, ORG, scope) is None

    def test_auth_failure_without_refresh_support(self, definition, fetch, stub_fetcher, credential_service, scope):
        credential_service.store_credentials(definition.id, ORG, scope, {"access_token": "t1"})
        stub_fetcher.queue(FetchAuthError())

        entry = fetch(definition, "wc-1", widget_config_id="wc-1")

        assert entry.status == EntryStatus.ERROR
        assert stub_fetcher.refresh_calls == []
        assert credential_service.get_credentials(definition.id, ORG, scope) == {"access_token": "t1"}
