# ABOUTME: Usage accountant tests
# ABOUTME: Verifies usage logging, monthly counters, billing periods, history and concurrent increments

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from sqlalchemy import false

from cn_api.models.database import APIUsage, MonthlyUsageSummary
from cn_api.services.exceptions import LoggingFailure, StorageUnavailable
from cn_api.services import usage_accountant
from cn_api.services.usage_accountant import MAX_INCREMENT_ATTEMPTS, UsageAccountant


@pytest.fixture
def api_key(make_api_key):
    return make_api_key()


@pytest.fixture
def accountant(database, clock):
    return UsageAccountant(database.SessionLocal, clock=clock)


def test_record_logs_call_and_creates_summary(accountant, api_key, db_session):
    accountant.record(api_key.id, "/products/000001", 200)

    log = db_session.query(APIUsage).filter(APIUsage.api_key_id == api_key.id).one()
    assert log.endpoint == "/products/000001"
    assert log.response_status == 200
    assert log.billing_month == "2025-11"

    summary = db_session.get(MonthlyUsageSummary, (api_key.id, "2025-11"))
    assert summary.total_calls == 1


def test_record_increments_existing_summary(accountant, api_key):
    for _ in range(3):
        accountant.record(api_key.id, "/products/000001", 200)

    assert accountant.current_usage(api_key.id) == 3


def test_record_counts_failed_responses(accountant, api_key, db_session):
    accountant.record(api_key.id, "/products/missing", 404)

    assert accountant.current_usage(api_key.id) == 1
    assert db_session.query(APIUsage).one().response_status == 404


def test_current_usage_is_zero_without_summary(accountant, api_key):
    assert accountant.current_usage(api_key.id) == 0


def test_month_boundary_starts_a_new_counter(accountant, api_key, clock):
    clock.now = datetime(2025, 11, 30, 23, 59, 59, tzinfo=timezone.utc)
    accountant.record(api_key.id, "/products/000001", 200)
    accountant.record(api_key.id, "/products/000001", 200)

    clock.now = datetime(2025, 12, 1, 0, 0, 0, tzinfo=timezone.utc)
    accountant.record(api_key.id, "/products/000001", 200)

    assert accountant.current_period() == "2025-12"
    assert accountant.current_usage(api_key.id) == 1
    assert accountant.current_usage(api_key.id, "2025-11") == 2


def test_history_is_newest_first_and_bounded(accountant, api_key, set_usage):
    set_usage(api_key.id, 10, "2025-08")
    set_usage(api_key.id, 30, "2025-10")
    set_usage(api_key.id, 20, "2025-09")
    set_usage(api_key.id, 40, "2025-11")

    history = list(accountant.history(api_key.id, 3))

    assert [month.billing_month for month in history] == ["2025-11", "2025-10", "2025-09"]
    assert [month.total_calls for month in history] == [40, 30, 20]


def test_history_can_be_iterated_again(accountant, api_key, set_usage):
    set_usage(api_key.id, 5, "2025-11")
    history = accountant.history(api_key.id, 3)

    first = list(history)
    accountant.record(api_key.id, "/products/000001", 200)
    second = list(history)

    assert first[0].total_calls == 5
    assert second[0].total_calls == 6


def test_history_with_no_periods_is_empty(accountant, api_key, set_usage):
    set_usage(api_key.id, 5, "2025-11")
    assert list(accountant.history(api_key.id, 0)) == []


def test_history_reads_nothing_until_iterated(broken_database):
    accountant = UsageAccountant(broken_database.SessionLocal)

    history = accountant.history("some-key", 3)

    with pytest.raises(StorageUnavailable):
        list(history)


def test_record_never_raises_and_reports_failures(broken_database):
    failures = []
    accountant = UsageAccountant(broken_database.SessionLocal, error_sink=failures.append)

    accountant.record("some-key", "/products/000001", 200)

    assert len(failures) == 2
    assert all(isinstance(failure, LoggingFailure) for failure in failures)
    assert [failure.stage for failure in failures] == ["append usage log", "increment monthly usage"]
    assert failures[0].__cause__ is not None


def test_log_failure_does_not_stop_counter(database, api_key, clock):
    failures = []
    accountant = UsageAccountant(database.SessionLocal, clock=clock, error_sink=failures.append)
    APIUsage.__table__.drop(database.engine)

    accountant.record(api_key.id, "/products/000001", 200)

    assert [failure.stage for failure in failures] == ["append usage log"]
    assert accountant.current_usage(api_key.id) == 1


def test_failing_error_sink_is_contained(broken_database):
    def exploding_sink(failure):
        raise RuntimeError("sink down")

    accountant = UsageAccountant(broken_database.SessionLocal, error_sink=exploding_sink)

    accountant.record("some-key", "/products/000001", 200)


@pytest.mark.parametrize("use_atomic_upsert", [True, False], ids=["upsert", "update-or-insert"])
@pytest.mark.parametrize("calls", [2, 10, 100])
def test_concurrent_records_are_all_counted(database, api_key, clock, calls, use_atomic_upsert):
    failures = []
    accountant = UsageAccountant(database.SessionLocal, clock=clock,
                                 error_sink=failures.append,
                                 use_atomic_upsert=use_atomic_upsert)

    with ThreadPoolExecutor(max_workers=10) as pool:
        for _ in range(calls):
            pool.submit(accountant.record, api_key.id, "/products/000001", 200)

    assert failures == []
    assert accountant.current_usage(api_key.id) == calls


def _miss_existing_rows(monkeypatch, misses=None):
    """Makes the first `misses` counter UPDATEs (all when None) match no row."""
    real_update = usage_accountant.update
    calls = []

    def update(table):
        calls.append(table)
        statement = real_update(table)
        if misses is None or len(calls) <= misses:
            statement = statement.where(false())
        return statement

    monkeypatch.setattr(usage_accountant, "update", update)
    return calls


def test_conflicting_insert_retries_the_update(database, api_key, clock, set_usage, monkeypatch):
    set_usage(api_key.id, 5, "2025-11")
    failures = []
    accountant = UsageAccountant(database.SessionLocal, clock=clock,
                                 error_sink=failures.append, use_atomic_upsert=False)
    update_calls = _miss_existing_rows(monkeypatch, misses=1)

    accountant.record(api_key.id, "/products/000001", 200)

    assert failures == []
    assert len(update_calls) == 2
    assert accountant.current_usage(api_key.id) == 6


def test_increment_gives_up_after_repeated_conflicts(database, api_key, clock, set_usage, monkeypatch):
    set_usage(api_key.id, 5, "2025-11")
    failures = []
    accountant = UsageAccountant(database.SessionLocal, clock=clock,
                                 error_sink=failures.append, use_atomic_upsert=False)
    update_calls = _miss_existing_rows(monkeypatch)

    accountant.record(api_key.id, "/products/000001", 200)

    assert [failure.stage for failure in failures] == ["increment monthly usage"]
    assert isinstance(failures[0].__cause__, StorageUnavailable)
    assert len(update_calls) == MAX_INCREMENT_ATTEMPTS
    assert accountant.current_usage(api_key.id) == 5
