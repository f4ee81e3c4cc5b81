# ABOUTME: Usage logging and monthly call counters
# ABOUTME: Appends api_usage rows and upserts monthly_usage_summary atomically per call

import logging
from datetime import datetime
from typing import Callable, Iterator

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from cn_api.models.database import APIUsage, MonthlyUsageSummary
from cn_api.models.schemas import MonthlyUsage
from cn_api.services.exceptions import LoggingFailure, StorageUnavailable
from cn_api.utils.billing_period import billing_month, utc_now

logger = logging.getLogger(__name__)

# Dialects whose insert() supports ON CONFLICT ... DO UPDATE
UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}

# Attempts for the update-then-insert path before giving up on a call
MAX_INCREMENT_ATTEMPTS = 5


def log_failure(failure: LoggingFailure) -> None:
    """Default observability sink: log the failure with its cause."""
    logger.error("%s", failure, exc_info=failure.__cause__)


class UsageHistory:
    """
    Most recent billing months for a key, newest first.

    The query runs each time the object is iterated, so it can be iterated
    more than once and never runs if nobody iterates it.
    """

    def __init__(self, session_factory, api_key_id: str, periods: int):
        self._session_factory = session_factory
        self.api_key_id = api_key_id
        self.periods = periods

    def __iter__(self) -> Iterator[MonthlyUsage]:
        if self.periods <= 0:
            return
        stmt = (
            select(MonthlyUsageSummary)
            .where(MonthlyUsageSummary.api_key_id == self.api_key_id)
            .order_by(MonthlyUsageSummary.billing_month.desc())
            .limit(self.periods)
        )
        try:
            with self._session_factory() as session:
                rows = [MonthlyUsage.model_validate(row) for row in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to read usage history for key {self.api_key_id}") from exc
        yield from rows


class UsageAccountant:
    """
    Records calls and answers "how many calls this month" for a key.

    The monthly_usage_summary counter is the value quota decisions use; the
    api_usage log is kept for audit and analytics only.
    """

    def __init__(self, session_factory, clock: Callable[[], datetime] = utc_now,
                 error_sink: Callable[[LoggingFailure], None] = log_failure,
                 use_atomic_upsert: bool = True):
        self._session_factory = session_factory
        self._clock = clock
        self._error_sink = error_sink
        self._use_atomic_upsert = use_atomic_upsert

    def current_period(self) -> str:
        return billing_month(self._clock())

    def record(self, api_key_id: str, endpoint: str, status_code: int) -> None:
        """
        Log one call and bump the key's counter for the current billing month.

        Never raises. Failures of either step are sent to the error sink and
        do not stop the other step.
        """
        now = self._clock()
        period = billing_month(now)

        try:
            self._append_log(api_key_id, endpoint, status_code, period, now)
        except Exception as exc:
            self._report(LoggingFailure(api_key_id, endpoint, "append usage log"), exc)

        try:
            self._increment(api_key_id, period, now)
        except Exception as exc:
            self._report(LoggingFailure(api_key_id, endpoint, "increment monthly usage"), exc)

    def current_usage(self, api_key_id: str, period: str | None = None) -> int:
        """Calls counted for the key in the period (default: current). 0 if none yet."""
        period = period or self.current_period()
        try:
            with self._session_factory() as session:
                total = session.scalar(
                    select(MonthlyUsageSummary.total_calls).where(
                        MonthlyUsageSummary.api_key_id == api_key_id,
                        MonthlyUsageSummary.billing_month == period,
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to read usage for key {api_key_id}") from exc
        return total or 0

    def history(self, api_key_id: str, periods: int) -> UsageHistory:
        return UsageHistory(self._session_factory, api_key_id, periods)

    def _report(self, failure: LoggingFailure, cause: Exception) -> None:
        failure.__cause__ = cause
        try:
            self._error_sink(failure)
        except Exception:
            logger.exception("Usage error sink failed")

    def _append_log(self, api_key_id, endpoint, status_code, period, now):
        with self._session_factory() as session:
            session.add(APIUsage(
                api_key_id=api_key_id,
                endpoint=endpoint,
                response_status=status_code,
                billing_month=period,
                timestamp=now,
            ))
            session.commit()

    def _increment(self, api_key_id, period, now):
        with self._session_factory() as session:
            insert = UPSERT_DIALECTS.get(session.get_bind().dialect.name)
            if self._use_atomic_upsert and insert is not None:
                try:
                    self._upsert(session, insert, api_key_id, period, now)
                    return
                except SQLAlchemyError:
                    session.rollback()
                    logger.warning("Atomic usage upsert failed for key %s, retrying with update/insert",
                                   api_key_id, exc_info=True)
            self._update_or_insert(session, api_key_id, period, now)

    def _upsert(self, session, insert, api_key_id, period, now):
        stmt = insert(MonthlyUsageSummary).values(
            api_key_id=api_key_id,
            billing_month=period,
            total_calls=1,
            last_updated=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[MonthlyUsageSummary.api_key_id, MonthlyUsageSummary.billing_month],
            set_={
                "total_calls": MonthlyUsageSummary.total_calls + 1,
                "last_updated": now,
            },
        )
        session.execute(stmt)
        session.commit()

    def _update_or_insert(self, session, api_key_id, period, now):
        """
        Increment in place, or create the row when the month has none yet.

        Two first calls of a month can both find no row; the primary key on
        (api_key_id, billing_month) rejects the second insert and that call
        goes round again to take the update branch.
        """
        for attempt in range(1, MAX_INCREMENT_ATTEMPTS + 1):
            result = session.execute(
                update(MonthlyUsageSummary)
                .where(
                    MonthlyUsageSummary.api_key_id == api_key_id,
                    MonthlyUsageSummary.billing_month == period,
                )
                .values(total_calls=MonthlyUsageSummary.total_calls + 1, last_updated=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                session.commit()
                return
            session.add(MonthlyUsageSummary(
                api_key_id=api_key_id,
                billing_month=period,
                total_calls=1,
                last_updated=now,
            ))
            try:
                session.commit()
                return
            except IntegrityError:
                session.rollback()
                logger.debug("Concurrent first call for key %s in %s (attempt %d)",
                             api_key_id, period, attempt)
        raise StorageUnavailable(
            f"Could not increment usage for key {api_key_id} after {MAX_INCREMENT_ATTEMPTS} attempts"
        )
