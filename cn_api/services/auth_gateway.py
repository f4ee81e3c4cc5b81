# ABOUTME: Request-facing authentication and metering facade
# ABOUTME: Validates credentials, applies quotas, and records usage off the request path

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from functools import partial

from cn_api.models.schemas import APIKeyRecord, AuthErrorKind, AuthResult, UsageReport, UsageSnapshot
from cn_api.services.exceptions import StorageError
from cn_api.services.key_manager import KeyManager
from cn_api.services.quota_guard import QuotaGuard
from cn_api.services.tier_catalog import TierCatalog
from cn_api.services.usage_accountant import UsageAccountant, UsageHistory

logger = logging.getLogger(__name__)

MISSING_CREDENTIAL_MESSAGE = "Missing API key. Provide it using: Authorization: Bearer YOUR_API_KEY"
INVALID_CREDENTIAL_MESSAGE = "Invalid or inactive API key"
INTERNAL_ERROR_MESSAGE = "Internal server error"
USAGE_UNVERIFIED_MESSAGE = "Usage could not be verified; request denied"


def quota_exceeded_message(usage: UsageSnapshot) -> str:
    return f"Rate limit exceeded. You have used {usage.current} of {usage.limit} calls this month."


def denial_message(usage: UsageSnapshot) -> str:
    """The 429 message. A zeroed snapshot means usage was never read."""
    if usage == UsageSnapshot.zeroed():
        return USAGE_UNVERIFIED_MESSAGE
    return quota_exceeded_message(usage)


class AuthGateway:
    """
    Entry point used by the HTTP layer.

    authenticate() only reads from the stores. The single write per call
    happens in finalize(), which hands the work to a background pool and
    returns at once.
    """

    def __init__(self, key_manager: KeyManager, quota_guard: QuotaGuard,
                 accountant: UsageAccountant, tier_catalog: TierCatalog,
                 timeout_seconds: float = 5.0, recorder_workers: int = 4):
        self.key_manager = key_manager
        self.quota_guard = quota_guard
        self.accountant = accountant
        self.tier_catalog = tier_catalog
        self.timeout_seconds = timeout_seconds
        self._recorder = ThreadPoolExecutor(max_workers=recorder_workers,
                                            thread_name_prefix="usage-recorder")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    def authenticate(self, credential: str | None) -> AuthResult:
        """Run the credential and quota checks for one request."""
        if not credential or not credential.strip():
            return AuthResult(
                authenticated=False,
                error_kind=AuthErrorKind.MISSING_CREDENTIAL,
                error=MISSING_CREDENTIAL_MESSAGE,
            )

        try:
            record = self.key_manager.validate(credential.strip())
        except StorageError:
            logger.exception("API key validation failed")
            return AuthResult(
                authenticated=False,
                error_kind=AuthErrorKind.INTERNAL_ERROR,
                error=INTERNAL_ERROR_MESSAGE,
            )

        if record is None:
            return AuthResult(
                authenticated=False,
                error_kind=AuthErrorKind.INVALID_CREDENTIAL,
                error=INVALID_CREDENTIAL_MESSAGE,
            )

        # One period label for the whole request
        period = self.accountant.current_period()
        decision = self.quota_guard.check(record.id, record.tier, period)
        if not decision.allowed:
            return AuthResult(
                authenticated=False,
                api_key_id=record.id,
                tier=record.tier,
                usage=decision.usage,
                error_kind=AuthErrorKind.QUOTA_EXCEEDED,
                error=denial_message(decision.usage),
            )

        return AuthResult(
            authenticated=True,
            api_key_id=record.id,
            tier=record.tier,
            usage=decision.usage,
        )

    async def authenticate_async(self, credential: str | None) -> AuthResult:
        """
        authenticate() on a worker thread, bounded by timeout_seconds.

        A timeout is handled like a quota check failure: the call is denied
        with a zeroed usage snapshot.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, partial(self.authenticate, credential)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Authentication timed out after %.1fs; denying", self.timeout_seconds)
            usage = UsageSnapshot.zeroed()
            return AuthResult(
                authenticated=False,
                usage=usage,
                error_kind=AuthErrorKind.QUOTA_EXCEEDED,
                error=USAGE_UNVERIFIED_MESSAGE,
            )

    def finalize(self, api_key_id: str, endpoint: str, status_code: int) -> None:
        """Record a served call in the background. Returns immediately."""
        try:
            future = self._recorder.submit(self.accountant.record, api_key_id, endpoint, status_code)
        except RuntimeError:
            # Pool already shut down (application stopping): record inline
            self.accountant.record(api_key_id, endpoint, status_code)
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._recorded)

    def _recorded(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Usage recording task failed", exc_info=future.exception())

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for pending usage records. Returns False if some are still running."""
        with self._pending_lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._recorder.shutdown(wait=True)

    # Operator operations. No quota applies to these.

    def issue_key(self, client_name: str, tier: str = "basic", expires_at: datetime | None = None,
                  is_admin: bool = False) -> tuple[str, APIKeyRecord]:
        return self.key_manager.issue(client_name, tier, expires_at, is_admin=is_admin)

    def revoke_key(self, key_id: str) -> bool:
        return self.key_manager.revoke(key_id)

    def get_key_by_id(self, key_id: str) -> APIKeyRecord | None:
        return self.key_manager.get_by_id(key_id)

    def get_usage_history(self, key_id: str, periods: int) -> UsageHistory:
        return self.accountant.history(key_id, periods)

    def get_usage_report(self, key_id: str, periods: int) -> UsageReport | None:
        """Current month, tier and recent history for a key; None if the key does not exist."""
        record = self.key_manager.get_by_id(key_id)
        if record is None:
            return None

        tier = self.tier_catalog.resolve(record.tier)
        current = self.accountant.current_usage(key_id)
        limit = tier.monthly_call_limit if tier else 0
        return UsageReport(
            api_key=record,
            current_month=UsageSnapshot.compute(current, limit),
            tier=tier,
            history=list(self.get_usage_history(key_id, periods)),
        )
