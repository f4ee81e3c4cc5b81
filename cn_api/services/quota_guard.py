# ABOUTME: Monthly quota enforcement
# ABOUTME: Combines current usage with the tier budget into an allow/deny decision that fails closed

import logging

from cn_api.models.schemas import QuotaDecision, UsageSnapshot
from cn_api.services.exceptions import TierNotFound
from cn_api.services.tier_catalog import TierCatalog, default_policy
from cn_api.services.usage_accountant import UsageAccountant

logger = logging.getLogger(__name__)


class QuotaGuard:
    def __init__(self, accountant: UsageAccountant, tier_catalog: TierCatalog,
                 default_limit: int | None = None):
        self._accountant = accountant
        self._tier_catalog = tier_catalog
        self.default_limit = default_limit if default_limit is not None else tier_catalog.floor_limit

    def check(self, api_key_id: str, tier: str, period: str | None = None) -> QuotaDecision:
        """
        Decide whether the key may make another call this billing period.

        The call that brings usage up to the limit is allowed; the next one is
        not. Any failure while reading usage or the tier denies the call with
        a zeroed snapshot.
        """
        try:
            current = self._accountant.current_usage(api_key_id, period)
            try:
                limit = self._tier_catalog.get(tier).monthly_call_limit
            except TierNotFound:
                logger.warning("Unknown tier %r on key %s, applying default limit %d",
                               tier, api_key_id, self.default_limit)
                limit = default_policy(tier, self.default_limit).monthly_call_limit
        except Exception:
            logger.exception("Quota check failed for key %s; denying", api_key_id)
            return QuotaDecision(allowed=False, usage=UsageSnapshot.zeroed())

        return QuotaDecision(allowed=current < limit, usage=UsageSnapshot.compute(current, limit))
