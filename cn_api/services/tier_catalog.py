# ABOUTME: Billing tier lookup
# ABOUTME: Resolves a tier name to its quota policy from the billing_tiers table

from sqlalchemy.exc import SQLAlchemyError

from cn_api.models.database import BillingTier
from cn_api.models.schemas import TierPolicy
from cn_api.services.exceptions import StorageUnavailable, TierNotFound

DEFAULT_MONTHLY_CALL_LIMIT = 1000


def default_policy(tier_name: str, monthly_call_limit: int = DEFAULT_MONTHLY_CALL_LIMIT) -> TierPolicy:
    """Policy applied to keys whose tier is not in the catalog."""
    return TierPolicy(
        tier_name=tier_name,
        monthly_call_limit=monthly_call_limit,
        description="Default policy for unrecognized tiers",
    )


class TierCatalog:
    """Read-only view of the billing tiers."""

    def __init__(self, session_factory, floor_limit: int = DEFAULT_MONTHLY_CALL_LIMIT):
        self._session_factory = session_factory
        self.floor_limit = floor_limit

    def resolve(self, tier_name: str) -> TierPolicy | None:
        """
        Return the policy for a tier, or None if the tier does not exist.

        A stored limit of 0 or NULL is replaced by the floor limit.
        """
        try:
            with self._session_factory() as session:
                tier = session.query(BillingTier).filter(BillingTier.tier_name == tier_name).first()
                if tier is None:
                    return None
                return TierPolicy(
                    tier_name=tier.tier_name,
                    monthly_call_limit=tier.monthly_call_limit or self.floor_limit,
                    price_monthly=tier.price_monthly,
                    description=tier.description,
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to read billing tier {tier_name}") from exc

    def get(self, tier_name: str) -> TierPolicy:
        """Like resolve(), but raises TierNotFound instead of returning None."""
        policy = self.resolve(tier_name)
        if policy is None:
            raise TierNotFound(tier_name)
        return policy
