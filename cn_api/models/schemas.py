# ABOUTME: Pydantic models shared by the auth services and the HTTP layer
# ABOUTME: Key records, tier policies, usage snapshots, quota decisions and auth verdicts

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


class APIKeyRecord(BaseModel):
    """An API key as seen outside the key store. Never carries the plaintext."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    key_hash: str
    client_name: str
    tier: str
    is_active: bool
    is_admin: bool = False
    created_at: datetime
    expires_at: datetime | None = None

    def public_dict(self) -> dict:
        """Record fields safe to return to operators (digest omitted)."""
        return self.model_dump(exclude={"key_hash"}, mode="json")


class TierPolicy(BaseModel):
    """Quota policy for a billing tier."""
    model_config = ConfigDict(from_attributes=True)

    tier_name: str
    monthly_call_limit: int
    price_monthly: float | None = None
    description: str | None = None


class UsageSnapshot(BaseModel):
    """Usage for the current billing period against the tier's budget."""
    current: int = 0
    limit: int = 0
    remaining: int = 0
    percent_used: float = Field(default=0.0, serialization_alias="percentUsed")

    @classmethod
    def compute(cls, current: int, limit: int) -> "UsageSnapshot":
        return cls(
            current=current,
            limit=limit,
            remaining=max(0, limit - current),
            percent_used=(100 * current / limit) if limit > 0 else 0.0,
        )

    @classmethod
    def zeroed(cls) -> "UsageSnapshot":
        return cls()

    def as_response(self) -> dict:
        return self.model_dump(by_alias=True)


class QuotaDecision(BaseModel):
    allowed: bool
    usage: UsageSnapshot


class MonthlyUsage(BaseModel):
    """One billing month of the per-key usage summary."""
    model_config = ConfigDict(from_attributes=True)

    api_key_id: str
    billing_month: str
    total_calls: int
    last_updated: datetime


class AuthErrorKind(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    QUOTA_EXCEEDED = "quota_exceeded"
    INTERNAL_ERROR = "internal_error"


# HTTP status surfaced for each denial kind
AUTH_ERROR_STATUS = {
    AuthErrorKind.MISSING_CREDENTIAL: 401,
    AuthErrorKind.INVALID_CREDENTIAL: 401,
    AuthErrorKind.QUOTA_EXCEEDED: 429,
    AuthErrorKind.INTERNAL_ERROR: 500,
}


class AuthResult(BaseModel):
    """Verdict returned by the auth gateway for one request."""
    authenticated: bool
    api_key_id: str | None = None
    tier: str | None = None
    usage: UsageSnapshot | None = None
    error_kind: AuthErrorKind | None = None
    error: str | None = None

    @property
    def status_code(self) -> int:
        if self.authenticated:
            return 200
        return AUTH_ERROR_STATUS[self.error_kind]


class UsageReport(BaseModel):
    """Operator view of a key's usage: current month, tier and history."""
    api_key: APIKeyRecord
    current_month: UsageSnapshot
    tier: TierPolicy | None = None
    history: list[MonthlyUsage]
