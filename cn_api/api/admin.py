# ABOUTME: Admin API endpoints
# ABOUTME: Provides operator functions: key issuance, lookup, revocation and usage reports

from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from cn_api.dependencies import get_gateway, get_app_settings, verify_admin_api_key
from cn_api.models.errors import ADMIN_REQUIRED, NOT_FOUND
from cn_api.services.auth_gateway import AuthGateway

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_api_key)],
    responses=ADMIN_REQUIRED,
)


class CreateAPIKeyRequest(BaseModel):
    """Request body for creating a new API key."""
    client_name: str
    tier: str | None = None
    expires_at: datetime | None = None
    is_admin: bool = False


class APIKeyInfo(BaseModel):
    """API key details returned to operators. Never includes the digest."""
    id: str
    client_name: str
    tier: str
    is_active: bool
    is_admin: bool
    created_at: datetime
    expires_at: datetime | None = None


class CreateAPIKeyResponse(APIKeyInfo):
    """Response containing the newly created API key."""
    api_key: str


def key_not_found(key_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "NOT_FOUND", "message": f'API key with ID "{key_id}" not found'}
    )


@router.post("/keys", status_code=201, response_model=CreateAPIKeyResponse)
async def create_api_key(
    request: CreateAPIKeyRequest,
    gateway: AuthGateway = Depends(get_gateway),
    settings = Depends(get_app_settings),
):
    """
    Create a new API key (admin only).

    The API key is generated securely and returned only once.
    Only the SHA-256 hash is stored in the database.
    """
    tier = request.tier or settings.default_tier
    plaintext_key, record = gateway.issue_key(
        request.client_name, tier, request.expires_at, is_admin=request.is_admin
    )

    # Return the plaintext key (only time it's visible)
    return CreateAPIKeyResponse(api_key=plaintext_key, **record.public_dict())


@router.get("/keys/{key_id}", response_model=APIKeyInfo, responses=NOT_FOUND)
async def get_api_key(key_id: str, gateway: AuthGateway = Depends(get_gateway)):
    """Returns an API key's details (admin only)."""
    record = gateway.get_key_by_id(key_id)
    if record is None:
        raise key_not_found(key_id)
    return APIKeyInfo(**record.public_dict())


@router.post("/keys/{key_id}/revoke", responses=NOT_FOUND)
async def revoke_api_key(key_id: str, gateway: AuthGateway = Depends(get_gateway)):
    """
    Revoke an API key (admin only).

    Revoking a key that is already revoked succeeds.
    """
    if not gateway.revoke_key(key_id):
        raise key_not_found(key_id)
    return {"id": key_id, "is_active": False}


@router.get("/usage/{key_id}", responses=NOT_FOUND)
async def get_usage(
    key_id: str,
    months: int | None = Query(default=None, ge=1, le=24),
    gateway: AuthGateway = Depends(get_gateway),
    settings = Depends(get_app_settings),
):
    """
    Usage statistics for an API key (admin only).

    Returns the current month's usage against the tier limit, the tier
    details (null for unknown tiers) and the last `months` billing months,
    most recent first.
    """
    report = gateway.get_usage_report(key_id, months or settings.usage_history_months)
    if report is None:
        raise key_not_found(key_id)

    current = report.current_month
    tier = report.tier
    return {
        "data": {
            "api_key": APIKeyInfo(**report.api_key.public_dict()).model_dump(mode="json"),
            "current_month": {
                "usage": current.current,
                "limit": current.limit,
                "remaining": current.remaining,
                "percentUsed": round(current.percent_used, 2),
            },
            "tier": {
                "name": tier.tier_name,
                "monthly_call_limit": tier.monthly_call_limit,
                "price_monthly": tier.price_monthly,
                "description": tier.description,
            } if tier else None,
            "history": [
                {
                    "billing_month": month.billing_month,
                    "total_calls": month.total_calls,
                    "last_updated": month.last_updated.isoformat(),
                }
                for month in report.history
            ],
        }
    }
