# ABOUTME: FastAPI dependency injection utilities
# ABOUTME: Provides database sessions, the auth gateway, API key and admin verification

import secrets
from fastapi import Header, HTTPException, Depends, Query, Request
from typing import Annotated

from cn_api.config import Settings
from cn_api.database import get_db
from cn_api.models.schemas import APIKeyRecord, AuthErrorKind, AuthResult
from cn_api.services.auth_gateway import AuthGateway
from cn_api.services.exceptions import StorageError

# Error code returned in the body for each denial kind
AUTH_ERROR_CODES = {
    AuthErrorKind.MISSING_CREDENTIAL: "MISSING_API_KEY",
    AuthErrorKind.INVALID_CREDENTIAL: "INVALID_API_KEY",
    AuthErrorKind.QUOTA_EXCEEDED: "RATE_LIMITED",
    AuthErrorKind.INTERNAL_ERROR: "INTERNAL_ERROR",
}


def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def extract_credential(authorization: str | None, api_key: str | None) -> str | None:
    """
    Pull the bearer key from the Authorization header or the api_key query parameter.

    A Bearer header wins. Any other Authorization scheme is ignored.
    """
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token:
            return token
    if api_key and api_key.strip():
        return api_key.strip()
    return None


def auth_error(result: AuthResult) -> HTTPException:
    """Build the HTTPException rendered for a denied AuthResult."""
    detail = {"code": AUTH_ERROR_CODES[result.error_kind], "message": result.error}
    if result.error_kind == AuthErrorKind.QUOTA_EXCEEDED and result.usage is not None:
        detail["details"] = {"usage": result.usage.as_response()}
    return HTTPException(status_code=result.status_code, detail=detail)


async def verify_api_key(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    api_key: Annotated[str | None, Query(include_in_schema=False)] = None,
    gateway: AuthGateway = Depends(get_gateway),
) -> AuthResult:
    """
    Authenticate a metered request.

    Returns the AuthResult if the key is valid and within quota, and leaves
    it on request.state.auth so UsageTrackingMiddleware can record the call.
    Raises HTTPException with 401, 429 or 500 otherwise.
    """
    result = await gateway.authenticate_async(extract_credential(authorization, api_key))
    if not result.authenticated:
        raise auth_error(result)

    request.state.auth = result
    return result


def verify_admin_api_key(
    authorization: Annotated[str | None, Header()] = None,
    gateway: AuthGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> APIKeyRecord | None:
    """
    Verify an operator credential.

    Accepts the configured admin_api_key (returns None) or an active API key
    flagged is_admin (returns its record). No quota applies and nothing is
    recorded.
    """
    credential = extract_credential(authorization, None)
    if credential is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "MISSING_API_KEY", "message": "API key is missing"}
        )

    if settings.admin_api_key and secrets.compare_digest(credential.encode(), settings.admin_api_key.encode()):
        return None

    try:
        record = gateway.key_manager.validate(credential)
    except StorageError:
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Internal server error"}
        )

    if record is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "INVALID_API_KEY", "message": "Invalid or inactive API key"}
        )

    if not record.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "FORBIDDEN", "message": "Admin privileges required"}
        )
    return record
