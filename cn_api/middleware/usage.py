# ABOUTME: Usage tracking middleware for metered requests
# ABOUTME: Hands each authenticated call to the auth gateway after the response is produced

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


class UsageTrackingMiddleware(BaseHTTPMiddleware):
    """
    Records metered calls once the route has produced a response.

    verify_api_key leaves the AuthResult on request.state.auth. When it is
    present the call is finalized with the endpoint path and the final status
    code, whatever that status is. A route that raises is recorded as a 500.
    Recording runs in the gateway's background pool, so it neither delays the
    response nor depends on the client staying connected.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
        except Exception:
            self._finalize(request, 500)
            raise

        self._finalize(request, response.status_code)
        return response

    @staticmethod
    def _finalize(request: Request, status_code: int):
        auth = getattr(request.state, "auth", None)
        if auth is None or not auth.authenticated:
            return
        request.app.state.gateway.finalize(auth.api_key_id, request.url.path, status_code)
