"""
RescueBag — Session middleware

Every non-public request carries `Authorization: Bearer <jwt>`. The token's
claims are turned into the caller's SessionContext on request.state.session,
which routers read through api.deps.get_session. Payment gateways post
webhooks without a JWT; the payments router checks their signature instead.
"""
import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware

from rescuebag.core.security import decode_token, session_from_claims

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset({"/", "/health", "/docs", "/openapi.json"})
PUBLIC_PREFIXES = ("/metrics", "/payments/webhook/")


def is_public(request: Request) -> bool:
    path = request.url.path
    return request.method == "OPTIONS" or path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


class SessionAuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if is_public(request):
            return await call_next(request)

        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not token:
            return _unauthorized("Missing or invalid Authorization header. Expected: Bearer <token>")

        try:
            claims = decode_token(token)
        except JWTError as exc:
            return _unauthorized(f"Invalid or expired JWT: {exc}")

        try:
            request.state.session = session_from_claims(claims)
        except ValueError as exc:
            logger.warning("Token rejected for %s %s: %s", request.method, request.url.path, exc)
            return _unauthorized(f"Token does not describe a session: {exc}")

        return await call_next(request)
