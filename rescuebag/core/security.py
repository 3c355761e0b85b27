"""
RescueBag — Session token helpers (JWT, shared secret)

Access tokens are issued by the identity service. Claims used here:
  sub          user id
  role         "user" | "business" | "system" (default "user")
  business_id  required for role "business"
"""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt

from rescuebag.core.config import get_settings
from rescuebag.core.session import Role, SessionContext

settings = get_settings()


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


def create_access_token(
    user_id: str,
    role: Role = Role.USER,
    business_id: str | None = None,
    expires_minutes: int = 60,
) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload: dict[str, Any] = {"sub": user_id, "role": role.value, "exp": expire}
    if business_id:
        payload["business_id"] = business_id
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def session_from_claims(claims: dict[str, Any]) -> SessionContext:
    """Raises ValueError when the claims do not describe a usable session."""
    user_id = claims.get("sub")
    if not user_id:
        raise ValueError("token has no subject")
    role = Role(claims.get("role", Role.USER.value))
    business_id = claims.get("business_id")
    if role is Role.BUSINESS and not business_id:
        raise ValueError("business token without business_id")
    return SessionContext(user_id=str(user_id), role=role, business_id=business_id)
