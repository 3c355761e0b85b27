"""
RescueBag — QR token codec

A QR token is a compact JWS (HS256 by default) over the redemption claims
{order_id, user_id, business_id, iat, exp}. The token is a pure function of
the claims and the server-held secret, so issuing twice at the same instant
yields the same string. Expiry is checked against an injected clock at
verification time, never at issuance.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt, JWTError

from rescuebag.core.clock import Clock, utcnow
from rescuebag.core.errors import QrExpired, QrMalformed, QrTampered

logger = logging.getLogger(__name__)

TOKEN_TYPE = "order_qr"
REQUIRED_CLAIMS = ("order_id", "user_id", "business_id", "iat", "exp")


@dataclass(frozen=True)
class QrClaims:
    order_id: str
    user_id: str
    business_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedQrToken:
    token: str
    expires_at: datetime


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


def _from_epoch(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class QrTokenCodec:
    """Issues and verifies signed, time-limited QR tokens."""

    def __init__(self, secret: str, algorithm: str = "HS256", clock: Clock = utcnow):
        if not secret:
            raise ValueError("QR secret must be non-empty.")
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock

    def issue(self, order_id: str, user_id: str, business_id: str, ttl_seconds: int) -> IssuedQrToken:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0.")
        now = self._clock()
        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=ttl_seconds)
        if now.microsecond:
            # exp has whole-second precision; round up so the full TTL holds
            expires_at += timedelta(seconds=1)
        payload = {
            "typ": TOKEN_TYPE,
            "order_id": order_id,
            "user_id": user_id,
            "business_id": business_id,
            "iat": _epoch(issued_at),
            "exp": _epoch(expires_at),
        }
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return IssuedQrToken(token=token, expires_at=expires_at)

    def verify(self, token: str) -> QrClaims:
        """
        Decode and validate a scanned token.

        Raises:
            QrMalformed: structure cannot be parsed or claims are missing
            QrTampered:  signature does not match the payload
            QrExpired:   now > expires_at
        """
        claims = self._parse(token)

        try:
            # Expiry is enforced below against the injected clock.
            jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTError as exc:
            raise QrTampered(f"QR token signature is invalid: {exc}") from exc

        issued_at = _from_epoch(claims["iat"])
        expires_at = _from_epoch(claims["exp"])
        if self._clock() > expires_at:
            raise QrExpired(f"QR token expired at {expires_at.isoformat()}.")

        return QrClaims(
            order_id=claims["order_id"],
            user_id=claims["user_id"],
            business_id=claims["business_id"],
            issued_at=issued_at,
            expires_at=expires_at,
        )

    @staticmethod
    def _parse(token: str) -> dict[str, Any]:
        if not isinstance(token, str) or token.count(".") != 2:
            raise QrMalformed("QR code does not contain a signed token.")
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise QrMalformed(f"QR token cannot be parsed: {exc}") from exc

        if claims.get("typ") != TOKEN_TYPE:
            raise QrMalformed("QR token is not an order token.")
        missing = [name for name in REQUIRED_CLAIMS if name not in claims]
        if missing:
            raise QrMalformed(f"QR token is missing claims: {', '.join(missing)}")
        for name in ("order_id", "user_id", "business_id"):
            if not isinstance(claims[name], str) or not claims[name]:
                raise QrMalformed(f"QR claim '{name}' must be a non-empty string.")
        for name in ("iat", "exp"):
            if not isinstance(claims[name], int) or isinstance(claims[name], bool):
                raise QrMalformed(f"QR claim '{name}' must be an integer timestamp.")
        return claims
