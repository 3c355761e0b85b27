"""
RescueBag — Idempotency Key Middleware

Response replay for order creation and payment start, using Redis:
  - Cache hit  → return cached response immediately (no business logic)
  - Cache miss → execute handler, store response for IDEMPOTENCY_KEY_TTL_SECONDS
Keys are scoped per caller. The order store enforces the same key on its own,
so a lost cache entry can never produce a second order.
"""
import json
import logging
from typing import Callable

import redis.asyncio as aioredis
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from rescuebag.core.config import get_settings
from rescuebag.core.redis_client import get_redis

settings = get_settings()
logger = logging.getLogger(__name__)

IDEMPOTENCY_PREFIX = "idempotent:"
IDEMPOTENCY_METHODS = {"POST", "PUT", "PATCH"}
IDEMPOTENCY_PATHS = {"/orders", "/orders/", "/payments/create", "/payments/create/"}


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """
    Applies to state-mutating endpoints.
    Reads Idempotency-Key header and either:
      1. Returns cached response (replay)
      2. Executes handler and caches the response
    """

    def __init__(self, app, redis_factory: Callable[[], aioredis.Redis] = get_redis):
        super().__init__(app)
        self._redis_factory = redis_factory

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method not in IDEMPOTENCY_METHODS:
            return await call_next(request)

        if request.url.path not in IDEMPOTENCY_PATHS:
            return await call_next(request)

        idem_key = request.headers.get("Idempotency-Key")
        if not idem_key:
            return await call_next(request)

        session = getattr(request.state, "session", None)
        owner = session.user_id if session else "anonymous"
        cache_key = f"{IDEMPOTENCY_PREFIX}{owner}:{request.url.path.rstrip('/')}:{idem_key}"
        redis = self._redis_factory()

        # Cache HIT → replay stored response
        cached = await redis.get(cache_key)
        if cached:
            data = json.loads(cached)
            logger.info("Replaying %s for idempotency key %s", request.url.path, idem_key)
            return JSONResponse(
                content=data["body"],
                status_code=data["status_code"],
                headers={"X-Idempotency-Replay": "true"},
            )

        # Cache MISS → proceed to handler
        response = await call_next(request)

        body_bytes = b""
        async for chunk in response.body_iterator:
            body_bytes += chunk

        try:
            body = json.loads(body_bytes)
        except ValueError:
            body = body_bytes.decode("utf-8", errors="replace")

        # Only successful results are replayed; a rejected request may be retried
        if response.status_code < 400:
            await redis.setex(
                cache_key,
                settings.IDEMPOTENCY_KEY_TTL_SECONDS,
                json.dumps({"body": body, "status_code": response.status_code}),
            )

        return Response(
            content=body_bytes,
            status_code=response.status_code,
            media_type=response.media_type,
            headers=dict(response.headers),
        )
