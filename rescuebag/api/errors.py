"""
RescueBag — Domain error → HTTP response mapping
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from rescuebag.core.errors import OrderError

logger = logging.getLogger(__name__)


async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
    if exc.retryable:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable},
        headers=headers,
    )
