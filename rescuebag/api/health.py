"""
RescueBag — Health endpoint
"""
import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    services = request.app.state.services
    settings = services.settings
    deps: dict[str, str] = {}
    healthy = True

    try:
        await asyncio.wait_for(services.store.ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["store"] = "ok"
    except Exception as e:
        deps["store"] = f"error: {str(e)[:100]}"
        healthy = False

    if settings.WATCH_BACKEND == "redis" or settings.IDEMPOTENCY_ENABLED:
        try:
            redis = request.app.state.redis_factory()
            await asyncio.wait_for(redis.ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
            deps["redis"] = "ok"
        except Exception as e:
            deps["redis"] = f"error: {str(e)[:100]}"
            healthy = False

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "dependencies": deps,
        },
        status_code=200 if healthy else 503,
    )
