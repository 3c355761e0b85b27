"""
RescueBag — Orders API

Flow:
  1. JWT validated by middleware (request.state.session set)
  2. Pack stock reserved atomically with the order insert
  3. Payment confirms the order and mints the pickup QR
  4. Business advances the order and redeems the QR at the counter
"""
import json
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import StreamingResponse

from rescuebag.api.deps import get_services, get_session
from rescuebag.core.errors import NotAuthorized
from rescuebag.core.session import SessionContext
from rescuebag.models.order import FulfillmentStatus
from rescuebag.schemas.order import (
    AdvanceRequest, CancelRequest, Order, OrderCreateRequest, OrderListResponse, QrScanRequest,
    QrScanResponse,
)
from rescuebag.services.container import Services

router = APIRouter(prefix="/orders", tags=["orders"])


def _scanning_business(ctx: SessionContext) -> str:
    if not ctx.is_business:
        raise NotAuthorized("Only businesses can scan pickup codes.")
    return ctx.business_id


@router.post("", response_model=Order, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreateRequest,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Reserve units of a pack. Idempotent per (caller, Idempotency-Key)."""
    return await services.orders.create(
        ctx,
        payload.pack_id,
        payload.quantity,
        notes=payload.notes,
        pickup_date=payload.pickup_date,
        fulfillment_method=payload.fulfillment_method,
        idempotency_key=idempotency_key,
    )


@router.get("", response_model=OrderListResponse)
async def list_orders(
    status_filter: FulfillmentStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    orders, total = await services.orders.list_orders(ctx, status=status_filter, limit=limit, offset=offset)
    return OrderListResponse(orders=orders, total=total, limit=limit, offset=offset)


@router.post("/verify-qr", response_model=QrScanResponse)
async def verify_qr(
    payload: QrScanRequest,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    """Preview a scanned code without consuming it."""
    order = await services.redemption.inspect(payload.qr_token, _scanning_business(ctx))
    return QrScanResponse(valid=True, message="QR code is valid.", order=order)


@router.post("/redeem", response_model=QrScanResponse)
async def redeem(
    payload: QrScanRequest,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    order = await services.redemption.redeem(payload.qr_token, _scanning_business(ctx))
    return QrScanResponse(valid=True, message="Order handed over.", order=order)


@router.get("/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    return await services.orders.get(ctx, order_id)


@router.post("/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: str,
    payload: CancelRequest | None = None,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    reason = payload.reason if payload else ""
    return await services.orders.cancel(ctx, order_id, reason)


@router.post("/{order_id}/advance", response_model=Order)
async def advance_order(
    order_id: str,
    payload: AdvanceRequest,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    return await services.orders.advance(ctx, order_id, payload.to)


async def _sse_generator(
    services: Services, ctx: SessionContext, order_id: str, request: Request,
) -> AsyncGenerator[str, None]:
    yield f"retry: {services.settings.SSE_RETRY_MILLISECONDS}\n\n"
    async for order in services.orders.watch(ctx, order_id):
        if await request.is_disconnected():
            break
        yield f"event: order_update\ndata: {order.model_dump_json()}\n\n"
    else:
        yield f"event: end\ndata: {json.dumps({'order_id': order_id})}\n\n"


@router.get("/{order_id}/stream")
async def stream_order(
    order_id: str,
    request: Request,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    """
    SSE endpoint. Streams order snapshots as server-sent events until the
    order reaches a terminal state.
    """
    await services.orders.get(ctx, order_id)
    return StreamingResponse(
        _sse_generator(services, ctx, order_id, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable Nginx buffering
            "Connection": "keep-alive",
        },
    )
