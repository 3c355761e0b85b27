"""
RescueBag — Payments API

  POST /payments/create            open a checkout and start status polling
  POST /payments/webhook/{gateway} gateway notification (signature, not JWT)
  GET  /payments/order/{order_id}  payment view of an order for the customer
"""
import json
import logging

from fastapi import APIRouter, Depends, Request, status

from rescuebag.api.deps import PollScheduler, get_poll_scheduler, get_services, get_session
from rescuebag.core.errors import InvalidWebhook
from rescuebag.core.session import SessionContext
from rescuebag.models.order import FulfillmentStatus, PaymentStatus
from rescuebag.schemas.order import (
    PaymentCreateRequest, PaymentCreateResponse, PaymentOrderResponse, WebhookAck,
)
from rescuebag.services.container import Services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/create", response_model=PaymentCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: PaymentCreateRequest,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
    schedule_poll: PollScheduler = Depends(get_poll_scheduler),
):
    attempt, order = await services.payments.start_payment(
        ctx, payload.order_id, payload.method, payload.customer_email
    )
    try:
        schedule_poll(order.id, attempt.provider_reference, attempt.method)
    except Exception as exc:
        # The webhook still settles the payment; only the fallback poll is lost
        logger.warning("Status polling for payment %s not scheduled: %s", attempt.provider_reference, exc)

    return PaymentCreateResponse(
        payment_id=attempt.id,
        provider_reference=attempt.provider_reference,
        payment_url=attempt.payment_url,
        order=order,
    )


@router.post("/webhook/{gateway}", response_model=WebhookAck)
async def payment_webhook(gateway: str, request: Request, services: Services = Depends(get_services)):
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise InvalidWebhook("Webhook body is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise InvalidWebhook("Webhook body must be a JSON object.")

    order, duplicate = await services.payments.handle_webhook(
        gateway, payload, body=body, signature=request.headers.get("X-Webhook-Signature")
    )
    return WebhookAck(
        success=True, order_id=order.id, payment_status=order.payment_status, duplicate=duplicate
    )


@router.get("/order/{order_id}", response_model=PaymentOrderResponse)
async def get_order_payment(
    order_id: str,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    order = await services.orders.get(ctx, order_id)
    can_show_qr = (
        order.payment_status is PaymentStatus.PAID
        and order.qr_token is not None
        and order.fulfillment_status is not FulfillmentStatus.CANCELED
        and order.redeemed_at is None
    )
    attempts = await services.store.list_payment_attempts(order.id)
    return PaymentOrderResponse(order=order, attempts=attempts, can_show_qr=can_show_qr)
