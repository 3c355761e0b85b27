"""
Order lifecycle: creation and stock, payment outcomes, state machine,
cancellation, authorization and listing.
"""
import pytest

from rescuebag.core.errors import (
    AlreadyCanceled, AlreadyFulfilled, InsufficientStock, InvalidQuantity, InvalidTransition,
    NotAuthorized, PackInactive, PackNotFound,
)
from rescuebag.models.order import (
    FulfillmentMethod, FulfillmentStatus, PaymentMethod, PaymentOutcome, PaymentStatus,
)
from rescuebag.services import state_machine

NON_TERMINAL = [
    FulfillmentStatus.CREATED,
    FulfillmentStatus.CONFIRMED,
    FulfillmentStatus.PREPARING,
    FulfillmentStatus.READY,
]


# ─── State machine ────────────────────────────────────────────────────────────

def test_transition_table_matches_lifecycle():
    S = FulfillmentStatus
    assert state_machine.ALLOWED_TRANSITIONS[S.CREATED] == {S.CONFIRMED, S.CANCELED}
    assert state_machine.ALLOWED_TRANSITIONS[S.CONFIRMED] == {S.PREPARING, S.CANCELED}
    assert state_machine.ALLOWED_TRANSITIONS[S.PREPARING] == {S.READY, S.CANCELED}
    assert state_machine.ALLOWED_TRANSITIONS[S.READY] == {S.PICKED_UP, S.DELIVERED, S.CANCELED}


@pytest.mark.parametrize("terminal", [s for s in FulfillmentStatus if s.is_terminal])
def test_terminal_states_have_no_exits(terminal):
    for target in FulfillmentStatus:
        with pytest.raises(InvalidTransition):
            state_machine.check_transition(terminal, target)


@pytest.mark.parametrize("current", NON_TERMINAL)
def test_only_listed_transitions_are_allowed(current):
    for target in FulfillmentStatus:
        if target in state_machine.ALLOWED_TRANSITIONS[current]:
            state_machine.check_transition(current, target)
        else:
            with pytest.raises(InvalidTransition):
                state_machine.check_transition(current, target)


def test_redemption_target_follows_fulfillment_method():
    assert state_machine.redemption_target(FulfillmentMethod.PICKUP) is FulfillmentStatus.PICKED_UP
    assert state_machine.redemption_target(FulfillmentMethod.DELIVERY) is FulfillmentStatus.DELIVERED


def test_unknown_status_string_is_rejected():
    with pytest.raises(ValueError):
        FulfillmentStatus("Listo")


# ─── Packs ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_only_businesses_list_packs(order_service, customer):
    with pytest.raises(NotAuthorized):
        await order_service.list_pack(customer, title="x", original_price=100, discounted_price=50, stock=1)


@pytest.mark.asyncio
async def test_pack_discount_percentage(pack):
    assert pack.business_id == "biz-1"
    assert pack.discount_percentage == 60


@pytest.mark.asyncio
async def test_unknown_pack(order_service):
    with pytest.raises(PackNotFound):
        await order_service.get_pack("missing")


# ─── Create ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_snapshots_prices_and_decrements_stock(order_service, store, pack, order):
    assert order.fulfillment_status is FulfillmentStatus.CREATED
    assert order.payment_status is PaymentStatus.PENDING
    assert order.business_id == pack.business_id
    assert order.total_price == 20000
    assert order.discount_amount == 30000
    assert order.currency == "COP"
    assert (await store.get_pack(pack.id)).stock == 3


@pytest.mark.asyncio
async def test_create_rejects_more_than_stock(order_service, store, customer, pack):
    with pytest.raises(InsufficientStock):
        await order_service.create(customer, pack.id, 6)
    assert (await store.get_pack(pack.id)).stock == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -1, True, 1.5])
async def test_create_rejects_invalid_quantity(order_service, customer, pack, quantity):
    with pytest.raises(InvalidQuantity):
        await order_service.create(customer, pack.id, quantity)


@pytest.mark.asyncio
async def test_create_rejects_inactive_pack(order_service, store, customer, pack):
    await store.save_pack(pack.model_copy(update={"active": False}))
    with pytest.raises(PackInactive):
        await order_service.create(customer, pack.id, 1)


@pytest.mark.asyncio
async def test_create_is_idempotent_per_user_key(order_service, store, customer, other_customer, pack):
    first = await order_service.create(customer, pack.id, 1, idempotency_key="key-1")
    again = await order_service.create(customer, pack.id, 1, idempotency_key="key-1")
    other = await order_service.create(other_customer, pack.id, 1, idempotency_key="key-1")

    assert again.id == first.id
    assert other.id != first.id
    assert (await store.get_pack(pack.id)).stock == 3


# ─── Payment outcomes ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_success_confirms_and_mints_qr(order_service, codec, paid_order):
    assert paid_order.payment_status is PaymentStatus.PAID
    assert paid_order.fulfillment_status is FulfillmentStatus.CONFIRMED
    assert paid_order.paid_at is not None
    assert paid_order.confirmed_at is not None
    claims = codec.verify(paid_order.qr_token)
    assert claims.order_id == paid_order.id
    assert claims.business_id == paid_order.business_id
    assert paid_order.qr_expires_at == claims.expires_at


@pytest.mark.asyncio
async def test_repeated_success_changes_nothing(order_service, clock, paid_order):
    clock.advance(120)
    again = await order_service.apply_payment_outcome(paid_order.id, PaymentOutcome.SUCCESS)

    assert again.qr_token == paid_order.qr_token
    assert again.paid_at == paid_order.paid_at
    assert again.version_id == paid_order.version_id


@pytest.mark.asyncio
async def test_failure_then_success_is_paid(order_service, order):
    failed = await order_service.apply_payment_outcome(order.id, PaymentOutcome.FAILURE)
    assert failed.payment_status is PaymentStatus.FAILED
    assert failed.fulfillment_status is FulfillmentStatus.CREATED
    assert failed.qr_token is None

    paid = await order_service.apply_payment_outcome(order.id, PaymentOutcome.SUCCESS, PaymentMethod.PAYU)
    assert paid.payment_status is PaymentStatus.PAID
    assert paid.fulfillment_status is FulfillmentStatus.CONFIRMED
    assert paid.payment_method is PaymentMethod.PAYU


@pytest.mark.asyncio
async def test_late_failure_does_not_downgrade_paid(order_service, paid_order):
    after = await order_service.apply_payment_outcome(paid_order.id, PaymentOutcome.FAILURE)
    assert after.payment_status is PaymentStatus.PAID
    assert after.qr_token == paid_order.qr_token


@pytest.mark.asyncio
async def test_pending_moves_to_processing(order_service, order):
    processing = await order_service.apply_payment_outcome(order.id, PaymentOutcome.PENDING)
    assert processing.payment_status is PaymentStatus.PROCESSING


@pytest.mark.asyncio
async def test_outcome_for_canceled_order_is_ignored(order_service, customer, order):
    await order_service.cancel(customer, order.id, "changed my mind")
    after = await order_service.apply_payment_outcome(order.id, PaymentOutcome.SUCCESS)
    assert after.fulfillment_status is FulfillmentStatus.CANCELED
    assert after.qr_token is None


# ─── Advance ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_advance_walks_forward(order_service, business, paid_order):
    preparing = await order_service.advance(business, paid_order.id, FulfillmentStatus.PREPARING)
    ready = await order_service.advance(business, paid_order.id, FulfillmentStatus.READY)
    assert preparing.preparing_at is not None
    assert ready.fulfillment_status is FulfillmentStatus.READY
    assert ready.ready_at is not None


@pytest.mark.asyncio
async def test_advance_cannot_skip_steps(order_service, business, paid_order):
    with pytest.raises(InvalidTransition):
        await order_service.advance(business, paid_order.id, FulfillmentStatus.READY)
    with pytest.raises(InvalidTransition):
        await order_service.advance(business, paid_order.id, FulfillmentStatus.PICKED_UP)

    current = await order_service.load(paid_order.id)
    assert current.fulfillment_status is FulfillmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_advance_requires_owning_business(order_service, customer, other_business, paid_order):
    for ctx in (customer, other_business):
        with pytest.raises(NotAuthorized):
            await order_service.advance(ctx, paid_order.id, FulfillmentStatus.PREPARING)


# ─── Cancel ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_returns_stock(order_service, store, customer, pack, order):
    canceled = await order_service.cancel(customer, order.id, "plans changed")

    assert canceled.fulfillment_status is FulfillmentStatus.CANCELED
    assert canceled.cancellation_reason == "plans changed"
    assert canceled.canceled_at is not None
    assert (await store.get_pack(pack.id)).stock == 5


@pytest.mark.asyncio
async def test_cancel_paid_order_refunds_and_drops_qr(order_service, business, paid_order):
    canceled = await order_service.cancel(business, paid_order.id, "closing early")
    assert canceled.payment_status is PaymentStatus.REFUNDED
    assert canceled.qr_token is None
    assert canceled.qr_expires_at is None


@pytest.mark.asyncio
async def test_cancel_twice(order_service, store, customer, pack, order):
    await order_service.cancel(customer, order.id)
    with pytest.raises(AlreadyCanceled):
        await order_service.cancel(customer, order.id)
    assert (await store.get_pack(pack.id)).stock == 5


@pytest.mark.asyncio
async def test_cannot_cancel_fulfilled_order(order_service, redemption, customer, ready_order):
    await redemption.redeem(ready_order.qr_token, ready_order.business_id)
    with pytest.raises(AlreadyFulfilled):
        await order_service.cancel(customer, ready_order.id)


@pytest.mark.asyncio
async def test_cancel_by_stranger(order_service, other_customer, other_business, order):
    for ctx in (other_customer, other_business):
        with pytest.raises(NotAuthorized):
            await order_service.cancel(ctx, order.id)


# ─── Queries ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_is_scoped_to_caller(
    order_service, clock, customer, other_customer, business, other_business, pack,
):
    first = await order_service.create(customer, pack.id, 1)
    clock.advance(1)
    second = await order_service.create(customer, pack.id, 1)
    clock.advance(1)
    await order_service.create(other_customer, pack.id, 1)

    mine, total = await order_service.list_orders(customer)
    assert total == 2
    assert [o.id for o in mine] == [second.id, first.id]

    for_business, total = await order_service.list_orders(business, limit=2)
    assert total == 3
    assert len(for_business) == 2

    assert await order_service.list_orders(other_business) == ([], 0)


@pytest.mark.asyncio
async def test_list_filters_by_status(order_service, customer, business, order, paid_order):
    confirmed, total = await order_service.list_orders(business, status=FulfillmentStatus.CONFIRMED)
    assert total == 1
    assert confirmed[0].id == paid_order.id
    assert await order_service.list_orders(customer, status=FulfillmentStatus.READY) == ([], 0)


@pytest.mark.asyncio
async def test_get_requires_owner(order_service, other_customer, order):
    with pytest.raises(NotAuthorized):
        await order_service.get(other_customer, order.id)
