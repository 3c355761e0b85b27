"""
RescueBag — Fulfillment state machine

    CREATED ──(payment PAID)──▶ CONFIRMED ──▶ PREPARING ──▶ READY ──(redeem)──▶ PICKED_UP / DELIVERED
       │                            │              │           │
       └────────────────────────────┴──(cancel)────┴───────────┴──▶ CANCELED

PICKED_UP, DELIVERED and CANCELED are terminal. Nothing ever moves backwards.
"""
from rescuebag.core.errors import InvalidTransition
from rescuebag.models.order import FulfillmentMethod, FulfillmentStatus

ALLOWED_TRANSITIONS: dict[FulfillmentStatus, frozenset[FulfillmentStatus]] = {
    FulfillmentStatus.CREATED: frozenset({FulfillmentStatus.CONFIRMED, FulfillmentStatus.CANCELED}),
    FulfillmentStatus.CONFIRMED: frozenset({FulfillmentStatus.PREPARING, FulfillmentStatus.CANCELED}),
    FulfillmentStatus.PREPARING: frozenset({FulfillmentStatus.READY, FulfillmentStatus.CANCELED}),
    FulfillmentStatus.READY: frozenset({
        FulfillmentStatus.PICKED_UP, FulfillmentStatus.DELIVERED, FulfillmentStatus.CANCELED,
    }),
    FulfillmentStatus.PICKED_UP: frozenset(),
    FulfillmentStatus.DELIVERED: frozenset(),
    FulfillmentStatus.CANCELED: frozenset(),
}

# Business-driven steps are only legal from the immediately preceding state.
ADVANCE_PREDECESSOR: dict[FulfillmentStatus, FulfillmentStatus] = {
    FulfillmentStatus.PREPARING: FulfillmentStatus.CONFIRMED,
    FulfillmentStatus.READY: FulfillmentStatus.PREPARING,
}

# Statuses a QR scan may complete, depending on the redemption policy.
REDEEMABLE_STRICT = frozenset({FulfillmentStatus.READY})
REDEEMABLE_RELAXED = frozenset({
    FulfillmentStatus.CONFIRMED, FulfillmentStatus.PREPARING, FulfillmentStatus.READY,
})


def is_allowed(current: FulfillmentStatus, target: FulfillmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: FulfillmentStatus, target: FulfillmentStatus) -> None:
    if not is_allowed(current, target):
        raise InvalidTransition(
            f"Cannot move order from {current.value} to {target.value}."
        )


def check_advance(current: FulfillmentStatus, target: FulfillmentStatus) -> None:
    expected = ADVANCE_PREDECESSOR.get(target)
    if expected is None:
        raise InvalidTransition(f"{target.value} cannot be requested directly.")
    if current != expected:
        raise InvalidTransition(
            f"Cannot move order to {target.value} from {current.value}; "
            f"it must be {expected.value} first."
        )


def redeemable_statuses(requires_ready: bool) -> frozenset[FulfillmentStatus]:
    return REDEEMABLE_STRICT if requires_ready else REDEEMABLE_RELAXED


def redemption_target(method: FulfillmentMethod) -> FulfillmentStatus:
    if method is FulfillmentMethod.DELIVERY:
        return FulfillmentStatus.DELIVERED
    return FulfillmentStatus.PICKED_UP
