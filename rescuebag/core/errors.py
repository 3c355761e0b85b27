"""
RescueBag — Error taxonomy

Every failure the order core can produce is an OrderError subclass carrying:
  - code:        stable machine-readable string
  - status_code: HTTP mapping used by the API exception handler
  - retryable:   True only for transient infrastructure failures

Conflict and validation errors are expected outcomes (the caller decides the
messaging); integrity errors are logged with elevated severity where raised.
"""


class OrderError(Exception):
    code: str = "order_error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class RedemptionError(OrderError):
    """QR redemption failed."""
    code = "redemption_error"


# ── Validation ────────────────────────────────────────────────────────────────

class InsufficientStock(OrderError):
    """Not enough stock left for this pack."""
    code = "insufficient_stock"
    status_code = 409


class PackInactive(OrderError):
    """Pack is not available for reservation."""
    code = "pack_inactive"
    status_code = 409


class PackNotFound(OrderError):
    """Pack not found."""
    code = "pack_not_found"
    status_code = 404


class InvalidQuantity(OrderError):
    """Quantity must be a positive integer."""
    code = "invalid_quantity"
    status_code = 422


class QrMalformed(RedemptionError):
    """QR code does not contain a valid token."""
    code = "qr_malformed"
    status_code = 400


# ── Integrity / security ──────────────────────────────────────────────────────

class QrTampered(RedemptionError):
    """QR token signature does not match."""
    code = "qr_tampered"
    status_code = 401


class QrExpired(RedemptionError):
    """QR token has expired."""
    code = "qr_expired"
    status_code = 410


# ── Conflicts / state invariants ──────────────────────────────────────────────

class OrderNotFound(RedemptionError):
    """Order not found."""
    code = "order_not_found"
    status_code = 404


class BusinessMismatch(RedemptionError):
    """This order does not belong to the scanning business."""
    code = "business_mismatch"
    status_code = 403


class NotReadyForPickup(RedemptionError):
    """Order is not ready for pickup yet."""
    code = "not_ready_for_pickup"
    status_code = 409


class AlreadyRedeemed(RedemptionError):
    """Order was already picked up."""
    code = "already_redeemed"
    status_code = 409


class InvalidTransition(OrderError):
    """Requested status change is not allowed."""
    code = "invalid_transition"
    status_code = 409


class AlreadyCanceled(OrderError):
    """Order is already canceled."""
    code = "already_canceled"
    status_code = 409


class AlreadyFulfilled(OrderError):
    """Order was already fulfilled."""
    code = "already_fulfilled"
    status_code = 409


class AlreadyPaid(OrderError):
    """Order is already paid."""
    code = "already_paid"
    status_code = 409


class NotAuthorized(OrderError):
    """Not authorized for this order."""
    code = "not_authorized"
    status_code = 403


class AmountMismatch(OrderError):
    """Payment amount does not match the order total."""
    code = "amount_mismatch"
    status_code = 400


class OrderConflict(OrderError):
    """Order conflicts with data already stored."""
    code = "order_conflict"
    status_code = 409


class InvalidWebhook(OrderError):
    """Webhook payload could not be processed."""
    code = "invalid_webhook"
    status_code = 400


# ── Transient infrastructure ──────────────────────────────────────────────────

class StoreUnavailable(OrderError):
    """Order store is unavailable. Please retry."""
    code = "store_unavailable"
    status_code = 503
    retryable = True


class PaymentProviderUnavailable(OrderError):
    """Payment provider is unreachable. Please retry."""
    code = "payment_provider_unavailable"
    status_code = 503
    retryable = True


class PaymentTimeout(OrderError):
    """No final payment outcome arrived in time."""
    code = "payment_timeout"
    status_code = 504
    retryable = True
