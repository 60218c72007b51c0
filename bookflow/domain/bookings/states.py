from enum import Enum


class BookingState(str, Enum):
    CREATED = "CREATED"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({BookingState.CONFIRMED, BookingState.CANCELLED})
CANCELLABLE_STATES = frozenset(set(BookingState) - TERMINAL_STATES)


class PaymentStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


def payment_status_for(state: BookingState, payment_ref: str | None) -> PaymentStatus:
    """Derive the client-facing payment label from persisted booking state only."""
    if state in {BookingState.CREATED, BookingState.PAYMENT_REQUIRED}:
        return PaymentStatus.UNPAID
    if state == BookingState.PAYMENT_PENDING:
        return PaymentStatus.PROCESSING
    if state == BookingState.PAYMENT_SUCCEEDED:
        return PaymentStatus.PAID
    if state == BookingState.PAYMENT_FAILED:
        return PaymentStatus.FAILED
    if state == BookingState.CONFIRMED:
        return PaymentStatus.PAID if payment_ref else PaymentStatus.NOT_REQUIRED
    return PaymentStatus.CANCELLED
