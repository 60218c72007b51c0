from pydantic import Field

from bookflow.domain.bookings.schemas import CamelModel


class CheckoutSessionRequest(CamelModel):
    booking_id: str = Field(min_length=1, max_length=36)
    return_url: str = Field(min_length=1, max_length=2048)


class CheckoutSessionResponse(CamelModel):
    booking_id: str
    checkout_url: str
    payment_ref: str


class CheckoutStatusResponse(CamelModel):
    booking_id: str
    payment_status: str
    booking_state: str


class WebhookAck(CamelModel):
    received: bool
    processed: bool
    status: str
