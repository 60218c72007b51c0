from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bookflow.domain.bookings.states import BookingState, PaymentStatus


def to_camel(string: str) -> str:
    parts = string.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, use_enum_values=True)


class BookingCreateRequest(CamelModel):
    builder_id: str = Field(min_length=1, max_length=64)
    session_type_id: str = Field(min_length=1, max_length=36)
    calendar_event_ref: str = Field(min_length=1, max_length=512)
    invitee_ref: str | None = Field(None, max_length=512)
    starts_at: datetime
    ends_at: datetime
    invitee_email: str | None = Field(None, max_length=255)
    invitee_name: str | None = Field(None, max_length=255)
    custom_question_responses: dict[str, Any] = Field(default_factory=dict)
    claim_token: str | None = None

    @model_validator(mode="after")
    def validate_window(self) -> "BookingCreateRequest":
        if self.ends_at <= self.starts_at:
            raise ValueError("endsAt must be after startsAt")
        return self

    @property
    def correlation_id(self) -> str | None:
        value = self.custom_question_responses.get("correlation_id")
        if value is None:
            return None
        value = str(value).strip()
        return value or None


class BookingCreateResponse(CamelModel):
    booking_id: str
    state: BookingState
    claim_token: str | None = None


class BookingResponse(CamelModel):
    booking_id: str
    builder_id: str
    session_type_id: str
    client_id: str | None = None
    state: BookingState
    payment_status: PaymentStatus
    starts_at: datetime
    ends_at: datetime
    amount_cents: int
    currency: str
    payment_ref: str | None = None
    last_transition_at: datetime | None = None


class BookingClaimRequest(CamelModel):
    claim_token: str


class BookingCancelRequest(CamelModel):
    reason: str | None = Field(None, max_length=255)


class BookingTransitionItem(CamelModel):
    from_state: BookingState
    to_state: BookingState
    event_type: str
    version: int
    created_at: datetime


class BookingTransitionsResponse(CamelModel):
    booking_id: str
    state: BookingState
    allowed_events: list[str]
    transitions: list[BookingTransitionItem]
