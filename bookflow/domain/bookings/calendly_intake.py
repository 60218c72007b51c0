from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.domain.bookings import service as booking_service
from bookflow.domain.bookings import store
from bookflow.domain.bookings.events import BookingCancelled
from bookflow.domain.bookings.executor import TransitionExecutor
from bookflow.domain.bookings.schemas import BookingCreateRequest
from bookflow.domain.errors import ValidationError
from bookflow.infra.auth import ANONYMOUS
from bookflow.settings import settings

logger = logging.getLogger(__name__)

INVITEE_CREATED = "invitee.created"
INVITEE_CANCELED = "invitee.canceled"


class CalendlyQuestionAnswer(BaseModel):
    question: str
    answer: str | None = None


class CalendlyScheduledEvent(BaseModel):
    uri: str
    start_time: datetime
    end_time: datetime
    event_type: str


class CalendlyInviteePayload(BaseModel):
    uri: str
    email: str | None = None
    name: str | None = None
    scheduled_event: CalendlyScheduledEvent
    questions_and_answers: list[CalendlyQuestionAnswer] = Field(default_factory=list)
    cancellation: dict[str, Any] | None = None


class CalendlyWebhook(BaseModel):
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


def _question_responses(invitee: CalendlyInviteePayload) -> dict[str, Any]:
    responses: dict[str, Any] = {qa.question: qa.answer for qa in invitee.questions_and_answers}
    correlation = responses.get(settings.calendly_correlation_question)
    if correlation:
        responses["correlation_id"] = correlation.strip()
    return responses


def _validate(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Malformed Calendly invitee payload",
            errors=[{"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]} for err in exc.errors()],
        ) from exc


def _parse_invitee(payload: dict[str, Any]) -> CalendlyInviteePayload:
    return _validate(CalendlyInviteePayload, payload)


async def handle_webhook(
    session_factory: async_sessionmaker[AsyncSession],
    executor: TransitionExecutor,
    webhook: CalendlyWebhook,
) -> dict[str, Any]:
    if webhook.event == INVITEE_CREATED:
        return await _handle_invitee_created(session_factory, executor, _parse_invitee(webhook.payload))
    if webhook.event == INVITEE_CANCELED:
        return await _handle_invitee_canceled(session_factory, executor, _parse_invitee(webhook.payload))
    logger.info("calendly_webhook_ignored", extra={"extra": {"event": webhook.event}})
    return {"received": True, "processed": False, "status": "ignored"}


async def _handle_invitee_created(
    session_factory: async_sessionmaker[AsyncSession],
    executor: TransitionExecutor,
    invitee: CalendlyInviteePayload,
) -> dict[str, Any]:
    async with session_factory() as session:
        session_type = await store.get_session_type_by_calendly_uri(session, invitee.scheduled_event.event_type)
    if session_type is None:
        logger.warning(
            "calendly_event_type_unknown",
            extra={"extra": {"event_type": invitee.scheduled_event.event_type}},
        )
        return {"received": True, "processed": False, "status": "ignored"}

    request = _validate(
        BookingCreateRequest,
        {
            "builder_id": session_type.builder_id,
            "session_type_id": session_type.session_type_id,
            "calendar_event_ref": invitee.scheduled_event.uri,
            "invitee_ref": invitee.uri,
            "starts_at": invitee.scheduled_event.start_time,
            "ends_at": invitee.scheduled_event.end_time,
            "invitee_email": invitee.email,
            "invitee_name": invitee.name,
            "custom_question_responses": _question_responses(invitee),
        },
    )
    result = await booking_service.create_booking(session_factory, executor, request, ANONYMOUS)
    logger.info(
        "calendly_invitee_created",
        extra={
            "extra": {
                "booking_id": result.booking_id,
                "state": result.state.value,
                "created": result.created,
            }
        },
    )
    return {"received": True, "processed": True, "status": "applied", "bookingId": result.booking_id}


async def _handle_invitee_canceled(
    session_factory: async_sessionmaker[AsyncSession],
    executor: TransitionExecutor,
    invitee: CalendlyInviteePayload,
) -> dict[str, Any]:
    async with session_factory() as session:
        booking = await store.get_booking_by_calendar_event_ref(session, invitee.scheduled_event.uri)
    if booking is None:
        logger.info(
            "calendly_cancel_unknown_booking",
            extra={"extra": {"calendar_event_ref": invitee.scheduled_event.uri}},
        )
        return {"received": True, "processed": False, "status": "ignored"}

    reason = None
    if invitee.cancellation:
        reason = invitee.cancellation.get("reason")
    outcome = await executor.apply(booking.booking_id, BookingCancelled(reason=reason, cancelled_by="calendly"))
    return {
        "received": True,
        "processed": not outcome.stale,
        "status": "stale" if outcome.stale else "applied",
        "bookingId": booking.booking_id,
    }
