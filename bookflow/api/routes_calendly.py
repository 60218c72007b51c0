import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.api.dependencies import get_app_session_factory, get_executor
from bookflow.domain.bookings import calendly_intake
from bookflow.domain.bookings.executor import TransitionExecutor
from bookflow.domain.errors import CollaboratorUnavailable, ValidationError
from bookflow.infra import calendly
from bookflow.infra.metrics import metrics
from bookflow.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _verify(payload: bytes, header: str | None) -> None:
    signing_key = settings.calendly_webhook_signing_key
    if not signing_key:
        if settings.app_env == "dev":
            logger.warning("calendly_signature_check_skipped")
            return
        raise CollaboratorUnavailable("Calendly webhook disabled", collaborator="calendly")
    try:
        calendly.verify_signature(
            payload,
            header,
            signing_key,
            tolerance_seconds=settings.calendly_signature_tolerance_seconds,
        )
    except calendly.WebhookSignatureError as exc:
        metrics.record_webhook("calendly", "invalid")
        logger.warning("calendly_webhook_invalid", extra={"extra": {"reason": exc.code}})
        raise ValidationError(str(exc), title="Unauthorized", status_code=401) from exc


@router.post("/calendly-webhook", status_code=status.HTTP_200_OK)
async def calendly_webhook(
    http_request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_app_session_factory),
    executor: TransitionExecutor = Depends(get_executor),
) -> dict[str, Any]:
    payload = await http_request.body()
    _verify(payload, http_request.headers.get(calendly.SIGNATURE_HEADER))
    try:
        webhook = calendly_intake.CalendlyWebhook.model_validate(json.loads(payload or b"{}"))
    except (ValueError, PydanticValidationError) as exc:
        raise ValidationError("Malformed Calendly webhook body", title="Bad Request", status_code=400) from exc

    result = await calendly_intake.handle_webhook(session_factory, executor, webhook)
    metrics.record_webhook("calendly", result["status"])
    return result
