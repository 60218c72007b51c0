import logging

from fastapi import APIRouter, Depends, Query, Request, status

from bookflow.api.dependencies import get_checkout_initiator, get_reconciler
from bookflow.domain.payments import schemas
from bookflow.domain.payments.checkout import CheckoutInitiator
from bookflow.domain.payments.reconciliation import PaymentReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/checkout-sessions",
    response_model=schemas.CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout_session(
    request: schemas.CheckoutSessionRequest,
    initiator: CheckoutInitiator = Depends(get_checkout_initiator),
) -> schemas.CheckoutSessionResponse:
    result = await initiator.start(request.booking_id, request.return_url)
    return schemas.CheckoutSessionResponse(
        booking_id=result.booking_id,
        checkout_url=result.checkout_url,
        payment_ref=result.payment_ref,
    )


@router.get("/checkout-sessions/status", response_model=schemas.CheckoutStatusResponse)
async def checkout_session_status(
    session_id: str = Query(..., alias="sessionId", min_length=1),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> schemas.CheckoutStatusResponse:
    view = await reconciler.poll(session_id)
    return schemas.CheckoutStatusResponse.model_validate(view)


@router.post("/payment-webhook", response_model=schemas.WebhookAck, status_code=status.HTTP_200_OK)
async def payment_webhook(
    http_request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> schemas.WebhookAck:
    payload = await http_request.body()
    ack = await reconciler.handle_webhook(payload, http_request.headers.get("Stripe-Signature"))
    logger.debug("payment_webhook_acknowledged", extra={"extra": ack})
    return schemas.WebhookAck.model_validate(ack)
