
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.api.dependencies import get_app_session_factory, get_executor, get_identity
from bookflow.domain.bookings import schemas
from bookflow.domain.bookings import service as booking_service
from bookflow.domain.bookings.executor import TransitionExecutor
from bookflow.infra.auth import Identity

router = APIRouter()


@router.post(
    "/bookings",
    response_model=schemas.BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    request: schemas.BookingCreateRequest,
    response: Response,
    identity: Identity = Depends(get_identity),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_app_session_factory),
    executor: TransitionExecutor = Depends(get_executor),
) -> schemas.BookingCreateResponse:
    result = await booking_service.create_booking(session_factory, executor, request, identity)
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return schemas.BookingCreateResponse(
        booking_id=result.booking_id,
        state=result.state,
        claim_token=result.claim_token,
    )


@router.get("/bookings/{booking_id}", response_model=schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    identity: Identity = Depends(get_identity),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_app_session_factory),
) -> schemas.BookingResponse:
    async with session_factory() as session:
        booking = await booking_service.get_booking_for(session, booking_id, identity)
        return booking_service.booking_response(booking)


@router.post("/bookings/{booking_id}/claim", response_model=schemas.BookingResponse)
async def claim_booking(
    booking_id: str,
    request: schemas.BookingClaimRequest,
    identity: Identity = Depends(get_identity),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_app_session_factory),
) -> schemas.BookingResponse:
    booking = await booking_service.claim_booking(session_factory, booking_id, identity, request.claim_token)
    return booking_service.booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=schemas.BookingResponse)
async def cancel_booking(
    booking_id: str,
    request: schemas.BookingCancelRequest | None = None,
    identity: Identity = Depends(get_identity),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_app_session_factory),
    executor: TransitionExecutor = Depends(get_executor),
) -> schemas.BookingResponse:
    reason = request.reason if request else None
    await booking_service.cancel_booking(session_factory, executor, booking_id, identity, reason)
    async with session_factory() as session:
        booking = await booking_service.get_booking_for(session, booking_id, identity)
        return booking_service.booking_response(booking)


@router.get("/bookings/{booking_id}/transitions", response_model=schemas.BookingTransitionsResponse)
async def list_booking_transitions(
    booking_id: str,
    identity: Identity = Depends(get_identity),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_app_session_factory),
) -> schemas.BookingTransitionsResponse:
    async with session_factory() as session:
        return await booking_service.transition_history(session, booking_id, identity)
