from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt
from fastapi.security.utils import get_authorization_scheme_param
from starlette.requests import Request

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
CLAIM_TOKEN_PURPOSE = "booking_claim"


@dataclass(frozen=True)
class Identity:
    user_id: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def has_any_role(self, roles: set[str]) -> bool:
        return bool(self.roles & roles)


ANONYMOUS = Identity()


def create_access_token(subject: str, roles: list[str], ttl_minutes: int, secret: str) -> str:
    now = datetime.now(tz=timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "roles": roles,
        "iat": now,
        "exp": now + timedelta(minutes=ttl_minutes),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_access_token(token: str, secret: str) -> dict[str, Any]:
    return jwt.decode(token, secret, algorithms=[ALGORITHM])


def resolve_request_identity(request: Request, secret: str) -> Identity:
    """Map the bearer token on a request to an identity.

    A missing token is anonymous. An invalid or expired token is treated as
    anonymous as well; booking flows accept anonymous clients.
    """

    scheme, token = get_authorization_scheme_param(request.headers.get("Authorization"))
    if not token or scheme.lower() != "bearer":
        return ANONYMOUS
    try:
        decoded = decode_access_token(token, secret)
    except jwt.InvalidTokenError as exc:
        logger.info("identity_token_rejected", extra={"extra": {"reason": type(exc).__name__}})
        return ANONYMOUS
    subject = decoded.get("sub")
    if not subject:
        return ANONYMOUS
    roles = decoded.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return Identity(user_id=str(subject), roles=frozenset(str(role) for role in roles))


def issue_claim_token(booking_id: str, correlation_id: str | None, ttl_minutes: int, secret: str) -> str:
    now = datetime.now(tz=timezone.utc)
    payload: Dict[str, Any] = {
        "purpose": CLAIM_TOKEN_PURPOSE,
        "booking_id": booking_id,
        "correlation_id": correlation_id,
        "iat": now,
        "exp": now + timedelta(minutes=ttl_minutes),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def verify_claim_token(token: str | None, booking_id: str, correlation_id: str | None, secret: str) -> bool:
    if not token:
        return False
    try:
        decoded = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.InvalidTokenError:
        return False
    if decoded.get("purpose") != CLAIM_TOKEN_PURPOSE:
        return False
    if decoded.get("booking_id") != booking_id:
        return False
    return decoded.get("correlation_id") == correlation_id
