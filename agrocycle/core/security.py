from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Any
import uuid

from jose import JWTError, jwt

from agrocycle.config import settings


ROLE_BUYER = "buyer"
ROLE_HUB = "hub"


@dataclass(frozen=True)
class BuyerIdentity:
    """Authenticated buyer; orders and deliveries are scoped to buyer_id."""
    buyer_id: uuid.UUID


@dataclass(frozen=True)
class HubIdentity:
    """Authenticated hub manager or staff member acting for hub_id."""
    staff_id: uuid.UUID
    hub_id: uuid.UUID


def create_access_token(
    subject: str | uuid.UUID,
    role: str,
    expires_delta: Optional[timedelta] = None,
    additional_claims: Optional[dict[str, Any]] = None
) -> str:
    """
    Create a JWT access token.

    Tokens are normally issued by the auth service; this is used by
    tooling and tests that need to act as a buyer or hub.

    Args:
        subject: Buyer ID or hub staff ID
        role: "buyer" or "hub"
        expires_delta: Optional custom expiration time
        additional_claims: Optional additional claims (e.g. hub_id)

    Returns:
        Encoded JWT token string
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "sub": str(subject),
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "jti": str(uuid.uuid4()),
        "type": "access"
    }

    if additional_claims:
        to_encode.update(additional_claims)

    return jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
    except JWTError:
        return None


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    """UUID from a token claim or gateway note, or None if it is not one."""
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def resolve_identity(token: str) -> Optional[BuyerIdentity | HubIdentity]:
    """
    Turn an access token into the identity it represents.

    Returns None for invalid, expired or non-access tokens, and for tokens
    whose role is neither buyer nor hub.
    """
    payload = decode_token(token)
    if payload is None or payload.get("type") != "access":
        return None

    subject = parse_uuid(payload.get("sub"))
    if subject is None:
        return None

    role = payload.get("role")
    if role == ROLE_BUYER:
        return BuyerIdentity(buyer_id=subject)
    if role == ROLE_HUB:
        hub_id = parse_uuid(payload.get("hub_id"))
        if hub_id is None:
            return None
        return HubIdentity(staff_id=subject, hub_id=hub_id)
    return None
