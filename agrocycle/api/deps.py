from typing import Annotated, Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from agrocycle.database import get_db
from agrocycle.core.security import BuyerIdentity, HubIdentity, resolve_identity
from agrocycle.services.payment_service import PaymentService


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme; missing credentials are reported as 401 below
security = HTTPBearer(auto_error=False)


async def get_current_identity(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> BuyerIdentity | HubIdentity:
    """
    Dependency to get the authenticated buyer or hub from the bearer token.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    identity = resolve_identity(credentials.credentials)
    if identity is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    return identity


async def get_current_buyer(
    identity: Annotated[BuyerIdentity | HubIdentity, Depends(get_current_identity)],
) -> BuyerIdentity:
    if not isinstance(identity, BuyerIdentity):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Buyer access required"
        )
    return identity


async def get_current_hub(
    identity: Annotated[BuyerIdentity | HubIdentity, Depends(get_current_identity)],
) -> HubIdentity:
    if not isinstance(identity, HubIdentity):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Hub access required"
        )
    return identity


def get_payment_service() -> PaymentService:
    """Razorpay adapter; overridden in tests with a stub gateway client."""
    return PaymentService()


# Type aliases for cleaner dependency injection
CurrentBuyer = Annotated[BuyerIdentity, Depends(get_current_buyer)]
CurrentHub = Annotated[HubIdentity, Depends(get_current_hub)]
DB = Annotated[AsyncSession, Depends(get_db)]
Gateway = Annotated[PaymentService, Depends(get_payment_service)]
