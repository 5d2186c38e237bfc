"""
API dependencies
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.database import get_db
from app.core.security import decode_token
from app.models.user import User
from app.services.shiprocket_client import ShiprocketClient
from app.services.shipping_service import ShippingService
from app.services.shipping_webhooks import ShippingWebhookProcessor

security = HTTPBearer()


def _subject_id(payload: dict):
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Resolve the bearer token to an active user"""
    payload = decode_token(credentials.credentials)
    user_id = _subject_id(payload) if payload and payload.get("type") == "access" else None

    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or disabled"
        )

    return user


async def get_current_admin(user: User = Depends(get_current_user)) -> User:
    """Require admin user"""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return user


def get_shiprocket_client(request: Request) -> ShiprocketClient:
    """Process-wide Shiprocket client created in the app lifespan"""
    client = getattr(request.app.state, "shiprocket", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Shipping is not configured"
        )
    return client


async def get_shipping_service(
    db: AsyncSession = Depends(get_db),
    client: ShiprocketClient = Depends(get_shiprocket_client),
) -> ShippingService:
    return ShippingService(db, client)


async def get_webhook_processor(db: AsyncSession = Depends(get_db)) -> ShippingWebhookProcessor:
    return ShippingWebhookProcessor(db)
