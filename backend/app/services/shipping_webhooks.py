"""
Shiprocket webhook processing

Shiprocket pushes `{awb, current_status, ...}` whenever a shipment moves.
The status string is copied onto every order with that AWB. Anything that
cannot be applied is written to shipping_webhook_failures for admin replay;
the carrier is acknowledged either way.
"""
import hmac
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ShippingError, StoreError, WebhookFailureNotFoundError
from app.core.utils import utcnow
from app.models.order import Order
from app.models.shipment import WebhookFailure

logger = logging.getLogger(__name__)


def verify_webhook_token(provided: Optional[str]) -> bool:
    """
    Check the shared-secret header sent by Shiprocket.

    Verification is off while SHIPROCKET_WEBHOOK_TOKEN is empty.
    """
    expected = settings.SHIPROCKET_WEBHOOK_TOKEN
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


class ShippingWebhookProcessor:
    """Applies carrier status pushes to orders and keeps the ones that fail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _orders_by_awb(self, awb: str) -> List[Order]:
        result = await self.db.execute(
            select(Order).where(Order.awb_number == awb).with_for_update()
        )
        return list(result.scalars().all())

    async def process(self, payload: Dict[str, Any]) -> bool:
        """
        Apply one webhook delivery.

        Duplicate deliveries rewrite the same status. Returns False when the
        update was dead-lettered instead.
        """
        awb = payload.get("awb")
        current_status = payload.get("current_status")

        if not awb or not current_status:
            await self._dead_letter(payload, "Missing awb or current_status")
            return False

        awb = str(awb)
        current_status = str(current_status)

        try:
            orders = await self._orders_by_awb(awb)
            if not orders:
                await self.db.rollback()
                await self._dead_letter(payload, f"No order with AWB {awb}")
                return False

            for order in orders:
                order.shipment_status = current_status
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to apply Shiprocket webhook for AWB {awb}: {e}")
            await self._dead_letter(payload, f"Database error: {e}")
            return False

        logger.info(f"Shiprocket webhook: AWB {awb} -> {current_status} ({len(orders)} order(s))")
        return True

    async def _dead_letter(self, payload: Dict[str, Any], reason: str):
        awb = payload.get("awb")
        current_status = payload.get("current_status")
        logger.warning(f"Dead-lettering Shiprocket webhook (awb={awb}): {reason}")

        try:
            self.db.add(WebhookFailure(
                awb=str(awb) if awb else None,
                current_status=str(current_status) if current_status else None,
                payload=payload,
                reason=reason,
            ))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            # Last resort: the payload survives only in the log
            logger.error(f"Could not record webhook failure ({reason}): {e}; payload={payload}")

    async def list_failures(self, include_resolved: bool = False, limit: int = 100) -> List[WebhookFailure]:
        query = select(WebhookFailure).order_by(WebhookFailure.received_at.desc()).limit(limit)
        if not include_resolved:
            query = query.where(WebhookFailure.resolved_at.is_(None))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def replay(self, failure_id: int) -> WebhookFailure:
        """
        Re-apply a dead-lettered webhook.

        Raises:
            WebhookFailureNotFoundError: unknown failure id
            ShippingError: already resolved, or still not applicable
            StoreError: the database rejected the update
        """
        result = await self.db.execute(
            select(WebhookFailure).where(WebhookFailure.id == failure_id).with_for_update()
        )
        failure = result.scalar_one_or_none()
        if not failure:
            raise WebhookFailureNotFoundError(f"Webhook failure {failure_id} not found")

        if failure.is_resolved:
            await self.db.rollback()
            raise ShippingError(
                message=f"Webhook failure {failure_id} was already resolved",
                code="WEBHOOK_ALREADY_RESOLVED",
            )

        payload = failure.payload or {}
        awb = payload.get("awb") or failure.awb
        current_status = payload.get("current_status") or failure.current_status
        if not awb or not current_status:
            await self.db.rollback()
            raise ShippingError(
                message="Webhook payload has no awb or current_status",
                code="WEBHOOK_NOT_REPLAYABLE",
                details={"failure_id": failure_id},
            )

        try:
            orders = await self._orders_by_awb(str(awb))
            if not orders:
                await self.db.rollback()
                raise ShippingError(
                    message=f"No order with AWB {awb}",
                    code="WEBHOOK_NOT_REPLAYABLE",
                    details={"failure_id": failure_id, "awb": str(awb)},
                )

            for order in orders:
                order.shipment_status = str(current_status)
            failure.resolved_at = utcnow()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Replay of webhook failure {failure_id} failed: {e}")
            raise StoreError(message="Could not apply webhook replay", details={"failure_id": failure_id})

        logger.info(f"Replayed webhook failure {failure_id}: AWB {awb} -> {current_status}")
        return failure
