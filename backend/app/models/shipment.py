"""
Shipment lifecycle status and webhook dead-letter records.

Shipment state itself lives on the order row (see app.models.order).
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index

from app.core.database import Base


class ShipmentStatus(str, enum.Enum):
    """
    Shipment lifecycle status.

    The first four are written by the orchestrator. After pickup the carrier
    drives the status through webhooks and may report strings outside this
    enum; those are stored verbatim.
    """
    CREATED = "created"
    AWB_GENERATED = "awb_generated"
    PICKUP_SCHEDULED = "pickup_scheduled"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class WebhookFailure(Base):
    """
    Carrier webhook that could not be applied to an order.

    The webhook endpoint always acknowledges the carrier, so a failed update
    would otherwise be lost. Admins list these and replay them once the
    cause (unknown AWB, database outage) is fixed.
    """
    __tablename__ = "shipping_webhook_failures"
    __table_args__ = (
        Index("ix_shipping_webhook_failures_awb", "awb"),
        Index("ix_shipping_webhook_failures_resolved_at", "resolved_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    awb = Column(String(255), nullable=True)
    current_status = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=True)
    reason = Column(Text, nullable=False)

    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def __repr__(self):
        return f"<WebhookFailure(id={self.id}, awb={self.awb}, reason={self.reason!r})>"
