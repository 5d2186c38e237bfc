"""
Order models

The order-placement flow owns these rows. Shipping appends the carrier
columns below; they are written only by the shipment orchestrator and the
carrier webhook, never cleared.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Text, Index
from sqlalchemy.orm import relationship

from app.core.database import Base


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_awb_number", "awb_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    status = Column(String(50), default="pending")  # pending, confirmed, shipped, delivered, cancelled

    # Pricing
    total_amount = Column(Float, nullable=False)
    delivery_charge = Column(Float, default=0.0)
    payment_method = Column(String(50))  # cod, online

    # Shipping address snapshot
    shipping_full_name = Column(String(255))
    shipping_address_line1 = Column(Text)
    shipping_address_line2 = Column(Text)
    shipping_city = Column(String(100))
    shipping_state = Column(String(100))
    shipping_postal_code = Column(String(20))
    shipping_country = Column(String(100))
    shipping_phone_number = Column(String(20))

    # Carrier (Shiprocket) shipment state
    carrier_order_id = Column("shiprocket_order_id", String(255))
    carrier_shipment_id = Column("shiprocket_shipment_id", String(255))
    awb_number = Column(String(255))
    courier_id = Column(Integer)
    courier_name = Column(String(255))
    shipment_status = Column(String(100))  # NULL until a shipment exists
    label_url = Column(Text)
    manifest_url = Column(Text)
    tracking_url = Column(Text)
    pickup_scheduled_date = Column(DateTime(timezone=True))
    estimated_delivery_date = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order")

    @property
    def has_shipment(self) -> bool:
        return bool(self.carrier_shipment_id)

    @property
    def is_trackable(self) -> bool:
        return bool(self.awb_number or self.carrier_shipment_id)

    def __repr__(self):
        return f"<Order(id={self.id}, shipment_status={self.shipment_status}, awb={self.awb_number})>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    product_id = Column(Integer, nullable=False)

    # Snapshot of product at time of order
    product_name = Column(String, nullable=False)
    product_sku = Column(String)
    hsn_code = Column(String(20))
    price_at_time = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)
    gst_amount = Column(Float, default=0.0)

    order = relationship("Order", back_populates="items")
