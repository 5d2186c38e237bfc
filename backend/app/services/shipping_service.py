"""
Shipping Service

Moves an order through the Shiprocket shipment lifecycle:

    create_shipment -> assign_courier -> request_pickup -> (label, manifest)
                                                        -> carrier webhooks
    cancel_shipment from any state once an AWB exists

Each mutating step locks the order row (SELECT ... FOR UPDATE), checks its
precondition before touching the carrier, calls the carrier, and writes the
new shipment columns in the same transaction. A carrier failure leaves the
order unchanged.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.exceptions import (
    CarrierRejectedError,
    NoCourierAvailableError,
    OrderNotFoundError,
    ShipmentPreconditionError,
    ShippingError,
    StoreError,
)
from app.core.utils import utcnow
from app.models.order import Order
from app.models.shipment import ShipmentStatus
from app.schemas.shiprocket import (
    AWBAssignResponse,
    CancelShipmentResponse,
    CarrierOrderItem,
    CarrierOrderRequest,
    CarrierOrderResponse,
    LabelResponse,
    ManifestResponse,
    PickupResponse,
    ServiceabilityResponse,
    TrackingResponse,
)
from app.services.shiprocket_client import ShiprocketClient

logger = logging.getLogger(__name__)

SHIPMENT_NOT_CREATED = "Shipment not created yet. Please create shipment first."
TRACKING_NOT_AVAILABLE = "Tracking not available yet"
AWB_NOT_GENERATED = "AWB not generated yet. Please assign a courier first."
CARRIER_TIMEZONE = timezone(timedelta(hours=5, minutes=30))
CARRIER_DATE_FORMAT = "%b %d, %Y"


@dataclass
class PackageDimensions:
    """Parcel size in centimetres and weight in kilograms."""
    length: float
    breadth: float
    height: float
    weight: float

    @classmethod
    def default(cls) -> "PackageDimensions":
        return cls(
            length=settings.SHIPPING_DEFAULT_LENGTH_CM,
            breadth=settings.SHIPPING_DEFAULT_BREADTH_CM,
            height=settings.SHIPPING_DEFAULT_HEIGHT_CM,
            weight=settings.SHIPPING_DEFAULT_WEIGHT_KG,
        )


def split_customer_name(full_name: Optional[str]) -> tuple:
    """First word is the first name, the rest the last name."""
    parts = (full_name or "").split()
    first = parts[0] if parts else "Customer"
    last = " ".join(parts[1:]) if len(parts) > 1 else "Name"
    return first, last


def build_carrier_order(
    order: Order,
    pickup_location: str,
    dimensions: PackageDimensions,
) -> CarrierOrderRequest:
    """
    Build the adhoc-order payload from an order, its items and its owner.

    Raises:
        ShippingError: the order is missing data the carrier requires
    """
    first_name, last_name = split_customer_name(order.shipping_full_name)
    created_at = order.created_at or utcnow()
    delivery_charge = order.delivery_charge or 0.0
    email = order.user.email if order.user and order.user.email else settings.SHIPPING_FALLBACK_EMAIL

    try:
        items = [
            CarrierOrderItem(
                name=item.product_name,
                sku=item.product_sku or str(item.product_id),
                units=item.quantity,
                selling_price=item.price_at_time,
                discount=0,
                tax=item.gst_amount or 0,
                hsn=item.hsn_code or settings.SHIPPING_DEFAULT_HSN_CODE,
            )
            for item in order.items
        ]
        return CarrierOrderRequest(
            order_id=str(order.id),
            order_date=created_at.date().isoformat(),
            pickup_location=pickup_location,
            billing_customer_name=first_name,
            billing_last_name=last_name,
            billing_address=order.shipping_address_line1 or "",
            billing_address_2=order.shipping_address_line2 or "",
            billing_city=order.shipping_city or "",
            billing_pincode=order.shipping_postal_code or "",
            billing_state=order.shipping_state or "",
            billing_country=order.shipping_country or settings.SHIPPING_DEFAULT_COUNTRY,
            billing_email=email,
            billing_phone=order.shipping_phone_number or "",
            shipping_is_billing=True,
            order_items=items,
            payment_method="COD" if (order.payment_method or "").lower() == "cod" else "Prepaid",
            sub_total=order.total_amount - delivery_charge,
            shipping_charges=delivery_charge,
            total=order.total_amount,
            length=dimensions.length,
            breadth=dimensions.breadth,
            height=dimensions.height,
            weight=dimensions.weight,
        )
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ShippingError(
            message=f"Order {order.id} is missing shipping details: {', '.join(fields)}",
            code="INVALID_CARRIER_PAYLOAD",
            details={"order_id": order.id, "fields": fields},
        )


class ShippingService:
    """Service for the order shipment lifecycle."""

    def __init__(self, db: AsyncSession, client: ShiprocketClient):
        self.db = db
        self.client = client

    # ==================== Order access ====================

    async def _lock_order(self, order_id: int) -> Order:
        """Load the order with a row lock held until commit/rollback."""
        result = await self.db.execute(
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.user))
            .where(Order.id == order_id)
            .with_for_update()
        )
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    async def _get_order(self, order_id: int, user_id: Optional[int] = None) -> Order:
        query = select(Order).where(Order.id == order_id)
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    async def _commit(self, order: Order, step: str):
        """Commit after a carrier success. Failure here needs manual reconciliation."""
        # Rollback expires the instance, so read the carrier ids first
        carrier_ids = {
            "order_id": order.id,
            "shiprocket_order_id": order.carrier_order_id,
            "shipment_id": order.carrier_shipment_id,
            "awb": order.awb_number,
        }
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to persist {step} after carrier success {carrier_ids}: {e}")
            raise StoreError(
                message=f"Carrier accepted {step} but the order could not be updated",
                details=carrier_ids,
            )

    async def _require_shipment(self, order_id: int) -> Order:
        try:
            order = await self._lock_order(order_id)
            if not order.carrier_shipment_id:
                raise ShipmentPreconditionError(
                    SHIPMENT_NOT_CREATED, order_id=order_id, required="carrier_shipment_id"
                )
        except (ShippingError, OrderNotFoundError):
            await self.db.rollback()
            raise
        return order

    # ==================== Lifecycle steps ====================

    async def create_shipment(
        self,
        order_id: int,
        pickup_location: Optional[str] = None,
        dimensions: Optional[PackageDimensions] = None,
    ) -> CarrierOrderResponse:
        """Register the order with Shiprocket and record its order/shipment ids."""
        pickup_location = pickup_location or settings.SHIPPING_DEFAULT_PICKUP_LOCATION
        dimensions = dimensions or PackageDimensions.default()

        try:
            order = await self._lock_order(order_id)
            if order.has_shipment:
                logger.warning(
                    f"Order {order_id} already has shipment {order.carrier_shipment_id}, creating another"
                )
            payload = build_carrier_order(order, pickup_location, dimensions)
            response = await self.client.create_order(payload)
            if response.shipment_id is None:
                raise CarrierRejectedError(
                    message="Shiprocket did not return a shipment id",
                    status=response.status_code,
                    body=response.model_dump(),
                )
        except (ShippingError, OrderNotFoundError):
            await self.db.rollback()
            raise

        order.carrier_order_id = str(response.order_id) if response.order_id is not None else None
        order.carrier_shipment_id = str(response.shipment_id)
        order.shipment_status = ShipmentStatus.CREATED.value
        await self._commit(order, "shipment creation")

        logger.info(
            f"Created shipment for order {order_id}: "
            f"shiprocket_order_id={order.carrier_order_id}, shipment_id={order.carrier_shipment_id}"
        )
        return response

    async def assign_courier(self, order_id: int, courier_id: Optional[int] = None) -> AWBAssignResponse:
        """Assign a courier (given, or the carrier's top recommendation) and record the AWB."""
        order = await self._require_shipment(order_id)
        etd = None

        try:
            if courier_id is None:
                couriers = await self.client.get_recommended_couriers(order.carrier_shipment_id)
                if not couriers:
                    raise NoCourierAvailableError(
                        message="No courier available for this shipment",
                        details={"order_id": order_id, "shipment_id": order.carrier_shipment_id},
                    )
                courier_id = couriers[0].courier_company_id
                etd = couriers[0].etd

            response = await self.client.generate_awb(order.carrier_shipment_id, courier_id)
            awb = response.awb
            if not awb or not awb.awb_code:
                raise CarrierRejectedError(
                    message="Shiprocket did not return an AWB code",
                    status=response.awb_assign_status,
                    body=response.model_dump(),
                )
        except ShippingError:
            await self.db.rollback()
            raise

        order.awb_number = awb.awb_code
        order.courier_id = courier_id
        order.courier_name = awb.courier_name
        order.tracking_url = settings.SHIPROCKET_TRACKING_URL.format(awb=awb.awb_code)
        order.estimated_delivery_date = self._parse_carrier_date(etd, "etd")
        order.shipment_status = ShipmentStatus.AWB_GENERATED.value
        await self._commit(order, "courier assignment")

        logger.info(f"Assigned courier {courier_id} to order {order_id}, AWB {awb.awb_code}")
        return response

    async def request_pickup(self, order_id: int) -> PickupResponse:
        """Schedule carrier pickup for the order's shipment."""
        order = await self._require_shipment(order_id)

        try:
            response = await self.client.request_pickup([order.carrier_shipment_id])
        except ShippingError:
            await self.db.rollback()
            raise

        order.shipment_status = ShipmentStatus.PICKUP_SCHEDULED.value
        order.pickup_scheduled_date = self._scheduled_date(response) or utcnow()
        await self._commit(order, "pickup request")

        logger.info(f"Pickup scheduled for order {order_id} on {order.pickup_scheduled_date.isoformat()}")
        return response

    @classmethod
    def _scheduled_date(cls, response: PickupResponse) -> Optional[datetime]:
        raw = response.response.pickup_scheduled_date if response.response else None
        return cls._parse_carrier_date(raw, "pickup_scheduled_date")

    @staticmethod
    def _parse_carrier_date(raw: Optional[str], field: str) -> Optional[datetime]:
        """ISO timestamps or "Jan 05, 2025" style dates, as Shiprocket sends them."""
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            try:
                parsed = datetime.strptime(raw, CARRIER_DATE_FORMAT)
            except ValueError:
                logger.warning(f"Unparseable {field} from Shiprocket: {raw!r}")
                return None
        # Shiprocket reports local (IST) times without an offset
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=CARRIER_TIMEZONE)
        return parsed

    async def generate_label(self, order_id: int) -> LabelResponse:
        """Generate the shipping label and keep its URL when returned."""
        order = await self._require_shipment(order_id)

        try:
            response = await self.client.generate_label([order.carrier_shipment_id])
        except ShippingError:
            await self.db.rollback()
            raise

        if response.label_url:
            order.label_url = response.label_url
            await self._commit(order, "label generation")
        else:
            await self.db.rollback()
        return response

    async def generate_manifest(self, order_id: int) -> ManifestResponse:
        """Generate the pickup manifest and keep its URL when returned."""
        order = await self._require_shipment(order_id)

        try:
            response = await self.client.generate_manifest([order.carrier_shipment_id])
        except ShippingError:
            await self.db.rollback()
            raise

        if response.manifest_url:
            order.manifest_url = response.manifest_url
            await self._commit(order, "manifest generation")
        else:
            await self.db.rollback()
        return response

    async def cancel_shipment(self, order_id: int) -> CancelShipmentResponse:
        """Cancel the shipment with the carrier. Requires an AWB."""
        try:
            order = await self._lock_order(order_id)
            if not order.awb_number:
                raise ShipmentPreconditionError(AWB_NOT_GENERATED, order_id=order_id, required="awb_number")
            response = await self.client.cancel_shipment([order.awb_number])
        except (ShippingError, OrderNotFoundError):
            await self.db.rollback()
            raise

        order.shipment_status = ShipmentStatus.CANCELLED.value
        await self._commit(order, "shipment cancellation")

        logger.info(f"Cancelled shipment for order {order_id} (AWB {order.awb_number})")
        return response

    # ==================== Read-only ====================

    async def track_shipment(self, order_id: int, user_id: Optional[int] = None) -> TrackingResponse:
        """
        Fetch live tracking. Uses the AWB when known, otherwise the shipment id.

        With user_id set, orders belonging to other users are reported as not found.
        """
        order = await self._get_order(order_id, user_id=user_id)
        if not order.is_trackable:
            raise ShipmentPreconditionError(TRACKING_NOT_AVAILABLE, order_id=order_id, required="awb_number")

        if order.awb_number:
            return await self.client.track_by_awb(order.awb_number)
        return await self.client.track_shipment(order.carrier_shipment_id)

    async def check_serviceability(
        self,
        pickup_pincode: str,
        delivery_pincode: str,
        weight: float,
        cod_amount: float = 0,
    ) -> ServiceabilityResponse:
        """Ask the carrier which couriers can serve a route. Does not touch orders."""
        return await self.client.check_serviceability(
            pickup_pincode, delivery_pincode, weight, cod_amount
        )

