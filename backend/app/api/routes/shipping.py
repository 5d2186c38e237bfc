"""
Shipping API Routes (Shiprocket)

Provides endpoints for:
- Shipment lifecycle (create, assign courier, pickup, label, manifest, cancel)
- Tracking (order owner or admin)
- Serviceability checks (public, rate limited)
- Carrier webhook and dead-letter replay

Domain errors propagate to the StorefrontError handler registered in
app.main, which renders {success: false, error, code, details}.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status

from app.api.deps import (
    get_current_admin,
    get_current_user,
    get_shipping_service,
    get_webhook_processor,
)
from app.core.config import settings
from app.core.rate_limit import get_serviceability_limit
from app.models.user import User
from app.schemas.shipping import (
    AssignCourierRequest,
    CreateShipmentRequest,
    ServiceabilityRequest,
    ShiprocketWebhookPayload,
    ShippingResponse,
    WebhookAck,
    WebhookFailureResponse,
)
from app.services.shipping_service import PackageDimensions, ShippingService
from app.services.shipping_webhooks import ShippingWebhookProcessor, verify_webhook_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


def _dimensions(body: CreateShipmentRequest) -> PackageDimensions:
    """Request dimensions with per-field fallback to the configured defaults."""
    defaults = PackageDimensions.default()
    return PackageDimensions(
        length=body.length or defaults.length,
        breadth=body.breadth or defaults.breadth,
        height=body.height or defaults.height,
        weight=body.weight or defaults.weight,
    )


# ==================== Shipment Lifecycle ====================


@router.post("/create-shipment/{order_id}", response_model=ShippingResponse)
async def create_shipment(
    order_id: int,
    body: Optional[CreateShipmentRequest] = Body(None),
    admin: User = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    """Register the order with Shiprocket (admin only)."""
    body = body or CreateShipmentRequest()
    response = await service.create_shipment(
        order_id,
        pickup_location=body.pickup_location,
        dimensions=_dimensions(body),
    )
    logger.info(f"Admin {admin.id} created shipment for order {order_id}")
    return ShippingResponse(
        message="Shipment created successfully",
        data=response.model_dump(),
    )


@router.post("/assign-courier/{order_id}", response_model=ShippingResponse)
async def assign_courier(
    order_id: int,
    body: Optional[AssignCourierRequest] = Body(None),
    admin: User = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    """Assign a courier and generate the AWB (admin only)."""
    courier_id = body.courier_id if body else None
    response = await service.assign_courier(order_id, courier_id=courier_id)
    return ShippingResponse(
        message="AWB generated successfully",
        data=response.model_dump(),
    )


@router.post("/request-pickup/{order_id}", response_model=ShippingResponse)
async def request_pickup(
    order_id: int,
    admin: User = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    """Schedule carrier pickup (admin only)."""
    response = await service.request_pickup(order_id)
    return ShippingResponse(
        message="Pickup scheduled successfully",
        data=response.model_dump(),
    )


@router.post("/generate-label/{order_id}", response_model=ShippingResponse)
async def generate_label(
    order_id: int,
    admin: User = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    response = await service.generate_label(order_id)
    return ShippingResponse(data=response.model_dump())


@router.post("/generate-manifest/{order_id}", response_model=ShippingResponse)
async def generate_manifest(
    order_id: int,
    admin: User = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    response = await service.generate_manifest(order_id)
    return ShippingResponse(data=response.model_dump())


@router.post("/cancel-shipment/{order_id}", response_model=ShippingResponse)
async def cancel_shipment(
    order_id: int,
    admin: User = Depends(get_current_admin),
    service: ShippingService = Depends(get_shipping_service),
):
    """Cancel the shipment by AWB (admin only)."""
    response = await service.cancel_shipment(order_id)
    logger.info(f"Admin {admin.id} cancelled shipment for order {order_id}")
    return ShippingResponse(
        message="Shipment cancelled successfully",
        data=response.model_dump(),
    )


# ==================== Tracking & Serviceability ====================


@router.get("/track/{order_id}", response_model=ShippingResponse)
async def track_shipment(
    order_id: int,
    current_user: User = Depends(get_current_user),
    service: ShippingService = Depends(get_shipping_service),
):
    """
    Live tracking for an order.

    Customers only see their own orders; admins see all.
    """
    user_id = None if current_user.is_admin else current_user.id
    response = await service.track_shipment(order_id, user_id=user_id)
    return ShippingResponse(data=response.model_dump())


@router.post("/check-serviceability", response_model=ShippingResponse)
@get_serviceability_limit()
async def check_serviceability(
    request: Request,
    body: ServiceabilityRequest,
    service: ShippingService = Depends(get_shipping_service),
):
    """Which couriers can carry a parcel between two pincodes."""
    response = await service.check_serviceability(
        body.pickup_pincode,
        body.delivery_pincode,
        body.weight,
        body.cod_amount,
    )
    return ShippingResponse(data=response.model_dump())


# ==================== Webhook ====================


@router.post("/webhook", response_model=WebhookAck)
async def shiprocket_webhook(
    request: Request,
    processor: ShippingWebhookProcessor = Depends(get_webhook_processor),
):
    """
    Shiprocket status push.

    Returns success even when the update cannot be applied (to prevent
    retries); those deliveries are kept in the dead-letter table.
    """
    token = request.headers.get(settings.SHIPROCKET_WEBHOOK_TOKEN_HEADER)
    if not verify_webhook_token(token):
        logger.warning("Invalid Shiprocket webhook token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")

    try:
        raw = await request.json()
    except ValueError as e:
        logger.error(f"Failed to parse Shiprocket webhook payload: {e}")
        raw = {"body": (await request.body()).decode("utf-8", errors="replace")}

    logger.info(f"Received Shiprocket webhook: {raw}")
    payload = raw if isinstance(raw, dict) else {"body": raw}

    try:
        await processor.process(ShiprocketWebhookPayload.model_validate(payload).model_dump())
    except Exception as e:
        logger.error(f"Failed to process Shiprocket webhook: {e}")

    return WebhookAck()


@router.get("/webhook/failures", response_model=ShippingResponse)
async def list_webhook_failures(
    include_resolved: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(get_current_admin),
    processor: ShippingWebhookProcessor = Depends(get_webhook_processor),
):
    """Dead-lettered webhooks, newest first (admin only)."""
    failures = await processor.list_failures(include_resolved=include_resolved, limit=limit)
    return ShippingResponse(
        data=[WebhookFailureResponse.model_validate(f).model_dump(mode="json") for f in failures],
    )


@router.post("/webhook/failures/{failure_id}/replay", response_model=ShippingResponse)
async def replay_webhook_failure(
    failure_id: int,
    admin: User = Depends(get_current_admin),
    processor: ShippingWebhookProcessor = Depends(get_webhook_processor),
):
    """Re-apply a dead-lettered webhook (admin only)."""
    failure = await processor.replay(failure_id)
    logger.info(f"Admin {admin.id} replayed webhook failure {failure_id}")
    return ShippingResponse(
        message="Webhook replayed successfully",
        data=WebhookFailureResponse.model_validate(failure).model_dump(mode="json"),
    )
