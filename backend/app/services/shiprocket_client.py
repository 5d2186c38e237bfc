"""
Shiprocket API Client

Implements Shiprocket token authentication and the fulfillment APIs used by
the shipment orchestrator:
- Adhoc order creation
- Courier recommendation / serviceability
- AWB assignment
- Pickup, label and manifest generation
- Tracking (by shipment or AWB)
- Cancellation by AWB

Every external call is logged. Non-2xx answers raise CarrierAPIError with
the carrier's body attached unmodified.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from app.core.config import settings
from app.core.exceptions import CarrierAPIError, CarrierAuthError
from app.core.http_client import ResilientHTTPClient, RetryConfig
from app.core.utils import utcnow
from app.schemas.shiprocket import (
    AuthRequest,
    AuthResponse,
    AWBAssignRequest,
    AWBAssignResponse,
    CancelShipmentRequest,
    CancelShipmentResponse,
    CarrierId,
    CarrierOrderRequest,
    CarrierOrderResponse,
    CourierCompany,
    CourierRecommendationQuery,
    LabelResponse,
    ManifestResponse,
    PickupResponse,
    ServiceabilityQuery,
    ServiceabilityResponse,
    ShipmentIdsRequest,
    TrackingResponse,
)

logger = logging.getLogger(__name__)

SHIPROCKET_DEFAULT_URL = "https://apiv2.shiprocket.in/v1/external"

# API endpoints
AUTH_PATH = "/auth/login"
CREATE_ORDER_PATH = "/orders/create/adhoc"
SERVICEABILITY_PATH = "/courier/serviceability"
ASSIGN_AWB_PATH = "/courier/assign/awb"
PICKUP_PATH = "/courier/generate/pickup"
LABEL_PATH = "/courier/generate/label"
MANIFEST_PATH = "/manifests/generate"
TRACK_SHIPMENT_PATH = "/courier/track/shipment/{shipment_id}"
TRACK_AWB_PATH = "/courier/track/awb/{awb}"
CANCEL_PATH = "/orders/cancel/shipment/awbs"

# Shiprocket tokens are valid for 10 days
DEFAULT_TOKEN_TTL = timedelta(days=10)

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


@dataclass
class ShiprocketCredentials:
    """Shiprocket API user credentials."""
    email: str
    password: str
    base_url: str = SHIPROCKET_DEFAULT_URL


@dataclass
class CarrierSession:
    """Bearer token and its expiry. Lives as long as the client."""
    token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        return bool(self.token) and self.expires_at is not None and now < self.expires_at

    def clear(self):
        self.token = None
        self.expires_at = None


class ShiprocketClient:
    """
    Shiprocket API client with lazy token authentication.

    One instance is shared by the whole process; the token is refreshed on
    first use and after expiry. The clock and HTTP transport are injectable
    for tests.
    """

    def __init__(
        self,
        credentials: ShiprocketCredentials,
        http_client: Optional[ResilientHTTPClient] = None,
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.credentials = credentials
        self.token_ttl = token_ttl
        self.clock = clock
        self.session = CarrierSession()
        self._http = http_client or ResilientHTTPClient(base_url=credentials.base_url)
        self._auth_lock = asyncio.Lock()

    async def close(self):
        """Close HTTP client."""
        await self._http.close()

    # ==================== Authentication ====================

    async def authenticate(self) -> str:
        """Log in with the account credentials and cache the token."""
        body = AuthRequest(email=self.credentials.email, password=self.credentials.password)

        try:
            response = await self._http.post(AUTH_PATH, json=body.model_dump(), retry=False)
        except httpx.RequestError as e:
            logger.error(f"Shiprocket authentication request failed: {e}")
            raise CarrierAuthError(
                message="Failed to authenticate with Shiprocket",
                code="NETWORK_ERROR",
                details={"error": str(e)},
            )

        if not response.is_success:
            data = self._decode(response)
            logger.error(f"Shiprocket authentication failed: {response.status_code} - {data}")
            raise CarrierAuthError(
                message="Failed to authenticate with Shiprocket",
                details={"carrier_status": response.status_code, "carrier_response": data},
            )

        try:
            auth = AuthResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Shiprocket authentication returned no token: {e}")
            raise CarrierAuthError(message="Shiprocket authentication returned no token")

        self.session.token = auth.token
        self.session.expires_at = self.clock() + self.token_ttl
        logger.info(f"Shiprocket authentication successful, token valid until {self.session.expires_at.isoformat()}")
        return auth.token

    async def get_token(self) -> str:
        """Return the cached token, logging in first if missing or expired."""
        if self.session.is_valid(self.clock()):
            return self.session.token

        async with self._auth_lock:
            # Another request may have refreshed while we waited
            if self.session.is_valid(self.clock()):
                return self.session.token
            return await self.authenticate()

    # ==================== Transport ====================

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text[:500]}

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[BaseModel] = None,
        params: Optional[BaseModel] = None,
        retry: bool = False,
    ) -> Any:
        """Make an authenticated API request and return the decoded body."""
        token = await self.get_token()
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = await self._http.request(
                method,
                path,
                retry=retry,
                headers=headers,
                json=body.model_dump(mode="json") if body is not None else None,
                params=params.model_dump(mode="json") if params is not None else None,
            )
        except httpx.RequestError as e:
            logger.error(f"Shiprocket {method} {path} failed: {e}")
            raise CarrierAPIError(message=f"Network error calling Shiprocket: {e}", code="NETWORK_ERROR")

        logger.info(f"Shiprocket {method} {path} -> {response.status_code}")
        data = self._decode(response)

        if not response.is_success:
            if response.status_code == 401:
                # Token revoked early; next call logs in again
                self.session.clear()

            message = "Shiprocket API error"
            if isinstance(data, dict) and data.get("message"):
                message = str(data["message"])

            logger.error(f"Shiprocket API error on {method} {path}: {response.status_code} - {data}")
            raise CarrierAPIError(message=message, status=response.status_code, body=data)

        return data

    @staticmethod
    def _parse(model: Type[ResponseModel], data: Any, operation: str) -> ResponseModel:
        if isinstance(data, list) and data and isinstance(data[0], dict):
            data = data[0]
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error(f"Unexpected Shiprocket {operation} response: {data}")
            raise CarrierAPIError(
                message=f"Unexpected Shiprocket {operation} response",
                body=data,
                details={"validation_errors": e.errors(include_url=False)},
            )

    # ==================== Orders ====================

    async def create_order(self, payload: CarrierOrderRequest) -> CarrierOrderResponse:
        """Create an adhoc order. Never retried: a replay would duplicate it."""
        data = await self._request("POST", CREATE_ORDER_PATH, body=payload)
        return self._parse(CarrierOrderResponse, data, "create order")

    async def cancel_shipment(self, awbs: List[str]) -> CancelShipmentResponse:
        """Cancel one or more shipments by AWB."""
        data = await self._request("POST", CANCEL_PATH, body=CancelShipmentRequest(awbs=awbs))
        return self._parse(CancelShipmentResponse, data, "cancel shipment")

    # ==================== Couriers ====================

    async def get_recommended_couriers(self, shipment_id: CarrierId) -> List[CourierCompany]:
        """Ranked couriers able to take an existing shipment."""
        data = await self._request(
            "GET",
            SERVICEABILITY_PATH,
            params=CourierRecommendationQuery(shipment_id=shipment_id),
            retry=True,
        )
        return self._parse(ServiceabilityResponse, data, "courier recommendation").couriers

    async def generate_awb(self, shipment_id: CarrierId, courier_id: int) -> AWBAssignResponse:
        """Assign a courier to the shipment and get its AWB code."""
        data = await self._request(
            "POST",
            ASSIGN_AWB_PATH,
            body=AWBAssignRequest(shipment_id=shipment_id, courier_id=courier_id),
        )
        return self._parse(AWBAssignResponse, data, "AWB assignment")

    async def check_serviceability(
        self,
        pickup_pincode: str,
        delivery_pincode: str,
        weight: float,
        cod_amount: float = 0,
    ) -> ServiceabilityResponse:
        """Can any courier carry `weight` kg between two pincodes?"""
        query = ServiceabilityQuery(
            pickup_postcode=str(pickup_pincode),
            delivery_postcode=str(delivery_pincode),
            weight=weight,
            cod=1 if cod_amount and cod_amount > 0 else 0,
        )
        data = await self._request("GET", SERVICEABILITY_PATH, params=query, retry=True)
        return self._parse(ServiceabilityResponse, data, "serviceability")

    # ==================== Pickup & Documents ====================

    async def request_pickup(self, shipment_ids: List[CarrierId]) -> PickupResponse:
        """Schedule carrier pickup for one or more shipments."""
        data = await self._request("POST", PICKUP_PATH, body=ShipmentIdsRequest(shipment_id=shipment_ids))
        return self._parse(PickupResponse, data, "pickup request")

    async def generate_label(self, shipment_ids: List[CarrierId]) -> LabelResponse:
        data = await self._request("POST", LABEL_PATH, body=ShipmentIdsRequest(shipment_id=shipment_ids))
        return self._parse(LabelResponse, data, "label generation")

    async def generate_manifest(self, shipment_ids: List[CarrierId]) -> ManifestResponse:
        data = await self._request("POST", MANIFEST_PATH, body=ShipmentIdsRequest(shipment_id=shipment_ids))
        return self._parse(ManifestResponse, data, "manifest generation")

    # ==================== Tracking ====================

    async def track_shipment(self, shipment_id: CarrierId) -> TrackingResponse:
        data = await self._request(
            "GET", TRACK_SHIPMENT_PATH.format(shipment_id=shipment_id), retry=True
        )
        return self._parse(TrackingResponse, data, "tracking")

    async def track_by_awb(self, awb: str) -> TrackingResponse:
        data = await self._request("GET", TRACK_AWB_PATH.format(awb=awb), retry=True)
        return self._parse(TrackingResponse, data, "tracking")


def create_shiprocket_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> ShiprocketClient:
    """Build the process-wide client from settings."""
    credentials = ShiprocketCredentials(
        email=settings.SHIPROCKET_EMAIL,
        password=settings.SHIPROCKET_PASSWORD,
        base_url=settings.SHIPROCKET_API_URL,
    )
    http_client = ResilientHTTPClient(
        base_url=credentials.base_url,
        retry_config=RetryConfig(
            max_retries=settings.SHIPROCKET_MAX_RETRIES,
            base_delay=settings.SHIPROCKET_RETRY_BASE_DELAY,
            max_delay=settings.SHIPROCKET_RETRY_MAX_DELAY,
        ),
        timeout=settings.SHIPROCKET_TIMEOUT_SECONDS,
        default_headers={"Content-Type": "application/json"},
        transport=transport,
    )
    return ShiprocketClient(
        credentials,
        http_client=http_client,
        token_ttl=timedelta(days=settings.SHIPROCKET_TOKEN_TTL_DAYS),
    )
