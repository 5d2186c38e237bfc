"""
Shiprocket API Schemas

Request bodies are validated before they leave the process. Response models
declare the fields we read and keep everything else (extra="allow") so the
carrier's full answer can be handed back to admins unchanged.
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

PINCODE_PATTERN = r"^\d{6}$"

CarrierId = Union[int, str]


# ==================== Requests ====================


class AuthRequest(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class CarrierOrderItem(BaseModel):
    """Line item in an adhoc order."""
    name: str = Field(..., min_length=1)
    sku: str = Field(..., min_length=1)
    units: int = Field(..., ge=1)
    selling_price: float = Field(..., ge=0)
    discount: float = 0
    tax: float = 0
    hsn: str = ""


class CarrierOrderRequest(BaseModel):
    """Body of POST /orders/create/adhoc."""
    order_id: str = Field(..., min_length=1)
    order_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}")
    pickup_location: str = Field(..., min_length=1)

    billing_customer_name: str = Field(..., min_length=1)
    billing_last_name: str = ""
    billing_address: str = Field(..., min_length=1)
    billing_address_2: str = ""
    billing_city: str = Field(..., min_length=1)
    billing_pincode: str = Field(..., min_length=3, max_length=10)
    billing_state: str = Field(..., min_length=1)
    billing_country: str = Field(..., min_length=1)
    billing_email: str = Field(..., min_length=3)
    billing_phone: str = Field(..., min_length=6, max_length=20)
    shipping_is_billing: bool = True

    order_items: List[CarrierOrderItem] = Field(..., min_length=1)
    payment_method: Literal["COD", "Prepaid"]
    sub_total: float = Field(..., ge=0)
    shipping_charges: float = Field(0, ge=0)
    total: float = Field(..., ge=0)

    length: float = Field(..., gt=0)
    breadth: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    weight: float = Field(..., gt=0)


class AWBAssignRequest(BaseModel):
    """Body of POST /courier/assign/awb."""
    shipment_id: CarrierId
    courier_id: int


class ShipmentIdsRequest(BaseModel):
    """Body shared by pickup, label and manifest generation."""
    shipment_id: List[CarrierId] = Field(..., min_length=1)


class CancelShipmentRequest(BaseModel):
    """Body of POST /orders/cancel/shipment/awbs."""
    awbs: List[str] = Field(..., min_length=1)


class CourierRecommendationQuery(BaseModel):
    """Query string of GET /courier/serviceability (existing shipment form)."""
    shipment_id: CarrierId


class ServiceabilityQuery(BaseModel):
    """Query string of GET /courier/serviceability (pincode form)."""
    pickup_postcode: str = Field(..., pattern=PINCODE_PATTERN)
    delivery_postcode: str = Field(..., pattern=PINCODE_PATTERN)
    weight: float = Field(..., gt=0)
    cod: Literal[0, 1] = 0


# ==================== Responses ====================


class CarrierResponse(BaseModel):
    """Base for carrier responses: unknown fields are preserved."""
    model_config = ConfigDict(extra="allow")


class AuthResponse(CarrierResponse):
    token: str


class CarrierOrderResponse(CarrierResponse):
    order_id: Optional[CarrierId] = None
    shipment_id: Optional[CarrierId] = None
    status: Optional[str] = None
    status_code: Optional[int] = None


class CourierCompany(CarrierResponse):
    courier_company_id: int
    courier_name: Optional[str] = None
    rate: Optional[float] = None
    etd: Optional[str] = None
    cod: Optional[int] = None


class ServiceabilityData(CarrierResponse):
    available_courier_companies: List[CourierCompany] = Field(default_factory=list)
    recommended_courier_company_id: Optional[int] = None


class ServiceabilityResponse(CarrierResponse):
    status: Optional[int] = None
    data: Optional[ServiceabilityData] = None

    @property
    def couriers(self) -> List[CourierCompany]:
        """Available couriers in the carrier's ranking order."""
        if not self.data:
            return []
        return list(self.data.available_courier_companies)


class AWBData(CarrierResponse):
    awb_code: Optional[str] = None
    courier_company_id: Optional[int] = None
    courier_name: Optional[str] = None
    shipment_id: Optional[CarrierId] = None


class AWBResponseBody(CarrierResponse):
    data: Optional[AWBData] = None


class AWBAssignResponse(CarrierResponse):
    awb_assign_status: Optional[int] = None
    response: Optional[AWBResponseBody] = None

    @property
    def awb(self) -> Optional[AWBData]:
        if self.response and self.response.data:
            return self.response.data
        return None


class PickupResponseBody(CarrierResponse):
    pickup_scheduled_date: Optional[str] = None
    pickup_token_number: Optional[Any] = None


class PickupResponse(CarrierResponse):
    pickup_status: Optional[int] = None
    response: Optional[PickupResponseBody] = None


class LabelResponse(CarrierResponse):
    label_created: Optional[int] = None
    label_url: Optional[str] = None


class ManifestResponse(CarrierResponse):
    status: Optional[int] = None
    manifest_url: Optional[str] = None


class TrackingResponse(CarrierResponse):
    tracking_data: Optional[Dict[str, Any]] = None


class CancelShipmentResponse(CarrierResponse):
    message: Optional[str] = None
