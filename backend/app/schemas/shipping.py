"""
Shipping API Schemas

Request and response models for /api/shipping. Request bodies accept the
camelCase keys the storefront admin sends (pickupLocation, courierId, ...)
as well as snake_case.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ==================== Requests ====================


class CreateShipmentRequest(BaseModel):
    """Pickup location and parcel size; omitted values fall back to settings."""
    model_config = ConfigDict(populate_by_name=True)

    pickup_location: Optional[str] = Field(None, alias="pickupLocation", max_length=100)
    length: Optional[float] = Field(None, gt=0)
    breadth: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)
    weight: Optional[float] = Field(None, gt=0)


class AssignCourierRequest(BaseModel):
    """Courier to assign. Without one the carrier's top recommendation is used."""
    model_config = ConfigDict(populate_by_name=True)

    courier_id: Optional[int] = Field(None, alias="courierId")


class ServiceabilityRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pickup_pincode: str = Field(..., alias="pickupPincode")
    delivery_pincode: str = Field(..., alias="deliveryPincode")
    weight: float = Field(0.5, gt=0)
    cod_amount: float = Field(0, alias="codAmount", ge=0)

    @field_validator("pickup_pincode", "delivery_pincode", mode="before")
    @classmethod
    def validate_pincode(cls, v):
        v = str(v).strip()
        if not (len(v) == 6 and v.isdigit()):
            raise ValueError("Pincode must be 6 digits")
        return v


class ShiprocketWebhookPayload(BaseModel):
    """Status push from Shiprocket. Unknown keys are kept."""
    model_config = ConfigDict(extra="allow")

    awb: Optional[str] = None
    current_status: Optional[str] = None

    @field_validator("awb", "current_status", mode="before")
    @classmethod
    def coerce_to_string(cls, v):
        if v is None:
            return v
        return str(v)


# ==================== Responses ====================


class ShippingResponse(BaseModel):
    """Envelope used by every shipping endpoint."""
    success: bool = True
    message: Optional[str] = None
    data: Any = None


class WebhookAck(BaseModel):
    status: str = "success"


class WebhookFailureResponse(BaseModel):
    """Dead-lettered webhook."""
    id: int
    awb: Optional[str] = None
    current_status: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    reason: str
    received_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True
