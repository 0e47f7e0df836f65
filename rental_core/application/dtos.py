# File: rental_core/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Vehicle Rental Core

Input DTOs validate the data received from clients before any use case
runs. Validation failures surface as pydantic ValidationError, which the
booking service reports as a ValidationFailed result.

DTO Principles:
- Validation at creation
- No business logic, only data
- Times are naive local time
"""

from typing import Dict, Optional, Any
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..domain.models import PaymentMethod, VehicleCondition, CancellationReason


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls.model_validate(data)


def _require_local_time(v: Optional[datetime]) -> Optional[datetime]:
    # Rental times are naive local time, the same clock as the night-charge setting
    if v is not None and v.utcoffset() is not None:
        raise ValueError("must be a local time without a timezone offset")
    return v


# ============================================================================
# BOOKING DTOs
# ============================================================================

class BookingCreateDTO(BaseDTO):
    """DTO for creating a booking"""
    vehicle_id: str = Field(..., description="Vehicle to rent")
    customer_id: str = Field(..., description="Renting customer")
    signature: str = Field(..., description="Customer signature (data URL or reference)")
    expected_return_time: Optional[datetime] = None

    # Safety checklist
    helmet_provided: bool = False
    aadhar_card_collected: bool = False
    vehicle_inspected: bool = False
    security_deposit_collected: bool = False

    additional_notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator('vehicle_id', 'customer_id', 'signature')
    @classmethod
    def validate_required(cls, v: str, info) -> str:
        if not v:
            raise ValueError(f"{info.field_name} is required")
        return v

    @field_validator('expected_return_time')
    @classmethod
    def validate_local_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _require_local_time(v)


class BookingCompletionDTO(BaseDTO):
    """DTO for closing out a rental"""
    end_time: Optional[datetime] = Field(default=None, description="Defaults to now")
    discount_amount: Decimal = Field(default=Decimal('0'), ge=0)
    additional_charges: Decimal = Field(default=Decimal('0'), ge=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    vehicle_condition: VehicleCondition = VehicleCondition.GOOD
    return_notes: Optional[str] = Field(default=None, max_length=1000)
    damage_notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator('end_time')
    @classmethod
    def validate_local_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _require_local_time(v)


class BookingCancellationDTO(BaseDTO):
    """DTO for cancelling a booking"""
    reason: CancellationReason = CancellationReason.OTHER
    custom_reason: Optional[str] = Field(default=None, max_length=500)
    staff_notes: Optional[str] = Field(default=None, max_length=1000)
    cancelled_by: str = Field(default="Staff", min_length=1)
    within_window: Optional[bool] = Field(
        default=None,
        description="Derived from the cancellation window when omitted"
    )
    manual_override: bool = False

    @model_validator(mode='after')
    def validate_custom_reason(self) -> 'BookingCancellationDTO':
        if self.custom_reason is not None and not self.custom_reason:
            self.custom_reason = None
        return self


class PricingPreviewDTO(BaseDTO):
    """DTO for pricing a prospective rental"""
    duration_minutes: int = Field(..., description="Planned rental length")
    start_time: Optional[datetime] = Field(default=None, description="Defaults to now")

    @field_validator('start_time')
    @classmethod
    def validate_local_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _require_local_time(v)
