# File: rental_core/domain/models.py
"""
Domain Models for the Vehicle Rental Core
Following Domain-Driven Design (DDD) principles with rich domain models

This module contains:
1. Enums: Status and type enumerations for domain concepts
2. Value Objects: Immutable pricing configuration, segments and results
3. Entities: Vehicle, Customer and Booking with identity and lifecycle
4. Domain errors raised by entity behaviour

The booking state machine lives on the Booking entity: transitions are only
accepted from the ACTIVE state, so callers never repeat status checks.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
import re
import uuid


TIME_FORMAT = "%I:%M %p"
NIGHT_CHARGE_TIME_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):[0-5][0-9]$')


# ============================================================================
# ENUMS
# ============================================================================

class VehicleType(str, Enum):
    """Types of vehicles in the rental fleet"""
    BIKE = "bike"
    SCOOTER = "scooter"


class VehicleStatus(str, Enum):
    """Availability status of a vehicle"""
    AVAILABLE = "available"
    RENTED = "rented"
    MAINTENANCE = "maintenance"


class BookingStatus(str, Enum):
    """Booking lifecycle states"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.COMPLETED, BookingStatus.CANCELLED)


class PricingStatus(str, Enum):
    """Tag describing how a pricing result was produced"""
    PRE_START = "pre-start"
    JUST_STARTED = "just-started"
    NORMAL = "normal"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    UPI = "upi"


class VehicleCondition(str, Enum):
    GOOD = "good"
    MINOR_ISSUES = "minor_issues"
    DAMAGE = "damage"


class CancellationReason(str, Enum):
    """Reasons staff can record when cancelling a booking"""
    CUSTOMER_CHANGED_MIND = "customer_changed_mind"
    EMERGENCY = "emergency"
    VEHICLE_ISSUE = "vehicle_issue"
    WEATHER_CONDITIONS = "weather_conditions"
    CUSTOMER_NO_SHOW = "customer_no_show"
    STAFF_ERROR = "staff_error"
    DUPLICATE_BOOKING = "duplicate_booking"
    OTHER = "other"


class BlacklistSeverity(str, Enum):
    """Blacklist severity levels, weakest first"""
    WARNING = "warning"
    TEMPORARY_BAN = "temporary_ban"
    PERMANENT_BAN = "permanent_ban"

    @property
    def blocks_booking(self) -> bool:
        """Only warnings allow a customer to keep booking"""
        return self != BlacklistSeverity.WARNING


# ============================================================================
# DOMAIN ERRORS
# ============================================================================

class InvalidBookingTransitionError(ValueError):
    """Raised when a booking is moved out of a state that does not allow it"""

    def __init__(self, booking_id: str, current: BookingStatus, target: BookingStatus):
        self.booking_id = booking_id
        self.current = current
        self.target = target
        super().__init__(
            f"Booking {booking_id} cannot move from {current.value} to {target.value}"
        )


# ============================================================================
# PRICING VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)  # Value objects are immutable
class PricingConfiguration:
    """
    Value Object: Pricing parameters used by the tiered pricing engine

    Construction only normalises types. Range checks are reported by
    validate() so that a caller can decide between rejecting the values and
    substituting defaults.
    """
    hourly_rate: Decimal = Decimal('80')
    grace_minutes: int = 15
    block_minutes: int = 30
    night_charge_time: str = "22:30"
    night_multiplier: Decimal = Decimal('2')

    def __post_init__(self):
        object.__setattr__(self, 'hourly_rate', _to_decimal(self.hourly_rate, 'hourly_rate'))
        object.__setattr__(self, 'night_multiplier', _to_decimal(self.night_multiplier, 'night_multiplier'))

    def validate(self) -> List[str]:
        """Return a list of validation errors (empty when valid)"""
        errors = []

        if not self.hourly_rate.is_finite() or self.hourly_rate <= 0:
            errors.append("Hourly rate must be greater than 0")

        if not isinstance(self.grace_minutes, int) or not 0 <= self.grace_minutes <= 60:
            errors.append("Grace period must be between 0 and 60 minutes")

        if not isinstance(self.block_minutes, int) or not 1 <= self.block_minutes <= 120:
            errors.append("Block duration must be between 1 and 120 minutes")

        if not self.night_multiplier.is_finite() or not Decimal('1') <= self.night_multiplier <= Decimal('5'):
            errors.append("Night multiplier must be between 1 and 5")

        if not isinstance(self.night_charge_time, str) or not NIGHT_CHARGE_TIME_PATTERN.match(self.night_charge_time):
            errors.append("Night charge time must be in HH:MM format")

        return errors

    @property
    def is_valid(self) -> bool:
        return not self.validate()

    @property
    def first_period_minutes(self) -> int:
        """Base hour plus grace period"""
        return 60 + self.grace_minutes

    @property
    def night_charge_hour_minute(self) -> Tuple[int, int]:
        hour, minute = self.night_charge_time.split(':')
        return int(hour), int(minute)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hourly_rate": str(self.hourly_rate),
            "grace_minutes": self.grace_minutes,
            "block_minutes": self.block_minutes,
            "night_charge_time": self.night_charge_time,
            "night_multiplier": str(self.night_multiplier),
        }


def _to_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValueError(f"{name} must be numeric, got: {value!r}")


@dataclass(frozen=True)
class PricingSegment:
    """Value Object: One priced sub-interval of a rental"""
    period: str
    start_time: datetime
    end_time: datetime
    minutes: int
    rate: Decimal
    is_night_charge: bool
    description: str

    def __post_init__(self):
        if self.minutes <= 0:
            raise ValueError(f"Segment minutes must be positive, got: {self.minutes}")
        if self.end_time != self.start_time + timedelta(minutes=self.minutes):
            raise ValueError("Segment end time must equal start time plus its minutes")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "start_time": self.start_time.strftime(TIME_FORMAT),
            "end_time": self.end_time.strftime(TIME_FORMAT),
            "minutes": self.minutes,
            "rate": str(self.rate),
            "is_night_charge": self.is_night_charge,
            "description": self.description,
        }


@dataclass(frozen=True)
class PricingResult:
    """
    Value Object: Outcome of a pricing calculation

    Built fresh for every calculation and never mutated.
    """
    total_amount: Decimal
    breakdown: Tuple[PricingSegment, ...]
    total_minutes: int
    status: PricingStatus
    summary: str
    minutes_until_start: int = 0
    is_fallback: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'breakdown', tuple(self.breakdown))
        if self.total_amount < 0:
            raise ValueError("Total amount cannot be negative")
        if self.total_minutes < 0:
            raise ValueError("Total minutes cannot be negative")

    @property
    def night_segment_count(self) -> int:
        return sum(1 for segment in self.breakdown if segment.is_night_charge)

    @property
    def total_hours(self) -> int:
        """Billed duration in whole hours (rounded up)"""
        return -(-self.total_minutes // 60)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_amount": str(self.total_amount),
            "breakdown": [segment.to_dict() for segment in self.breakdown],
            "total_minutes": self.total_minutes,
            "status": self.status.value,
            "summary": self.summary,
            "minutes_until_start": self.minutes_until_start,
            "is_fallback": self.is_fallback,
        }


# ============================================================================
# ENTITIES
# ============================================================================

class Entity:
    """Base class for all entities (objects with identity)"""

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        """Get entity ID"""
        return self._id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return False
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


class Vehicle(Entity):
    """
    Entity: A rentable vehicle
    Its status mirrors the state of the booking that references it
    """

    def __init__(
        self,
        vehicle_type: VehicleType,
        model: str,
        plate_number: str,
        status: VehicleStatus = VehicleStatus.AVAILABLE,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.vehicle_type = VehicleType(vehicle_type)
        self.model = model
        self.plate_number = plate_number.strip().upper() if plate_number else plate_number
        self.status = VehicleStatus(status)
        self._validate()

    def _validate(self) -> None:
        if not self.model or not self.model.strip():
            raise ValueError("Vehicle model cannot be empty")

        if not self.plate_number or len(self.plate_number) < 2:
            raise ValueError("Plate number must be at least 2 characters")

    @property
    def is_available(self) -> bool:
        return self.status == VehicleStatus.AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vehicle_type": self.vehicle_type.value,
            "model": self.model,
            "plate_number": self.plate_number,
            "status": self.status.value,
        }

    def __str__(self) -> str:
        return f"{self.model} [{self.plate_number}] ({self.status.value})"


@dataclass
class BlacklistDetails:
    """Blacklist record attached to a customer"""
    severity: BlacklistSeverity
    reason: str
    custom_reason: Optional[str] = None
    blacklisted_at: datetime = field(default_factory=datetime.now)
    blacklisted_by: str = "staff"
    unblacklist_at: Optional[datetime] = None
    is_active: bool = True
    unblacklisted_at: Optional[datetime] = None
    unblacklisted_by: Optional[str] = None
    unblacklist_reason: Optional[str] = None

    def __post_init__(self):
        self.severity = BlacklistSeverity(self.severity)

    def is_expired(self, now: datetime) -> bool:
        """A temporary ban expires once its unblacklist time has passed"""
        return (
            self.severity == BlacklistSeverity.TEMPORARY_BAN
            and self.unblacklist_at is not None
            and now > self.unblacklist_at
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['severity'] = self.severity.value
        for key in ('blacklisted_at', 'unblacklist_at', 'unblacklisted_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlacklistDetails':
        data = dict(data)
        for key in ('blacklisted_at', 'unblacklist_at', 'unblacklisted_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class Customer(Entity):
    """
    Entity: A renting customer
    The booking flow only reads the blacklist gate
    """

    def __init__(
        self,
        name: str,
        phone: str,
        blacklist: Optional[BlacklistDetails] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.name = name
        self.phone = phone
        self.blacklist = blacklist

        if not self.name or not self.name.strip():
            raise ValueError("Customer name cannot be empty")

    @property
    def is_blacklisted(self) -> bool:
        return self.blacklist is not None and self.blacklist.is_active

    @property
    def blocks_booking(self) -> bool:
        return self.is_blacklisted and self.blacklist.severity.blocks_booking

    @property
    def has_warning(self) -> bool:
        return self.is_blacklisted and self.blacklist.severity == BlacklistSeverity.WARNING

    def lift_expired_ban(self, now: datetime) -> bool:
        """
        Deactivate an expired temporary ban
        Returns: True if the ban was lifted
        """
        if not self.is_blacklisted or not self.blacklist.is_expired(now):
            return False

        self.blacklist.is_active = False
        self.blacklist.unblacklisted_at = now
        self.blacklist.unblacklisted_by = "system"
        self.blacklist.unblacklist_reason = "Temporary ban expired automatically"
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "is_blacklisted": self.is_blacklisted,
            "blacklist": self.blacklist.to_dict() if self.blacklist else None,
        }

    def __str__(self) -> str:
        return f"{self.name} ({self.phone})"


@dataclass(frozen=True)
class CancellationDetails:
    """Value Object: Audit record of a cancellation"""
    cancelled_at: datetime
    cancelled_by: str = "Staff"
    reason: CancellationReason = CancellationReason.OTHER
    custom_reason: Optional[str] = None
    staff_notes: Optional[str] = None
    within_window: bool = True
    manual_override: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cancelled_at": self.cancelled_at.isoformat(),
            "cancelled_by": self.cancelled_by,
            "reason": CancellationReason(self.reason).value,
            "custom_reason": self.custom_reason,
            "staff_notes": self.staff_notes,
            "within_window": self.within_window,
            "manual_override": self.manual_override,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CancellationDetails':
        return cls(
            cancelled_at=datetime.fromisoformat(data["cancelled_at"]),
            cancelled_by=data.get("cancelled_by", "Staff"),
            reason=CancellationReason(data.get("reason", CancellationReason.OTHER.value)),
            custom_reason=data.get("custom_reason"),
            staff_notes=data.get("staff_notes"),
            within_window=data.get("within_window", True),
            manual_override=data.get("manual_override", False),
        )


class Booking(Entity):
    """
    Entity: A rental booking and its lifecycle

    State machine:
        ACTIVE -> COMPLETED
        ACTIVE -> CANCELLED
    Both targets are terminal. Any other transition raises
    InvalidBookingTransitionError.
    """

    _ALLOWED_TRANSITIONS = {
        BookingStatus.ACTIVE: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
        BookingStatus.COMPLETED: frozenset(),
        BookingStatus.CANCELLED: frozenset(),
    }

    def __init__(
        self,
        vehicle_id: str,
        customer_id: str,
        start_time: datetime,
        signature: str,
        booking_number: Optional[str] = None,
        expected_return_time: Optional[datetime] = None,
        helmet_provided: bool = False,
        aadhar_card_collected: bool = False,
        vehicle_inspected: bool = False,
        security_deposit_collected: bool = False,
        additional_notes: Optional[str] = None,
        status: BookingStatus = BookingStatus.ACTIVE,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.vehicle_id = vehicle_id
        self.customer_id = customer_id
        self.start_time = start_time
        self.signature = signature
        self.booking_number = booking_number
        self.expected_return_time = expected_return_time
        self.helmet_provided = helmet_provided
        self.aadhar_card_collected = aadhar_card_collected
        self.vehicle_inspected = vehicle_inspected
        self.security_deposit_collected = security_deposit_collected
        self.additional_notes = additional_notes
        self.status = BookingStatus(status)
        self.created_at = created_at or datetime.now()
        self.updated_at = self.created_at

        # Close-out fields
        self.end_time: Optional[datetime] = None
        self.final_amount: Optional[Decimal] = None
        self.discount_amount = Decimal('0')
        self.additional_charges = Decimal('0')
        self.actual_duration_hours: Optional[int] = None
        self.payment_method = PaymentMethod.CASH
        self.vehicle_condition = VehicleCondition.GOOD
        self.return_notes: Optional[str] = None
        self.damage_notes: Optional[str] = None
        self.pricing_breakdown: Tuple[PricingSegment, ...] = ()
        self.cancellation_details: Optional[CancellationDetails] = None

    @property
    def is_active(self) -> bool:
        return self.status == BookingStatus.ACTIVE

    def can_transition_to(self, target: BookingStatus) -> bool:
        return target in self._ALLOWED_TRANSITIONS[self.status]

    def _transition_to(self, target: BookingStatus, when: datetime) -> None:
        if not self.can_transition_to(target):
            raise InvalidBookingTransitionError(self.id, self.status, target)
        self.status = target
        self.updated_at = when

    def complete(
        self,
        end_time: datetime,
        pricing: PricingResult,
        discount_amount: Decimal = Decimal('0'),
        additional_charges: Decimal = Decimal('0'),
        payment_method: PaymentMethod = PaymentMethod.CASH,
        vehicle_condition: VehicleCondition = VehicleCondition.GOOD,
        return_notes: Optional[str] = None,
        damage_notes: Optional[str] = None
    ) -> Decimal:
        """
        Close the booking with a priced amount
        Returns: final amount after adjustments, never negative
        """
        self._transition_to(BookingStatus.COMPLETED, end_time)

        raw_total = pricing.total_amount - discount_amount + additional_charges
        self.final_amount = max(Decimal('0'), raw_total)
        self.end_time = end_time
        self.discount_amount = discount_amount
        self.additional_charges = additional_charges
        self.actual_duration_hours = pricing.total_hours
        self.payment_method = PaymentMethod(payment_method)
        self.vehicle_condition = VehicleCondition(vehicle_condition)
        self.return_notes = return_notes
        self.damage_notes = damage_notes
        self.pricing_breakdown = pricing.breakdown
        return self.final_amount

    def cancel(self, details: CancellationDetails) -> None:
        """Cancel the booking; cancelled bookings carry no charge"""
        self._transition_to(BookingStatus.CANCELLED, details.cancelled_at)
        self.cancellation_details = details
        self.end_time = details.cancelled_at

    def is_overdue(self, now: datetime) -> bool:
        if not self.is_active or self.expected_return_time is None:
            return False
        return now > self.expected_return_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "booking_number": self.booking_number,
            "vehicle_id": self.vehicle_id,
            "customer_id": self.customer_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "expected_return_time": self.expected_return_time.isoformat() if self.expected_return_time else None,
            "final_amount": str(self.final_amount) if self.final_amount is not None else None,
            "discount_amount": str(self.discount_amount),
            "additional_charges": str(self.additional_charges),
            "actual_duration_hours": self.actual_duration_hours,
            "payment_method": self.payment_method.value,
            "vehicle_condition": self.vehicle_condition.value,
            "return_notes": self.return_notes,
            "damage_notes": self.damage_notes,
            "pricing_breakdown": [segment.to_dict() for segment in self.pricing_breakdown],
            "cancellation_details": self.cancellation_details.to_dict() if self.cancellation_details else None,
        }

    def __str__(self) -> str:
        return f"Booking {self.booking_number or self.id} [{self.status.value}]"
