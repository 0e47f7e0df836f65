# File: rental_core/application/booking_service.py
"""
Booking Lifecycle Application Service

This module implements the application service layer for vehicle rentals.
It orchestrates the domain model, persistence and vehicle status
synchronization for each use case.

Responsibilities:
1. Create bookings after availability, blacklist and duplicate checks
2. Complete bookings with tiered pricing
3. Cancel bookings without charge
4. Report the accruing amount of an active rental

Key Principles:
- Errors are returned as result values, never raised to the caller
- The booking write commits before the vehicle status is synchronized
- Closing writes are conditional on the booking still being ACTIVE
- The clock is injectable for deterministic tests
"""

from typing import Dict, Optional, Any, Callable, Union
from datetime import datetime, timedelta
from decimal import Decimal
from dataclasses import dataclass, field
import logging

from pydantic import ValidationError

from ..domain.models import (
    Booking, BookingStatus, VehicleStatus, CancellationDetails,
    PricingResult, PricingStatus
)
from ..domain.strategies import PricingEngine, compute_rental_start_time
from ..infrastructure.repositories import (
    UnitOfWork, ActiveBookingConflictError, DuplicateBookingNumberError, RepositoryFactory
)
from ..infrastructure.settings import ConfigurationProvider, StaticSettingsSource
from ..infrastructure.status_sync import ResourceStatusSynchronizer, RetryPolicy, SyncResult
from ..infrastructure.messaging import MessageBus, DomainEvent, EventType
from .dtos import (
    BookingCreateDTO, BookingCompletionDTO, BookingCancellationDTO, PricingPreviewDTO
)


INTERNAL_ERROR = "InternalError"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class BookingServiceError(Exception):
    """Base exception for booking service errors"""
    error_code = "BookingServiceError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class VehicleUnavailableError(BookingServiceError):
    """Vehicle missing, not available, or already held by an active booking"""
    error_code = "VehicleUnavailable"


class CustomerBlacklistedError(BookingServiceError):
    error_code = "CustomerBlacklisted"


class CustomerHasActiveBookingError(BookingServiceError):
    error_code = "CustomerHasActiveBooking"


class ValidationFailedError(BookingServiceError):
    error_code = "ValidationFailed"


class BookingNotFoundError(BookingServiceError):
    error_code = "BookingNotFound"


class BookingNotActiveError(BookingServiceError):
    error_code = "BookingNotActive"


# ============================================================================
# RESULT DTOs
# ============================================================================

@dataclass
class OperationResult:
    """Common shape of every use case result"""
    success: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: BookingServiceError) -> 'OperationResult':
        return cls(
            success=False,
            message=str(error),
            error_code=error.error_code,
            details=error.details
        )

    @classmethod
    def internal_error(cls, error: Exception) -> 'OperationResult':
        return cls(success=False, message=f"Internal error: {error}", error_code=INTERNAL_ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


@dataclass
class BookingCreationResult(OperationResult):
    booking: Optional[Booking] = None
    warning: Optional[Dict[str, Any]] = None
    sync_outcome: Optional[SyncResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "booking": self.booking.to_dict() if self.booking else None,
            "warning": self.warning,
            "sync_outcome": self.sync_outcome.to_dict() if self.sync_outcome else None,
        })
        return data


@dataclass
class BookingCompletionResult(OperationResult):
    booking: Optional[Booking] = None
    pricing: Optional[PricingResult] = None
    sync_outcome: Optional[SyncResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "booking": self.booking.to_dict() if self.booking else None,
            "pricing": self.pricing.to_dict() if self.pricing else None,
            "sync_outcome": self.sync_outcome.to_dict() if self.sync_outcome else None,
        })
        return data


@dataclass
class BookingCancellationResult(OperationResult):
    booking: Optional[Booking] = None
    sync_outcome: Optional[SyncResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "booking": self.booking.to_dict() if self.booking else None,
            "sync_outcome": self.sync_outcome.to_dict() if self.sync_outcome else None,
        })
        return data


@dataclass
class CurrentAmountResult(OperationResult):
    pricing: Optional[PricingResult] = None
    late_fee: Decimal = Decimal('0')
    is_overdue: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "pricing": self.pricing.to_dict() if self.pricing else None,
            "late_fee": str(self.late_fee),
            "is_overdue": self.is_overdue,
        })
        return data


# ============================================================================
# BOOKING LIFECYCLE MANAGER
# ============================================================================

class BookingLifecycleManager:
    """
    Main application service for the booking lifecycle

    Use cases:
    1. create - open an ACTIVE booking and mark the vehicle RENTED
    2. complete_booking - price and close the booking, free the vehicle
    3. cancel_booking - close the booking without charge, free the vehicle
    4. calculate_current_amount - price an active rental up to now

    Vehicle status synchronization happens after the booking commit; its
    outcome is attached to the result and never turns a committed booking
    operation into a failure.
    """

    BOOKING_NUMBER_PREFIX = "MRT"
    BOOKING_NUMBER_ATTEMPTS = 10

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        config_provider: ConfigurationProvider,
        synchronizer: ResourceStatusSynchronizer,
        pricing_engine: Optional[PricingEngine] = None,
        message_bus: Optional[MessageBus] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._uow_factory = uow_factory
        self._config = config_provider
        self._synchronizer = synchronizer
        self._pricing = pricing_engine or PricingEngine()
        self._message_bus = message_bus
        self._clock = clock

    @property
    def uow_factory(self) -> Callable[[], UnitOfWork]:
        return self._uow_factory

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, booking_input: Union[BookingCreateDTO, Dict[str, Any]]) -> BookingCreationResult:
        """
        Create a booking

        Use Case: Rental Start
        1. Validate required fields
        2. Check the vehicle is available
        3. Check the customer's blacklist status (expired bans are lifted)
        4. Check the customer has no other active booking
        5. Persist the booking with its scheduled start time
        6. Mark the vehicle RENTED

        Returns: Booking creation result
        """
        try:
            request = self._parse(BookingCreateDTO, booking_input)
            self.logger.info(f"Creating booking for customer {request.customer_id} on vehicle {request.vehicle_id}")

            now = self._clock()
            warning = None
            lifted_ban = None

            with self._uow_factory() as uow:
                vehicle = uow.vehicles.get(request.vehicle_id)
                if vehicle is None:
                    raise VehicleUnavailableError(f"Vehicle {request.vehicle_id} not found")
                if not vehicle.is_available:
                    raise VehicleUnavailableError(
                        f"Vehicle {vehicle.plate_number} is {vehicle.status.value}",
                        details={"vehicle_status": vehicle.status.value}
                    )

                customer = uow.customers.get(request.customer_id)
                if customer is None:
                    raise ValidationFailedError(f"Customer {request.customer_id} not found")

                if customer.lift_expired_ban(now):
                    uow.customers.update(customer)
                    uow.commit()
                    lifted_ban = customer.blacklist.to_dict()
                    self.logger.info(f"Lifted expired temporary ban for customer {customer.id}")

                if customer.blocks_booking:
                    raise CustomerBlacklistedError(
                        f"Customer {customer.name} is blacklisted ({customer.blacklist.severity.value})",
                        details={"blacklist": customer.blacklist.to_dict()}
                    )

                if customer.has_warning:
                    warning = {
                        "severity": customer.blacklist.severity.value,
                        "reason": customer.blacklist.reason,
                        "custom_reason": customer.blacklist.custom_reason,
                        "blacklisted_at": customer.blacklist.blacklisted_at.isoformat(),
                    }

                active = uow.bookings.find_active_by_customer(customer.id)
                if active is not None:
                    raise CustomerHasActiveBookingError(
                        f"Customer {customer.name} already has an active booking",
                        details={"booking_id": active.id, "booking_number": active.booking_number}
                    )

                settings = self._config.get_settings()
                booking = Booking(
                    vehicle_id=vehicle.id,
                    customer_id=customer.id,
                    start_time=compute_rental_start_time(
                        now, settings.start_delay_minutes, settings.round_to_nearest_minutes
                    ),
                    signature=request.signature,
                    booking_number=self._next_booking_number(uow, now),
                    expected_return_time=request.expected_return_time,
                    helmet_provided=request.helmet_provided,
                    aadhar_card_collected=request.aadhar_card_collected,
                    vehicle_inspected=request.vehicle_inspected,
                    security_deposit_collected=request.security_deposit_collected,
                    additional_notes=request.additional_notes,
                    created_at=now
                )

                self._add_booking(uow, booking, now)
                uow.commit()

            self.logger.info(f"Booking {booking.booking_number} created, starts at {booking.start_time}")

            if lifted_ban is not None:
                self._publish(EventType.CUSTOMER_BLACKLIST_EXPIRED, customer.id, "Customer", lifted_ban)

            sync_outcome = self._synchronizer.set_status(
                vehicle.id, VehicleStatus.RENTED,
                context={"booking_id": booking.id, "operation": "create"}
            )
            self._publish(EventType.BOOKING_CREATED, booking.id, "Booking", {
                "booking_number": booking.booking_number,
                "vehicle_id": booking.vehicle_id,
                "customer_id": booking.customer_id,
                "start_time": booking.start_time.isoformat(),
            })

            return BookingCreationResult(
                success=True,
                message=f"Booking {booking.booking_number} created",
                booking=booking,
                warning=warning,
                sync_outcome=sync_outcome
            )

        except BookingServiceError as e:
            self.logger.warning(f"Booking creation rejected: {e}")
            return BookingCreationResult.from_error(e)
        except Exception as e:
            self.logger.error(f"Error creating booking: {e}", exc_info=True)
            return BookingCreationResult.internal_error(e)

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    def complete_booking(
        self,
        booking_id: str,
        completion_input: Union[BookingCompletionDTO, Dict[str, Any], None] = None
    ) -> BookingCompletionResult:
        """
        Complete an active booking

        Use Case: Vehicle Return
        1. Load the booking and require ACTIVE status
        2. Price the rental from start to end time
        3. Apply discount and additional charges (never below zero)
        4. Persist, conditional on the booking still being ACTIVE
        5. Mark the vehicle AVAILABLE

        Returns: Booking completion result
        """
        self.logger.info(f"Completing booking {booking_id}")

        try:
            request = self._parse(BookingCompletionDTO, completion_input or {})

            with self._uow_factory() as uow:
                booking = self._get_active_booking(uow, booking_id)

                end_time = request.end_time or self._clock()
                pricing = self._pricing.calculate(
                    booking.start_time, end_time, self._config.get_pricing_configuration()
                )
                if pricing.is_fallback:
                    self.logger.warning(f"Booking {booking_id} priced with fallback calculation")

                final_amount = booking.complete(
                    end_time,
                    pricing,
                    discount_amount=request.discount_amount,
                    additional_charges=request.additional_charges,
                    payment_method=request.payment_method,
                    vehicle_condition=request.vehicle_condition,
                    return_notes=request.return_notes,
                    damage_notes=request.damage_notes
                )

                if not uow.bookings.update_if_status(booking, BookingStatus.ACTIVE):
                    raise BookingNotActiveError(f"Booking {booking_id} was closed by another operation")

                uow.commit()

            self.logger.info(f"Booking {booking.booking_number} completed: {final_amount} ({pricing.summary})")

            sync_outcome = self._synchronizer.set_status(
                booking.vehicle_id, VehicleStatus.AVAILABLE,
                context={"booking_id": booking.id, "operation": "complete"}
            )
            self._publish(EventType.BOOKING_COMPLETED, booking.id, "Booking", {
                "booking_number": booking.booking_number,
                "vehicle_id": booking.vehicle_id,
                "final_amount": str(final_amount),
                "total_minutes": pricing.total_minutes,
            })

            return BookingCompletionResult(
                success=True,
                message=f"Booking completed. Final amount: {final_amount}",
                booking=booking,
                pricing=pricing,
                sync_outcome=sync_outcome
            )

        except BookingServiceError as e:
            self.logger.warning(f"Booking completion rejected: {e}")
            return BookingCompletionResult.from_error(e)
        except Exception as e:
            self.logger.error(f"Error completing booking {booking_id}: {e}", exc_info=True)
            return BookingCompletionResult.internal_error(e)

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel_booking(
        self,
        booking_id: str,
        cancellation_input: Union[BookingCancellationDTO, Dict[str, Any], None] = None
    ) -> BookingCancellationResult:
        """
        Cancel an active booking without charge

        The cancellation window is recorded on the booking for auditing; it
        does not block the cancellation.
        """
        self.logger.info(f"Cancelling booking {booking_id}")

        try:
            request = self._parse(BookingCancellationDTO, cancellation_input or {})

            with self._uow_factory() as uow:
                booking = self._get_active_booking(uow, booking_id)

                now = self._clock()
                within_window = request.within_window
                if within_window is None:
                    window = timedelta(minutes=self._config.get_settings().cancellation_window_minutes)
                    within_window = now <= booking.created_at + window

                booking.cancel(CancellationDetails(
                    cancelled_at=now,
                    cancelled_by=request.cancelled_by,
                    reason=request.reason,
                    custom_reason=request.custom_reason,
                    staff_notes=request.staff_notes,
                    within_window=within_window,
                    manual_override=request.manual_override
                ))

                if not uow.bookings.update_if_status(booking, BookingStatus.ACTIVE):
                    raise BookingNotActiveError(f"Booking {booking_id} was closed by another operation")

                uow.commit()

            self.logger.info(
                f"Booking {booking.booking_number} cancelled by {request.cancelled_by} "
                f"({request.reason.value}, within window: {within_window})"
            )

            sync_outcome = self._synchronizer.set_status(
                booking.vehicle_id, VehicleStatus.AVAILABLE,
                context={"booking_id": booking.id, "operation": "cancel"}
            )
            self._publish(EventType.BOOKING_CANCELLED, booking.id, "Booking", {
                "booking_number": booking.booking_number,
                "vehicle_id": booking.vehicle_id,
                "reason": request.reason.value,
                "within_window": within_window,
            })

            return BookingCancellationResult(
                success=True,
                message=f"Booking {booking.booking_number} cancelled",
                booking=booking,
                sync_outcome=sync_outcome
            )

        except BookingServiceError as e:
            self.logger.warning(f"Booking cancellation rejected: {e}")
            return BookingCancellationResult.from_error(e)
        except Exception as e:
            self.logger.error(f"Error cancelling booking {booking_id}: {e}", exc_info=True)
            return BookingCancellationResult.internal_error(e)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def calculate_current_amount(self, booking_id: str) -> CurrentAmountResult:
        """Amount accrued so far by an active booking"""
        try:
            with self._uow_factory() as uow:
                booking = uow.bookings.get(booking_id)

            if booking is None:
                raise BookingNotFoundError(f"Booking {booking_id} not found")

            if booking.status == BookingStatus.CANCELLED:
                return CurrentAmountResult(
                    success=True,
                    message="Cancelled - No charge applied",
                    pricing=PricingResult(
                        total_amount=Decimal('0'),
                        breakdown=(),
                        total_minutes=0,
                        status=PricingStatus.CANCELLED,
                        summary="Cancelled - No charge applied"
                    )
                )

            if not booking.is_active:
                raise BookingNotActiveError(
                    f"Booking {booking_id} is {booking.status.value}",
                    details={"status": booking.status.value}
                )

            now = self._clock()
            settings = self._config.get_settings()
            pricing = self._pricing.calculate(booking.start_time, now, settings.pricing)

            late_fee = Decimal('0')
            overdue = booking.is_overdue(now)
            if overdue:
                over_hours = (now - booking.expected_return_time).total_seconds() / 3600
                late_fee = self._pricing.calculate_late_fee(over_hours, settings.late_fee_per_hour)

            return CurrentAmountResult(
                success=True,
                message=pricing.summary,
                pricing=pricing,
                late_fee=late_fee,
                is_overdue=overdue
            )

        except BookingServiceError as e:
            self.logger.warning(f"Current amount unavailable: {e}")
            return CurrentAmountResult.from_error(e)
        except Exception as e:
            self.logger.error(f"Error calculating current amount for {booking_id}: {e}", exc_info=True)
            return CurrentAmountResult.internal_error(e)

    def is_booking_overdue(self, booking_id: str) -> bool:
        with self._uow_factory() as uow:
            booking = uow.bookings.get(booking_id)
        return booking is not None and booking.is_overdue(self._clock())

    def get_pricing_preview(
        self,
        preview_input: Union[PricingPreviewDTO, Dict[str, Any]]
    ) -> PricingResult:
        request = self._parse(PricingPreviewDTO, preview_input)
        start_time = request.start_time or self._config.calculate_rental_start_time(self._clock())
        return self._pricing.calculate_preview(
            request.duration_minutes, start_time, self._config.get_pricing_configuration()
        )

    def get_pricing_examples(self) -> Dict[str, Any]:
        return self._pricing.generate_examples(self._config.get_pricing_configuration(), self._clock())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(dto_class, data):
        if isinstance(data, dto_class):
            return data
        try:
            return dto_class.from_dict(data)
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationFailedError(
                f"Invalid input: {'; '.join(errors)}",
                details={"errors": errors}
            )

    @staticmethod
    def _get_active_booking(uow: UnitOfWork, booking_id: str) -> Booking:
        booking = uow.bookings.get(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if not booking.is_active:
            raise BookingNotActiveError(
                f"Booking {booking_id} is {booking.status.value}",
                details={"status": booking.status.value}
            )
        return booking

    def _add_booking(self, uow: UnitOfWork, booking: Booking, now: datetime):
        """Store a new booking, allocating a fresh number if another create took it first"""
        for attempt in range(1, self.BOOKING_NUMBER_ATTEMPTS + 1):
            try:
                uow.bookings.add(booking)
                return
            except ActiveBookingConflictError as e:
                raise VehicleUnavailableError(str(e), details={"vehicle_id": booking.vehicle_id})
            except DuplicateBookingNumberError:
                if attempt == self.BOOKING_NUMBER_ATTEMPTS:
                    raise
                self.logger.warning(f"Booking number {booking.booking_number} already taken, allocating another")
                booking.booking_number = self._next_booking_number(uow, now)

    def _next_booking_number(self, uow: UnitOfWork, now: datetime) -> str:
        sequence = uow.bookings.count_created_on(now.date()) + 1
        return f"{self.BOOKING_NUMBER_PREFIX}-{now:%Y%m%d}-{sequence:03d}"

    def _publish(self, event_type: EventType, aggregate_id: str, aggregate_type: str, data: Dict[str, Any]):
        if self._message_bus is None:
            return
        self._message_bus.publish_event(DomainEvent(
            event_type=event_type,
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            source=self.__class__.__name__,
            data=data
        ))


# ============================================================================
# SERVICE FACTORY
# ============================================================================

class BookingServiceFactory:
    """Factory for creating booking lifecycle managers"""

    @staticmethod
    def create_in_memory_service(
        settings: Optional[Dict[str, Any]] = None,
        message_bus: Optional[MessageBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = datetime.now
    ) -> BookingLifecycleManager:
        """Manager over shared in-memory repositories, for tests and demos"""
        uow_factory = RepositoryFactory.create_in_memory_uow_factory()
        return BookingServiceFactory._assemble(
            uow_factory, StaticSettingsSource(settings), message_bus, retry_policy, clock
        )

    @staticmethod
    def create_sqlalchemy_service(
        database_url: str,
        settings_source=None,
        message_bus: Optional[MessageBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = datetime.now
    ) -> BookingLifecycleManager:
        uow_factory = RepositoryFactory.create_sqlalchemy_uow_factory(database_url)
        return BookingServiceFactory._assemble(
            uow_factory, settings_source or StaticSettingsSource(), message_bus, retry_policy, clock
        )

    @staticmethod
    def _assemble(uow_factory, settings_source, message_bus, retry_policy, clock) -> BookingLifecycleManager:
        return BookingLifecycleManager(
            uow_factory=uow_factory,
            config_provider=ConfigurationProvider(settings_source, message_bus=message_bus),
            synchronizer=ResourceStatusSynchronizer(uow_factory, retry_policy, message_bus=message_bus),
            message_bus=message_bus,
            clock=clock
        )


# ============================================================================
# COMMAND HANDLER
# ============================================================================

class BookingCommandHandler:
    """
    Handler for booking commands

    Commands are dictionaries of the form {"type": ..., "data": {...}}.
    """

    def __init__(self, manager: BookingLifecycleManager):
        self.manager = manager
        self.logger = logging.getLogger(self.__class__.__name__)

    def handle(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """Handle a booking command"""
        command_type = command.get("type")
        data = dict(command.get("data") or {})

        try:
            if command_type == "create_booking":
                result = self.manager.create(data)
                return {"success": result.success, "data": result.to_dict()}

            elif command_type == "complete_booking":
                booking_id = data.pop("booking_id")
                result = self.manager.complete_booking(booking_id, data)
                return {"success": result.success, "data": result.to_dict()}

            elif command_type == "cancel_booking":
                booking_id = data.pop("booking_id")
                result = self.manager.cancel_booking(booking_id, data)
                return {"success": result.success, "data": result.to_dict()}

            elif command_type == "current_amount":
                result = self.manager.calculate_current_amount(data["booking_id"])
                return {"success": result.success, "data": result.to_dict()}

            elif command_type == "pricing_preview":
                result = self.manager.get_pricing_preview(data)
                return {"success": True, "data": result.to_dict()}

            elif command_type == "pricing_examples":
                return {"success": True, "data": self.manager.get_pricing_examples()}

            else:
                return {
                    "success": False,
                    "error": f"Unknown command type: {command_type}"
                }

        except Exception as e:
            self.logger.error(f"Error handling command {command_type}: {e}", exc_info=True)
            return {
                "success": False,
                "error": str(e)
            }
