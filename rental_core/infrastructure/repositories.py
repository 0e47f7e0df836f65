# File: rental_core/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Vehicle Rental Core

Repositories provide a collection-like interface for bookings, vehicles and
customers while hiding the storage implementation. A Unit of Work groups
the repositories that share one transaction.

Storage Implementations:
- InMemory repositories - For testing and development (copy-on-read, so an
  entity changed by a caller is only stored once it is written back)
- SQLAlchemy repositories - For relational databases

Conditional writes:
- BookingRepository.add refuses a second ACTIVE booking for a vehicle
  and a booking number that is already taken
- BookingRepository.update_if_status only writes if the stored status is
  still the expected one
"""

from abc import ABC, abstractmethod
from typing import (
    Type, TypeVar, Generic, Optional, Dict, Any, Callable
)
from datetime import datetime, date, timedelta
from decimal import Decimal
import copy
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, DateTime, Numeric,
    Text, JSON, Index, text
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from ..domain.models import (
    Booking, Vehicle, Customer, Entity,
    BookingStatus, VehicleStatus, VehicleType, PaymentMethod, VehicleCondition,
    PricingSegment, CancellationDetails, BlacklistDetails
)

T = TypeVar('T', bound=Entity)


class ActiveBookingConflictError(Exception):
    """Raised when a vehicle already has an active booking"""

    def __init__(self, vehicle_id: str):
        self.vehicle_id = vehicle_id
        super().__init__(f"Vehicle {vehicle_id} already has an active booking")


class DuplicateBookingNumberError(Exception):
    """Raised when a booking number is already taken"""

    def __init__(self, booking_number: str):
        self.booking_number = booking_number
        super().__init__(f"Booking number {booking_number} already exists")


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T]):
    """Generic repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        pass

    @abstractmethod
    def get(self, id: str) -> Optional[T]:
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        pass


class BookingRepository(Repository[Booking], ABC):
    """Booking persistence with conditional writes"""

    @abstractmethod
    def find_active_by_customer(self, customer_id: str) -> Optional[Booking]:
        pass

    @abstractmethod
    def find_active_by_vehicle(self, vehicle_id: str) -> Optional[Booking]:
        pass

    @abstractmethod
    def update_if_status(self, booking: Booking, expected_status: BookingStatus) -> bool:
        """
        Write the booking only if the stored status equals expected_status
        Returns: True if the write happened
        """
        pass

    @abstractmethod
    def count_created_on(self, day: date) -> int:
        pass


class VehicleRepository(Repository[Vehicle], ABC):
    """Vehicle persistence"""

    @abstractmethod
    def update_status(self, vehicle_id: str, status: VehicleStatus) -> bool:
        """Returns: True if a vehicle record was updated"""
        pass


class CustomerRepository(Repository[Customer], ABC):
    """Customer persistence"""


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """Unit of Work interface"""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()

    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass

    @property
    @abstractmethod
    def bookings(self) -> BookingRepository:
        pass

    @property
    @abstractmethod
    def vehicles(self) -> VehicleRepository:
        pass

    @property
    @abstractmethod
    def customers(self) -> CustomerRepository:
        pass


# ============================================================================
# IN-MEMORY REPOSITORIES (For Testing)
# ============================================================================

class InMemoryRepository(Repository[T]):
    """In-memory repository for testing"""

    def __init__(self):
        self._storage: Dict[str, T] = {}
        self._lock = threading.RLock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, entity: T) -> T:
        with self._lock:
            if entity.id in self._storage:
                raise KeyError(f"Entity {entity.id} already exists")
            self._storage[entity.id] = copy.deepcopy(entity)
        self._logger.debug(f"Added entity {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        with self._lock:
            entity = self._storage.get(id)
            return copy.deepcopy(entity) if entity is not None else None

    def update(self, entity: T) -> T:
        with self._lock:
            if entity.id not in self._storage:
                raise KeyError(f"Entity {entity.id} not found")
            self._storage[entity.id] = copy.deepcopy(entity)
        self._logger.debug(f"Updated entity {entity.id}")
        return entity


class InMemoryBookingRepository(InMemoryRepository[Booking], BookingRepository):
    """In-memory repository for bookings"""

    def add(self, entity: Booking) -> Booking:
        with self._lock:
            if entity.is_active and self._find_active(vehicle_id=entity.vehicle_id):
                raise ActiveBookingConflictError(entity.vehicle_id)
            if entity.booking_number and any(
                b.booking_number == entity.booking_number for b in self._storage.values()
            ):
                raise DuplicateBookingNumberError(entity.booking_number)
            return super().add(entity)

    def find_active_by_customer(self, customer_id: str) -> Optional[Booking]:
        with self._lock:
            booking = self._find_active(customer_id=customer_id)
            return copy.deepcopy(booking) if booking else None

    def find_active_by_vehicle(self, vehicle_id: str) -> Optional[Booking]:
        with self._lock:
            booking = self._find_active(vehicle_id=vehicle_id)
            return copy.deepcopy(booking) if booking else None

    def _find_active(self, **criteria) -> Optional[Booking]:
        for booking in self._storage.values():
            if booking.is_active and all(getattr(booking, k) == v for k, v in criteria.items()):
                return booking
        return None

    def update_if_status(self, booking: Booking, expected_status: BookingStatus) -> bool:
        with self._lock:
            stored = self._storage.get(booking.id)
            if stored is None or stored.status != expected_status:
                return False
            self._storage[booking.id] = copy.deepcopy(booking)
        self._logger.debug(f"Booking {booking.id} written ({expected_status.value} -> {booking.status.value})")
        return True

    def count_created_on(self, day: date) -> int:
        with self._lock:
            return sum(1 for b in self._storage.values() if b.created_at.date() == day)


class InMemoryVehicleRepository(InMemoryRepository[Vehicle], VehicleRepository):
    """In-memory repository for vehicles"""

    def update_status(self, vehicle_id: str, status: VehicleStatus) -> bool:
        with self._lock:
            vehicle = self._storage.get(vehicle_id)
            if vehicle is None:
                return False
            vehicle.status = VehicleStatus(status)
        return True


class InMemoryCustomerRepository(InMemoryRepository[Customer], CustomerRepository):
    """In-memory repository for customers"""


class InMemoryUnitOfWork(UnitOfWork):
    """
    Unit of Work over in-memory repositories

    Writes are visible immediately; commit and rollback only record that
    they were called.
    """

    def __init__(
        self,
        bookings: Optional[BookingRepository] = None,
        vehicles: Optional[VehicleRepository] = None,
        customers: Optional[CustomerRepository] = None
    ):
        self._bookings = bookings or InMemoryBookingRepository()
        self._vehicles = vehicles or InMemoryVehicleRepository()
        self._customers = customers or InMemoryCustomerRepository()
        self.committed = False
        self.rolled_back = False

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    @property
    def bookings(self) -> BookingRepository:
        return self._bookings

    @property
    def vehicles(self) -> VehicleRepository:
        return self._vehicles

    @property
    def customers(self) -> CustomerRepository:
        return self._customers


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class VehicleModel(Base):
    """SQLAlchemy model for Vehicle"""
    __tablename__ = 'vehicles'

    id = Column(String(36), primary_key=True)
    vehicle_type = Column(String(20), nullable=False)
    model = Column(String(50), nullable=False)
    plate_number = Column(String(20), nullable=False, unique=True, index=True)
    status = Column(String(20), nullable=False, default=VehicleStatus.AVAILABLE.value, index=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)


class CustomerModel(Base):
    """SQLAlchemy model for Customer"""
    __tablename__ = 'customers'

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=False)
    is_blacklisted = Column(Boolean, default=False)
    blacklist = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)


class BookingModel(Base):
    """SQLAlchemy model for Booking"""
    __tablename__ = 'bookings'

    id = Column(String(36), primary_key=True)
    booking_number = Column(String(20), unique=True, index=True)
    vehicle_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(String(36), nullable=False, index=True)
    signature = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.ACTIVE.value, index=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime)
    expected_return_time = Column(DateTime)
    actual_duration_hours = Column(Integer)

    final_amount = Column(Numeric(10, 2))
    discount_amount = Column(Numeric(10, 2), default=0)
    additional_charges = Column(Numeric(10, 2), default=0)
    payment_method = Column(String(10), default=PaymentMethod.CASH.value)

    vehicle_condition = Column(String(20), default=VehicleCondition.GOOD.value)
    return_notes = Column(Text)
    damage_notes = Column(Text)
    additional_notes = Column(Text)

    helmet_provided = Column(Boolean, default=False)
    aadhar_card_collected = Column(Boolean, default=False)
    vehicle_inspected = Column(Boolean, default=False)
    security_deposit_collected = Column(Boolean, default=False)

    pricing_breakdown = Column(JSON, default=list)
    cancellation_details = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        # At most one active booking per vehicle
        Index(
            'uq_bookings_active_vehicle', 'vehicle_id', unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'")
        ),
    )


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def vehicle_to_orm(vehicle: Vehicle) -> VehicleModel:
        return VehicleModel(
            id=vehicle.id,
            vehicle_type=vehicle.vehicle_type.value,
            model=vehicle.model,
            plate_number=vehicle.plate_number,
            status=vehicle.status.value
        )

    @staticmethod
    def vehicle_to_domain(model: VehicleModel) -> Vehicle:
        return Vehicle(
            id=model.id,
            vehicle_type=VehicleType(model.vehicle_type),
            model=model.model,
            plate_number=model.plate_number,
            status=VehicleStatus(model.status)
        )

    @staticmethod
    def customer_to_orm(customer: Customer) -> CustomerModel:
        return CustomerModel(
            id=customer.id,
            name=customer.name,
            phone=customer.phone,
            is_blacklisted=customer.is_blacklisted,
            blacklist=customer.blacklist.to_dict() if customer.blacklist else None
        )

    @staticmethod
    def customer_to_domain(model: CustomerModel) -> Customer:
        return Customer(
            id=model.id,
            name=model.name,
            phone=model.phone,
            blacklist=BlacklistDetails.from_dict(model.blacklist) if model.blacklist else None
        )

    @staticmethod
    def segment_to_dict(segment: PricingSegment) -> Dict[str, Any]:
        return {
            "period": segment.period,
            "start_time": segment.start_time.isoformat(),
            "end_time": segment.end_time.isoformat(),
            "minutes": segment.minutes,
            "rate": str(segment.rate),
            "is_night_charge": segment.is_night_charge,
            "description": segment.description,
        }

    @staticmethod
    def segment_to_domain(data: Dict[str, Any]) -> PricingSegment:
        return PricingSegment(
            period=data["period"],
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(data["end_time"]),
            minutes=data["minutes"],
            rate=Decimal(data["rate"]),
            is_night_charge=data["is_night_charge"],
            description=data["description"]
        )

    @staticmethod
    def booking_values(booking: Booking) -> Dict[str, Any]:
        """Column values for a booking, excluding the primary key"""
        return {
            "booking_number": booking.booking_number,
            "vehicle_id": booking.vehicle_id,
            "customer_id": booking.customer_id,
            "signature": booking.signature,
            "status": booking.status.value,
            "start_time": booking.start_time,
            "end_time": booking.end_time,
            "expected_return_time": booking.expected_return_time,
            "actual_duration_hours": booking.actual_duration_hours,
            "final_amount": booking.final_amount,
            "discount_amount": booking.discount_amount,
            "additional_charges": booking.additional_charges,
            "payment_method": booking.payment_method.value,
            "vehicle_condition": booking.vehicle_condition.value,
            "return_notes": booking.return_notes,
            "damage_notes": booking.damage_notes,
            "additional_notes": booking.additional_notes,
            "helmet_provided": booking.helmet_provided,
            "aadhar_card_collected": booking.aadhar_card_collected,
            "vehicle_inspected": booking.vehicle_inspected,
            "security_deposit_collected": booking.security_deposit_collected,
            "pricing_breakdown": [Mapper.segment_to_dict(s) for s in booking.pricing_breakdown],
            "cancellation_details": (
                booking.cancellation_details.to_dict() if booking.cancellation_details else None
            ),
            "created_at": booking.created_at,
            "updated_at": booking.updated_at,
        }

    @staticmethod
    def booking_to_orm(booking: Booking) -> BookingModel:
        return BookingModel(id=booking.id, **Mapper.booking_values(booking))

    @staticmethod
    def booking_to_domain(model: BookingModel) -> Booking:
        booking = Booking(
            id=model.id,
            vehicle_id=model.vehicle_id,
            customer_id=model.customer_id,
            start_time=model.start_time,
            signature=model.signature,
            booking_number=model.booking_number,
            expected_return_time=model.expected_return_time,
            helmet_provided=bool(model.helmet_provided),
            aadhar_card_collected=bool(model.aadhar_card_collected),
            vehicle_inspected=bool(model.vehicle_inspected),
            security_deposit_collected=bool(model.security_deposit_collected),
            additional_notes=model.additional_notes,
            status=BookingStatus(model.status),
            created_at=model.created_at
        )
        booking.updated_at = model.updated_at or model.created_at
        booking.end_time = model.end_time
        booking.final_amount = Decimal(model.final_amount) if model.final_amount is not None else None
        booking.discount_amount = Decimal(model.discount_amount or 0)
        booking.additional_charges = Decimal(model.additional_charges or 0)
        booking.actual_duration_hours = model.actual_duration_hours
        booking.payment_method = PaymentMethod(model.payment_method or PaymentMethod.CASH.value)
        booking.vehicle_condition = VehicleCondition(model.vehicle_condition or VehicleCondition.GOOD.value)
        booking.return_notes = model.return_notes
        booking.damage_notes = model.damage_notes
        booking.pricing_breakdown = tuple(
            Mapper.segment_to_domain(s) for s in (model.pricing_breakdown or [])
        )
        if model.cancellation_details:
            booking.cancellation_details = CancellationDetails.from_dict(model.cancellation_details)
        return booking


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T], ABC):
    """Base SQLAlchemy repository"""

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        """Return SQLAlchemy model class"""
        pass

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        pass

    @abstractmethod
    def to_orm(self, entity: T) -> Base:
        pass

    def add(self, entity: T) -> T:
        try:
            self.session.add(self.to_orm(entity))
            self.session.flush()
            self._logger.debug(f"Added entity: {entity.id}")
            return entity
        except IntegrityError as e:
            self.session.rollback()
            self._logger.error(f"Integrity error adding entity: {e}")
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error adding entity: {e}")
            raise

    def get(self, id: str) -> Optional[T]:
        try:
            model = self.session.get(self.model_class, str(id))
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting entity {id}: {e}")
            raise

    def update(self, entity: T) -> T:
        try:
            if self.session.get(self.model_class, entity.id) is None:
                raise ValueError(f"Entity {entity.id} not found")
            self.session.merge(self.to_orm(entity))
            self.session.flush()
            self._logger.debug(f"Updated entity: {entity.id}")
            return entity
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error updating entity: {e}")
            raise


class SQLAlchemyBookingRepository(SQLAlchemyRepository[Booking], BookingRepository):
    """SQLAlchemy repository for bookings"""

    @property
    def model_class(self) -> Type[Base]:
        return BookingModel

    def to_domain(self, model: BookingModel) -> Booking:
        return Mapper.booking_to_domain(model)

    def to_orm(self, entity: Booking) -> BookingModel:
        return Mapper.booking_to_orm(entity)

    def add(self, entity: Booking) -> Booking:
        try:
            return super().add(entity)
        except IntegrityError:
            # The partial unique index rejects a second active booking
            if entity.is_active and self.find_active_by_vehicle(entity.vehicle_id):
                raise ActiveBookingConflictError(entity.vehicle_id)
            if entity.booking_number and self._number_taken(entity.booking_number):
                raise DuplicateBookingNumberError(entity.booking_number)
            raise

    def _number_taken(self, booking_number: str) -> bool:
        return self.session.query(BookingModel).filter(
            BookingModel.booking_number == booking_number
        ).first() is not None

    def _find_active(self, column, value: str) -> Optional[Booking]:
        try:
            model = self.session.query(BookingModel).filter(
                column == value,
                BookingModel.status == BookingStatus.ACTIVE.value
            ).first()
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding active booking: {e}")
            raise

    def find_active_by_customer(self, customer_id: str) -> Optional[Booking]:
        return self._find_active(BookingModel.customer_id, customer_id)

    def find_active_by_vehicle(self, vehicle_id: str) -> Optional[Booking]:
        return self._find_active(BookingModel.vehicle_id, vehicle_id)

    def update_if_status(self, booking: Booking, expected_status: BookingStatus) -> bool:
        try:
            result = self.session.query(BookingModel).filter(
                BookingModel.id == booking.id,
                BookingModel.status == expected_status.value
            ).update(Mapper.booking_values(booking), synchronize_session=False)

            self.session.flush()
            return result > 0
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error writing booking {booking.id}: {e}")
            raise

    def count_created_on(self, day: date) -> int:
        day_start = datetime(day.year, day.month, day.day)
        try:
            return self.session.query(BookingModel).filter(
                BookingModel.created_at >= day_start,
                BookingModel.created_at < day_start + timedelta(days=1)
            ).count()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting bookings for {day}: {e}")
            raise


class SQLAlchemyVehicleRepository(SQLAlchemyRepository[Vehicle], VehicleRepository):
    """SQLAlchemy repository for vehicles"""

    @property
    def model_class(self) -> Type[Base]:
        return VehicleModel

    def to_domain(self, model: VehicleModel) -> Vehicle:
        return Mapper.vehicle_to_domain(model)

    def to_orm(self, entity: Vehicle) -> VehicleModel:
        return Mapper.vehicle_to_orm(entity)

    def update_status(self, vehicle_id: str, status: VehicleStatus) -> bool:
        try:
            result = self.session.query(VehicleModel).filter(
                VehicleModel.id == vehicle_id
            ).update({
                'status': VehicleStatus(status).value,
                'updated_at': datetime.now()
            }, synchronize_session=False)

            self.session.flush()
            return result > 0
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error updating vehicle status: {e}")
            raise


class SQLAlchemyCustomerRepository(SQLAlchemyRepository[Customer], CustomerRepository):
    """SQLAlchemy repository for customers"""

    @property
    def model_class(self) -> Type[Base]:
        return CustomerModel

    def to_domain(self, model: CustomerModel) -> Customer:
        return Mapper.customer_to_domain(model)

    def to_orm(self, entity: Customer) -> CustomerModel:
        return Mapper.customer_to_orm(entity)


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.session = self.session_factory()

        self._bookings = SQLAlchemyBookingRepository(self.session)
        self._vehicles = SQLAlchemyVehicleRepository(self.session)
        self._customers = SQLAlchemyCustomerRepository(self.session)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._logger.debug(f"Rolling back unit of work: {exc_val}")
            self.rollback()
        else:
            self.commit()

        self.session.close()

    def commit(self):
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    @property
    def bookings(self) -> SQLAlchemyBookingRepository:
        return self._bookings

    @property
    def vehicles(self) -> SQLAlchemyVehicleRepository:
        return self._vehicles

    @property
    def customers(self) -> SQLAlchemyCustomerRepository:
        return self._customers


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for creating units of work"""

    @staticmethod
    def create_in_memory_uow_factory() -> Callable[[], InMemoryUnitOfWork]:
        """All units of work share the same in-memory repositories"""
        bookings = InMemoryBookingRepository()
        vehicles = InMemoryVehicleRepository()
        customers = InMemoryCustomerRepository()
        return lambda: InMemoryUnitOfWork(bookings, vehicles, customers)

    @staticmethod
    def create_session_factory(database_url: str) -> Callable[[], Session]:
        """Create a session factory and the tables it needs"""
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool
            )
        else:
            engine = create_engine(database_url, echo=False)

        Base.metadata.create_all(bind=engine)
        return sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @staticmethod
    def create_sqlalchemy_uow_factory(database_url: str) -> Callable[[], SQLAlchemyUnitOfWork]:
        session_factory = RepositoryFactory.create_session_factory(database_url)
        return lambda: SQLAlchemyUnitOfWork(session_factory)
