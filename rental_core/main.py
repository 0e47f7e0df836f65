# File: rental_core/main.py
"""
Main application entry point for the Vehicle Rental Core
Wires repositories, settings, messaging and the booking lifecycle manager

Backends are selected through environment variables:
- DATABASE_URL: SQLAlchemy URL for bookings/vehicles/customers (in-memory if unset)
- MONGO_URL: MongoDB holding the rental settings document (static defaults if unset)
- REDIS_URL: Redis Pub/Sub for forwarding domain events (in-process only if unset)
"""

from datetime import datetime, timedelta
import logging
import sys
import os

from .domain.models import Vehicle, Customer, VehicleType
from .infrastructure.repositories import RepositoryFactory
from .infrastructure.settings import (
    ConfigurationProvider, StaticSettingsSource, MongoSettingsSource
)
from .infrastructure.status_sync import ResourceStatusSynchronizer
from .infrastructure.messaging import (
    EventBus, MessageBus, RedisMessageQueue, OperatorAlertHandler, EventType
)
from .application.booking_service import BookingLifecycleManager, BookingCommandHandler


def setup_logging():
    """Setup application logging configuration"""
    log_dir = "logs"
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(log_dir, 'rental_app.log')),
            logging.StreamHandler(sys.stdout)
        ]
    )
    return logging.getLogger(__name__)


class RentalApplication:
    """Main application controller that sets up all components"""

    def __init__(self, environ=None):
        self.logger = setup_logging()
        self.logger.info("Starting Vehicle Rental Core...")
        self.environ = os.environ if environ is None else environ

        self.setup_components()

    def setup_components(self):
        """Initialize all application components with dependency injection"""
        # 1. Messaging
        message_queue = None
        redis_url = self.environ.get("REDIS_URL")
        if redis_url:
            message_queue = RedisMessageQueue(redis_url)
            self.logger.info("Redis message queue initialized")

        self.message_bus = MessageBus(EventBus(), message_queue)
        self.operator_alerts = OperatorAlertHandler()
        self.message_bus.subscribe_to_events(EventType.VEHICLE_STATUS_SYNC_FAILED, self.operator_alerts)

        # 2. Persistence
        database_url = self.environ.get("DATABASE_URL")
        if database_url:
            self.uow_factory = RepositoryFactory.create_sqlalchemy_uow_factory(database_url)
            self.logger.info("SQLAlchemy repositories initialized")
        else:
            self.uow_factory = RepositoryFactory.create_in_memory_uow_factory()
            self.logger.info("In-memory repositories initialized")

        # 3. Settings
        mongo_url = self.environ.get("MONGO_URL")
        source = MongoSettingsSource.from_url(mongo_url) if mongo_url else StaticSettingsSource()
        self.config_provider = ConfigurationProvider(source, message_bus=self.message_bus)
        self.logger.info(f"Configuration provider initialized ({source.__class__.__name__})")

        # 4. Booking lifecycle
        self.manager = BookingLifecycleManager(
            uow_factory=self.uow_factory,
            config_provider=self.config_provider,
            synchronizer=ResourceStatusSynchronizer(self.uow_factory, message_bus=self.message_bus),
            message_bus=self.message_bus
        )
        self.command_handler = BookingCommandHandler(self.manager)
        self.logger.info("Booking lifecycle manager initialized")

    def create_demo_fleet(self):
        """Create demo vehicles and customers"""
        vehicles = [
            Vehicle(VehicleType.BIKE, "Royal Enfield Classic 350", "KA01AB1234"),
            Vehicle(VehicleType.SCOOTER, "Honda Activa 6G", "KA01CD5678"),
        ]
        customers = [
            Customer("Demo Customer", "9876543210"),
        ]

        with self.uow_factory() as uow:
            for vehicle in vehicles:
                uow.vehicles.add(vehicle)
            for customer in customers:
                uow.customers.add(customer)
            uow.commit()

        return vehicles, customers

    def run_demo(self):
        """Run one booking through its lifecycle"""
        vehicles, customers = self.create_demo_fleet()

        created = self.command_handler.handle({
            "type": "create_booking",
            "data": {
                "vehicle_id": vehicles[0].id,
                "customer_id": customers[0].id,
                "signature": "data:image/png;base64,demo",
                "helmet_provided": True,
                "expected_return_time": datetime.now() + timedelta(hours=2),
            }
        })
        self.log_to_console(f"Create: {created['data']['message']}")
        if not created["success"]:
            return created

        booking = created["data"]["booking"]
        start_time = datetime.fromisoformat(booking["start_time"])

        completed = self.command_handler.handle({
            "type": "complete_booking",
            "data": {
                "booking_id": booking["id"],
                "end_time": start_time + timedelta(minutes=127),
                "payment_method": "upi",
            }
        })
        self.log_to_console(f"Complete: {completed['data']['message']}")
        for segment in completed["data"]["pricing"]["breakdown"]:
            self.log_to_console(f"   {segment['period']}: {segment['rate']} ({segment['description']})")

        return completed

    def log_to_console(self, message):
        print(message)

    def shutdown(self):
        self.message_bus.close()
        self.logger.info("Application shutting down...")


def main():
    """Main entry point for the application"""
    try:
        app = RentalApplication()
        result = app.run_demo()
        app.shutdown()
    except Exception as e:
        print(f"Fatal error: {str(e)}")
        logging.error(f"Fatal error in main: {str(e)}", exc_info=True)
        return 1
    return 0 if result["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
