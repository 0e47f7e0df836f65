# File: rental_core/infrastructure/status_sync.py
"""
Vehicle Status Synchronization

Keeps the vehicle availability registry in step with booking transitions.
Every write is re-read and verified, failed attempts are retried with a
linear backoff, and exhaustion is reported as a result value plus an
operator alert event instead of an exception: by the time a status sync
runs, the booking write has already been committed.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, Tuple, Union
import logging
import time

from ..domain.models import VehicleStatus
from .repositories import UnitOfWork
from .messaging import MessageBus, DomainEvent, EventType


class StatusSyncError(Exception):
    """A single synchronization attempt failed"""


@dataclass(frozen=True)
class RetryPolicy:
    """Value Object: How often and how patiently a status write is retried"""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    verify_after_write: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Linear backoff: attempt N waits N x base delay before the next try"""
        return attempt * self.base_delay_seconds


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a status synchronization"""
    success: bool
    resource_id: str
    target_status: Union[VehicleStatus, str]
    attempts: int
    previous_status: Optional[VehicleStatus] = None
    new_status: Optional[VehicleStatus] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "resource_id": self.resource_id,
            "target_status": getattr(self.target_status, "value", self.target_status),
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value if self.new_status else None,
            "attempts": self.attempts,
            "error": self.error,
        }


class ResourceStatusSynchronizer:
    """
    Idempotent, retrying, verifying vehicle status writer

    Each attempt reads the vehicle, writes the target status in its own unit
    of work and, when the policy asks for it, re-reads the record in a fresh
    unit of work to confirm the write stuck.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        retry_policy: Optional[RetryPolicy] = None,
        message_bus: Optional[MessageBus] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._uow_factory = uow_factory
        self.retry_policy = retry_policy or RetryPolicy()
        self._message_bus = message_bus
        self._sleep = sleep
        self._logger = logging.getLogger(self.__class__.__name__)

    def set_status(
        self,
        resource_id: str,
        target_status: VehicleStatus,
        context: Optional[Dict[str, Any]] = None
    ) -> SyncResult:
        """Move a vehicle to target_status. Never raises."""
        try:
            target_status = VehicleStatus(target_status)
        except ValueError as e:
            self._logger.error(f"Cannot set vehicle {resource_id} to unknown status {target_status!r}")
            return SyncResult(
                success=False,
                resource_id=resource_id,
                target_status=target_status,
                attempts=0,
                error=str(e)
            )

        context = context or {}
        policy = self.retry_policy
        last_error = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                previous_status, new_status = self._attempt(resource_id, target_status)
            except Exception as e:
                last_error = str(e)
                self._logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} to set vehicle {resource_id} "
                    f"to {target_status.value} failed: {e}"
                )
                if attempt < policy.max_attempts:
                    self._sleep(policy.delay_for(attempt))
                continue

            self._logger.info(
                f"Vehicle {resource_id}: {previous_status.value} -> {new_status.value} "
                f"(attempt {attempt}, context: {context})"
            )
            self._publish(EventType.VEHICLE_STATUS_CHANGED, resource_id, {
                "previous_status": previous_status.value,
                "new_status": new_status.value,
                "context": context,
            })
            return SyncResult(
                success=True,
                resource_id=resource_id,
                target_status=target_status,
                attempts=attempt,
                previous_status=previous_status,
                new_status=new_status
            )

        self._logger.warning(
            f"Giving up on vehicle {resource_id} -> {target_status.value} after "
            f"{policy.max_attempts} attempts: {last_error} (context: {context})"
        )
        self._publish(EventType.VEHICLE_STATUS_SYNC_FAILED, resource_id, {
            "target_status": target_status.value,
            "attempts": policy.max_attempts,
            "error": last_error,
            "context": context,
        })
        return SyncResult(
            success=False,
            resource_id=resource_id,
            target_status=target_status,
            attempts=policy.max_attempts,
            error=last_error
        )

    def _attempt(
        self,
        resource_id: str,
        target_status: VehicleStatus
    ) -> Tuple[VehicleStatus, VehicleStatus]:
        with self._uow_factory() as uow:
            vehicle = uow.vehicles.get(resource_id)
            if vehicle is None:
                raise StatusSyncError(f"Vehicle {resource_id} not found")

            previous_status = vehicle.status
            if not uow.vehicles.update_status(resource_id, target_status):
                raise StatusSyncError(f"Status write for vehicle {resource_id} matched no record")
            uow.commit()

        if not self.retry_policy.verify_after_write:
            return previous_status, target_status

        with self._uow_factory() as uow:
            vehicle = uow.vehicles.get(resource_id)

        if vehicle is None:
            raise StatusSyncError(f"Vehicle {resource_id} disappeared during verification")
        if vehicle.status != target_status:
            raise StatusSyncError(
                f"Verification failed: expected {target_status.value}, found {vehicle.status.value}"
            )

        return previous_status, vehicle.status

    def _publish(self, event_type: EventType, resource_id: str, data: Dict[str, Any]) -> None:
        if self._message_bus is None:
            return
        self._message_bus.publish_event(DomainEvent(
            event_type=event_type,
            aggregate_id=resource_id,
            aggregate_type="Vehicle",
            source=self.__class__.__name__,
            data=data
        ))
