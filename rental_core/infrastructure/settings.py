# File: rental_core/infrastructure/settings.py
"""
Rental Settings and the Configuration Provider

Settings are read from a SettingsSource (in-memory or a MongoDB document)
and served through a ConfigurationProvider that:
1. Caches the validated settings for a bounded window (TTL)
2. Refetches on demand via refresh()
3. Serves the last known good settings when a fetch fails or returns
   invalid values, and the built-in defaults when nothing was ever loaded
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Callable
from datetime import datetime
from decimal import Decimal, InvalidOperation
import logging
import threading
import time

from pymongo import MongoClient
from pymongo.collection import Collection

from ..domain.models import PricingConfiguration
from ..domain.strategies import compute_rental_start_time
from .messaging import MessageBus, DomainEvent, EventType


DEFAULT_SETTINGS: Dict[str, Any] = {
    "hourly_rate": 80,
    "minimum_hours": 1,
    "late_fee_per_hour": 20,
    "security_deposit": 500,
    "grace_period_minutes": 15,
    "block_minutes": 30,
    "night_charge_time": "22:30",
    "night_multiplier": 2,
    "start_delay_minutes": 5,
    "round_to_nearest_minutes": 5,
    "cancellation_window_minutes": 120,
}

ROUNDING_OPTIONS = (1, 5, 10, 15, 30)

DEFAULT_CACHE_TTL_SECONDS = 300


class SettingsValidationError(ValueError):
    """Raised when settings updates fail validation"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def validate_settings(data: Dict[str, Any]) -> List[str]:
    """Return a list of validation errors for a flat settings mapping"""
    errors = []

    try:
        errors.extend(_pricing_from(data).validate())
    except ValueError as e:
        errors.append(str(e))

    start_delay = data.get("start_delay_minutes")
    if not isinstance(start_delay, int) or isinstance(start_delay, bool) or not 0 <= start_delay <= 60:
        errors.append("Start delay must be between 0 and 60 minutes")

    if data.get("round_to_nearest_minutes") not in ROUNDING_OPTIONS:
        errors.append(f"Rounding must be one of {', '.join(str(o) for o in ROUNDING_OPTIONS)} minutes")

    late_fee = _as_number(data.get("late_fee_per_hour"))
    if late_fee is None or late_fee < 0:
        errors.append("Late fee cannot be negative")

    deposit = _as_number(data.get("security_deposit"))
    if deposit is None or deposit < 0:
        errors.append("Security deposit cannot be negative")

    minimum_hours = _as_number(data.get("minimum_hours"))
    if minimum_hours is None or minimum_hours <= 0:
        errors.append("Minimum hours must be greater than 0")

    window = data.get("cancellation_window_minutes")
    if not isinstance(window, int) or isinstance(window, bool) or window < 0:
        errors.append("Cancellation window cannot be negative")

    return errors


def _pricing_from(data: Dict[str, Any]) -> PricingConfiguration:
    return PricingConfiguration(
        hourly_rate=data.get("hourly_rate"),
        grace_minutes=data.get("grace_period_minutes"),
        block_minutes=data.get("block_minutes"),
        night_charge_time=data.get("night_charge_time"),
        night_multiplier=data.get("night_multiplier")
    )


@dataclass(frozen=True)
class RentalSettings:
    """
    Value Object: Validated snapshot of the rental settings

    security_deposit and minimum_hours are stored for the rental desk and
    validated with the rest, but no pricing rule reads them.
    """
    pricing: PricingConfiguration = field(default_factory=PricingConfiguration)
    start_delay_minutes: int = 5
    round_to_nearest_minutes: int = 5
    late_fee_per_hour: Decimal = Decimal('20')
    security_deposit: Decimal = Decimal('500')
    minimum_hours: Decimal = Decimal('1')
    cancellation_window_minutes: int = 120

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RentalSettings':
        merged = {**DEFAULT_SETTINGS, **data}
        return cls(
            pricing=_pricing_from(merged),
            start_delay_minutes=merged["start_delay_minutes"],
            round_to_nearest_minutes=merged["round_to_nearest_minutes"],
            late_fee_per_hour=Decimal(str(merged["late_fee_per_hour"])),
            security_deposit=Decimal(str(merged["security_deposit"])),
            minimum_hours=Decimal(str(merged["minimum_hours"])),
            cancellation_window_minutes=merged["cancellation_window_minutes"]
        )

    def to_dict(self) -> Dict[str, Any]:
        """Flat mapping using the stored settings keys"""
        return {
            "hourly_rate": str(self.pricing.hourly_rate),
            "minimum_hours": str(self.minimum_hours),
            "late_fee_per_hour": str(self.late_fee_per_hour),
            "security_deposit": str(self.security_deposit),
            "grace_period_minutes": self.pricing.grace_minutes,
            "block_minutes": self.pricing.block_minutes,
            "night_charge_time": self.pricing.night_charge_time,
            "night_multiplier": str(self.pricing.night_multiplier),
            "start_delay_minutes": self.start_delay_minutes,
            "round_to_nearest_minutes": self.round_to_nearest_minutes,
            "cancellation_window_minutes": self.cancellation_window_minutes,
        }


# ============================================================================
# SETTINGS SOURCES
# ============================================================================

class SettingsSource(ABC):
    """Where raw settings are stored"""

    @abstractmethod
    def fetch(self) -> Dict[str, Any]:
        """Return the stored settings (missing keys fall back to defaults)"""
        pass

    @abstractmethod
    def save(self, data: Dict[str, Any]) -> None:
        pass


class StaticSettingsSource(SettingsSource):
    """In-memory settings for tests and local runs"""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = dict(data or {})

    def fetch(self) -> Dict[str, Any]:
        return dict(self._data)

    def save(self, data: Dict[str, Any]) -> None:
        self._data = dict(data)


class MongoSettingsSource(SettingsSource):
    """Settings stored as a single MongoDB document"""

    def __init__(self, collection: Collection, document_id: str = "rental_settings"):
        self.collection = collection
        self.document_id = document_id
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_url(
        cls,
        mongo_url: str = "mongodb://localhost:27017",
        database: str = "rental",
        collection: str = "settings",
        **kwargs
    ) -> 'MongoSettingsSource':
        client = MongoClient(mongo_url, **kwargs)
        return cls(client[database][collection])

    def fetch(self) -> Dict[str, Any]:
        document = self.collection.find_one({"_id": self.document_id})
        if document is None:
            self._logger.info(f"No settings document '{self.document_id}', using defaults")
            return {}
        document.pop("_id", None)
        document.pop("updated_at", None)
        return document

    def save(self, data: Dict[str, Any]) -> None:
        # BSON has no Decimal type
        document = {k: str(v) if isinstance(v, Decimal) else v for k, v in data.items()}
        document["updated_at"] = datetime.now()
        self.collection.replace_one({"_id": self.document_id}, document, upsert=True)
        self._logger.info(f"Saved settings document '{self.document_id}'")


# ============================================================================
# CONFIGURATION PROVIDER
# ============================================================================

class ConfigurationProvider:
    """
    Cached access to the rental settings

    Thread-safe. The clock is injectable so that tests can expire the cache
    without sleeping.
    """

    def __init__(
        self,
        source: SettingsSource,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        message_bus: Optional[MessageBus] = None
    ):
        self._source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._message_bus = message_bus
        self._lock = threading.RLock()
        self._logger = logging.getLogger(self.__class__.__name__)

        self._cached: Optional[RentalSettings] = None
        self._cached_at: Optional[float] = None
        self._last_known_good: Optional[RentalSettings] = None
        self._stats = {"hits": 0, "misses": 0, "fetch_failures": 0, "invalid_fetches": 0}

    @property
    def source(self) -> SettingsSource:
        return self._source

    def get_settings(self, use_cache: bool = True) -> RentalSettings:
        with self._lock:
            if use_cache and self._is_cache_fresh():
                self._stats["hits"] += 1
                return self._cached

            self._stats["misses"] += 1
            return self._load()

    def get_pricing_configuration(self, use_cache: bool = True) -> PricingConfiguration:
        return self.get_settings(use_cache).pricing

    def refresh(self) -> RentalSettings:
        """Bypass the cache and refetch"""
        return self.get_settings(use_cache=False)

    def clear_cache(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = None
        self._logger.debug("Settings cache cleared")

    def update_settings(self, changes: Dict[str, Any], updated_by: str = "admin") -> RentalSettings:
        """
        Validate and store a partial settings update
        Raises: SettingsValidationError if the merged settings are invalid
        """
        with self._lock:
            merged = {**self.get_settings().to_dict(), **changes}
            errors = validate_settings(merged)
            if errors:
                raise SettingsValidationError(errors)

            self._source.save(merged)
            self.clear_cache()
            settings = self._load()

        self._logger.info(f"Settings updated by {updated_by}: {sorted(changes)}")
        if self._message_bus:
            self._message_bus.publish_event(DomainEvent(
                event_type=EventType.SETTINGS_UPDATED,
                aggregate_type="RentalSettings",
                source=self.__class__.__name__,
                data={"changed": sorted(changes), "updated_by": updated_by}
            ))
        return settings

    def get_cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            age = self._clock() - self._cached_at if self._cached_at is not None else None
            return {
                "cached": self._cached is not None,
                "fresh": self._is_cache_fresh(),
                "age_seconds": age,
                "ttl_seconds": self.ttl_seconds,
                "has_last_known_good": self._last_known_good is not None,
                **self._stats,
            }

    def calculate_rental_start_time(self, booking_time: datetime) -> datetime:
        settings = self.get_settings()
        return compute_rental_start_time(
            booking_time,
            settings.start_delay_minutes,
            settings.round_to_nearest_minutes
        )

    def _is_cache_fresh(self) -> bool:
        return (
            self._cached is not None
            and self._clock() - self._cached_at < self.ttl_seconds
        )

    def _load(self) -> RentalSettings:
        try:
            raw = self._source.fetch() or {}
        except Exception as e:
            self._stats["fetch_failures"] += 1
            self._logger.warning(f"Failed to fetch settings, using fallback: {e}")
            return self._fallback()

        merged = {**DEFAULT_SETTINGS, **raw}
        errors = validate_settings(merged)
        if errors:
            self._stats["invalid_fetches"] += 1
            self._logger.warning(f"Fetched settings are invalid, using fallback: {errors}")
            return self._fallback()

        settings = RentalSettings.from_dict(merged)
        self._cached = settings
        self._cached_at = self._clock()
        self._last_known_good = settings
        self._logger.debug("Settings loaded and cached")
        return settings

    def _fallback(self) -> RentalSettings:
        if self._last_known_good is not None:
            return self._last_known_good
        return RentalSettings.from_dict(DEFAULT_SETTINGS)
