# File: rental_core/domain/strategies.py
"""
Strategy Pattern Implementation for Rental Pricing

This module implements the Strategy Pattern to encapsulate the pricing
algorithms used to bill a rental. The PricingEngine facade selects the
tiered strategy and substitutes the fallback strategy whenever the
configuration cannot be trusted.

Key Strategies:
1. TieredPricingStrategy - First period (hour + grace) then half-rate blocks,
   with a night-charge multiplier for segments crossing the night instant
2. FallbackPricingStrategy - Whole hours at the hourly rate, used when the
   configuration is invalid

Also provides the rental start-time rule and late fee calculation.

All calculations are pure: no I/O and no clock reads.
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
import logging
import math

from .models import (
    PricingConfiguration, PricingSegment, PricingResult, PricingStatus
)


DEFAULT_HOURLY_RATE = Decimal('80')

PRICING_EXAMPLES = [
    {"label": "30 minutes", "minutes": 30},
    {"label": "1 hour", "minutes": 60},
    {"label": "1.5 hours", "minutes": 90},
    {"label": "2 hours", "minutes": 120},
    {"label": "3 hours", "minutes": 180},
]


class InvalidPricingConfigurationError(ValueError):
    """Raised when a strategy is handed a configuration that fails validation"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


# ============================================================================
# STRATEGY INTERFACE
# ============================================================================

class PricingStrategy(ABC):
    """
    Abstract base class for pricing strategies
    Defines the interface for rental fee calculation algorithms
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def calculate(
        self,
        start_time: datetime,
        total_minutes: int,
        config: PricingConfiguration
    ) -> PricingResult:
        """
        Price a rental of total_minutes (> 0) starting at start_time
        Returns: Calculated pricing result
        """
        pass

    def get_strategy_name(self) -> str:
        return self.__class__.__name__

    def __str__(self) -> str:
        return self.get_strategy_name()


# ============================================================================
# PRICING STRATEGIES
# ============================================================================

class TieredPricingStrategy(PricingStrategy):
    """
    Tiered pricing strategy
    - First period of 60 + grace minutes at the full hourly rate
    - Subsequent blocks at half the hourly rate (rounded half up)
    - Any segment crossing the night-charge instant is multiplied
    """

    def calculate(
        self,
        start_time: datetime,
        total_minutes: int,
        config: PricingConfiguration
    ) -> PricingResult:
        errors = config.validate()
        if errors:
            raise InvalidPricingConfigurationError(errors)

        breakdown = self.build_breakdown(start_time, total_minutes, config)
        total_amount = sum((segment.rate for segment in breakdown), Decimal('0'))

        return PricingResult(
            total_amount=total_amount,
            breakdown=tuple(breakdown),
            total_minutes=total_minutes,
            status=PricingStatus.NORMAL,
            summary=self._generate_summary(breakdown, total_minutes)
        )

    def build_breakdown(
        self,
        start_time: datetime,
        total_minutes: int,
        config: PricingConfiguration
    ) -> List[PricingSegment]:
        """Split total_minutes into contiguous priced segments"""
        base_rate = config.hourly_rate
        half_rate = (base_rate / 2).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
        first_period = config.first_period_minutes

        breakdown = []
        remaining = total_minutes
        current = start_time

        # First period: base hour + grace
        used = min(remaining, first_period)
        is_night = is_night_charge(current, used, config.night_charge_time)
        breakdown.append(PricingSegment(
            period=f"First {first_period // 60}h {first_period % 60}m",
            start_time=current,
            end_time=current + timedelta(minutes=used),
            minutes=used,
            rate=base_rate * config.night_multiplier if is_night else base_rate,
            is_night_charge=is_night,
            description=(
                f"Full first period ({used} minutes)" if used == first_period
                else f"Partial first period ({used} minutes)"
            )
        ))
        remaining -= used
        current += timedelta(minutes=used)

        block_number = 2
        while remaining > 0:
            used = min(remaining, config.block_minutes)
            is_night = is_night_charge(current, used, config.night_charge_time)
            breakdown.append(PricingSegment(
                period=f"Block {block_number} ({config.block_minutes}min)",
                start_time=current,
                end_time=current + timedelta(minutes=used),
                minutes=used,
                rate=half_rate * config.night_multiplier if is_night else half_rate,
                is_night_charge=is_night,
                description=(
                    f"Full {config.block_minutes}-minute block" if used == config.block_minutes
                    else f"Partial block ({used} minutes)"
                )
            ))
            remaining -= used
            current += timedelta(minutes=used)
            block_number += 1

        return breakdown

    @staticmethod
    def _generate_summary(breakdown: List[PricingSegment], total_minutes: int) -> str:
        hours, minutes = divmod(total_minutes, 60)
        summary = f"{hours}h {minutes}m total"

        night_blocks = sum(1 for segment in breakdown if segment.is_night_charge)
        if night_blocks > 0:
            summary += f" ({night_blocks} night-rate block{'s' if night_blocks > 1 else ''})"

        return summary


class FallbackPricingStrategy(PricingStrategy):
    """
    Degraded pricing strategy
    - Whole hours (rounded up) at the hourly rate
    - Minimum charge of one hour
    Results are tagged is_fallback so that audit views can flag them.
    """

    def calculate(
        self,
        start_time: datetime,
        total_minutes: int,
        config: Optional[PricingConfiguration] = None
    ) -> PricingResult:
        rate = DEFAULT_HOURLY_RATE
        if config is not None and config.hourly_rate.is_finite() and config.hourly_rate > 0:
            rate = config.hourly_rate

        hours = math.ceil(total_minutes / 60)
        total_amount = max(hours * rate, rate)

        segment = PricingSegment(
            period=f"{hours} hour(s)",
            start_time=start_time,
            end_time=start_time + timedelta(minutes=total_minutes),
            minutes=total_minutes,
            rate=total_amount,
            is_night_charge=False,
            description=f"Fallback hourly rate ({hours} hour(s) at {rate})"
        )

        return PricingResult(
            total_amount=total_amount,
            breakdown=(segment,),
            total_minutes=total_minutes,
            status=PricingStatus.NORMAL,
            summary=f"{hours}h fallback calculation",
            is_fallback=True
        )


# ============================================================================
# PRICING ENGINE (Facade)
# ============================================================================

class PricingEngine:
    """
    Entry point for all pricing calculations

    Handles the edge cases shared by every strategy (future start, zero
    elapsed minutes) and substitutes the fallback strategy when the tiered
    strategy refuses the configuration.
    """

    def __init__(
        self,
        strategy: Optional[PricingStrategy] = None,
        fallback_strategy: Optional[PricingStrategy] = None
    ):
        self.strategy = strategy or TieredPricingStrategy()
        self.fallback_strategy = fallback_strategy or FallbackPricingStrategy()
        self.logger = logging.getLogger(self.__class__.__name__)

    def calculate(
        self,
        start_time: datetime,
        end_time: datetime,
        config: PricingConfiguration
    ) -> PricingResult:
        """Convert a start/end pair into a billed amount with breakdown"""
        if end_time < start_time:
            minutes_until_start = math.ceil((start_time - end_time).total_seconds() / 60)
            return PricingResult(
                total_amount=Decimal('0'),
                breakdown=(),
                total_minutes=0,
                status=PricingStatus.PRE_START,
                summary=f"Rental starts in {minutes_until_start} minute{'' if minutes_until_start == 1 else 's'}",
                minutes_until_start=minutes_until_start
            )

        total_minutes = int((end_time - start_time).total_seconds() // 60)

        if total_minutes == 0:
            return PricingResult(
                total_amount=Decimal('0'),
                breakdown=(),
                total_minutes=0,
                status=PricingStatus.JUST_STARTED,
                summary="Rental just started"
            )

        try:
            return self.strategy.calculate(start_time, total_minutes, config)
        except InvalidPricingConfigurationError as e:
            self.logger.warning(f"Invalid pricing configuration, using fallback pricing: {e}")
            return self.fallback_strategy.calculate(start_time, total_minutes, config)

    def calculate_preview(
        self,
        duration_minutes: int,
        start_time: datetime,
        config: PricingConfiguration
    ) -> PricingResult:
        """Price a prospective rental of duration_minutes from start_time"""
        if duration_minutes <= 0:
            return PricingResult(
                total_amount=Decimal('0'),
                breakdown=(),
                total_minutes=0,
                status=PricingStatus.NORMAL,
                summary="No time selected"
            )

        return self.calculate(start_time, start_time + timedelta(minutes=duration_minutes), config)

    def generate_examples(
        self,
        config: PricingConfiguration,
        reference_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Representative prices for settings screens
        Day examples start at 14:00, night examples at 21:30
        """
        reference_date = reference_date or datetime.now()
        day_start = reference_date.replace(hour=14, minute=0, second=0, microsecond=0)
        night_start = reference_date.replace(hour=21, minute=30, second=0, microsecond=0)

        day = [
            self._example(example, day_start, config, "day")
            for example in PRICING_EXAMPLES
        ]
        night = [
            self._example(example, night_start, config, "night")
            for example in PRICING_EXAMPLES[1:4]
        ]

        return {"day": day, "night": night, "settings": config.to_dict()}

    def _example(
        self,
        example: Dict[str, Any],
        start_time: datetime,
        config: PricingConfiguration,
        example_type: str
    ) -> Dict[str, Any]:
        result = self.calculate_preview(example["minutes"], start_time, config)
        return {
            "label": example["label"],
            "minutes": example["minutes"],
            "amount": result.total_amount,
            "type": example_type,
        }

    @staticmethod
    def calculate_late_fee(over_hours: float, late_fee_per_hour: Decimal) -> Decimal:
        """Late fee charged per started hour past the expected return"""
        if over_hours <= 0:
            return Decimal('0')
        return math.ceil(over_hours) * Decimal(str(late_fee_per_hour))


# ============================================================================
# TIME RULES
# ============================================================================

def is_night_charge(segment_start: datetime, duration_minutes: int, night_charge_time: str) -> bool:
    """
    True if [segment_start, segment_start + duration) crosses the night instant

    The threshold is anchored to the segment start's date and is one minute
    wide, so only a segment that straddles or begins exactly at the threshold
    is night-rated.
    """
    hour, minute = (int(part) for part in night_charge_time.split(':'))
    segment_end = segment_start + timedelta(minutes=duration_minutes)
    threshold = segment_start.replace(hour=hour, minute=minute, second=0, microsecond=0)

    return segment_end > threshold and segment_start < threshold + timedelta(minutes=1)


def compute_rental_start_time(
    booking_time: datetime,
    start_delay_minutes: int,
    round_to_nearest_minutes: int
) -> datetime:
    """
    Scheduled start of a rental booked at booking_time

    Adds the start delay, then rounds up to the next multiple of
    round_to_nearest_minutes within the hour. Hour and day rollover follow
    from timedelta arithmetic. A rounding step of 1 or less only drops
    seconds.
    """
    start_time = booking_time + timedelta(minutes=start_delay_minutes)

    if round_to_nearest_minutes <= 1:
        return start_time.replace(second=0, microsecond=0)

    hour_start = start_time.replace(minute=0, second=0, microsecond=0)
    step_seconds = round_to_nearest_minutes * 60
    steps = math.ceil((start_time - hour_start).total_seconds() / step_seconds)

    return hour_start + timedelta(seconds=steps * step_seconds)
