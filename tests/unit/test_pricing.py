#!/usr/bin/env python3
"""
Pricing Unit Tests

Tests for the tiered pricing strategy, the fallback strategy, the pricing
engine facade and the rental start-time rule.
"""

import unittest
import sys
from pathlib import Path
from datetime import datetime, timedelta
from decimal import Decimal

# Add the project root to the Python path
sys.path.append(str(Path(__file__).parent.parent.parent))

from rental_core.domain.models import PricingConfiguration, PricingStatus
from rental_core.domain.strategies import (
    PricingEngine, TieredPricingStrategy, FallbackPricingStrategy,
    InvalidPricingConfigurationError, is_night_charge, compute_rental_start_time
)


def at(hour, minute=0, second=0, day=15):
    return datetime(2024, 3, day, hour, minute, second)


class PricingTestBase(unittest.TestCase):
    """Base class for pricing tests with common setup"""

    def setUp(self):
        self.engine = PricingEngine()
        self.config = PricingConfiguration()

    def assertBreakdownConsistent(self, result, start_time):
        """Segments cover [start, end) contiguously and sum to the totals"""
        self.assertEqual(sum(s.minutes for s in result.breakdown), result.total_minutes)
        self.assertEqual(sum(s.rate for s in result.breakdown), result.total_amount)

        cursor = start_time
        for segment in result.breakdown:
            self.assertEqual(segment.start_time, cursor)
            self.assertEqual(segment.end_time, cursor + timedelta(minutes=segment.minutes))
            cursor = segment.end_time


# ============================================================================
# TIERED PRICING
# ============================================================================

class TestTieredPricing(PricingTestBase):
    """Unit tests for the tiered pricing calculation"""

    def test_day_rental_with_partial_block(self):
        """Test 2h 7m daytime rental: first period plus two blocks"""
        result = self.engine.calculate(at(10), at(12, 7), self.config)

        self.assertEqual(result.status, PricingStatus.NORMAL)
        self.assertEqual(result.total_minutes, 127)
        self.assertEqual(result.total_amount, Decimal('160'))
        self.assertEqual([s.minutes for s in result.breakdown], [75, 30, 22])
        self.assertEqual([s.rate for s in result.breakdown], [Decimal('80'), Decimal('40'), Decimal('40')])
        self.assertEqual(result.breakdown[0].period, "First 1h 15m")
        self.assertEqual(result.breakdown[1].period, "Block 2 (30min)")
        self.assertEqual(result.breakdown[1].description, "Full 30-minute block")
        self.assertEqual(result.breakdown[2].period, "Block 3 (30min)")
        self.assertEqual(result.breakdown[2].description, "Partial block (22 minutes)")
        self.assertEqual(result.summary, "2h 7m total")
        self.assertFalse(result.is_fallback)
        self.assertBreakdownConsistent(result, at(10))

    def test_first_period_boundary(self):
        """Test 75 minutes fits the first period and 76 starts a block"""
        result = self.engine.calculate(at(10), at(11, 15), self.config)
        self.assertEqual(len(result.breakdown), 1)
        self.assertEqual(result.breakdown[0].description, "Full first period (75 minutes)")
        self.assertEqual(result.total_amount, Decimal('80'))

        result = self.engine.calculate(at(10), at(11, 16), self.config)
        self.assertEqual(len(result.breakdown), 2)
        self.assertEqual(result.breakdown[1].minutes, 1)
        self.assertEqual(result.breakdown[1].description, "Partial block (1 minutes)")
        self.assertEqual(result.total_amount, Decimal('120'))

    def test_short_rental_is_partial_first_period(self):
        """Test rentals shorter than the first period pay the full rate"""
        result = self.engine.calculate(at(10), at(10, 20), self.config)

        self.assertEqual(result.total_amount, Decimal('80'))
        self.assertEqual(result.breakdown[0].description, "Partial first period (20 minutes)")
        self.assertEqual(result.summary, "0h 20m total")

    def test_night_rated_first_period(self):
        """Test a first period crossing 22:30 is multiplied"""
        result = self.engine.calculate(at(22), at(23), self.config)

        self.assertEqual(result.total_amount, Decimal('160'))
        self.assertTrue(result.breakdown[0].is_night_charge)
        self.assertEqual(result.summary, "1h 0m total (1 night-rate block)")

    def test_only_crossing_block_is_night_rated(self):
        """Test blocks after the night instant return to the normal rate"""
        result = self.engine.calculate(at(21), at(23, 30), self.config)

        self.assertEqual([s.is_night_charge for s in result.breakdown], [False, True, False, False])
        self.assertEqual(result.total_amount, Decimal('240'))
        self.assertEqual(result.night_segment_count, 1)
        self.assertBreakdownConsistent(result, at(21))

    def test_half_rate_rounds_half_up(self):
        """Test odd hourly rates round the block rate half up"""
        config = PricingConfiguration(hourly_rate=Decimal('75'))
        result = self.engine.calculate(at(10), at(11, 16), config)

        self.assertEqual(result.breakdown[1].rate, Decimal('38'))
        self.assertEqual(result.total_amount, Decimal('113'))

    def test_custom_grace_and_block(self):
        """Test grace and block lengths come from the configuration"""
        config = PricingConfiguration(grace_minutes=0, block_minutes=60)
        result = self.engine.calculate(at(9), at(12, 30), config)

        self.assertEqual([s.minutes for s in result.breakdown], [60, 60, 60, 30])
        self.assertEqual(result.breakdown[0].period, "First 1h 0m")
        self.assertEqual(result.total_amount, Decimal('200'))

    def test_seconds_are_floored(self):
        """Test partial minutes are not billed"""
        result = self.engine.calculate(at(10), at(11, 15, 59), self.config)
        self.assertEqual(result.total_minutes, 75)
        self.assertEqual(len(result.breakdown), 1)

    def test_breakdown_invariants_over_durations(self):
        """Test segment sums and contiguity for a range of durations"""
        for minutes in (1, 29, 74, 75, 76, 105, 106, 180, 600, 1441):
            with self.subTest(minutes=minutes):
                start = at(20, 17)
                result = self.engine.calculate(start, start + timedelta(minutes=minutes), self.config)
                self.assertEqual(result.total_minutes, minutes)
                self.assertBreakdownConsistent(result, start)

    def test_calculation_is_deterministic(self):
        """Test identical inputs produce identical results"""
        first = self.engine.calculate(at(22, 10), at(23, 50), self.config)
        second = self.engine.calculate(at(22, 10), at(23, 50), self.config)
        self.assertEqual(first, second)

    def test_strategy_refuses_invalid_configuration(self):
        """Test the tiered strategy never prices with an invalid configuration"""
        strategy = TieredPricingStrategy()
        with self.assertRaises(InvalidPricingConfigurationError) as ctx:
            strategy.calculate(at(10), 60, PricingConfiguration(block_minutes=0))
        self.assertIn("Block duration must be between 1 and 120 minutes", ctx.exception.errors)


# ============================================================================
# NIGHT RULE
# ============================================================================

class TestNightCharge(unittest.TestCase):
    """Unit tests for the night-charge rule"""

    def test_segment_straddling_threshold(self):
        self.assertTrue(is_night_charge(at(22, 29), 2, "22:30"))

    def test_segment_ending_at_threshold(self):
        self.assertFalse(is_night_charge(at(22), 30, "22:30"))

    def test_segment_ending_before_threshold(self):
        self.assertFalse(is_night_charge(at(22), 29, "22:30"))

    def test_segment_starting_at_threshold(self):
        self.assertTrue(is_night_charge(at(22, 30), 10, "22:30"))

    def test_segment_starting_after_threshold(self):
        self.assertFalse(is_night_charge(at(22, 31), 29, "22:30"))

    def test_threshold_anchored_to_segment_start_date(self):
        """Test a segment starting after midnight does not look back a day"""
        self.assertFalse(is_night_charge(at(0, 30, day=16), 60, "22:30"))


# ============================================================================
# EDGE CASES AND FALLBACK
# ============================================================================

class TestPricingEngineEdgeCases(PricingTestBase):
    """Unit tests for pre-start, just-started and fallback pricing"""

    def test_pre_start(self):
        """Test an end before the start reports minutes until start"""
        result = self.engine.calculate(at(10), at(9, 58, 30), self.config)

        self.assertEqual(result.status, PricingStatus.PRE_START)
        self.assertEqual(result.total_amount, Decimal('0'))
        self.assertEqual(result.minutes_until_start, 2)
        self.assertEqual(result.summary, "Rental starts in 2 minutes")
        self.assertEqual(result.breakdown, ())

    def test_pre_start_singular(self):
        result = self.engine.calculate(at(10), at(9, 59), self.config)
        self.assertEqual(result.summary, "Rental starts in 1 minute")

    def test_just_started(self):
        """Test less than one elapsed minute is free"""
        result = self.engine.calculate(at(10), at(10, 0, 59), self.config)

        self.assertEqual(result.status, PricingStatus.JUST_STARTED)
        self.assertEqual(result.total_amount, Decimal('0'))
        self.assertEqual(result.summary, "Rental just started")

    def test_invalid_configuration_uses_fallback(self):
        """Test a zero hourly rate falls back to the default rate"""
        config = PricingConfiguration(hourly_rate=Decimal('0'))

        with self.assertLogs('PricingEngine', level='WARNING'):
            result = self.engine.calculate(at(10), at(12, 7), config)

        self.assertTrue(result.is_fallback)
        self.assertEqual(result.total_amount, Decimal('240'))
        self.assertEqual(result.summary, "3h fallback calculation")
        self.assertEqual(len(result.breakdown), 1)
        self.assertEqual(result.breakdown[0].period, "3 hour(s)")
        self.assertBreakdownConsistent(result, at(10))

    def test_fallback_keeps_positive_configured_rate(self):
        """Test the fallback uses the configured rate when it is positive"""
        config = PricingConfiguration(hourly_rate=Decimal('100'), grace_minutes=90)

        with self.assertLogs('PricingEngine', level='WARNING'):
            result = self.engine.calculate(at(10), at(10, 30), config)

        self.assertTrue(result.is_fallback)
        self.assertEqual(result.total_amount, Decimal('100'))

    def test_non_finite_rate_uses_fallback(self):
        """Test a NaN or infinite hourly rate is priced at the default rate"""
        for value in ("NaN", "Infinity"):
            with self.subTest(value=value):
                config = PricingConfiguration(hourly_rate=value)

                with self.assertLogs('PricingEngine', level='WARNING'):
                    result = self.engine.calculate(at(10), at(11, 30), config)

                self.assertTrue(result.is_fallback)
                self.assertEqual(result.total_amount, Decimal('160'))

    def test_fallback_strategy_minimum_one_hour(self):
        result = FallbackPricingStrategy().calculate(at(10), 1, PricingConfiguration())
        self.assertEqual(result.total_amount, Decimal('80'))

    def test_malformed_night_time_uses_fallback(self):
        config = PricingConfiguration(night_charge_time="25:00")

        with self.assertLogs('PricingEngine', level='WARNING'):
            result = self.engine.calculate(at(22), at(23), config)

        self.assertTrue(result.is_fallback)
        self.assertEqual(result.total_amount, Decimal('80'))


# ============================================================================
# PREVIEW, EXAMPLES AND LATE FEES
# ============================================================================

class TestPricingPreview(PricingTestBase):
    """Unit tests for previews and example tables"""

    def test_preview_without_duration(self):
        result = self.engine.calculate_preview(0, at(14), self.config)

        self.assertEqual(result.total_amount, Decimal('0'))
        self.assertEqual(result.summary, "No time selected")

    def test_preview_delegates_to_calculate(self):
        result = self.engine.calculate_preview(120, at(14), self.config)

        self.assertEqual(result.total_amount, Decimal('160'))
        self.assertEqual(result.total_minutes, 120)

    def test_generate_examples(self):
        """Test day and night example tables"""
        examples = self.engine.generate_examples(self.config, reference_date=at(9))

        day = {e["label"]: e["amount"] for e in examples["day"]}
        self.assertEqual(day, {
            "30 minutes": Decimal('80'),
            "1 hour": Decimal('80'),
            "1.5 hours": Decimal('120'),
            "2 hours": Decimal('160'),
            "3 hours": Decimal('240'),
        })

        night = {e["label"]: e["amount"] for e in examples["night"]}
        self.assertEqual(night, {
            "1 hour": Decimal('80'),
            "1.5 hours": Decimal('200'),
            "2 hours": Decimal('240'),
        })
        self.assertTrue(all(e["type"] == "night" for e in examples["night"]))
        self.assertEqual(examples["settings"]["night_charge_time"], "22:30")

    def test_late_fee(self):
        """Test late fees are charged per started hour"""
        per_hour = Decimal('20')
        self.assertEqual(PricingEngine.calculate_late_fee(0, per_hour), Decimal('0'))
        self.assertEqual(PricingEngine.calculate_late_fee(-1.5, per_hour), Decimal('0'))
        self.assertEqual(PricingEngine.calculate_late_fee(0.2, per_hour), Decimal('20'))
        self.assertEqual(PricingEngine.calculate_late_fee(2.0, per_hour), Decimal('40'))
        self.assertEqual(PricingEngine.calculate_late_fee(2.01, per_hour), Decimal('60'))


# ============================================================================
# START-TIME RULE
# ============================================================================

class TestRentalStartTime(unittest.TestCase):
    """Unit tests for the rental start-time rule"""

    def test_rounds_up_to_next_multiple(self):
        self.assertEqual(compute_rental_start_time(at(10, 2, 30), 5, 5), at(10, 10))

    def test_exact_multiple_is_kept(self):
        self.assertEqual(compute_rental_start_time(at(10, 5), 5, 5), at(10, 10))

    def test_hour_rollover(self):
        self.assertEqual(compute_rental_start_time(at(10, 52), 5, 5), at(11))
        self.assertEqual(compute_rental_start_time(at(10, 56, 10), 5, 5), at(11, 5))

    def test_day_rollover(self):
        self.assertEqual(compute_rental_start_time(at(23, 58), 5, 5), at(0, 5, day=16))

    def test_rounding_of_one_drops_seconds(self):
        self.assertEqual(compute_rental_start_time(at(10, 2, 30), 5, 1), at(10, 7))

    def test_quarter_hour_rounding(self):
        self.assertEqual(compute_rental_start_time(at(10), 5, 15), at(10, 15))

    def test_no_delay(self):
        self.assertEqual(compute_rental_start_time(at(10), 0, 5), at(10))


if __name__ == '__main__':
    unittest.main()
