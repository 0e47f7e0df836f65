#!/usr/bin/env python3
"""
Configuration Unit Tests

Tests for settings validation, the settings sources and the cached
ConfigurationProvider.
"""

import unittest
import sys
from pathlib import Path
from unittest.mock import Mock
from datetime import datetime
from decimal import Decimal

sys.path.append(str(Path(__file__).parent.parent.parent))

from rental_core.infrastructure.settings import (
    ConfigurationProvider, StaticSettingsSource, MongoSettingsSource,
    RentalSettings, SettingsValidationError, DEFAULT_SETTINGS, validate_settings
)
from rental_core.infrastructure.messaging import MessageBus, EventType


class FakeClock:
    """Monotonic clock advanced by hand"""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestSettingsValidation(unittest.TestCase):
    """Unit tests for validate_settings"""

    def test_defaults_are_valid(self):
        self.assertEqual(validate_settings(dict(DEFAULT_SETTINGS)), [])

    def test_invalid_values_reported(self):
        data = dict(DEFAULT_SETTINGS,
                    start_delay_minutes=90,
                    round_to_nearest_minutes=7,
                    late_fee_per_hour=-5,
                    security_deposit="lots",
                    minimum_hours=0)
        errors = validate_settings(data)

        self.assertEqual(len(errors), 5)
        self.assertIn("Start delay must be between 0 and 60 minutes", errors)

    def test_pricing_rules_included(self):
        errors = validate_settings(dict(DEFAULT_SETTINGS, hourly_rate=0, night_charge_time="late"))
        self.assertIn("Hourly rate must be greater than 0", errors)
        self.assertIn("Night charge time must be in HH:MM format", errors)

    def test_non_numeric_rate(self):
        errors = validate_settings(dict(DEFAULT_SETTINGS, hourly_rate="free"))
        self.assertEqual(len(errors), 1)

    def test_non_finite_numbers_rejected(self):
        errors = validate_settings(dict(DEFAULT_SETTINGS, hourly_rate="NaN", late_fee_per_hour="Infinity"))

        self.assertIn("Hourly rate must be greater than 0", errors)
        self.assertIn("Late fee cannot be negative", errors)

    def test_settings_from_dict(self):
        settings = RentalSettings.from_dict({"hourly_rate": "100", "grace_period_minutes": 10})

        self.assertEqual(settings.pricing.hourly_rate, Decimal('100'))
        self.assertEqual(settings.pricing.grace_minutes, 10)
        self.assertEqual(settings.start_delay_minutes, 5)
        self.assertEqual(settings.late_fee_per_hour, Decimal('20'))
        self.assertEqual(RentalSettings.from_dict(settings.to_dict()), settings)


class TestConfigurationProvider(unittest.TestCase):
    """Unit tests for the cached configuration provider"""

    def setUp(self):
        self.clock = FakeClock()
        self.source = StaticSettingsSource({"hourly_rate": 90})
        self.provider = ConfigurationProvider(self.source, ttl_seconds=300, clock=self.clock)

    def test_settings_are_cached(self):
        """Test source changes are not visible until the TTL passes"""
        first = self.provider.get_settings()
        self.source.save({"hourly_rate": 120})

        self.assertEqual(self.provider.get_settings().pricing.hourly_rate, Decimal('90'))
        self.assertIs(self.provider.get_settings(), first)

        self.clock.advance(301)
        self.assertEqual(self.provider.get_settings().pricing.hourly_rate, Decimal('120'))

    def test_refresh_bypasses_cache(self):
        self.provider.get_settings()
        self.source.save({"hourly_rate": 120})

        self.assertEqual(self.provider.refresh().pricing.hourly_rate, Decimal('120'))

    def test_clear_cache(self):
        self.provider.get_settings()
        self.provider.clear_cache()

        self.assertFalse(self.provider.get_cache_stats()["cached"])

    def test_fetch_failure_serves_last_known_good(self):
        """Test a failing source keeps the last good settings"""
        self.provider.get_settings()
        self.source.fetch = Mock(side_effect=ConnectionError("database down"))
        self.clock.advance(301)

        with self.assertLogs('ConfigurationProvider', level='WARNING'):
            settings = self.provider.get_settings()

        self.assertEqual(settings.pricing.hourly_rate, Decimal('90'))
        self.assertEqual(self.provider.get_cache_stats()["fetch_failures"], 1)

    def test_fetch_failure_without_history_serves_defaults(self):
        source = Mock()
        source.fetch.side_effect = ConnectionError("database down")
        provider = ConfigurationProvider(source, clock=self.clock)

        with self.assertLogs('ConfigurationProvider', level='WARNING'):
            settings = provider.get_settings()

        self.assertEqual(settings, RentalSettings.from_dict(DEFAULT_SETTINGS))

    def test_invalid_fetched_settings_serve_last_known_good(self):
        self.provider.get_settings()
        self.source.save({"hourly_rate": -1})

        with self.assertLogs('ConfigurationProvider', level='WARNING'):
            settings = self.provider.refresh()

        self.assertEqual(settings.pricing.hourly_rate, Decimal('90'))
        self.assertEqual(self.provider.get_cache_stats()["invalid_fetches"], 1)

    def test_non_finite_rate_serves_defaults(self):
        provider = ConfigurationProvider(StaticSettingsSource({"hourly_rate": "NaN"}), clock=self.clock)

        with self.assertLogs('ConfigurationProvider', level='WARNING'):
            settings = provider.get_settings()

        self.assertEqual(settings, RentalSettings.from_dict(DEFAULT_SETTINGS))

    def test_infinite_rate_serves_last_known_good(self):
        self.provider.get_settings()
        self.source.save({"hourly_rate": "Infinity"})

        with self.assertLogs('ConfigurationProvider', level='WARNING'):
            settings = self.provider.refresh()

        self.assertEqual(settings.pricing.hourly_rate, Decimal('90'))

    def test_update_settings(self):
        """Test updates are validated, saved and visible immediately"""
        bus = Mock(spec=MessageBus)
        provider = ConfigurationProvider(self.source, clock=self.clock, message_bus=bus)
        provider.get_settings()

        settings = provider.update_settings({"block_minutes": 60}, updated_by="manager")

        self.assertEqual(settings.pricing.block_minutes, 60)
        self.assertEqual(settings.pricing.hourly_rate, Decimal('90'))
        self.assertEqual(self.source.fetch()["block_minutes"], 60)
        event = bus.publish_event.call_args[0][0]
        self.assertEqual(event.event_type, EventType.SETTINGS_UPDATED)
        self.assertEqual(event.data["changed"], ["block_minutes"])

    def test_desk_only_settings_do_not_change_pricing(self):
        """Test deposit and minimum hours are stored without touching pricing"""
        before = self.provider.get_pricing_configuration()

        settings = self.provider.update_settings({"security_deposit": 750, "minimum_hours": 2})

        self.assertEqual(settings.security_deposit, Decimal('750'))
        self.assertEqual(settings.minimum_hours, Decimal('2'))
        self.assertEqual(self.source.fetch()["security_deposit"], 750)
        self.assertEqual(self.provider.get_pricing_configuration(), before)

    def test_update_settings_rejects_invalid(self):
        with self.assertRaises(SettingsValidationError) as ctx:
            self.provider.update_settings({"round_to_nearest_minutes": 7})

        self.assertEqual(len(ctx.exception.errors), 1)
        self.assertNotIn("round_to_nearest_minutes", self.source.fetch())

    def test_cache_stats(self):
        self.provider.get_settings()
        self.provider.get_settings()
        self.clock.advance(10)
        stats = self.provider.get_cache_stats()

        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["age_seconds"], 10)
        self.assertTrue(stats["fresh"])

    def test_calculate_rental_start_time(self):
        provider = ConfigurationProvider(
            StaticSettingsSource({"start_delay_minutes": 10, "round_to_nearest_minutes": 15}),
            clock=self.clock
        )
        start = provider.calculate_rental_start_time(datetime(2024, 3, 15, 10, 3))
        self.assertEqual(start, datetime(2024, 3, 15, 10, 15))


class TestMongoSettingsSource(unittest.TestCase):
    """Unit tests for MongoSettingsSource with a mocked collection"""

    def setUp(self):
        self.collection = Mock()
        self.source = MongoSettingsSource(self.collection)

    def test_fetch_strips_document_fields(self):
        self.collection.find_one.return_value = {
            "_id": "rental_settings", "hourly_rate": 100, "updated_at": datetime.now()
        }

        self.assertEqual(self.source.fetch(), {"hourly_rate": 100})
        self.collection.find_one.assert_called_once_with({"_id": "rental_settings"})

    def test_fetch_missing_document(self):
        self.collection.find_one.return_value = None
        self.assertEqual(self.source.fetch(), {})

    def test_save_upserts_with_string_decimals(self):
        self.source.save({"hourly_rate": Decimal('95.50'), "block_minutes": 30})

        query, document = self.collection.replace_one.call_args[0]
        self.assertEqual(query, {"_id": "rental_settings"})
        self.assertEqual(document["hourly_rate"], "95.50")
        self.assertEqual(document["block_minutes"], 30)
        self.assertIn("updated_at", document)
        self.assertTrue(self.collection.replace_one.call_args[1]["upsert"])


if __name__ == '__main__':
    unittest.main()
