#!/usr/bin/env python3
"""
DTO Unit Tests

Tests for input validation of the booking DTOs.
"""

import unittest
import sys
from pathlib import Path
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import ValidationError

sys.path.append(str(Path(__file__).parent.parent.parent))

from rental_core.application.dtos import (
    BookingCreateDTO, BookingCompletionDTO, BookingCancellationDTO, PricingPreviewDTO
)
from rental_core.domain.models import PaymentMethod, VehicleCondition, CancellationReason


class TestBookingCreateDTO(unittest.TestCase):

    def test_valid_input(self):
        dto = BookingCreateDTO(
            vehicle_id=" v-1 ",
            customer_id="c-1",
            signature="sig",
            expected_return_time="2024-03-15T18:00:00",
            helmet_provided=True
        )

        self.assertEqual(dto.vehicle_id, "v-1")
        self.assertEqual(dto.expected_return_time, datetime(2024, 3, 15, 18, 0))
        self.assertTrue(dto.helmet_provided)
        self.assertFalse(dto.aadhar_card_collected)

    def test_blank_required_field(self):
        with self.assertRaises(ValidationError) as ctx:
            BookingCreateDTO(vehicle_id="v-1", customer_id="", signature="sig")

        self.assertIn("customer_id is required", str(ctx.exception))

    def test_missing_required_field(self):
        with self.assertRaises(ValidationError):
            BookingCreateDTO(vehicle_id="v-1", customer_id="c-1")

    def test_from_dict(self):
        dto = BookingCreateDTO.from_dict({
            "vehicle_id": "v-1",
            "customer_id": "c-1",
            "signature": "sig",
            "expected_return_time": "2024-03-15T12:00:00"
        })

        self.assertEqual(dto.expected_return_time, datetime(2024, 3, 15, 12, 0))

    def test_return_time_with_offset_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            BookingCreateDTO(
                vehicle_id="v-1", customer_id="c-1", signature="sig",
                expected_return_time="2024-03-15T12:00:00+05:30"
            )

        self.assertIn("without a timezone offset", str(ctx.exception))


class TestBookingCompletionDTO(unittest.TestCase):

    def test_defaults(self):
        dto = BookingCompletionDTO()

        self.assertIsNone(dto.end_time)
        self.assertEqual(dto.discount_amount, Decimal('0'))
        self.assertEqual(dto.payment_method, PaymentMethod.CASH)
        self.assertEqual(dto.vehicle_condition, VehicleCondition.GOOD)

    def test_amounts_parsed_as_decimal(self):
        dto = BookingCompletionDTO(discount_amount="12.50", additional_charges=100)
        self.assertEqual(dto.discount_amount, Decimal('12.50'))
        self.assertEqual(dto.additional_charges, Decimal('100'))

    def test_negative_amounts_rejected(self):
        with self.assertRaises(ValidationError):
            BookingCompletionDTO(additional_charges=-1)

    def test_unknown_payment_method_rejected(self):
        with self.assertRaises(ValidationError):
            BookingCompletionDTO(payment_method="cheque")

    def test_end_time_must_be_local(self):
        """Test an end time carrying a UTC designator is refused"""
        with self.assertRaises(ValidationError):
            BookingCompletionDTO(end_time="2024-03-15T12:17:00Z")

        self.assertEqual(
            BookingCompletionDTO(end_time="2024-03-15T12:17:00").end_time,
            datetime(2024, 3, 15, 12, 17)
        )


class TestBookingCancellationDTO(unittest.TestCase):

    def test_defaults(self):
        dto = BookingCancellationDTO()

        self.assertEqual(dto.reason, CancellationReason.OTHER)
        self.assertEqual(dto.cancelled_by, "Staff")
        self.assertIsNone(dto.within_window)
        self.assertFalse(dto.manual_override)

    def test_blank_custom_reason_dropped(self):
        dto = BookingCancellationDTO(reason="other", custom_reason="   ")
        self.assertIsNone(dto.custom_reason)

    def test_blank_cancelled_by_rejected(self):
        with self.assertRaises(ValidationError):
            BookingCancellationDTO(cancelled_by="")


class TestPricingPreviewDTO(unittest.TestCase):

    def test_from_dict(self):
        dto = PricingPreviewDTO.from_dict({"duration_minutes": "90"})

        self.assertEqual(dto.duration_minutes, 90)
        self.assertIsNone(dto.start_time)

    def test_start_time_with_offset_rejected(self):
        with self.assertRaises(ValidationError):
            PricingPreviewDTO(duration_minutes=90, start_time=datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc))


if __name__ == '__main__':
    unittest.main()
