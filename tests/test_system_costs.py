from decimal import Decimal
import unittest

from factories import EXAMPLE_RATES, make_draft, make_trip
from trip_ledger.errors import ValidationError
from trip_ledger.flags import FlagEngine
from trip_ledger.system_costs import SystemCostGenerator, apply_system_costs, days_for_duration


class SystemCostGeneratorTestCase(unittest.TestCase):
    def setUp(self):
        self.generator = SystemCostGenerator()

    def test_example_trip_amounts(self):
        entries = self.generator.generate("trip-1", Decimal("500"), Decimal("36"), EXAMPLE_RATES)

        amounts = {entry.sub_category: entry.amount for entry in entries}
        self.assertEqual(amounts["Repair & Maintenance per KM"], Decimal("1050.00"))
        self.assertEqual(amounts["Tyre Cost per KM"], Decimal("750.00"))
        self.assertEqual(amounts["GIT Insurance"], Decimal("200.00"))
        self.assertEqual(amounts["Estimated Fuel"], Decimal("4112.50"))
        self.assertEqual(amounts["Wages"], Decimal("700.00"))

    def test_entries_are_system_generated_and_traced(self):
        entries = self.generator.generate("trip-1", Decimal("500"), Decimal("36"), EXAMPLE_RATES)

        self.assertEqual(len(entries), 5)
        for entry in entries:
            self.assertTrue(entry.is_system_generated)
            self.assertFalse(entry.is_flagged)
            self.assertEqual(entry.category, "System Costs")
            self.assertTrue(entry.calculation_details)
        repair = entries[0]
        self.assertEqual(repair.system_cost_type, "per-km")
        self.assertEqual(repair.calculation_details, "500 km x 2.10 ZAR/km = 1050.00 ZAR")
        self.assertEqual(entries[2].system_cost_type, "per-day")

    def test_regeneration_is_idempotent(self):
        trip = make_trip()
        manual = FlagEngine().create_entry(trip.trip_id, make_draft(), entry_id="manual-1")
        first = apply_system_costs([manual], self.generator.generate_for_trip(trip, EXAMPLE_RATES))
        second = apply_system_costs(first, self.generator.generate_for_trip(trip, EXAMPLE_RATES))

        self.assertEqual(first, second)
        self.assertEqual(len([entry for entry in second if entry.is_system_generated]), 5)
        self.assertEqual(second[0].entry_id, "manual-1")

    def test_default_rates_follow_trip_currency(self):
        entries = self.generator.generate_for_trip(make_trip(revenue_currency="USD"))

        self.assertTrue(all(entry.currency == "USD" for entry in entries))
        self.assertEqual(entries[0].amount, Decimal("55.00"))

    def test_missing_distance_or_duration_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            self.generator.generate_for_trip(make_trip(distance_km=None, duration_hours=None))
        self.assertIn("distance_km", ctx.exception.errors)
        self.assertIn("duration_hours", ctx.exception.errors)

    def test_negative_distance_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.generator.generate("trip-1", Decimal("-1"), Decimal("10"), EXAMPLE_RATES)


def test_days_round_up_to_whole_days():
    assert days_for_duration(Decimal("0")) == 0
    assert days_for_duration(Decimal("24")) == 1
    assert days_for_duration(Decimal("24.5")) == 2
    assert days_for_duration(Decimal("36")) == 2
