from decimal import Decimal
import unittest

from factories import border_draft, make_draft
from trip_ledger.core import CostEntry
from trip_ledger.errors import ValidationError
from trip_ledger.flags import FlagEngine, can_complete_trip, flag_invariant_holds


class FlagEngineTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = FlagEngine()

    def test_border_costs_are_always_flagged(self):
        entry = self.engine.create_entry("trip-1", border_draft())

        self.assertTrue(entry.is_flagged)
        self.assertEqual(entry.flag_reason, "High-risk category: Border Costs - Gate Pass requires review")
        self.assertEqual(entry.investigation_status, "pending")
        self.assertFalse(entry.is_resolved)
        self.assertIsNotNone(entry.flagged_at)

    def test_documented_ordinary_cost_is_clean(self):
        entry = self.engine.create_entry("trip-1", make_draft())

        self.assertFalse(entry.is_flagged)
        self.assertIsNone(entry.flag_reason)
        self.assertIsNone(entry.investigation_status)

    def test_missing_documentation_without_justification_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            self.engine.create_entry("trip-1", make_draft(attachments=()))

        self.assertIn("documents", ctx.exception.errors)

    def test_missing_documentation_with_justification_is_flagged(self):
        entry = self.engine.create_entry(
            "trip-1",
            make_draft(category="Parking", sub_category="Harare", attachments=(), no_document_reason="Receipt lost"),
        )

        self.assertTrue(entry.is_flagged)
        self.assertEqual(entry.flag_reason, "Missing documentation: Receipt lost")
        self.assertEqual(entry.investigation_status, "pending")
        self.assertEqual(entry.no_document_reason, "Receipt lost")

    def test_manual_flag_uses_operator_reason(self):
        entry = self.engine.create_entry(
            "trip-1",
            make_draft(category="Tolls", sub_category="Tolls BB to JHB", manual_flag=True, manual_flag_reason="Looks high"),
        )

        self.assertEqual(entry.flag_reason, "Looks high")

    def test_high_risk_rule_wins_over_manual_flag(self):
        entry = self.engine.create_entry("trip-1", border_draft(manual_flag=True, manual_flag_reason="Check this"))

        self.assertTrue(entry.flag_reason.startswith("High-risk category"))

    def test_validation_reports_each_field(self):
        result = self.engine.validate(
            make_draft(
                category="",
                sub_category="",
                amount=Decimal("0"),
                currency="EUR",
                reference_number=" ",
                date=None,
                manual_flag=True,
            )
        )

        self.assertFalse(result.ok)
        for name in ("category", "sub_category", "amount", "currency", "reference_number", "date", "flag_reason"):
            self.assertIn(name, result.errors)
        self.assertEqual(result.errors["amount"], "Amount must be greater than 0")

    def test_system_costs_cannot_be_entered_manually(self):
        result = self.engine.validate(make_draft(category="System Costs", sub_category="Wages"))

        self.assertIn("category", result.errors)

    def test_non_numeric_amount_is_rejected(self):
        result = self.engine.validate(make_draft(amount="twelve"))

        self.assertEqual(result.errors["amount"], "Amount must be a valid number")

    def test_nan_amount_is_rejected(self):
        result = self.engine.validate(make_draft(amount=Decimal("NaN")))

        self.assertEqual(result.errors["amount"], "Amount must be a valid number")

    def test_resolve_can_correct_amount_and_notes(self):
        entry = self.engine.create_entry("trip-1", border_draft())

        resolved = self.engine.resolve(
            entry, "Agent refunded overcharge", "manager-1", amount=Decimal("1200.00"), notes="Refund slip on file"
        )

        self.assertTrue(resolved.is_resolved)
        self.assertEqual(resolved.amount, Decimal("1200.00"))
        self.assertEqual(resolved.notes, "Refund slip on file")
        self.assertEqual(resolved.flag_reason, entry.flag_reason)

    def test_resolve_rejects_invalid_corrected_amount(self):
        entry = self.engine.create_entry("trip-1", border_draft())

        with self.assertRaises(ValidationError) as ctx:
            self.engine.resolve(entry, "Corrected", "manager-1", amount=Decimal("0"))
        self.assertIn("amount", ctx.exception.errors)

    def test_resolve_round_trip(self):
        entry = self.engine.create_entry("trip-1", border_draft())
        self.assertFalse(can_complete_trip([entry]))

        resolved = self.engine.resolve(entry, "Gate pass confirmed with border agent", "manager-1")

        self.assertTrue(resolved.is_flagged)
        self.assertTrue(resolved.is_resolved)
        self.assertEqual(resolved.investigation_status, "resolved")
        self.assertEqual(resolved.investigation_notes, "Resolution: Gate pass confirmed with border agent")
        self.assertEqual(resolved.resolved_by, "manager-1")
        self.assertTrue(can_complete_trip([resolved]))

    def test_resolve_requires_a_note(self):
        entry = self.engine.create_entry("trip-1", border_draft())

        with self.assertRaises(ValidationError) as ctx:
            self.engine.resolve(entry, "  ", "manager-1")
        self.assertIn("resolution_note", ctx.exception.errors)

    def test_resolve_rejects_unflagged_entry(self):
        entry = self.engine.create_entry("trip-1", make_draft())

        with self.assertRaises(ValidationError):
            self.engine.resolve(entry, "nothing to do", "manager-1")

    def test_supplying_documentation_resolves_missing_document_flag(self):
        entry = self.engine.create_entry("trip-1", make_draft(attachments=(), no_document_reason="Driver lost slip"))

        updated = self.engine.supply_documentation(entry, ["uploads/slip.pdf"], "ops-1")

        self.assertEqual(updated.attachments, ("uploads/slip.pdf",))
        self.assertTrue(updated.is_resolved)
        self.assertEqual(updated.investigation_notes, "Resolution: Documentation supplied")

    def test_supplying_documentation_keeps_high_risk_flag_open(self):
        entry = self.engine.create_entry("trip-1", border_draft())

        updated = self.engine.supply_documentation(entry, ["uploads/extra.pdf"], "ops-1")

        self.assertTrue(updated.blocks_completion)
        self.assertEqual(len(updated.attachments), 2)

    def test_update_with_attachment_resolves_documentation_flag(self):
        entry = self.engine.create_entry("trip-1", make_draft(attachments=(), no_document_reason="Pending from vendor"))

        updated = self.engine.update_entry(entry, make_draft(amount=Decimal("3100.00")), "ops-1")

        self.assertEqual(updated.entry_id, entry.entry_id)
        self.assertEqual(updated.amount, Decimal("3100.00"))
        self.assertTrue(updated.is_resolved)
        self.assertEqual(updated.flag_reason, entry.flag_reason)

    def test_update_into_high_risk_category_reflags(self):
        entry = self.engine.create_entry("trip-1", make_draft())

        updated = self.engine.update_entry(entry, border_draft(), "ops-1")

        self.assertTrue(updated.blocks_completion)
        self.assertTrue(updated.flag_reason.startswith("High-risk category"))

    def test_system_entries_cannot_be_updated(self):
        entry = CostEntry(
            entry_id="trip-1-system-repair",
            trip_id="trip-1",
            category="System Costs",
            sub_category="Repair & Maintenance per KM",
            amount=Decimal("1050.00"),
            currency="ZAR",
            reference_number="SYS-REPAIR",
            date=None,
            is_system_generated=True,
        )

        with self.assertRaises(ValidationError):
            self.engine.update_entry(entry, make_draft(), "ops-1")

    def test_variance_checks_run_after_built_in_rules(self):
        engine = FlagEngine(variance_checks=[lambda entry, ctx: "Cost variance above 10%" if entry.amount > 2000 else None])

        flagged = engine.create_entry("trip-1", make_draft())
        clean = engine.create_entry("trip-1", make_draft(amount=Decimal("500.00")))

        self.assertEqual(flagged.flag_reason, "Cost variance above 10%")
        self.assertFalse(clean.is_flagged)


def test_flag_invariant_holds_for_every_rule():
    engine = FlagEngine()
    entries = [
        engine.create_entry("trip-1", make_draft()),
        engine.create_entry("trip-1", border_draft()),
        engine.create_entry("trip-1", make_draft(attachments=(), no_document_reason="Lost")),
        engine.create_entry("trip-1", make_draft(manual_flag=True, manual_flag_reason="Duplicate?")),
    ]

    assert all(flag_invariant_holds(entry) for entry in entries)
    assert [entry.is_flagged for entry in entries] == [False, True, True, True]
