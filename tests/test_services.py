from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path
import sqlite3
import tempfile
import unittest

from factories import border_draft, completed_trip, make_draft, make_invoice, make_trip
from trip_ledger.collaborators import Actor, RecordingNotifier, StaticIdentity
from trip_ledger.core import TripDeletionRecord
from trip_ledger.db import apply_sqlite_migration, connect_sqlite
from trip_ledger.errors import TripNotFoundError, TripPermissionError, ValidationError
from trip_ledger.invoicing import InvoiceFields
from trip_ledger.repositories import AttachmentRepository
from trip_ledger.services import TripLedgerService, validate_trip

OPERATOR = Actor(user_id="ops-1", role="operator")
MANAGER = Actor(user_id="manager-1", role="manager")
ADMIN = Actor(user_id="admin-1", role="admin")


class TripLedgerServiceTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.conn = connect_sqlite()
        apply_sqlite_migration(self.conn)
        self.notifier = RecordingNotifier()
        self.service = TripLedgerService(
            self.conn,
            StaticIdentity(OPERATOR),
            attachments=AttachmentRepository(self.conn, Path(self._tmp.name)),
            notifier=self.notifier,
        )

    def tearDown(self):
        self.conn.close()
        self._tmp.cleanup()

    def _store(self, trip):
        with self.conn:
            self.service.trips.save_trip(trip)
        return trip

    def test_full_lifecycle(self):
        self.service.create_trip(make_trip())
        border = self.service.add_cost_entry("trip-1", border_draft())
        self.service.add_cost_entry("trip-1", make_draft())

        self.assertTrue(self.service.advance("trip-1").ok)
        self.assertEqual(self.service.get_trip("trip-1").status, "active")
        self.assertTrue(self.service.advance("trip-1").ok)

        blocked = self.service.advance("trip-1")
        self.assertFalse(blocked.ok)
        self.assertEqual(self.service.current_step("trip-1").step_id, "generate-system-costs")

        self.assertEqual(len(self.service.generate_system_costs("trip-1")), 5)
        self.assertTrue(self.service.advance("trip-1").ok)

        self.assertFalse(self.service.advance("trip-1").ok)
        self.service.resolve_flag("trip-1", border.entry_id, "Gate pass verified")
        self.assertTrue(self.service.advance("trip-1").ok)

        self.assertEqual(self.service.can_proceed("trip-1").unmet, ("Proof of delivery is required",))
        self.service.record_proof_of_delivery("trip-1", ["uploads/pod.pdf"])
        self.assertTrue(self.service.advance("trip-1").ok)
        completed = self.service.get_trip("trip-1")
        self.assertEqual(completed.status, "completed")
        self.assertEqual(completed.completed_by, "ops-1")

        invoice = self.service.submit_invoice("trip-1", InvoiceFields("INV-1", date(2026, 3, 4)))
        self.assertEqual(invoice.due_date, date(2026, 4, 3))
        self.assertTrue(self.service.advance("trip-1").ok)
        self.assertEqual(self.service.get_trip("trip-1").status, "invoiced")

        summary = self.service.summary("trip-1")
        self.assertEqual(summary.manual_costs, Decimal("4500.00"))
        self.assertEqual(summary.system_costs, Decimal("6327.44"))
        self.assertEqual(summary.profit, Decimal("9172.56"))
        self.assertEqual(summary.margin_percent, Decimal("45.86"))
        self.assertEqual(summary.unresolved_items_count, 0)

        paid = self.service.mark_paid("trip-1", date(2026, 3, 20), "EFT", "PAY-1")
        self.assertEqual(paid.payment_status, "paid")
        self.assertEqual(self.service.get_trip("trip-1").status, "paid")

    def test_duplicate_trip_id_is_rejected(self):
        self.service.create_trip(make_trip())

        with self.assertRaises(ValidationError) as ctx:
            self.service.create_trip(make_trip())
        self.assertIn("trip_id", ctx.exception.errors)

    def test_costs_are_frozen_after_completion(self):
        self._store(completed_trip())

        with self.assertRaises(ValidationError) as ctx:
            self.service.add_cost_entry("trip-1", make_draft())
        self.assertIn("status", ctx.exception.errors)

    def test_cancelled_trip_stops_workflow(self):
        self.service.create_trip(make_trip())

        self.assertEqual(self.service.cancel_trip("trip-1").status, "cancelled")
        self.assertEqual(self.service.advance("trip-1").unmet, ("Trip has been cancelled",))

    def test_attaching_document_resolves_missing_document_flag(self):
        self.service.create_trip(make_trip())
        entry = self.service.add_cost_entry("trip-1", make_draft(attachments=(), no_document_reason="Slip pending"))
        self.assertTrue(entry.blocks_completion)

        updated = self.service.attach_document("trip-1", entry.entry_id, "slip.pdf", b"%PDF-1.4")

        self.assertTrue(updated.is_resolved)
        stored = self.service.get_trip("trip-1").find_cost(entry.entry_id)
        self.assertEqual(stored.attachments, updated.attachments)
        self.assertEqual(self.service.attachments.list(entry.entry_id), list(updated.attachments))

    def test_edit_completed_trip_persists_records(self):
        self._store(completed_trip())

        records = self.service.edit_completed_trip("trip-1", {"route": "A-C"}, "Client requested change")

        trip = self.service.get_trip("trip-1")
        self.assertEqual(trip.route, "A-C")
        self.assertEqual(trip.edit_history, records)
        self.assertEqual(records[0].edited_by, "ops-1")

    def test_manager_deletion_leaves_trip_in_storage(self):
        self._store(completed_trip())
        self.service.identity = StaticIdentity(MANAGER)

        with self.assertRaises(TripPermissionError):
            self.service.delete_trip("trip-1", "Duplicate entry", "DELETE FL-01")

        self.assertEqual(self.service.get_trip("trip-1").status, "completed")
        self.assertIsNone(self.service.trips.audit.get_deletion_record("trip-1"))

    def test_admin_deletion_writes_record_then_removes_trip(self):
        self._store(replace(completed_trip(), costs=[]))
        self.service.identity = StaticIdentity(ADMIN)
        events = []
        self.service.trips.subscribe(lambda trip_id, trip: events.append((trip_id, trip)))

        record = self.service.delete_trip("trip-1", "Duplicate entry", "DELETE FL-01")

        with self.assertRaises(TripNotFoundError):
            self.service.get_trip("trip-1")
        self.assertEqual(self.service.trips.audit.get_deletion_record("trip-1"), record)
        self.assertEqual(events, [("trip-1", None)])

    def test_deleted_trip_id_cannot_be_reused(self):
        self._store(completed_trip())
        self.service.edit_completed_trip("trip-1", {"route": "A-C"}, "Client requested change")
        self.service.identity = StaticIdentity(ADMIN)
        self.service.delete_trip("trip-1", "Duplicate entry", "DELETE FL-01")

        with self.assertRaises(ValidationError) as ctx:
            self.service.create_trip(make_trip())

        self.assertIn("trip_id", ctx.exception.errors)
        self.assertFalse(self.service.trips.exists("trip-1"))

    def test_malformed_edit_leaves_trip_unchanged(self):
        self._store(completed_trip())

        with self.assertRaises(ValidationError) as ctx:
            self.service.edit_completed_trip("trip-1", {"base_revenue": "abc"}, "Client requested change")

        self.assertIn("base_revenue", ctx.exception.errors)
        self.assertEqual(self.service.get_trip("trip-1").base_revenue, Decimal("20000.00"))
        self.assertEqual(self.service.trips.audit.list_edit_records("trip-1"), [])

    def test_resubmitting_keeps_recorded_payment(self):
        self._store(replace(completed_trip(), status="invoiced", workflow_step=6, invoice=make_invoice()))
        self.service.mark_paid("trip-1", date(2026, 1, 20), "EFT", amount=Decimal("5000"))

        with self.assertRaises(ValidationError):
            self.service.submit_invoice("trip-1", InvoiceFields("INV-2", date(2026, 3, 4)))

        invoice = self.service.get_trip("trip-1").invoice
        self.assertEqual((invoice.invoice_number, invoice.payment_status), ("INV-1", "partial"))
        self.assertEqual(invoice.payment_amount, Decimal("5000.00"))

    def test_failed_deletion_record_keeps_trip(self):
        self._store(completed_trip())
        self.service.identity = StaticIdentity(ADMIN)
        with self.conn:
            self.service.trips.audit.append_deletion_record(
                TripDeletionRecord(
                    record_id="earlier",
                    trip_id="trip-1",
                    deleted_by="admin-0",
                    deleted_at="2026-01-01T00:00:00.000000Z",
                    reason="Duplicate entry",
                    trip_data="{}",
                    total_revenue=Decimal("0.00"),
                    total_costs=Decimal("0.00"),
                    cost_entries_count=0,
                    flagged_items_count=0,
                )
            )

        with self.assertRaises(sqlite3.IntegrityError):
            self.service.delete_trip("trip-1", "Duplicate entry", "DELETE FL-01")

        self.assertTrue(self.service.trips.exists("trip-1"))

    def test_partial_payment_keeps_trip_invoiced(self):
        self._store(replace(completed_trip(), status="invoiced", workflow_step=6, invoice=make_invoice()))

        paid = self.service.mark_paid("trip-1", date(2026, 1, 20), "EFT", amount=Decimal("5000"))

        self.assertEqual(paid.payment_status, "partial")
        self.assertEqual(self.service.get_trip("trip-1").status, "invoiced")

    def test_payment_requires_invoiced_trip(self):
        self._store(replace(completed_trip(), invoice=make_invoice()))

        with self.assertRaises(ValidationError) as ctx:
            self.service.mark_paid("trip-1", date(2026, 1, 20), "EFT")
        self.assertIn("status", ctx.exception.errors)

    def test_reminder_is_sent_and_stored(self):
        self._store(replace(completed_trip(), status="invoiced", workflow_step=6, invoice=make_invoice()))

        self.service.send_reminder("trip-1", notes="Called AP", now=date(2026, 2, 5))

        self.assertEqual(self.notifier.sent[0][:2], ("reminder", "INV-1"))
        follow_ups = self.service.get_trip("trip-1").invoice.follow_ups
        self.assertEqual([(f.kind, f.days_overdue) for f in follow_ups], [("reminder", 5)])
        self.assertEqual(self.service.payment_status("trip-1", now=date(2026, 2, 5)).days_till_due, -5)


def test_validate_trip_reports_missing_fields():
    result = validate_trip(make_trip(fleet_number="", base_revenue=Decimal("0"), revenue_currency="EUR"))

    assert set(result.errors) == {"fleet_number", "base_revenue", "revenue_currency"}
    assert result.errors["fleet_number"] == "Fleet number is required"
