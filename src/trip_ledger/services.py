from __future__ import annotations

import logging
import sqlite3
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional

from trip_ledger.audit import AuditTrailRecorder
from trip_ledger.collaborators import AttachmentStorage, IdentityProvider, PaymentNotifier
from trip_ledger.config import WorkflowConfig, WorkflowStep
from trip_ledger.core import (
    MUTABLE_COST_STATUSES,
    CostEntry,
    Invoice,
    Trip,
    TripDeletionRecord,
    TripEditRecord,
    ValidationResult,
    transition_status,
    utc_now,
)
from trip_ledger.errors import ValidationError
from trip_ledger.flags import SUPPORTED_CURRENCIES, CostEntryDraft, FlagEngine
from trip_ledger.invoicing import InvoiceFields, InvoiceTracker, Moment, PaymentAging, invoice_total
from trip_ledger.reporting import TripFinancialSummary, summarize_trip
from trip_ledger.repositories import TripRepository
from trip_ledger.system_costs import SystemCostGenerator, apply_system_costs
from trip_ledger.workflow import TransitionResult, WorkflowStateMachine

logger = logging.getLogger(__name__)


class TripLedgerService:
    """Runs each engine operation against the store inside one transaction.

    Audit records are written before the change they describe, in the same
    transaction, so a failed record write leaves the trip untouched.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        identity: IdentityProvider,
        config: Optional[WorkflowConfig] = None,
        attachments: Optional[AttachmentStorage] = None,
        notifier: Optional[PaymentNotifier] = None,
    ):
        self.conn = conn
        self.identity = identity
        self.config = config or WorkflowConfig()
        self.attachments = attachments
        self.notifier = notifier
        self.trips = TripRepository(conn)
        self.flags = FlagEngine(self.config)
        self.generator = SystemCostGenerator(self.config)
        self.workflow = WorkflowStateMachine(self.config)
        self.audit = AuditTrailRecorder(self.config)
        self.invoicing = InvoiceTracker(self.config, self.workflow)

    # Trips

    def create_trip(self, trip: Trip) -> Trip:
        validate_trip(trip).raise_for_errors()
        if trip.status != "draft":
            raise ValidationError({"status": "New trips start as draft"})
        with self.conn:
            if self.trips.exists(trip.trip_id):
                raise ValidationError({"trip_id": f"Trip {trip.trip_id} already exists"})
            if self.trips.audit.get_deletion_record(trip.trip_id) is not None:
                raise ValidationError({"trip_id": f"Trip id {trip.trip_id} belongs to a deleted trip"})
            self.trips.save_trip(trip)
        logger.info(f"Trip {trip.trip_id} created for fleet {trip.fleet_number}")
        self.trips.publish(trip.trip_id, trip)
        return trip

    def get_trip(self, trip_id: str) -> Trip:
        return self.trips.load_trip(trip_id)

    def cancel_trip(self, trip_id: str) -> Trip:
        trip = transition_status(self.trips.load_trip(trip_id), "cancelled")
        self._save(trip)
        logger.info(f"Trip {trip_id} cancelled by {self.identity.current_user().user_id}")
        return trip

    def record_proof_of_delivery(self, trip_id: str, refs: list[str]) -> Trip:
        if not refs:
            raise ValidationError({"proof_of_delivery": "Proof of delivery is required"})
        trip = self.trips.load_trip(trip_id)
        _require_open(trip)
        trip = replace(
            trip,
            proof_of_delivery=tuple(dict.fromkeys([*trip.proof_of_delivery, *refs])),
            updated_at=utc_now(),
        )
        self._save(trip)
        return trip

    # Costs

    def add_cost_entry(self, trip_id: str, draft: CostEntryDraft) -> CostEntry:
        trip = self.trips.load_trip(trip_id)
        _require_open(trip)
        entry = self.flags.create_entry(trip_id, draft)
        self._save(replace(trip, costs=[*trip.costs, entry], updated_at=utc_now()))
        return entry

    def update_cost_entry(self, trip_id: str, entry_id: str, draft: CostEntryDraft) -> CostEntry:
        trip = self.trips.load_trip(trip_id)
        _require_open(trip)
        updated = self.flags.update_entry(trip.find_cost(entry_id), draft, self.identity.current_user().user_id)
        self._save(_with_cost(trip, updated))
        return updated

    def attach_document(self, trip_id: str, entry_id: str, filename: str, content: bytes) -> CostEntry:
        if self.attachments is None:
            raise ValidationError({"attachments": "Attachment storage is not configured"})
        trip = self.trips.load_trip(trip_id)
        _require_open(trip)
        entry = trip.find_cost(entry_id)
        with self.conn:
            ref = self.attachments.store(trip_id, entry_id, filename, content)
            updated = self.flags.supply_documentation(entry, [ref], self.identity.current_user().user_id)
            self.trips.save_trip(_with_cost(trip, updated))
        self.trips.publish(trip_id, self.trips.load_trip(trip_id))
        return updated

    def generate_system_costs(self, trip_id: str) -> list[CostEntry]:
        trip = self.trips.load_trip(trip_id)
        _require_open(trip)
        generated = self.generator.generate_for_trip(trip)
        self._save(replace(trip, costs=apply_system_costs(trip.costs, generated), updated_at=utc_now()))
        return generated

    def resolve_flag(
        self,
        trip_id: str,
        entry_id: str,
        resolution_note: str,
        amount: Optional[Decimal] = None,
        notes: Optional[str] = None,
    ) -> CostEntry:
        trip = self.trips.load_trip(trip_id)
        _require_open(trip)
        resolved = self.flags.resolve(
            trip.find_cost(entry_id), resolution_note, self.identity.current_user().user_id, amount, notes
        )
        self._save(_with_cost(trip, resolved))
        return resolved

    # Workflow

    def current_step(self, trip_id: str) -> WorkflowStep:
        return self.workflow.current_step(self.workflow.start(self.trips.load_trip(trip_id)))

    def can_proceed(self, trip_id: str) -> TransitionResult:
        return self.workflow.can_proceed(self.workflow.start(self.trips.load_trip(trip_id)))

    def advance(self, trip_id: str) -> TransitionResult:
        ctx = self.workflow.start(self.trips.load_trip(trip_id))
        new_ctx, result = self.workflow.advance(ctx, self.identity.current_user().user_id)
        if result.ok:
            self._save(new_ctx.trip)
        return result

    def retreat(self, trip_id: str) -> WorkflowStep:
        ctx = self.workflow.retreat(self.workflow.start(self.trips.load_trip(trip_id)))
        self._save(ctx.trip)
        return self.workflow.current_step(ctx)

    # Invoicing

    def submit_invoice(self, trip_id: str, fields: InvoiceFields) -> Invoice:
        trip = self.trips.load_trip(trip_id)
        invoice = self.invoicing.submit_invoice(
            self.workflow.start(trip), fields, self.identity.current_user().user_id
        )
        self._save(replace(trip, invoice=invoice, updated_at=utc_now()))
        return invoice

    def payment_status(self, trip_id: str, now: Optional[Moment] = None) -> PaymentAging:
        return self.invoicing.track_payment(self._require_invoice(self.trips.load_trip(trip_id)), now)

    def mark_paid(
        self,
        trip_id: str,
        payment_date: Optional[date],
        payment_method: Optional[str],
        reference: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> Invoice:
        trip = self.trips.load_trip(trip_id)
        invoice = self._require_invoice(trip)
        if trip.status != "invoiced":
            raise ValidationError({"status": f"Trip {trip_id} is {trip.status}; payments are tracked once invoiced"})
        paid = self.invoicing.mark_paid(
            invoice, payment_date, payment_method, invoice_total(invoice, trip), reference, amount
        )
        trip = replace(trip, invoice=paid, updated_at=utc_now())
        if paid.payment_status == "paid":
            trip = transition_status(trip, "paid")
        self._save(trip)
        return paid

    def send_reminder(self, trip_id: str, notes: Optional[str] = None, now: Optional[Moment] = None) -> Invoice:
        trip = self.trips.load_trip(trip_id)
        invoice = self.invoicing.send_reminder(
            trip.invoice, self._require_notifier(), self.identity.current_user(), now, notes
        )
        self._save(replace(trip, invoice=invoice, updated_at=utc_now()))
        return invoice

    def escalate(self, trip_id: str, notes: Optional[str] = None, now: Optional[Moment] = None) -> Invoice:
        trip = self.trips.load_trip(trip_id)
        invoice = self.invoicing.escalate(
            trip.invoice, self._require_notifier(), self.identity.current_user(), now, notes
        )
        self._save(replace(trip, invoice=invoice, updated_at=utc_now()))
        return invoice

    # Audit

    def edit_completed_trip(
        self,
        trip_id: str,
        changes: Mapping[str, Any],
        reason: str,
        custom_comment: Optional[str] = None,
    ) -> list[TripEditRecord]:
        trip = self.trips.load_trip(trip_id)
        updated, records = self.audit.apply_edit(
            trip, changes, reason, self.identity.current_user(), custom_comment
        )
        validate_trip(updated).raise_for_errors()
        with self.conn:
            self.trips.audit.append_edit_records(records)
            self.trips.save_trip(updated)
        self.trips.publish(trip_id, updated)
        return records

    def delete_trip(
        self,
        trip_id: str,
        reason: str,
        confirmation: str,
        custom_comment: Optional[str] = None,
    ) -> TripDeletionRecord:
        trip = self.trips.load_trip(trip_id)
        record = self.audit.record_deletion(
            trip, reason, self.identity.current_user(), confirmation, custom_comment
        )
        with self.conn:
            self.trips.audit.append_deletion_record(record)
            self.trips.delete_trip(trip_id)
        logger.info(f"Trip {trip_id} removed after deletion record {record.record_id}")
        self.trips.publish(trip_id, None)
        return record

    # Reporting

    def summary(self, trip_id: str) -> TripFinancialSummary:
        return summarize_trip(self.trips.load_trip(trip_id))

    def _save(self, trip: Trip) -> None:
        with self.conn:
            self.trips.save_trip(trip)
        self.trips.publish(trip.trip_id, trip)

    def _require_invoice(self, trip: Trip) -> Invoice:
        if trip.invoice is None:
            raise ValidationError({"invoice": f"Trip {trip.trip_id} has no invoice"})
        return trip.invoice

    def _require_notifier(self) -> PaymentNotifier:
        if self.notifier is None:
            raise ValidationError({"notifier": "Payment notifications are not configured"})
        return self.notifier


def validate_trip(trip: Trip) -> ValidationResult:
    result = ValidationResult()
    for name in ("fleet_number", "route", "client_name", "driver_name"):
        if not (getattr(trip, name) or "").strip():
            result.add(name, f"{name.replace('_', ' ').capitalize()} is required")
    if trip.base_revenue is None or trip.base_revenue <= 0:
        result.add("base_revenue", "Base revenue must be greater than 0")
    if trip.revenue_currency not in SUPPORTED_CURRENCIES:
        result.add("revenue_currency", f"Unsupported currency: {trip.revenue_currency}")
    if trip.distance_km is not None and trip.distance_km < 0:
        result.add("distance_km", "Distance cannot be negative")
    if trip.duration_hours is not None and trip.duration_hours < 0:
        result.add("duration_hours", "Duration cannot be negative")
    if trip.start_date and trip.end_date and trip.end_date < trip.start_date:
        result.add("end_date", "End date cannot be before start date")
    return result


def _require_open(trip: Trip) -> None:
    if trip.status not in MUTABLE_COST_STATUSES:
        raise ValidationError(
            {"status": f"Trip {trip.trip_id} is {trip.status}; costs can only change before completion"}
        )


def _with_cost(trip: Trip, entry: CostEntry) -> Trip:
    costs = [entry if existing.entry_id == entry.entry_id else existing for existing in trip.costs]
    return replace(trip, costs=costs, updated_at=utc_now())
