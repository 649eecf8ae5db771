from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional, Union
from uuid import uuid4

from .collaborators import Actor, PaymentNotifier
from .config import WorkflowConfig
from .core import FollowUpRecord, Invoice, Trip, ValidationResult, money, utc_now
from .errors import GatingError, ValidationError
from .workflow import WorkflowContext, WorkflowStateMachine

logger = logging.getLogger(__name__)

INVOICE_STEP = "submit-invoice"

Moment = Union[date, datetime]


@dataclass(frozen=True)
class InvoiceFields:
    invoice_number: str
    invoice_date: Optional[date]
    due_date: Optional[date] = None
    client_reference: Optional[str] = None
    additional_charges: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    validation_notes: Optional[str] = None
    proof_of_delivery: tuple[str, ...] = ()
    signed_invoice: tuple[str, ...] = ()
    final_arrival: Optional[datetime] = None
    final_offload: Optional[datetime] = None
    final_departure: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentAging:
    days_since_invoice: int
    days_till_due: int
    is_overdue: bool


class InvoiceTracker:
    """Invoice capture and payment follow-up for completed trips."""

    def __init__(
        self,
        config: Optional[WorkflowConfig] = None,
        state_machine: Optional[WorkflowStateMachine] = None,
    ):
        self.config = config or WorkflowConfig()
        self.state_machine = state_machine or WorkflowStateMachine(self.config)

    def validate(self, fields: InvoiceFields, trip: Trip) -> ValidationResult:
        result = ValidationResult()
        if not (fields.invoice_number or "").strip():
            result.add("invoice_number", "Invoice number is required")
        if fields.invoice_date is None:
            result.add("invoice_date", "Invoice date is required")
        elif fields.due_date is not None and fields.due_date <= fields.invoice_date:
            result.add("due_date", "Due date must be after invoice date")

        if fields.additional_charges < 0:
            result.add("additional_charges", "Additional charges cannot be negative")
        if fields.discount < 0:
            result.add("discount", "Discount cannot be negative")
        elif fields.discount > trip.base_revenue + max(fields.additional_charges, Decimal("0")):
            result.add("discount", "Discount cannot exceed the invoiced amount")

        timeline = [
            ("final_arrival", fields.final_arrival),
            ("final_offload", fields.final_offload),
            ("final_departure", fields.final_departure),
        ]
        present = [(name, value) for name, value in timeline if value is not None]
        for (earlier_name, earlier), (later_name, later) in zip(present, present[1:]):
            if later < earlier:
                result.add(later_name, f"{later_name.replace('_', ' ')} cannot be before {earlier_name.replace('_', ' ')}")
        return result

    def submit_invoice(self, ctx: WorkflowContext, fields: InvoiceFields, submitted_by: str) -> Invoice:
        if not self.state_machine.is_at_or_past(ctx, INVOICE_STEP):
            current = self.state_machine.current_step(ctx).step_id
            raise GatingError(current, ["Invoices can only be submitted once the trip reaches submit-invoice"])
        trip = ctx.trip
        if trip is None:
            raise ValidationError({"trip": "Trip is required"})
        if trip.status not in ("completed", "invoiced"):
            raise ValidationError({"status": f"Trip {trip.trip_id} is {trip.status}; only completed trips are invoiced"})
        existing = trip.invoice
        if existing is not None and (existing.payment_status != "unpaid" or existing.follow_ups):
            raise ValidationError(
                {"invoice": f"Invoice {existing.invoice_number} already has payments or follow-ups recorded"}
            )

        self.validate(fields, trip).raise_for_errors()
        due_date = fields.due_date or fields.invoice_date + timedelta(days=self.config.payment_terms_days)
        invoice = Invoice(
            invoice_number=fields.invoice_number.strip(),
            invoice_date=fields.invoice_date,
            due_date=due_date,
            client_reference=fields.client_reference,
            additional_charges=money(fields.additional_charges),
            discount=money(fields.discount),
            validation_notes=fields.validation_notes,
            proof_of_delivery=fields.proof_of_delivery or trip.proof_of_delivery,
            signed_invoice=fields.signed_invoice,
            final_arrival=fields.final_arrival,
            final_offload=fields.final_offload,
            final_departure=fields.final_departure,
            submitted_at=utc_now(),
            submitted_by=submitted_by,
        )
        logger.info(f"Invoice {invoice.invoice_number} submitted for trip {trip.trip_id}, due {due_date.isoformat()}")
        return invoice

    def track_payment(self, invoice: Invoice, now: Optional[Moment] = None) -> PaymentAging:
        current = _as_utc(now or datetime.now(timezone.utc))
        day = timedelta(days=1)
        days_since_invoice = (current - _as_utc(invoice.invoice_date)) // day
        days_till_due = (_as_utc(invoice.due_date) - current) // day
        return PaymentAging(days_since_invoice, days_till_due, days_till_due < 0)

    def mark_paid(
        self,
        invoice: Invoice,
        payment_date: Optional[date],
        payment_method: Optional[str],
        total_due: Decimal,
        reference: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> Invoice:
        result = ValidationResult()
        if payment_date is None:
            result.add("payment_date", "Payment date is required")
        if not (payment_method or "").strip():
            result.add("payment_method", "Payment method is required")
        if amount is not None and not amount.is_finite():
            result.add("payment_amount", "Payment amount must be a valid number")
        elif amount is not None and amount <= 0:
            result.add("payment_amount", "Payment amount must be greater than 0")
        elif amount is not None and money(amount) > money(total_due):
            result.add("payment_amount", "Payment amount cannot exceed invoice amount")
        if invoice.payment_status == "paid":
            result.add("payment_status", f"Invoice {invoice.invoice_number} is already paid")
        result.raise_for_errors()

        received = money(amount) if amount is not None else money(total_due)
        status = "partial" if received < money(total_due) else "paid"
        logger.info(f"Invoice {invoice.invoice_number} marked {status}: {received} received via {payment_method}")
        return replace(
            invoice,
            payment_status=status,
            payment_date=payment_date,
            payment_method=payment_method.strip(),
            payment_reference=reference,
            payment_amount=received,
        )

    def send_reminder(
        self,
        invoice: Optional[Invoice],
        notifier: PaymentNotifier,
        actor: Actor,
        now: Optional[Moment] = None,
        notes: Optional[str] = None,
    ) -> Invoice:
        invoice = _require_invoice(invoice)
        aging = self.track_payment(invoice, now)
        message = (
            f"Payment reminder for invoice {invoice.invoice_number}: "
            f"due {invoice.due_date.isoformat()} ({_due_phrase(aging)})"
        )
        notifier.send_reminder(invoice, message)
        return _with_follow_up(invoice, "reminder", actor, aging, notes)

    def escalate(
        self,
        invoice: Optional[Invoice],
        notifier: PaymentNotifier,
        actor: Actor,
        now: Optional[Moment] = None,
        notes: Optional[str] = None,
    ) -> Invoice:
        invoice = _require_invoice(invoice)
        aging = self.track_payment(invoice, now)
        if not aging.is_overdue:
            logger.warning(f"Escalating invoice {invoice.invoice_number} before it is overdue")
        message = f"Invoice {invoice.invoice_number} escalated to collections ({_due_phrase(aging)})"
        notifier.escalate(invoice, message)
        return _with_follow_up(invoice, "escalation", actor, aging, notes)


def invoice_total(invoice: Invoice, trip: Trip) -> Decimal:
    return money(trip.base_revenue + invoice.additional_charges - invoice.discount)


def _require_invoice(invoice: Optional[Invoice]) -> Invoice:
    if invoice is None:
        raise ValidationError({"invoice": "No invoice data available"})
    return invoice


def _with_follow_up(
    invoice: Invoice, kind: str, actor: Actor, aging: PaymentAging, notes: Optional[str]
) -> Invoice:
    record = FollowUpRecord(
        follow_up_id=str(uuid4()),
        invoice_number=invoice.invoice_number,
        kind=kind,
        created_at=utc_now(),
        created_by=actor.user_id,
        days_overdue=max(-aging.days_till_due, 0),
        notes=notes,
    )
    logger.info(f"{kind.capitalize()} recorded for invoice {invoice.invoice_number} by {actor.user_id}")
    return replace(invoice, follow_ups=(*invoice.follow_ups, record))


def _due_phrase(aging: PaymentAging) -> str:
    if aging.is_overdue:
        return f"{-aging.days_till_due} day(s) overdue"
    return f"{aging.days_till_due} day(s) till due"


def _as_utc(moment: Moment) -> datetime:
    if not isinstance(moment, datetime):
        return datetime.combine(moment, time.min, tzinfo=timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment
