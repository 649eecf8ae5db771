from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass, replace
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal

from .errors import ValidationError


ISO_TS = "%Y-%m-%dT%H:%M:%S.%fZ"

TripStatus = Literal["draft", "active", "completed", "invoiced", "paid", "cancelled"]
InvestigationStatus = Literal["pending", "resolved"]
PaymentStatus = Literal["unpaid", "partial", "paid"]
ChangeType = Literal["update", "delete"]

STATUS_SEQUENCE: tuple[str, ...] = ("draft", "active", "completed", "invoiced", "paid")
CANCELLABLE_STATUSES = frozenset({"draft", "active"})
COMPLETED_STATUSES = frozenset({"completed", "invoiced", "paid"})
MUTABLE_COST_STATUSES = frozenset({"draft", "active"})

SYSTEM_COST_CATEGORY = "System Costs"


@dataclass(frozen=True)
class CostEntry:
    entry_id: str
    trip_id: str
    category: str
    sub_category: str
    amount: Decimal
    currency: str
    reference_number: str
    date: date | None
    notes: str | None = None
    attachments: tuple[str, ...] = ()
    is_flagged: bool = False
    flag_reason: str | None = None
    is_resolved: bool = False
    investigation_status: InvestigationStatus | None = None
    investigation_notes: str | None = None
    no_document_reason: str | None = None
    flagged_at: str | None = None
    resolved_at: str | None = None
    resolved_by: str | None = None
    is_system_generated: bool = False
    system_cost_type: str | None = None
    calculation_details: str | None = None

    @property
    def blocks_completion(self) -> bool:
        return self.is_flagged and not self.is_resolved

    @property
    def has_documentation(self) -> bool:
        return bool(self.attachments)


@dataclass(frozen=True)
class TripEditRecord:
    record_id: str
    trip_id: str
    edited_by: str
    edited_at: str
    reason: str
    field_changed: str
    old_value: str
    new_value: str
    change_type: ChangeType = "update"


@dataclass(frozen=True)
class TripDeletionRecord:
    record_id: str
    trip_id: str
    deleted_by: str
    deleted_at: str
    reason: str
    trip_data: str
    total_revenue: Decimal
    total_costs: Decimal
    cost_entries_count: int
    flagged_items_count: int


@dataclass(frozen=True)
class FollowUpRecord:
    follow_up_id: str
    invoice_number: str
    kind: Literal["reminder", "escalation"]
    created_at: str
    created_by: str
    days_overdue: int
    notes: str | None = None


@dataclass(frozen=True)
class Invoice:
    invoice_number: str
    invoice_date: date
    due_date: date
    client_reference: str | None = None
    additional_charges: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    validation_notes: str | None = None
    proof_of_delivery: tuple[str, ...] = ()
    signed_invoice: tuple[str, ...] = ()
    final_arrival: datetime | None = None
    final_offload: datetime | None = None
    final_departure: datetime | None = None
    submitted_at: str | None = None
    submitted_by: str | None = None
    payment_status: PaymentStatus = "unpaid"
    payment_date: date | None = None
    payment_method: str | None = None
    payment_reference: str | None = None
    payment_amount: Decimal | None = None
    follow_ups: tuple[FollowUpRecord, ...] = ()


@dataclass
class ValidationResult:
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add(self, field_name: str, message: str) -> None:
        # First error per field wins, matching form-style reporting.
        self.errors.setdefault(field_name, message)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationError(self.errors)


@dataclass
class Trip:
    trip_id: str
    fleet_number: str
    route: str
    client_name: str
    driver_name: str
    base_revenue: Decimal
    revenue_currency: str = "ZAR"
    description: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    distance_km: Decimal | None = None
    duration_hours: Decimal | None = None
    status: TripStatus = "draft"
    costs: list[CostEntry] = field(default_factory=list)
    edit_history: list[TripEditRecord] = field(default_factory=list)
    deletion_record: TripDeletionRecord | None = None
    proof_of_delivery: tuple[str, ...] = ()
    completed_at: str | None = None
    completed_by: str | None = None
    workflow_step: int = 0
    invoice: Invoice | None = None
    created_at: str = field(default_factory=lambda: utc_now())
    updated_at: str | None = None

    def unresolved_flags(self) -> list[CostEntry]:
        return [entry for entry in self.costs if entry.blocks_completion]

    def flagged_costs(self) -> list[CostEntry]:
        return [entry for entry in self.costs if entry.is_flagged]

    def system_costs(self) -> list[CostEntry]:
        return [entry for entry in self.costs if entry.is_system_generated]

    def manual_costs(self) -> list[CostEntry]:
        return [entry for entry in self.costs if not entry.is_system_generated]

    def find_cost(self, entry_id: str) -> CostEntry:
        for entry in self.costs:
            if entry.entry_id == entry_id:
                return entry
        raise ValidationError({"entry_id": f"Unknown cost entry: {entry_id}"})

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


def transition_status(trip: Trip, new_status: TripStatus) -> Trip:
    """Return a copy of ``trip`` moved to ``new_status``.

    Statuses only move forward along ``STATUS_SEQUENCE``; cancellation is the one
    sideways move and is only possible before completion.
    """
    current = trip.status
    if new_status == "cancelled":
        if current not in CANCELLABLE_STATUSES:
            raise ValidationError({"status": f"Cannot cancel a trip that is {current}"})
        return replace(trip, status=new_status, updated_at=utc_now())
    if current == "cancelled" or new_status not in STATUS_SEQUENCE:
        raise ValidationError({"status": f"Cannot move trip from {current} to {new_status}"})
    if STATUS_SEQUENCE.index(new_status) != STATUS_SEQUENCE.index(current) + 1:
        raise ValidationError({"status": f"Cannot move trip from {current} to {new_status}"})
    return replace(trip, status=new_status, updated_at=utc_now())


def invoice_from_dict(payload: dict[str, Any]) -> Invoice:
    data = dict(payload)
    for key in ("invoice_date", "due_date", "payment_date"):
        data[key] = to_date(data.get(key))
    for key in ("final_arrival", "final_offload", "final_departure"):
        data[key] = to_datetime(data.get(key))
    for key in ("additional_charges", "discount"):
        data[key] = Decimal(data.get(key) or "0.00")
    data["payment_amount"] = to_decimal(data.get("payment_amount"))
    data["proof_of_delivery"] = tuple(data.get("proof_of_delivery") or ())
    data["signed_invoice"] = tuple(data.get("signed_invoice") or ())
    data["follow_ups"] = tuple(FollowUpRecord(**item) for item in data.get("follow_ups") or ())
    return Invoice(**data)


def money(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_TS)


def display_value(value: Any) -> str:
    """String form used when comparing and recording field values."""
    if value is None:
        return ""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(asdict(value))
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def to_decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    return Decimal(str(value))


def to_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def to_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
