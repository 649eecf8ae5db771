from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Literal, Optional
from uuid import uuid4
from weakref import WeakValueDictionary

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from backend.services.report_export import TripReportExportService
from trip_ledger.collaborators import Actor, StaticIdentity
from trip_ledger.config import WorkflowConfig, load_config
from trip_ledger.core import Invoice, Trip, to_jsonable
from trip_ledger.db import apply_sqlite_migration, connect_sqlite
from trip_ledger.errors import (
    GatingError,
    TripNotFoundError,
    TripPermissionError,
    ValidationError,
)
from trip_ledger.flags import CostEntryDraft
from trip_ledger.invoicing import InvoiceFields
from trip_ledger.repositories import AttachmentRepository, sanitize_identifier
from trip_ledger.services import TripLedgerService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "workflow.yaml"

# Pydantic resolves annotations in the class namespace, where a field named
# "date" would shadow the type.
OptionalDate = Optional[date]

app = FastAPI(title="Trip Ledger API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class LoggingNotifier:
    """Payment notifier for deployments without an outbound channel."""

    def send_reminder(self, invoice: Invoice, message: str) -> None:
        logger.info(f"Reminder for {invoice.invoice_number}: {message}")

    def escalate(self, invoice: Invoice, message: str) -> None:
        logger.warning(f"Escalation for {invoice.invoice_number}: {message}")


class LedgerHost:
    """Shared connection, configuration and per-trip write locks."""

    def __init__(self, conn, config: WorkflowConfig, data_root: Path):
        self.conn = conn
        self.config = config
        self.data_root = Path(data_root)
        self.attachments = AttachmentRepository(conn, self.data_root)
        self.notifier = LoggingNotifier()
        self.exporter = TripReportExportService()
        # sqlite3 connections are shared across worker threads; one caller at a time.
        self._db_lock = threading.RLock()
        # Entries live only while a request holds or waits on the lock.
        self._trip_locks: WeakValueDictionary[str, threading.Lock] = WeakValueDictionary()
        self._trip_locks_guard = threading.Lock()

    def service(self, actor: Actor) -> TripLedgerService:
        return TripLedgerService(
            self.conn,
            StaticIdentity(actor),
            config=self.config,
            attachments=self.attachments,
            notifier=self.notifier,
        )

    @contextmanager
    def locked(self, trip_id: Optional[str] = None) -> Iterator[None]:
        if trip_id is None:
            with self._db_lock:
                yield
            return
        with self._trip_locks_guard:
            trip_lock = self._trip_locks.get(trip_id)
            if trip_lock is None:
                trip_lock = self._trip_locks[trip_id] = threading.Lock()
        with trip_lock, self._db_lock:
            yield


_host: Optional[LedgerHost] = None
_host_guard = threading.Lock()


def get_host() -> LedgerHost:
    global _host
    with _host_guard:
        if _host is None:
            data_root = Path(os.environ.get("TRIP_LEDGER_DATA_DIR", "data"))
            data_root.mkdir(parents=True, exist_ok=True)
            conn = connect_sqlite(os.environ.get("TRIP_LEDGER_DB", str(data_root / "trip_ledger.sqlite3")))
            apply_sqlite_migration(conn)
            config_path = Path(os.environ.get("TRIP_LEDGER_CONFIG", CONFIG_PATH))
            config = load_config(config_path) if config_path.exists() else WorkflowConfig()
            _host = LedgerHost(conn, config, data_root)
        return _host


def get_actor(
    x_user_id: str = Header("anonymous"),
    x_user_role: str = Header("operator"),
) -> Actor:
    return Actor(user_id=x_user_id, role=x_user_role)


@app.exception_handler(ValidationError)
def handle_validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(GatingError)
def handle_gating_error(request: Request, exc: GatingError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "step_id": exc.step_id, "unmet": exc.unmet})


@app.exception_handler(TripPermissionError)
def handle_permission_error(request: Request, exc: TripPermissionError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(TripNotFoundError)
def handle_not_found(request: Request, exc: TripNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Trip not found"})


class TripCreate(BaseModel):
    trip_id: Optional[str] = None
    fleet_number: str
    route: str
    client_name: str
    driver_name: str
    base_revenue: Decimal
    revenue_currency: Literal["USD", "ZAR"] = "ZAR"
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    distance_km: Optional[Decimal] = None
    duration_hours: Optional[Decimal] = None


class CostEntryPayload(BaseModel):
    category: str
    sub_category: str
    amount: Decimal
    currency: str
    reference_number: str
    date: OptionalDate = None
    notes: Optional[str] = None
    attachments: list[str] = []
    manual_flag: bool = False
    manual_flag_reason: Optional[str] = None
    no_document_reason: Optional[str] = None


class ResolutionPayload(BaseModel):
    resolution_note: str
    amount: Optional[Decimal] = None
    notes: Optional[str] = None


class ProofOfDeliveryPayload(BaseModel):
    refs: list[str]


class InvoicePayload(BaseModel):
    invoice_number: str
    invoice_date: date
    due_date: Optional[date] = None
    client_reference: Optional[str] = None
    additional_charges: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    validation_notes: Optional[str] = None
    proof_of_delivery: list[str] = []
    signed_invoice: list[str] = []
    final_arrival: Optional[datetime] = None
    final_offload: Optional[datetime] = None
    final_departure: Optional[datetime] = None


class PaymentPayload(BaseModel):
    payment_date: date
    payment_method: str
    reference: Optional[str] = None
    amount: Optional[Decimal] = None


class FollowUpPayload(BaseModel):
    notes: Optional[str] = None


class TripEditPayload(BaseModel):
    changes: dict[str, Any]
    reason: str
    custom_comment: Optional[str] = None


class TripDeletePayload(BaseModel):
    reason: str
    confirmation: str
    custom_comment: Optional[str] = None


@app.post("/trips")
def create_trip(payload: TripCreate, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    values = payload.model_dump()
    trip = Trip(**{**values, "trip_id": values["trip_id"] or str(uuid4())})
    with host.locked(trip.trip_id):
        created = host.service(actor).create_trip(trip)
    return created.to_dict()


@app.get("/trips")
def list_trips(status: Optional[str] = None, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked():
        return [trip.to_dict() for trip in host.service(actor).trips.list_trips(status)]


@app.get("/trips/{trip_id}")
def get_trip(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        return host.service(actor).get_trip(trip_id).to_dict()


@app.patch("/trips/{trip_id}")
def edit_completed_trip(
    trip_id: str,
    payload: TripEditPayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        records = host.service(actor).edit_completed_trip(
            trip_id, payload.changes, payload.reason, payload.custom_comment
        )
    return {"trip_id": trip_id, "records": to_jsonable(records)}


@app.delete("/trips/{trip_id}")
def delete_trip(
    trip_id: str,
    payload: TripDeletePayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        record = host.service(actor).delete_trip(
            trip_id, payload.reason, payload.confirmation, payload.custom_comment
        )
    return to_jsonable(record)


@app.get("/trips/{trip_id}/edit-history")
def edit_history(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        return to_jsonable(host.service(actor).trips.audit.list_edit_records(trip_id))


@app.get("/trips/{trip_id}/deletion-record")
def deletion_record(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        record = host.service(actor).trips.audit.get_deletion_record(trip_id)
    if record is None:
        return JSONResponse(status_code=404, content={"detail": "Deletion record not found"})
    return to_jsonable(record)


@app.post("/trips/{trip_id}/cancel")
def cancel_trip(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        return host.service(actor).cancel_trip(trip_id).to_dict()


@app.post("/trips/{trip_id}/costs")
def add_cost_entry(
    trip_id: str,
    payload: CostEntryPayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        entry = host.service(actor).add_cost_entry(trip_id, _draft(payload))
    return to_jsonable(entry)


@app.put("/trips/{trip_id}/costs/{entry_id}")
def update_cost_entry(
    trip_id: str,
    entry_id: str,
    payload: CostEntryPayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        entry = host.service(actor).update_cost_entry(trip_id, entry_id, _draft(payload))
    return to_jsonable(entry)


@app.post("/trips/{trip_id}/costs/{entry_id}/documents")
def upload_document(
    trip_id: str,
    entry_id: str,
    file: UploadFile = File(...),
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    content = file.file.read()
    with host.locked(trip_id):
        entry = host.service(actor).attach_document(trip_id, entry_id, file.filename or "upload.bin", content)
    return to_jsonable(entry)


@app.post("/trips/{trip_id}/costs/{entry_id}/resolve")
def resolve_flag(
    trip_id: str,
    entry_id: str,
    payload: ResolutionPayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        entry = host.service(actor).resolve_flag(
            trip_id, entry_id, payload.resolution_note, payload.amount, payload.notes
        )
    return to_jsonable(entry)


@app.post("/trips/{trip_id}/system-costs")
def generate_system_costs(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        entries = host.service(actor).generate_system_costs(trip_id)
    return to_jsonable(entries)


@app.post("/trips/{trip_id}/proof-of-delivery")
def record_proof_of_delivery(
    trip_id: str,
    payload: ProofOfDeliveryPayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        return host.service(actor).record_proof_of_delivery(trip_id, payload.refs).to_dict()


@app.get("/trips/{trip_id}/workflow")
def workflow_status(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        service = host.service(actor)
        step = service.current_step(trip_id)
        result = service.can_proceed(trip_id)
    return {
        "trip_id": trip_id,
        "step_id": step.step_id,
        "step_name": step.name,
        "can_proceed": result.ok,
        "target_step_id": result.target_step_id,
        "unmet": list(result.unmet),
    }


@app.post("/trips/{trip_id}/workflow/advance")
def advance_workflow(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        result = host.service(actor).advance(trip_id)
    if not result.ok:
        raise GatingError(result.step_id, result.unmet)
    return {"trip_id": trip_id, "from_step_id": result.step_id, "step_id": result.target_step_id}


@app.post("/trips/{trip_id}/workflow/retreat")
def retreat_workflow(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        step = host.service(actor).retreat(trip_id)
    return {"trip_id": trip_id, "step_id": step.step_id}


@app.post("/trips/{trip_id}/invoice")
def submit_invoice(
    trip_id: str,
    payload: InvoicePayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    values = payload.model_dump()
    for key in ("proof_of_delivery", "signed_invoice"):
        values[key] = tuple(values[key])
    with host.locked(trip_id):
        invoice = host.service(actor).submit_invoice(trip_id, InvoiceFields(**values))
    return to_jsonable(invoice)


@app.get("/trips/{trip_id}/payment")
def payment_status(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        aging = host.service(actor).payment_status(trip_id)
    return {"trip_id": trip_id, **to_jsonable(aging)}


@app.post("/trips/{trip_id}/payment")
def mark_paid(
    trip_id: str,
    payload: PaymentPayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        invoice = host.service(actor).mark_paid(
            trip_id, payload.payment_date, payload.payment_method, payload.reference, payload.amount
        )
    return to_jsonable(invoice)


@app.post("/trips/{trip_id}/payment/reminders")
def send_reminder(
    trip_id: str,
    payload: FollowUpPayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        invoice = host.service(actor).send_reminder(trip_id, payload.notes)
    return to_jsonable(invoice.follow_ups[-1])


@app.post("/trips/{trip_id}/payment/escalations")
def escalate(
    trip_id: str,
    payload: FollowUpPayload,
    host: LedgerHost = Depends(get_host),
    actor: Actor = Depends(get_actor),
):
    with host.locked(trip_id):
        invoice = host.service(actor).escalate(trip_id, payload.notes)
    return to_jsonable(invoice.follow_ups[-1])


@app.get("/trips/{trip_id}/summary")
def trip_summary(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        return host.service(actor).summary(trip_id).to_dict()


@app.get("/trips/{trip_id}/report.xlsx")
def export_trip(trip_id: str, host: LedgerHost = Depends(get_host), actor: Actor = Depends(get_actor)):
    with host.locked(trip_id):
        service = host.service(actor)
        trip = service.get_trip(trip_id)
        summary = service.summary(trip_id)

    safe_id = sanitize_identifier(trip_id)
    export_path = host.exporter.generate_export(trip, summary, host.data_root / "exports" / f"trip-{safe_id}.xlsx")
    return FileResponse(
        export_path,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        filename=f"trip-{safe_id}.xlsx",
    )


@app.get("/config")
def workflow_config(host: LedgerHost = Depends(get_host)):
    config = host.config
    return {
        "steps": [{"id": step.step_id, "name": step.name, "required": step.required} for step in config.steps],
        "cost_categories": {name: list(subs) for name, subs in config.cost_categories.items()},
        "high_risk_categories": sorted(config.high_risk_categories),
        "edit_reasons": list(config.edit_reasons),
        "deletion_reasons": list(config.deletion_reasons),
        "approval_limits": {
            role: None if limit is None else str(limit) for role, limit in config.approval_limits.items()
        },
        "payment_terms_days": config.payment_terms_days,
    }


@app.get("/health")
def health():
    return {"status": "ok"}


def _draft(payload: CostEntryPayload) -> CostEntryDraft:
    values = payload.model_dump()
    values["attachments"] = tuple(values["attachments"])
    return CostEntryDraft(**values)
