from __future__ import annotations

import json
import re
import sqlite3
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

from trip_ledger.collaborators import TripListener
from trip_ledger.core import (
    CostEntry,
    Trip,
    TripDeletionRecord,
    TripEditRecord,
    invoice_from_dict,
    to_date,
    to_decimal,
    utc_now,
)
from trip_ledger.errors import TripNotFoundError


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


class TripRepository:
    """SQLite-backed trip store. Callers own the transaction (``with conn:``)."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.audit = AuditRepository(conn)
        self._listeners: list[TripListener] = []

    def load_trip(self, trip_id: str) -> Trip:
        row = self.conn.execute("SELECT * FROM trip WHERE id = ?", (trip_id,)).fetchone()
        if row is None:
            raise TripNotFoundError(trip_id)
        cost_rows = self.conn.execute(
            "SELECT * FROM cost_entry WHERE trip_id = ? ORDER BY position", (trip_id,)
        ).fetchall()
        return Trip(
            trip_id=row["id"],
            fleet_number=row["fleet_number"],
            route=row["route"],
            description=row["description"],
            client_name=row["client_name"],
            driver_name=row["driver_name"],
            start_date=to_date(row["start_date"]),
            end_date=to_date(row["end_date"]),
            distance_km=to_decimal(row["distance_km"]),
            duration_hours=to_decimal(row["duration_hours"]),
            base_revenue=Decimal(row["base_revenue"]),
            revenue_currency=row["revenue_currency"],
            status=row["status"],
            costs=[_cost_from_row(cost_row) for cost_row in cost_rows],
            edit_history=self.audit.list_edit_records(trip_id),
            proof_of_delivery=tuple(json.loads(row["proof_of_delivery"])),
            completed_at=row["completed_at"],
            completed_by=row["completed_by"],
            workflow_step=int(row["workflow_step"]),
            invoice=invoice_from_dict(json.loads(row["invoice_json"])) if row["invoice_json"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_trips(self, status: Optional[str] = None) -> list[Trip]:
        if status is None:
            rows = self.conn.execute("SELECT id FROM trip ORDER BY created_at, rowid").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT id FROM trip WHERE status = ? ORDER BY created_at, rowid", (status,)
            ).fetchall()
        return [self.load_trip(row["id"]) for row in rows]

    def exists(self, trip_id: str) -> bool:
        return self.conn.execute("SELECT 1 FROM trip WHERE id = ?", (trip_id,)).fetchone() is not None

    def save_trip(self, trip: Trip) -> None:
        payload = trip.to_dict()
        self.conn.execute(
            """
            INSERT INTO trip(
                id, fleet_number, route, description, client_name, driver_name, start_date, end_date,
                distance_km, duration_hours, base_revenue, revenue_currency, status, proof_of_delivery,
                completed_at, completed_by, workflow_step, invoice_json, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                fleet_number = excluded.fleet_number,
                route = excluded.route,
                description = excluded.description,
                client_name = excluded.client_name,
                driver_name = excluded.driver_name,
                start_date = excluded.start_date,
                end_date = excluded.end_date,
                distance_km = excluded.distance_km,
                duration_hours = excluded.duration_hours,
                base_revenue = excluded.base_revenue,
                revenue_currency = excluded.revenue_currency,
                status = excluded.status,
                proof_of_delivery = excluded.proof_of_delivery,
                completed_at = excluded.completed_at,
                completed_by = excluded.completed_by,
                workflow_step = excluded.workflow_step,
                invoice_json = excluded.invoice_json,
                updated_at = excluded.updated_at
            """,
            (
                trip.trip_id,
                trip.fleet_number,
                trip.route,
                trip.description,
                trip.client_name,
                trip.driver_name,
                payload["start_date"],
                payload["end_date"],
                _normalize_value(trip.distance_km),
                _normalize_value(trip.duration_hours),
                _normalize_value(trip.base_revenue),
                trip.revenue_currency,
                trip.status,
                json.dumps(list(trip.proof_of_delivery)),
                trip.completed_at,
                trip.completed_by,
                trip.workflow_step,
                json.dumps(payload["invoice"]) if trip.invoice else None,
                trip.created_at,
                trip.updated_at,
            ),
        )
        self.conn.execute("DELETE FROM cost_entry WHERE trip_id = ?", (trip.trip_id,))
        for position, entry in enumerate(trip.costs):
            self._insert_cost(position, entry)

    def delete_trip(self, trip_id: str) -> None:
        cursor = self.conn.execute("DELETE FROM trip WHERE id = ?", (trip_id,))
        if cursor.rowcount == 0:
            raise TripNotFoundError(trip_id)

    def subscribe(self, listener: TripListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, trip_id: str, trip: Optional[Trip]) -> None:
        """Tell listeners about a committed change; ``trip`` is None after deletion."""
        for listener in list(self._listeners):
            listener(trip_id, trip)

    def _insert_cost(self, position: int, entry: CostEntry) -> None:
        self.conn.execute(
            """
            INSERT INTO cost_entry(
                id, trip_id, position, category, sub_category, amount, currency, reference_number,
                entry_date, notes, attachments, is_flagged, flag_reason, is_resolved,
                investigation_status, investigation_notes, no_document_reason, flagged_at,
                resolved_at, resolved_by, is_system_generated, system_cost_type, calculation_details
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.trip_id,
                position,
                entry.category,
                entry.sub_category,
                _normalize_value(entry.amount),
                entry.currency,
                entry.reference_number,
                entry.date.isoformat() if entry.date else None,
                entry.notes,
                json.dumps(list(entry.attachments)),
                int(entry.is_flagged),
                entry.flag_reason,
                int(entry.is_resolved),
                entry.investigation_status,
                entry.investigation_notes,
                entry.no_document_reason,
                entry.flagged_at,
                entry.resolved_at,
                entry.resolved_by,
                int(entry.is_system_generated),
                entry.system_cost_type,
                entry.calculation_details,
            ),
        )


class AuditRepository:
    """Append-only storage for edit and deletion records."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def append_edit_records(self, records: list[TripEditRecord]) -> None:
        self.conn.executemany(
            """
            INSERT INTO trip_edit_record(
                id, trip_id, edited_by, edited_at, reason, field_changed, old_value, new_value, change_type
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    record.record_id,
                    record.trip_id,
                    record.edited_by,
                    record.edited_at,
                    record.reason,
                    record.field_changed,
                    record.old_value,
                    record.new_value,
                    record.change_type,
                )
                for record in records
            ],
        )

    def append_deletion_record(self, record: TripDeletionRecord) -> None:
        self.conn.execute(
            """
            INSERT INTO trip_deletion_record(
                id, trip_id, deleted_by, deleted_at, reason, trip_data,
                total_revenue, total_costs, cost_entries_count, flagged_items_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.record_id,
                record.trip_id,
                record.deleted_by,
                record.deleted_at,
                record.reason,
                record.trip_data,
                _normalize_value(record.total_revenue),
                _normalize_value(record.total_costs),
                record.cost_entries_count,
                record.flagged_items_count,
            ),
        )

    def list_edit_records(self, trip_id: str) -> list[TripEditRecord]:
        rows = self.conn.execute(
            "SELECT * FROM trip_edit_record WHERE trip_id = ? ORDER BY edited_at, rowid", (trip_id,)
        ).fetchall()
        return [
            TripEditRecord(
                record_id=row["id"],
                trip_id=row["trip_id"],
                edited_by=row["edited_by"],
                edited_at=row["edited_at"],
                reason=row["reason"],
                field_changed=row["field_changed"],
                old_value=row["old_value"],
                new_value=row["new_value"],
                change_type=row["change_type"],
            )
            for row in rows
        ]

    def get_deletion_record(self, trip_id: str) -> Optional[TripDeletionRecord]:
        row = self.conn.execute("SELECT * FROM trip_deletion_record WHERE trip_id = ?", (trip_id,)).fetchone()
        if row is None:
            return None
        return TripDeletionRecord(
            record_id=row["id"],
            trip_id=row["trip_id"],
            deleted_by=row["deleted_by"],
            deleted_at=row["deleted_at"],
            reason=row["reason"],
            trip_data=row["trip_data"],
            total_revenue=Decimal(row["total_revenue"]),
            total_costs=Decimal(row["total_costs"]),
            cost_entries_count=row["cost_entries_count"],
            flagged_items_count=row["flagged_items_count"],
        )


class AttachmentRepository:
    """Stores uploaded documents on disk and indexes them by cost entry."""

    def __init__(self, conn: sqlite3.Connection, base_dir: Path):
        self.conn = conn
        self.base_dir = Path(base_dir)

    def upload_path(self, trip_id: str, filename: str) -> Path:
        trip_dir = self.base_dir / "uploads" / sanitize_identifier(trip_id)
        trip_dir.mkdir(parents=True, exist_ok=True)
        path = trip_dir / f"{uuid4().hex[:8]}-{sanitize_filename(filename)}"
        resolved = path.resolve()
        if not str(resolved).startswith(str(trip_dir.resolve())):
            raise ValueError("Unsafe upload path")
        return resolved

    def store(self, trip_id: str, cost_entry_id: str, filename: str, content: bytes) -> str:
        path = self.upload_path(trip_id, filename)
        # Immutable write: fail if the exact file already exists.
        with path.open("xb") as f:
            f.write(content)
        self.conn.execute(
            "INSERT INTO attachment(id, trip_id, cost_entry_id, filename, path, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (str(uuid4()), trip_id, cost_entry_id, filename, str(path), utc_now()),
        )
        return str(path)

    def list(self, cost_entry_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT path FROM attachment WHERE cost_entry_id = ? ORDER BY created_at, rowid", (cost_entry_id,)
        ).fetchall()
        return [row["path"] for row in rows]


def _cost_from_row(row: sqlite3.Row) -> CostEntry:
    return CostEntry(
        entry_id=row["id"],
        trip_id=row["trip_id"],
        category=row["category"],
        sub_category=row["sub_category"],
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        reference_number=row["reference_number"],
        date=to_date(row["entry_date"]),
        notes=row["notes"],
        attachments=tuple(json.loads(row["attachments"])),
        is_flagged=bool(row["is_flagged"]),
        flag_reason=row["flag_reason"],
        is_resolved=bool(row["is_resolved"]),
        investigation_status=row["investigation_status"],
        investigation_notes=row["investigation_notes"],
        no_document_reason=row["no_document_reason"],
        flagged_at=row["flagged_at"],
        resolved_at=row["resolved_at"],
        resolved_by=row["resolved_by"],
        is_system_generated=bool(row["is_system_generated"]),
        system_cost_type=row["system_cost_type"],
        calculation_details=row["calculation_details"],
    )


def sanitize_identifier(value: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_-]", "_", value)
    return safe.strip("_") or "trip"


def sanitize_filename(value: str) -> str:
    value = Path(value).name
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", value)
    return safe or "upload.bin"
