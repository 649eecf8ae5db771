from __future__ import annotations

import json
import logging
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Any, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

from .collaborators import Actor
from .config import OTHER_REASON, WorkflowConfig
from .core import Trip, TripDeletionRecord, TripEditRecord, display_value, money, to_date, to_decimal, utc_now
from .errors import ConfirmationMismatchError, NoChangeError, TripPermissionError, ValidationError

logger = logging.getLogger(__name__)

EDITABLE_FIELDS: Tuple[str, ...] = (
    "fleet_number",
    "driver_name",
    "client_name",
    "start_date",
    "end_date",
    "route",
    "description",
    "base_revenue",
    "revenue_currency",
    "distance_km",
)

TEXT_FIELDS: Tuple[str, ...] = ("fleet_number", "driver_name", "client_name", "route", "description", "revenue_currency")

Snapshot = Union[Trip, Mapping[str, Any]]


class AuditTrailRecorder:
    """Immutable edit and deletion records for completed trips."""

    def __init__(self, config: Optional[WorkflowConfig] = None):
        self.config = config or WorkflowConfig()

    def diff(self, former: Snapshot, new: Snapshot) -> List[Tuple[str, str, str]]:
        changes: List[Tuple[str, str, str]] = []
        for name in EDITABLE_FIELDS:
            old_value = display_value(_value(former, name))
            new_value = display_value(_value(new, name))
            if old_value != new_value:
                changes.append((name, old_value, new_value))
        return changes

    def record_edit(
        self,
        trip: Trip,
        former: Snapshot,
        new: Snapshot,
        reason: str,
        editor: Actor,
        custom_comment: Optional[str] = None,
    ) -> List[TripEditRecord]:
        if not trip.is_completed:
            raise ValidationError(
                {"status": f"Trip {trip.trip_id} is {trip.status}; only completed trips are edited with an audit trail"}
            )
        final_reason = resolve_reason(reason, custom_comment, "Edit reason is required for completed trips")
        changes = self.diff(former, new)
        if not changes:
            raise NoChangeError()

        edited_at = utc_now()
        records = [
            TripEditRecord(
                record_id=str(uuid4()),
                trip_id=trip.trip_id,
                edited_by=editor.user_id,
                edited_at=edited_at,
                reason=final_reason,
                field_changed=name,
                old_value=old_value,
                new_value=new_value,
                change_type="update",
            )
            for name, old_value, new_value in changes
        ]
        logger.info(
            f"Recorded {len(records)} edit(s) on completed trip {trip.trip_id} by {editor.user_id}: "
            + ", ".join(record.field_changed for record in records)
        )
        return records

    def apply_edit(
        self,
        trip: Trip,
        changes: Mapping[str, Any],
        reason: str,
        editor: Actor,
        custom_comment: Optional[str] = None,
    ) -> Tuple[Trip, List[TripEditRecord]]:
        """Apply ``changes`` to a completed trip and return it with its new records."""
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError({name: "Field cannot be edited on a completed trip" for name in unknown})
        updated = replace(trip, **_coerce(changes))
        records = self.record_edit(trip, trip, updated, reason, editor, custom_comment)
        updated = replace(updated, edit_history=[*trip.edit_history, *records], updated_at=utc_now())
        return updated, records

    def expected_confirmation(self, trip: Trip) -> str:
        return f"DELETE {trip.fleet_number}"

    def confirm_deletion(self, trip: Trip, typed: str) -> None:
        expected = self.expected_confirmation(trip)
        if typed != expected:
            raise ConfirmationMismatchError(expected)

    def record_deletion(
        self,
        trip: Trip,
        reason: str,
        actor: Actor,
        confirmation: str,
        custom_comment: Optional[str] = None,
    ) -> TripDeletionRecord:
        if actor.role != self.config.admin_role:
            logger.warning(f"User {actor.user_id} ({actor.role}) denied deletion of trip {trip.trip_id}")
            raise TripPermissionError("delete trips", actor.role)
        self.confirm_deletion(trip, confirmation)
        final_reason = resolve_reason(reason, custom_comment, "Deletion reason is required")

        total_costs = money(sum((entry.amount for entry in trip.costs), Decimal("0.00")))
        record = TripDeletionRecord(
            record_id=str(uuid4()),
            trip_id=trip.trip_id,
            deleted_by=actor.user_id,
            deleted_at=utc_now(),
            reason=final_reason,
            trip_data=json.dumps(trip.to_dict(), sort_keys=True),
            total_revenue=money(trip.base_revenue),
            total_costs=total_costs,
            cost_entries_count=len(trip.costs),
            flagged_items_count=len(trip.flagged_costs()),
        )
        logger.info(f"Deletion record {record.record_id} created for trip {trip.trip_id} by {actor.user_id}")
        return record


def resolve_reason(reason: Optional[str], custom_comment: Optional[str], missing_message: str) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError({"reason": missing_message})
    if reason == OTHER_REASON:
        comment = (custom_comment or "").strip()
        if not comment:
            raise ValidationError({"custom_reason": "Please specify the reason"})
        return comment
    return reason


def _value(snapshot: Snapshot, name: str) -> Any:
    if isinstance(snapshot, Mapping):
        return snapshot.get(name)
    return getattr(snapshot, name)


def _coerce(changes: Mapping[str, Any]) -> dict[str, Any]:
    coerced = dict(changes)
    errors: dict[str, str] = {}
    for name in TEXT_FIELDS:
        if coerced.get(name) is not None and not isinstance(coerced[name], str):
            errors[name] = "Must be text"
    for name in ("base_revenue", "distance_km"):
        if name not in coerced:
            continue
        try:
            coerced[name] = to_decimal(coerced[name])
        except InvalidOperation:
            errors[name] = "Must be a valid number"
            continue
        if coerced[name] is not None and not coerced[name].is_finite():
            errors[name] = "Must be a valid number"
    for name in ("start_date", "end_date"):
        if name not in coerced:
            continue
        try:
            coerced[name] = to_date(coerced[name])
        except (TypeError, ValueError):
            errors[name] = "Must be a date in YYYY-MM-DD format"
    if "base_revenue" not in errors and coerced.get("base_revenue", Decimal("1")) is None:
        errors["base_revenue"] = "Revenue is required"
    if errors:
        raise ValidationError(errors)
    return coerced


__all__ = [
    "EDITABLE_FIELDS",
    "AuditTrailRecorder",
    "resolve_reason",
]
