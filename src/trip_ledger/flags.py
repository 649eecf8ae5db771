from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional, Sequence
from uuid import uuid4

from .config import WorkflowConfig
from .core import SYSTEM_COST_CATEGORY, CostEntry, InvestigationStatus, ValidationResult, utc_now
from .errors import ValidationError

logger = logging.getLogger(__name__)

MISSING_DOCUMENTATION_PREFIX = "Missing documentation:"
SUPPORTED_CURRENCIES = frozenset({"USD", "ZAR"})


@dataclass(frozen=True)
class CostEntryDraft:
    """Cost data as submitted by an operator, before flag evaluation."""

    category: str
    sub_category: str
    amount: Optional[Decimal]
    currency: str
    reference_number: str
    date: Optional[date]
    notes: Optional[str] = None
    attachments: tuple[str, ...] = ()
    manual_flag: bool = False
    manual_flag_reason: Optional[str] = None
    no_document_reason: Optional[str] = None


@dataclass(frozen=True)
class FlagContext:
    manual_flag: bool = False
    manual_flag_reason: Optional[str] = None
    no_document_reason: Optional[str] = None


@dataclass(frozen=True)
class FlagDecision:
    is_flagged: bool
    flag_reason: Optional[str] = None
    investigation_status: Optional[InvestigationStatus] = None


CLEAN = FlagDecision(is_flagged=False)

# Hook for threshold-based checks (cost, time, fuel variance). A check returns a
# flag reason or None.
VarianceCheck = Callable[[CostEntry, FlagContext], Optional[str]]


class FlagEngine:
    def __init__(self, config: Optional[WorkflowConfig] = None, variance_checks: Sequence[VarianceCheck] = ()):
        self.config = config or WorkflowConfig()
        self.variance_checks = tuple(variance_checks)

    def validate(self, draft: CostEntryDraft, is_edit: bool = False) -> ValidationResult:
        result = ValidationResult()
        if not _text(draft.category):
            result.add("category", "Cost category is required")
        elif draft.category == SYSTEM_COST_CATEGORY:
            result.add("category", "System costs are automatically generated and cannot be manually added")
        elif draft.category not in self.config.cost_categories:
            result.add("category", f"Unknown cost category: {draft.category}")
        if not _text(draft.sub_category):
            result.add("sub_category", "Sub-cost type is required")

        amount = _as_decimal(draft.amount)
        if draft.amount is None or draft.amount == "":
            result.add("amount", "Amount is required")
        elif amount is None or not amount.is_finite():
            result.add("amount", "Amount must be a valid number")
        elif amount <= 0:
            result.add("amount", "Amount must be greater than 0")

        if not _text(draft.currency):
            result.add("currency", "Currency is required")
        elif draft.currency not in SUPPORTED_CURRENCIES:
            result.add("currency", f"Unsupported currency: {draft.currency}")
        if not _text(draft.reference_number):
            result.add("reference_number", "Reference number is required")
        if draft.date is None:
            result.add("date", "Date is required")
        if draft.manual_flag and not _text(draft.manual_flag_reason):
            result.add("flag_reason", "Flag reason is required when manually flagging a cost entry")
        if not is_edit and not draft.attachments and not _text(draft.no_document_reason):
            result.add(
                "documents",
                "Either attach a receipt/document OR provide a reason for missing documentation",
            )
        return result

    def evaluate(self, entry: CostEntry, context: FlagContext) -> FlagDecision:
        if self.config.is_high_risk(entry.category):
            return _flagged(f"High-risk category: {entry.category} - {entry.sub_category} requires review")
        manual_reason = _text(context.manual_flag_reason)
        if context.manual_flag and manual_reason:
            return _flagged(manual_reason)
        if not entry.is_system_generated and not entry.has_documentation:
            return _flagged(f"{MISSING_DOCUMENTATION_PREFIX} {_text(context.no_document_reason)}")
        for check in self.variance_checks:
            reason = check(entry, context)
            if reason:
                return _flagged(reason)
        return CLEAN

    def create_entry(self, trip_id: str, draft: CostEntryDraft, entry_id: Optional[str] = None) -> CostEntry:
        self.validate(draft).raise_for_errors()
        entry = _entry_from_draft(entry_id or str(uuid4()), trip_id, draft)
        decision = self.evaluate(entry, _context(draft))
        if decision.is_flagged:
            logger.warning(f"Cost entry {entry.entry_id} on trip {trip_id} flagged: {decision.flag_reason}")
            return replace(
                entry,
                is_flagged=True,
                flag_reason=decision.flag_reason,
                investigation_status=decision.investigation_status,
                flagged_at=utc_now(),
            )
        return entry

    def update_entry(self, existing: CostEntry, draft: CostEntryDraft, edited_by: str) -> CostEntry:
        """Edit an entry in place, keeping its flag history.

        Documentation may be supplied during an edit; an entry flagged only for
        missing documentation is then resolved. Other flags stay as they were and
        can only be cleared through ``resolve``.
        """
        if existing.is_system_generated:
            raise ValidationError({"entry_id": "System-generated costs cannot be edited manually"})
        self.validate(draft, is_edit=True).raise_for_errors()

        updated = _entry_from_draft(existing.entry_id, existing.trip_id, draft)
        updated = replace(
            updated,
            attachments=_merge(existing.attachments, draft.attachments),
            is_flagged=existing.is_flagged,
            flag_reason=existing.flag_reason,
            is_resolved=existing.is_resolved,
            investigation_status=existing.investigation_status,
            investigation_notes=existing.investigation_notes,
            flagged_at=existing.flagged_at,
            resolved_at=existing.resolved_at,
            resolved_by=existing.resolved_by,
        )
        decision = self.evaluate(updated, _context(draft))

        if _is_documentation_flag(updated) and updated.has_documentation and not updated.is_resolved:
            updated = _mark_resolved(updated, "Documentation supplied", edited_by)
        if decision.is_flagged and decision.flag_reason != updated.flag_reason:
            documentation_only = decision.flag_reason.startswith(MISSING_DOCUMENTATION_PREFIX)
            if not updated.is_flagged or not documentation_only:
                logger.warning(f"Cost entry {updated.entry_id} flagged on edit: {decision.flag_reason}")
                updated = replace(
                    updated,
                    is_flagged=True,
                    flag_reason=decision.flag_reason,
                    is_resolved=False,
                    investigation_status=decision.investigation_status,
                    flagged_at=utc_now(),
                    resolved_at=None,
                    resolved_by=None,
                )
        return updated

    def resolve(
        self,
        entry: CostEntry,
        resolution_note: str,
        resolved_by: str,
        amount: Optional[Decimal] = None,
        notes: Optional[str] = None,
    ) -> CostEntry:
        """Close the investigation on ``entry``, optionally correcting its amount and notes."""
        note = _text(resolution_note)
        if not note:
            raise ValidationError({"resolution_note": "Resolution comment is required for audit purposes"})
        if not entry.is_flagged:
            raise ValidationError({"entry_id": f"Cost entry {entry.entry_id} is not flagged"})
        corrected = entry
        if amount is not None:
            value = _as_decimal(amount)
            if value is None or not value.is_finite() or value <= 0:
                raise ValidationError({"amount": "Amount must be greater than 0"})
            if value != entry.amount:
                logger.info(f"Cost entry {entry.entry_id} amount corrected from {entry.amount} to {value}")
            corrected = replace(corrected, amount=value)
        if notes is not None:
            corrected = replace(corrected, notes=_text(notes) or None)
        resolved = _mark_resolved(corrected, note, resolved_by)
        logger.info(f"Flag on cost entry {entry.entry_id} resolved by {resolved_by}")
        return resolved

    def supply_documentation(self, entry: CostEntry, attachments: Iterable[str], supplied_by: str) -> CostEntry:
        new_refs = tuple(attachments)
        if not new_refs:
            raise ValidationError({"attachments": "At least one document is required"})
        updated = replace(entry, attachments=_merge(entry.attachments, new_refs))
        if _is_documentation_flag(entry) and not entry.is_resolved:
            updated = _mark_resolved(updated, "Documentation supplied", supplied_by)
        return updated


def can_complete_trip(costs: Iterable[CostEntry]) -> bool:
    return not any(entry.blocks_completion for entry in costs)


def flag_invariant_holds(entry: CostEntry) -> bool:
    return entry.is_flagged == bool(_text(entry.flag_reason))


def _flagged(reason: str) -> FlagDecision:
    return FlagDecision(is_flagged=True, flag_reason=reason, investigation_status="pending")


def _mark_resolved(entry: CostEntry, note: str, resolved_by: str) -> CostEntry:
    notes = f"{entry.investigation_notes}\n\nResolution: {note}" if entry.investigation_notes else f"Resolution: {note}"
    return replace(
        entry,
        is_resolved=True,
        investigation_status="resolved",
        investigation_notes=notes,
        resolved_at=utc_now(),
        resolved_by=resolved_by,
    )


def _is_documentation_flag(entry: CostEntry) -> bool:
    return entry.is_flagged and (entry.flag_reason or "").startswith(MISSING_DOCUMENTATION_PREFIX)


def _entry_from_draft(entry_id: str, trip_id: str, draft: CostEntryDraft) -> CostEntry:
    return CostEntry(
        entry_id=entry_id,
        trip_id=trip_id,
        category=draft.category,
        sub_category=draft.sub_category,
        amount=Decimal(str(draft.amount)),
        currency=draft.currency,
        reference_number=draft.reference_number.strip(),
        date=draft.date,
        notes=_text(draft.notes) or None,
        attachments=tuple(draft.attachments),
        no_document_reason=_text(draft.no_document_reason) or None,
    )


def _context(draft: CostEntryDraft) -> FlagContext:
    return FlagContext(
        manual_flag=draft.manual_flag,
        manual_flag_reason=draft.manual_flag_reason,
        no_document_reason=draft.no_document_reason,
    )


def _merge(existing: Sequence[str], new: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys([*existing, *new]))


def _text(value: Optional[str]) -> str:
    return str(value or "").strip()


def _as_decimal(value: object) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
