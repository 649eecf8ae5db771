from .audit import AuditTrailRecorder
from .collaborators import Actor, RecordingNotifier, StaticIdentity
from .config import WorkflowConfig, load_config
from .core import (
    CostEntry,
    FollowUpRecord,
    Invoice,
    Trip,
    TripDeletionRecord,
    TripEditRecord,
    ValidationResult,
)
from .errors import (
    ConfirmationMismatchError,
    GatingError,
    NoChangeError,
    TripLedgerError,
    TripNotFoundError,
    TripPermissionError,
    ValidationError,
)
from .flags import CostEntryDraft, FlagEngine
from .invoicing import InvoiceFields, InvoiceTracker
from .reporting import TripFinancialSummary, summarize_trip
from .system_costs import SystemCostGenerator
from .workflow import WorkflowContext, WorkflowStateMachine

__all__ = [
    "Actor",
    "AuditTrailRecorder",
    "ConfirmationMismatchError",
    "CostEntry",
    "CostEntryDraft",
    "FlagEngine",
    "FollowUpRecord",
    "GatingError",
    "Invoice",
    "InvoiceFields",
    "InvoiceTracker",
    "NoChangeError",
    "RecordingNotifier",
    "StaticIdentity",
    "SystemCostGenerator",
    "Trip",
    "TripDeletionRecord",
    "TripEditRecord",
    "TripFinancialSummary",
    "TripLedgerError",
    "TripNotFoundError",
    "TripPermissionError",
    "ValidationError",
    "ValidationResult",
    "WorkflowConfig",
    "WorkflowContext",
    "WorkflowStateMachine",
    "load_config",
    "summarize_trip",
]
