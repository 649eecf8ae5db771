from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .config import Custom, NoUnresolvedFlags, Predicate, RequiresFields, WorkflowConfig, WorkflowStep
from .core import Invoice, Trip, transition_status, utc_now
from .errors import GatingError
from .flags import flag_invariant_holds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowContext:
    """Everything a transition is validated against.

    Transitions never mutate a context; they return a new one.
    """

    trip: Optional[Trip] = None
    invoice: Optional[Invoice] = None
    step_index: int = 0

    def with_trip(self, trip: Trip) -> "WorkflowContext":
        return replace(self, trip=trip)

    def with_invoice(self, invoice: Optional[Invoice]) -> "WorkflowContext":
        return replace(self, invoice=invoice)


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    step_id: str
    target_step_id: Optional[str] = None
    unmet: Tuple[str, ...] = ()


CustomPredicate = Callable[[WorkflowContext], List[str]]


def _cost_entries_valid(ctx: WorkflowContext) -> List[str]:
    if ctx.trip is None:
        return ["Trip has not been created"]
    problems: List[str] = []
    for entry in ctx.trip.manual_costs():
        if entry.amount <= 0:
            problems.append(f"Cost entry {entry.entry_id} must have an amount greater than 0")
        if not entry.category or not entry.sub_category:
            problems.append(f"Cost entry {entry.entry_id} is missing its category")
        if not entry.reference_number:
            problems.append(f"Cost entry {entry.entry_id} is missing a reference number")
        if not flag_invariant_holds(entry):
            problems.append(f"Cost entry {entry.entry_id} is flagged without a reason")
    return problems


def _system_costs_generated(ctx: WorkflowContext) -> List[str]:
    if ctx.trip is None or not ctx.trip.system_costs():
        return ["System costs have not been generated"]
    return []


DEFAULT_CUSTOM_PREDICATES: Mapping[str, CustomPredicate] = {
    "cost_entries_valid": _cost_entries_valid,
    "system_costs_generated": _system_costs_generated,
}


class WorkflowStateMachine:
    """Sequences a trip through the configured steps.

    Every call is a single check-then-commit over the supplied context: on
    failure the original context is handed back untouched.
    """

    def __init__(
        self,
        config: Optional[WorkflowConfig] = None,
        custom_predicates: Optional[Mapping[str, CustomPredicate]] = None,
    ):
        self.config = config or WorkflowConfig()
        self.custom_predicates: Dict[str, CustomPredicate] = dict(DEFAULT_CUSTOM_PREDICATES)
        if custom_predicates:
            self.custom_predicates.update(custom_predicates)
        for step in self.config.steps:
            for predicate in (*step.validation, *step.next_step):
                if isinstance(predicate, Custom) and predicate.name not in self.custom_predicates:
                    raise ValueError(f"Step {step.step_id} uses unknown custom predicate {predicate.name!r}")

    @property
    def steps(self) -> Tuple[WorkflowStep, ...]:
        return self.config.steps

    def start(self, trip: Optional[Trip] = None) -> WorkflowContext:
        index = trip.workflow_step if trip is not None else 0
        return WorkflowContext(trip=trip, invoice=trip.invoice if trip else None, step_index=index)

    def current_step(self, ctx: WorkflowContext) -> WorkflowStep:
        return self.steps[ctx.step_index]

    def is_at_or_past(self, ctx: WorkflowContext, step_id: str) -> bool:
        return ctx.step_index >= self.config.step_index(step_id)

    def evaluate(self, predicate: Predicate, ctx: WorkflowContext) -> List[str]:
        """Return the unmet conditions for ``predicate``; empty means it holds."""
        if isinstance(predicate, RequiresFields):
            return [problem for name in predicate.fields for problem in _check_field(ctx, name)]
        if isinstance(predicate, NoUnresolvedFlags):
            if ctx.trip is None:
                return []
            blocking = ctx.trip.unresolved_flags()
            if blocking:
                ids = ", ".join(entry.entry_id for entry in blocking)
                return [f"{len(blocking)} flagged cost entr{'y' if len(blocking) == 1 else 'ies'} unresolved: {ids}"]
            return []
        if isinstance(predicate, Custom):
            return list(self.custom_predicates[predicate.name](ctx))
        raise TypeError(f"Unsupported workflow predicate: {predicate!r}")

    def can_proceed(self, ctx: WorkflowContext) -> TransitionResult:
        step = self.current_step(ctx)
        if ctx.step_index >= len(self.steps) - 1:
            return TransitionResult(False, step.step_id, None, ("Workflow is already at its final step",))
        target = self.steps[ctx.step_index + 1].step_id
        if ctx.trip is not None and ctx.trip.status == "cancelled":
            return TransitionResult(False, step.step_id, target, ("Trip has been cancelled",))

        unmet: List[str] = []
        for predicate in step.validation:
            unmet.extend(self.evaluate(predicate, ctx))
        if not unmet:
            for predicate in step.next_step:
                unmet.extend(self.evaluate(predicate, ctx))

        if unmet and not step.required:
            logger.info(f"Optional step {step.step_id} skipped with open items: {'; '.join(unmet)}")
            unmet = []
        return TransitionResult(not unmet, step.step_id, target, tuple(unmet))

    def advance(self, ctx: WorkflowContext, actor: str = "system") -> Tuple[WorkflowContext, TransitionResult]:
        result = self.can_proceed(ctx)
        if not result.ok:
            logger.warning(f"Cannot proceed from {result.step_id}: {'; '.join(result.unmet)}")
            return ctx, result

        next_index = ctx.step_index + 1
        trip = ctx.trip
        if trip is not None:
            trip = self._apply_exit_effects(result.step_id, trip, ctx.invoice, actor)
            trip = replace(trip, workflow_step=next_index)
        logger.info(f"Workflow moved from {result.step_id} to {result.target_step_id}")
        return replace(ctx, trip=trip, step_index=next_index), result

    def require_advance(self, ctx: WorkflowContext, actor: str = "system") -> WorkflowContext:
        new_ctx, result = self.advance(ctx, actor)
        if not result.ok:
            raise GatingError(result.step_id, result.unmet)
        return new_ctx

    def retreat(self, ctx: WorkflowContext) -> WorkflowContext:
        if ctx.step_index == 0:
            return ctx
        previous = ctx.step_index - 1
        trip = replace(ctx.trip, workflow_step=previous) if ctx.trip is not None else None
        return replace(ctx, trip=trip, step_index=previous)

    def _apply_exit_effects(self, step_id: str, trip: Trip, invoice: Optional[Invoice], actor: str) -> Trip:
        if step_id == "create-trip" and trip.status == "draft":
            return transition_status(trip, "active")
        if step_id == "complete-trip" and trip.status == "active":
            completed = transition_status(trip, "completed")
            return replace(completed, completed_at=utc_now(), completed_by=actor)
        if step_id == "submit-invoice" and trip.status == "completed":
            return replace(transition_status(trip, "invoiced"), invoice=invoice)
        return trip


def _check_field(ctx: WorkflowContext, dotted: str) -> List[str]:
    owner_name, _, attribute = dotted.partition(".")
    owner = getattr(ctx, owner_name, None)
    label = attribute.replace("_", " ").capitalize()
    if owner is None:
        return [f"{owner_name.capitalize()} is required"]
    value = getattr(owner, attribute, None)
    if value is None or (isinstance(value, str) and not value.strip()):
        return [f"{label} is required"]
    if isinstance(value, (tuple, list)) and not value:
        return [f"{label} is required"]
    if isinstance(value, (int, Decimal)) and not isinstance(value, bool) and value <= 0:
        return [f"{label} must be greater than 0"]
    return []
