from dataclasses import replace
import unittest

import pytest

from factories import EXAMPLE_RATES, border_draft, make_invoice, make_trip
from trip_ledger.config import Custom, WorkflowConfig, WorkflowStep
from trip_ledger.errors import GatingError
from trip_ledger.flags import FlagEngine
from trip_ledger.system_costs import SystemCostGenerator, apply_system_costs
from trip_ledger.workflow import WorkflowContext, WorkflowStateMachine


def _with_system_costs(trip):
    generated = SystemCostGenerator().generate_for_trip(trip, EXAMPLE_RATES)
    return replace(trip, costs=apply_system_costs(trip.costs, generated))


class WorkflowStateMachineTestCase(unittest.TestCase):
    def setUp(self):
        self.machine = WorkflowStateMachine()
        self.flags = FlagEngine()

    def _ctx_at(self, step_id, trip):
        index = self.machine.config.step_index(step_id)
        return WorkflowContext(trip=replace(trip, workflow_step=index), invoice=trip.invoice, step_index=index)

    def test_create_trip_moves_draft_to_active(self):
        ctx, result = self.machine.advance(self.machine.start(make_trip()))

        self.assertTrue(result.ok)
        self.assertEqual(result.target_step_id, "add-costs")
        self.assertEqual(ctx.trip.status, "active")
        self.assertEqual(ctx.trip.workflow_step, 1)
        self.assertEqual(self.machine.current_step(ctx).step_id, "add-costs")

    def test_failed_advance_leaves_context_untouched(self):
        ctx = self.machine.start(make_trip(route=""))

        new_ctx, result = self.machine.advance(ctx)

        self.assertFalse(result.ok)
        self.assertIs(new_ctx, ctx)
        self.assertEqual(new_ctx.trip.status, "draft")
        self.assertIn("Route is required", result.unmet)

    def test_system_costs_gate(self):
        ctx = self._ctx_at("generate-system-costs", replace(make_trip(), status="active"))

        result = self.machine.can_proceed(ctx)
        self.assertFalse(result.ok)
        self.assertEqual(result.unmet, ("System costs have not been generated",))

        ctx = ctx.with_trip(_with_system_costs(ctx.trip))
        self.assertTrue(self.machine.can_proceed(ctx).ok)

    def test_unresolved_flag_blocks_resolve_and_complete_steps(self):
        flagged = self.flags.create_entry("trip-1", border_draft(), entry_id="e1")
        trip = replace(make_trip(), status="active", costs=[flagged], proof_of_delivery=("pod.pdf",))

        for step_id in ("resolve-flags", "complete-trip"):
            result = self.machine.can_proceed(self._ctx_at(step_id, trip))
            self.assertFalse(result.ok)
            self.assertEqual(result.unmet, ("1 flagged cost entry unresolved: e1",))

        resolved = self.flags.resolve(flagged, "Verified", "manager-1")
        trip = replace(trip, costs=[resolved])
        self.assertTrue(self.machine.can_proceed(self._ctx_at("resolve-flags", trip)).ok)

    def test_complete_trip_requires_proof_of_delivery(self):
        trip = replace(make_trip(), status="active")

        result = self.machine.can_proceed(self._ctx_at("complete-trip", trip))
        self.assertEqual(result.unmet, ("Proof of delivery is required",))

        ctx, result = self.machine.advance(
            self._ctx_at("complete-trip", replace(trip, proof_of_delivery=("pod.pdf",))), actor="ops-1"
        )
        self.assertTrue(result.ok)
        self.assertEqual(ctx.trip.status, "completed")
        self.assertEqual(ctx.trip.completed_by, "ops-1")
        self.assertIsNotNone(ctx.trip.completed_at)

    def test_submit_invoice_requires_invoice(self):
        trip = replace(make_trip(), status="completed", proof_of_delivery=("pod.pdf",))
        ctx = self._ctx_at("submit-invoice", trip)

        self.assertEqual(self.machine.can_proceed(ctx).unmet, ("Invoice is required",))

        invoice = make_invoice()
        ctx, result = self.machine.advance(ctx.with_invoice(invoice))
        self.assertTrue(result.ok)
        self.assertEqual(ctx.trip.status, "invoiced")
        self.assertEqual(ctx.trip.invoice, invoice)

    def test_optional_steps_never_block(self):
        trip = replace(make_trip(), status="invoiced", invoice=make_invoice())
        ctx, result = self.machine.advance(self._ctx_at("track-payment", trip))

        self.assertTrue(result.ok)
        self.assertEqual(self.machine.current_step(ctx).step_id, "reporting")

        final = self.machine.can_proceed(ctx)
        self.assertFalse(final.ok)
        self.assertEqual(final.unmet, ("Workflow is already at its final step",))

    def test_cancelled_trip_cannot_proceed(self):
        ctx = self.machine.start(replace(make_trip(), status="cancelled"))

        result = self.machine.can_proceed(ctx)
        self.assertFalse(result.ok)
        self.assertEqual(result.unmet, ("Trip has been cancelled",))

    def test_require_advance_raises_gating_error(self):
        with self.assertRaises(GatingError) as ctx:
            self.machine.require_advance(self.machine.start(make_trip(fleet_number="")))

        self.assertEqual(ctx.exception.step_id, "create-trip")
        self.assertIn("Fleet number is required", ctx.exception.unmet)

    def test_retreat_steps_back_without_validation(self):
        ctx = self._ctx_at("resolve-flags", replace(make_trip(), status="active"))

        back = self.machine.retreat(ctx)
        self.assertEqual(self.machine.current_step(back).step_id, "generate-system-costs")
        self.assertEqual(back.trip.workflow_step, 2)

        start = self.machine.start(make_trip())
        self.assertIs(self.machine.retreat(start), start)

    def test_is_at_or_past(self):
        ctx = self._ctx_at("submit-invoice", make_trip())

        self.assertTrue(self.machine.is_at_or_past(ctx, "complete-trip"))
        self.assertTrue(self.machine.is_at_or_past(ctx, "submit-invoice"))
        self.assertFalse(self.machine.is_at_or_past(ctx, "track-payment"))


def test_custom_predicates_are_pluggable():
    steps = (
        WorkflowStep("capture", "Capture", 1, validation=(Custom("has_description"),)),
        WorkflowStep("done", "Done", 2),
    )
    machine = WorkflowStateMachine(
        WorkflowConfig(steps=steps),
        custom_predicates={
            "has_description": lambda ctx: [] if ctx.trip.description else ["Description is required"],
        },
    )

    assert machine.can_proceed(machine.start(make_trip())).unmet == ("Description is required",)
    assert machine.can_proceed(machine.start(make_trip(description="Reefer load"))).ok


def test_unknown_custom_predicate_is_rejected():
    steps = (WorkflowStep("capture", "Capture", 1, validation=(Custom("missing"),)),)

    with pytest.raises(ValueError):
        WorkflowStateMachine(WorkflowConfig(steps=steps))
