"""Tests for the per-item workflow engine.

This module tests:
- Step planning over logistics, needed, cost and coordinator outcomes
- Decision normalization helpers
- Batch ownership and idempotence with a mocked session
- Budget completion after a batch commits
- Revise-back and the reviewer read models
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import Principal
from budgetflow.exceptions import ForbiddenError, InvariantViolation, NotFoundError, ValidationError
from budgetflow.models.budget import BudgetItem, Step
from budgetflow.models.workflow_template import WorkflowTemplateStage
from budgetflow.services.step_ledger import apply_position, build_steps
from budgetflow.services.workflow_engine import (
    CoordinatorOutcome,
    CostDecision,
    CostOutcome,
    FinalDecision,
    LogisticsDecision,
    LogisticsOutcome,
    NeededDecision,
    NeededOutcome,
    apply_advance,
    awaiting_step,
    clamp_provided,
    complete_reviewed_budgets,
    decide_cost,
    decide_final,
    decide_logistics,
    decide_needed,
    item_route,
    parse_needed_status,
    plan_advance,
    resolve_final,
    revise_item,
    stage_counts,
    stage_queue,
    storage_status_for,
    to_decimal,
)

D_LOG, D_NEED, D_COST, D_COORD = 11, 12, 13, 14
STANDARD_ROUTE = [
    ("logistics", D_LOG),
    ("needed", D_NEED),
    ("cost", D_COST),
    ("coordinator", D_COORD),
]


def create_item(item_id: int = 1, budget_id: int = 7, quantity: str = "10") -> BudgetItem:
    """Create a BudgetItem for testing."""
    return BudgetItem(
        id=item_id,
        budget_id=budget_id,
        account_id=100,
        item_name=f"Item {item_id}",
        quantity=Decimal(quantity),
        cost=Decimal("12.50"),
        workflow_done=False,
        revision_state="none",
    )


def create_steps(item: BudgetItem, route: list[tuple[str, int]] = STANDARD_ROUTE) -> list[Step]:
    """Materialize steps for an item with the first step current."""
    steps = [
        Step(
            id=item.id * 100 + order,
            budget_id=item.budget_id,
            budget_item_id=item.id,
            account_id=item.account_id,
            step_name=name,
            sort_order=order,
            owner_of_step=owner,
            step_status="pending",
            is_current=order == 1,
        )
        for order, (name, owner) in enumerate(route, start=1)
    ]
    apply_position(item, steps)
    return steps


def advance(item: BudgetItem, steps: list[Step], outcome) -> None:
    plan = plan_advance(steps, outcome)
    assert plan is not None
    apply_advance(item, steps, plan)


def statuses(steps: list[Step]) -> dict[str, str]:
    return {step.step_name: step.step_status for step in steps}


def reviewer(department_id: int, user_id: int = 50) -> Principal:
    return Principal(id=user_id, name="Reviewer", role="reviewer", department_id=department_id)


# ============================================================================
# Step planning
# ============================================================================


class TestPlanAdvance:
    """Tests for plan_advance and apply_advance."""

    def test_in_stock_skips_cost_and_moves_to_needed(self) -> None:
        """Test that a fully stocked item skips its cost step."""
        item = create_item()
        steps = create_steps(item)

        advance(item, steps, LogisticsOutcome("in_stock"))

        assert statuses(steps) == {
            "logistics": "in_stock",
            "needed": "pending",
            "cost": "skipped",
            "coordinator": "pending",
        }
        assert item.current_stage == "needed"
        assert item.current_owner_department_id == D_NEED
        assert item.next_stage == "coordinator"

    def test_skipped_cost_is_not_revisited(self) -> None:
        """Test that a needed decision after in_stock lands on the coordinator."""
        item = create_item()
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("in_stock"))

        advance(item, steps, NeededOutcome(True))

        assert item.current_stage == "coordinator"
        assert statuses(steps)["cost"] == "skipped"

    def test_happy_path_finishes_on_coordinator(self) -> None:
        """Test the stocked item path through to the final decision."""
        item = create_item()
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("in_stock"))
        advance(item, steps, NeededOutcome(True))

        advance(item, steps, CoordinatorOutcome("approved"))

        assert statuses(steps)["coordinator"] == "confirmed"
        assert item.workflow_done is True
        assert item.current_step_id is None
        assert not any(step.is_current for step in steps)

    def test_not_needed_skips_everything_remaining(self) -> None:
        """Test that a not-needed item finishes its workflow at once."""
        item = create_item(quantity="5")
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("out_of_stock"))

        advance(item, steps, NeededOutcome(False))

        assert statuses(steps) == {
            "logistics": "out_of_stock",
            "needed": "not_needed",
            "cost": "skipped",
            "coordinator": "skipped",
        }
        assert item.workflow_done is True

    def test_partial_stock_walks_every_stage(self) -> None:
        """Test that partial stock keeps the cost step."""
        item = create_item()
        steps = create_steps(item)

        advance(item, steps, LogisticsOutcome("in_partial"))
        assert item.current_stage == "needed"
        advance(item, steps, NeededOutcome(True))
        assert item.current_stage == "cost"
        advance(item, steps, CostOutcome())

        assert item.current_stage == "coordinator"
        assert statuses(steps)["cost"] == "confirmed"
        assert item.workflow_done is False

    def test_custom_cost_stage_names_are_skipped(self) -> None:
        """Test that any stage whose name mentions cost is skipped on in_stock."""
        item = create_item()
        steps = create_steps(
            item,
            [("logistics", D_LOG), ("Cost Review", D_COST), ("coordinator", D_COORD)],
        )

        advance(item, steps, LogisticsOutcome("in_stock"))

        assert statuses(steps)["Cost Review"] == "skipped"
        assert item.current_stage == "coordinator"

    def test_finished_item_plans_nothing(self) -> None:
        """Test that an item without a current step yields no plan."""
        item = create_item()
        steps = create_steps(item, [("logistics", D_LOG)])
        advance(item, steps, LogisticsOutcome("in_stock"))

        assert item.workflow_done is True
        assert plan_advance(steps, LogisticsOutcome("in_stock")) is None

    def test_two_current_steps_violate_invariant(self) -> None:
        """Test that two current steps raise InvariantViolation."""
        item = create_item()
        steps = create_steps(item)
        steps[1].is_current = True

        with pytest.raises(InvariantViolation):
            plan_advance(steps, NeededOutcome(True))


class TestAwaitingStep:
    """Tests for awaiting_step."""

    def test_returns_current_stage_step(self) -> None:
        item = create_item()
        steps = create_steps(item)
        assert awaiting_step(item, steps, "logistics") is steps[0]

    def test_item_past_stage_is_unchanged(self) -> None:
        """Test that an item already past the stage returns None."""
        item = create_item()
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("in_partial"))
        assert awaiting_step(item, steps, "logistics") is None

    def test_item_before_stage_is_forbidden(self) -> None:
        """Test that deciding a stage the item has not reached is refused."""
        item = create_item()
        steps = create_steps(item)
        with pytest.raises(ForbiddenError):
            awaiting_step(item, steps, "cost")

    def test_route_without_stage_is_invalid(self) -> None:
        item = create_item()
        steps = create_steps(item, [("logistics", D_LOG), ("coordinator", D_COORD)])
        with pytest.raises(ValidationError):
            awaiting_step(item, steps, "needed")


# ============================================================================
# Decision helpers
# ============================================================================


class TestDecisionHelpers:
    """Tests for the pure decision helpers."""

    @pytest.mark.parametrize(
        ("provided", "expected"),
        [("0", "out_of_stock"), ("4", "in_partial"), ("10", "in_stock"), ("12", "in_stock")],
    )
    def test_storage_status_for(self, provided: str, expected: str) -> None:
        assert storage_status_for(Decimal("10"), Decimal(provided)) == expected

    def test_clamp_provided(self) -> None:
        """Test that provided quantities are clamped to [0, quantity]."""
        assert clamp_provided(Decimal("15"), Decimal("10")) == Decimal("10")
        assert clamp_provided(Decimal("-3"), Decimal("10")) == Decimal("0")
        assert clamp_provided(Decimal("4"), Decimal("10")) == Decimal("4")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(1, 1), (0, 0), (True, 1), (False, 0), ("uygundur", 1), ("uygun_degil", 0), (None, None)],
    )
    def test_parse_needed_status(self, value, expected) -> None:
        assert parse_needed_status(value) == expected

    def test_parse_needed_status_rejects_unknown(self) -> None:
        with pytest.raises(ValidationError):
            parse_needed_status("maybe")

    def test_to_decimal_rejects_negative(self) -> None:
        with pytest.raises(ValidationError):
            to_decimal("-1", "purchase_cost")

    def test_to_decimal_rejects_text(self) -> None:
        with pytest.raises(ValidationError):
            to_decimal("abc", "purchase_cost")

    def test_approved_with_changes_becomes_adjusted(self) -> None:
        """Test that an approval changing the cost is recorded as adjusted."""
        status, cost, quantity = resolve_final(
            "approved", Decimal("11.00"), None, Decimal("12.50"), Decimal("10")
        )
        assert status == "adjusted"
        assert cost == Decimal("11.00")
        assert quantity is None

    def test_approved_without_changes_stays_approved(self) -> None:
        status, _, _ = resolve_final(
            "approved", Decimal("12.50"), Decimal("10"), Decimal("12.50"), Decimal("10")
        )
        assert status == "approved"

    def test_rejected_clears_finals(self) -> None:
        status, cost, quantity = resolve_final(
            "rejected", Decimal("5"), Decimal("2"), Decimal("12.50"), Decimal("10")
        )
        assert (status, cost, quantity) == ("rejected", None, None)

    def test_unknown_final_status_is_invalid(self) -> None:
        with pytest.raises(ValidationError):
            resolve_final("maybe", None, None, None, None)


# ============================================================================
# Batches
# ============================================================================


def mock_batch_session(
    items: list[BudgetItem],
    steps: list[Step],
    completed: list[int] | None = None,
) -> AsyncMock:
    """Create a session answering the item, step and completion queries."""
    session = AsyncMock(spec=AsyncSession)

    items_result = MagicMock()
    items_result.scalars.return_value.all.return_value = items
    steps_result = MagicMock()
    steps_result.scalars.return_value.all.return_value = steps
    completion_result = MagicMock()
    completion_result.scalars.return_value.all.return_value = completed or []

    session.execute.side_effect = [items_result, steps_result, completion_result]
    return session


class TestDecisionBatches:
    """Tests for the stage batch operations."""

    @pytest.mark.asyncio
    async def test_logistics_batch_advances_and_schedules(self) -> None:
        """Test that an owned logistics batch advances and schedules the email."""
        item = create_item()
        steps = create_steps(item)
        session = mock_batch_session([item], steps)

        with patch(
            "budgetflow.services.workflow_engine.schedule_stage_waiting", return_value=True
        ) as schedule:
            result = await decide_logistics(
                session, reviewer(D_LOG), [LogisticsDecision(item_id=1, provided_qty=Decimal("15"))]
            )

        assert result.advanced == [1]
        assert item.storage_status == "in_stock"
        assert item.storage_provided_qty == Decimal("10.00")
        assert item.storage_reviewed_by == 50
        assert item.current_stage == "needed"
        assert result.notification_scheduled is True
        schedule.assert_called_once_with({7}, None)
        assert session.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_provided_quantity_overrides_explicit_status(self) -> None:
        """Test that a short quantity is in_partial even when in_stock is claimed."""
        item = create_item()
        steps = create_steps(item)
        session = mock_batch_session([item], steps)

        with patch("budgetflow.services.workflow_engine.schedule_stage_waiting", return_value=True):
            await decide_logistics(
                session,
                reviewer(D_LOG),
                [LogisticsDecision(item_id=1, provided_qty=Decimal("4"), storage_status="in_stock")],
            )

        assert item.storage_status == "in_partial"
        assert item.storage_provided_qty == Decimal("4.00")
        assert statuses(steps) == {
            "logistics": "in_partial",
            "needed": "pending",
            "cost": "pending",
            "coordinator": "pending",
        }

    @pytest.mark.asyncio
    async def test_explicit_status_without_quantity(self) -> None:
        item = create_item()
        steps = create_steps(item)
        session = mock_batch_session([item], steps)

        with patch("budgetflow.services.workflow_engine.schedule_stage_waiting", return_value=True):
            await decide_logistics(
                session, reviewer(D_LOG), [LogisticsDecision(item_id=1, storage_status="In_Stock")]
            )

        assert item.storage_status == "in_stock"
        assert item.storage_provided_qty == Decimal("10.00")
        assert statuses(steps)["cost"] == "skipped"

    @pytest.mark.asyncio
    async def test_foreign_department_is_forbidden(self) -> None:
        """Test that a batch with one foreign item changes nothing."""
        owned = create_item(item_id=1)
        foreign = create_item(item_id=2)
        owned_steps = create_steps(owned)
        foreign_steps = create_steps(foreign, [("logistics", 99), ("needed", D_NEED)])
        session = mock_batch_session([owned, foreign], owned_steps + foreign_steps)

        with pytest.raises(ForbiddenError):
            await decide_logistics(
                session,
                reviewer(D_LOG),
                [
                    LogisticsDecision(item_id=1, provided_qty=Decimal("10")),
                    LogisticsDecision(item_id=2, provided_qty=Decimal("10")),
                ],
            )

        assert owned.storage_status is None
        assert owned_steps[0].is_current is True
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_item_is_not_found(self) -> None:
        session = mock_batch_session([], [])
        with pytest.raises(NotFoundError):
            await decide_cost(
                session, reviewer(D_COST), [CostDecision(item_id=5, purchase_cost=Decimal("1"))]
            )

    @pytest.mark.asyncio
    async def test_repeated_batch_is_a_no_op(self) -> None:
        """Test that re-sending a decision for an item past the stage changes nothing."""
        item = create_item()
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("in_partial"))
        session = mock_batch_session([item], steps)

        with patch("budgetflow.services.workflow_engine.schedule_stage_waiting") as schedule:
            result = await decide_logistics(
                session, reviewer(D_LOG), [LogisticsDecision(item_id=1, provided_qty=Decimal("0"))]
            )

        assert result.unchanged == [1]
        assert result.advanced == []
        assert item.storage_status is None
        schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_needed_notes_only_does_not_advance(self) -> None:
        """Test that a notes-only needed patch records notes in place."""
        item = create_item()
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("in_partial"))
        session = mock_batch_session([item], steps)

        with patch("budgetflow.services.workflow_engine.schedule_stage_waiting") as schedule:
            result = await decide_needed(
                session, reviewer(D_NEED), [NeededDecision(item_id=1, needed_notes="check")]
            )

        assert result.updated == [1]
        assert result.advanced == []
        assert item.needed_notes == "check"
        assert item.current_stage == "needed"
        schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_needed_batch_sends_item_hints(self) -> None:
        """Test that needed batches notify with per-item hints."""
        item = create_item()
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("in_partial"))
        session = mock_batch_session([item], steps)

        with patch(
            "budgetflow.services.workflow_engine.schedule_stage_waiting", return_value=True
        ) as schedule:
            await decide_needed(
                session, reviewer(D_NEED), [NeededDecision(item_id=1, needed_status="uygundur")]
            )

        schedule.assert_called_once_with({7}, [{"item_id": 1, "source_stage": "needed"}])
        assert item.needed_status == 1
        assert item.current_stage == "cost"

    @pytest.mark.asyncio
    async def test_final_batch_completes_budget(self) -> None:
        """Test that the last coordinator decision reports the completed budget."""
        item = create_item()
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("in_stock"))
        advance(item, steps, NeededOutcome(True))
        session = mock_batch_session([item], steps, completed=[7])

        with patch("budgetflow.services.workflow_engine.schedule_stage_waiting", return_value=True):
            result = await decide_final(
                session,
                reviewer(D_COORD),
                [FinalDecision(item_id=1, final_purchase_status="approved", final_quantity=Decimal("8"))],
            )

        assert item.final_purchase_status == "adjusted"
        assert item.workflow_done is True
        assert result.completed_budgets == [7]
        assert result.to_dict()["completed_budgets"] == [7]

    @pytest.mark.asyncio
    async def test_duplicate_items_are_invalid(self) -> None:
        session = AsyncMock(spec=AsyncSession)
        with pytest.raises(ValidationError):
            await decide_cost(
                session,
                reviewer(D_COST),
                [CostDecision(item_id=1, purchase_cost=Decimal("1"))] * 2,
            )
        session.execute.assert_not_awaited()


class TestCompleteReviewedBudgets:
    """Tests for complete_reviewed_budgets."""

    @pytest.mark.asyncio
    async def test_no_budgets_skips_query(self) -> None:
        session = AsyncMock(spec=AsyncSession)
        assert await complete_reviewed_budgets(session, set()) == []
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_returns_flipped_budget_ids(self) -> None:
        """Test that the ids returned by the UPDATE are reported."""
        session = AsyncMock(spec=AsyncSession)
        result = MagicMock()
        result.scalars.return_value.all.return_value = [3]
        session.execute.return_value = result

        assert await complete_reviewed_budgets(session, {3, 4}) == [3]
        session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_completion_failure_keeps_batch_result(self) -> None:
        """Test that a failing completion check is rolled back and logged."""
        item = create_item()
        steps = create_steps(item)
        session = mock_batch_session([item], steps)
        items_result, steps_result, _ = session.execute.side_effect
        session.execute.side_effect = [items_result, steps_result, SQLAlchemyError("down")]

        with patch("budgetflow.services.workflow_engine.schedule_stage_waiting", return_value=True):
            result = await decide_logistics(
                session, reviewer(D_LOG), [LogisticsDecision(item_id=1, storage_status="out_of_stock")]
            )

        assert result.advanced == [1]
        assert result.completed_budgets == []
        session.rollback.assert_awaited_once()


# ============================================================================
# Revise-back and read models
# ============================================================================


def revisable_steps(item: BudgetItem, allow_revise: bool) -> list[Step]:
    steps = create_steps(item)
    steps[0].allow_revise = allow_revise
    return steps


class TestReviseItem:
    """Tests for revise_item."""

    @pytest.mark.asyncio
    async def test_revise_marks_pending_without_advancing(self) -> None:
        item = create_item()
        steps = revisable_steps(item, allow_revise=True)
        session = mock_batch_session([item], steps)

        with patch("budgetflow.services.workflow_engine.log_item_event", new_callable=AsyncMock):
            result = await revise_item(session, reviewer(D_LOG), 1, " Wrong unit ")

        assert result.revision_state == "pending"
        assert result.revise_reason == "Wrong unit"
        assert result.revised_at is not None
        assert [step.is_current for step in steps] == [True, False, False, False]

    @pytest.mark.asyncio
    async def test_stage_without_revise_is_forbidden(self) -> None:
        item = create_item()
        session = mock_batch_session([item], revisable_steps(item, allow_revise=False))

        with pytest.raises(ForbiddenError):
            await revise_item(session, reviewer(D_LOG), 1, "Wrong unit")

    @pytest.mark.asyncio
    async def test_template_changes_after_submit_do_not_apply(self) -> None:
        """Test that revise-back follows the flag copied when steps were built."""
        item = create_item()
        stages = [
            WorkflowTemplateStage(
                template_id=3,
                stage_name="logistics",
                sort_order=1,
                owner_department_id=D_LOG,
                allow_revise=True,
            ),
            WorkflowTemplateStage(
                template_id=3,
                stage_name="needed",
                sort_order=2,
                owner_department_id=D_NEED,
                allow_revise=False,
            ),
        ]
        steps = build_steps(item, stages)
        for step_id, step in enumerate(steps, start=101):
            step.id = step_id
        # Stages are replaced after submit: the logistics stage loses revise-back
        stages[0].allow_revise = False
        session = mock_batch_session([item], steps)

        with patch("budgetflow.services.workflow_engine.log_item_event", new_callable=AsyncMock):
            result = await revise_item(session, reviewer(D_LOG), 1, "Wrong unit")

        assert result.revision_state == "pending"
        # Only the item and its steps were read, never the template
        assert session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_other_department_cannot_revise(self) -> None:
        item = create_item()
        session = mock_batch_session([item], revisable_steps(item, allow_revise=True))

        with pytest.raises(ForbiddenError):
            await revise_item(session, reviewer(D_COST), 1, "Wrong unit")

    @pytest.mark.asyncio
    async def test_reason_is_required(self) -> None:
        with pytest.raises(ValidationError):
            await revise_item(AsyncMock(spec=AsyncSession), reviewer(D_LOG), 1, "  ")


class TestReadModels:
    """Tests for stage counts, stage queues and item routes."""

    @pytest.mark.asyncio
    async def test_stage_counts_fill_missing_stages(self) -> None:
        session = AsyncMock(spec=AsyncSession)
        result = MagicMock()
        result.__iter__.return_value = iter([("needed", 2)])
        session.execute.return_value = result

        counts = await stage_counts(session, D_NEED)

        assert counts == {"logistics": 0, "needed": 2, "cost": 0, "coordinator": 0}

    @pytest.mark.asyncio
    async def test_stage_queue_returns_page_and_total(self) -> None:
        item = create_item()
        session = AsyncMock(spec=AsyncSession)
        count_result = MagicMock()
        count_result.scalar.return_value = 1
        items_result = MagicMock()
        items_result.scalars.return_value.all.return_value = [item]
        session.execute.side_effect = [count_result, items_result]

        items, total = await stage_queue(session, D_LOG, "Logistics")

        assert items == [item]
        assert total == 1

    @pytest.mark.asyncio
    async def test_item_route_annotates_states(self) -> None:
        """Test that route steps report done, skipped, current and upcoming."""
        item = create_item()
        steps = create_steps(item)
        advance(item, steps, LogisticsOutcome("in_stock"))
        session = AsyncMock(spec=AsyncSession)
        session.get.return_value = item
        steps_result = MagicMock()
        steps_result.scalars.return_value.all.return_value = steps
        session.execute.return_value = steps_result

        route = await item_route(session, 1)

        assert route["current_owner_department_id"] == D_NEED
        assert [step["state"] for step in route["steps"]] == ["done", "current", "skipped", "upcoming"]

    @pytest.mark.asyncio
    async def test_unknown_item_route(self) -> None:
        session = AsyncMock(spec=AsyncSession)
        session.get.return_value = None

        with pytest.raises(NotFoundError):
            await item_route(session, 404)
