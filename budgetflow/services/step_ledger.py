"""Pure helpers over a budget item's materialized steps.

Nothing in this module touches the database. Callers load ``Step`` rows,
hand them in ordered or not, and persist whatever the helpers mutate.
"""

from collections.abc import Iterable, Sequence
from typing import Any

from budgetflow.exceptions import InvariantViolation
from budgetflow.models.budget import BudgetItem, Step
from budgetflow.models.workflow_template import WorkflowTemplateStage

STEP_STATUSES = (
    "pending",
    "confirmed",
    "needed",
    "not_needed",
    "in_stock",
    "in_partial",
    "out_of_stock",
    "skipped",
)


def ordered(steps: Iterable[Step]) -> list[Step]:
    """Return steps sorted by ``sort_order``."""
    return sorted(steps, key=lambda step: step.sort_order)


def current_step(steps: Iterable[Step]) -> Step | None:
    """Return the step awaiting a decision, if any.

    Raises:
        InvariantViolation: If more than one step is current
    """
    current = [step for step in steps if step.is_current]
    if len(current) > 1:
        item_id = current[0].budget_item_id
        raise InvariantViolation(f"Item {item_id} has {len(current)} current steps")
    return current[0] if current else None


def stage_matches(step_name: str, stage: str) -> bool:
    return step_name.strip().lower() == stage.strip().lower()


def build_steps(item: BudgetItem, stages: Sequence[WorkflowTemplateStage]) -> list[Step]:
    """Copy template stages into new step rows for ``item``.

    Only the step with the lowest ``sort_order`` is made current. Owners and
    the revise-back flag are copied as they are now; later template or
    ownership changes leave these rows alone.
    """
    stage_list = sorted(stages, key=lambda stage: stage.sort_order)
    return [
        Step(
            budget_id=item.budget_id,
            budget_item_id=item.id,
            account_id=item.account_id,
            step_name=stage.stage_name,
            sort_order=stage.sort_order,
            owner_of_step=stage.owner_department_id,
            allow_revise=bool(stage.allow_revise),
            step_status="pending",
            is_current=index == 0,
        )
        for index, stage in enumerate(stage_list)
    ]


def route_snapshot(steps: Iterable[Step]) -> list[dict[str, Any]]:
    """Serialize the route as materialized, for ``route_steps_json``."""
    return [
        {
            "step_name": step.step_name,
            "sort_order": step.sort_order,
            "owner_department_id": step.owner_of_step,
            "allow_revise": bool(step.allow_revise),
        }
        for step in ordered(steps)
    ]


def apply_position(item: BudgetItem, steps: Iterable[Step]) -> None:
    """Refresh the item's denormalized current/next step columns."""
    step_list = ordered(steps)
    current = current_step(step_list)
    upcoming = None
    if current is not None:
        upcoming = next(
            (
                step
                for step in step_list
                if step.sort_order > current.sort_order and step.step_status == "pending"
            ),
            None,
        )

    item.current_step_id = current.id if current else None
    item.current_stage = current.step_name if current else None
    item.current_step_order = current.sort_order if current else None
    item.current_owner_department_id = current.owner_of_step if current else None
    item.next_step_id = upcoming.id if upcoming else None
    item.next_stage = upcoming.step_name if upcoming else None
    item.next_owner_department_id = upcoming.owner_of_step if upcoming else None


def step_state(step: Step) -> str:
    """Classify a step for route views: current, skipped, upcoming or done."""
    if step.is_current:
        return "current"
    if step.step_status == "skipped":
        return "skipped"
    if step.step_status == "pending":
        return "upcoming"
    return "done"
