"""Per-item workflow engine for budget review.

Each budget item walks its materialized steps independently. Reviewers send
decisions in batches; for every targeted item the engine records the
decision fields, writes the current step's terminal status, skips steps the
outcome makes pointless, and makes the next step current.

A batch is all-or-nothing: ownership of every item is checked before any
item is touched, and the batch commits once. After the commit the engine
flips fully reviewed budgets to ``review_been_completed`` and schedules the
stage-waiting notification.

Key features:
- Pure step planning (``plan_advance``) over a tagged outcome
- Department ownership enforced per current step
- Budget completion as a single conditional UPDATE
- Revise-back from stages that allow it
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, TypeVar

from sqlalchemy import and_, distinct, exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import Principal
from budgetflow.exceptions import ForbiddenError, NotFoundError, ValidationError
from budgetflow.models.budget import Budget, BudgetItem, Step
from budgetflow.services.audit_log import log_item_event
from budgetflow.services.notifications import schedule_stage_waiting
from budgetflow.services.step_ledger import (
    apply_position,
    current_step,
    ordered,
    stage_matches,
    step_state,
)

logger = logging.getLogger(__name__)

LOGISTICS = "logistics"
NEEDED = "needed"
COST = "cost"
COORDINATOR = "coordinator"

STORAGE_STATUSES = ("in_stock", "in_partial", "out_of_stock")
FINAL_STATUSES = ("approved", "adjusted", "rejected")

_NEEDED_TRUE = {"1", "true", "needed", "uygundur"}
_NEEDED_FALSE = {"0", "false", "not_needed", "not-needed", "uygun_degil"}

CENTS = Decimal("0.01")


# --- Outcomes ---


@dataclass(frozen=True)
class LogisticsOutcome:
    """Stock check result: in_stock, in_partial or out_of_stock."""

    storage_status: str

    @property
    def step_status(self) -> str:
        return self.storage_status


@dataclass(frozen=True)
class NeededOutcome:
    """Whether the item is needed at all."""

    needed: bool

    @property
    def step_status(self) -> str:
        return "needed" if self.needed else "not_needed"


@dataclass(frozen=True)
class CostOutcome:
    """A purchase cost was recorded."""

    @property
    def step_status(self) -> str:
        return "confirmed"


@dataclass(frozen=True)
class CoordinatorOutcome:
    """Final decision: approved, adjusted or rejected."""

    final_status: str

    @property
    def step_status(self) -> str:
        return "confirmed"


StepOutcome = LogisticsOutcome | NeededOutcome | CostOutcome | CoordinatorOutcome


@dataclass(frozen=True)
class StepAdvance:
    """Planned changes to an item's steps.

    Attributes:
        current: Step that received the decision
        step_status: Terminal status to write on ``current``
        skipped: Remaining steps the outcome makes unnecessary
        next_step: Step to make current, if any
        workflow_done: Whether the item has no step left to decide
    """

    current: Step
    step_status: str
    skipped: tuple[Step, ...] = ()
    next_step: Step | None = None
    workflow_done: bool = False


def plan_advance(steps: list[Step], outcome: StepOutcome) -> StepAdvance | None:
    """Plan how an outcome moves an item through its steps.

    Returns None when the item has no current step, which makes repeated
    decisions on finished items no-ops.

    Raises:
        InvariantViolation: If more than one step is current
    """
    step_list = ordered(steps)
    current = current_step(step_list)
    if current is None:
        return None

    # Steps skipped by an earlier outcome stay skipped
    remaining = [
        step
        for step in step_list
        if step.sort_order > current.sort_order and step.step_status != "skipped"
    ]

    if isinstance(outcome, NeededOutcome) and not outcome.needed:
        return StepAdvance(
            current=current,
            step_status=outcome.step_status,
            skipped=tuple(remaining),
            workflow_done=True,
        )

    skipped: tuple[Step, ...] = ()
    candidates = remaining
    if isinstance(outcome, LogisticsOutcome) and outcome.storage_status == "in_stock":
        # Nothing left to buy, so any cost step is pointless
        skipped = tuple(step for step in remaining if "cost" in step.step_name.lower())
        candidates = [step for step in remaining if "cost" not in step.step_name.lower()]

    next_step = candidates[0] if candidates else None
    return StepAdvance(
        current=current,
        step_status=outcome.step_status,
        skipped=skipped,
        next_step=next_step,
        workflow_done=next_step is None,
    )


def apply_advance(item: BudgetItem, steps: list[Step], plan: StepAdvance) -> None:
    """Write a planned advance onto the loaded step and item rows."""
    now = datetime.now(UTC)
    plan.current.step_status = plan.step_status
    plan.current.is_current = False
    plan.current.updated_at = now
    for step in plan.skipped:
        step.step_status = "skipped"
        step.is_current = False
        step.updated_at = now
    if plan.next_step is not None:
        plan.next_step.is_current = True
        plan.next_step.updated_at = now
    if plan.workflow_done:
        item.workflow_done = True
    apply_position(item, steps)


# --- Decision inputs ---


@dataclass(frozen=True)
class LogisticsDecision:
    item_id: int
    provided_qty: Decimal | None = None
    storage_status: str | None = None


@dataclass(frozen=True)
class NeededDecision:
    item_id: int
    needed_status: Any = None
    needed_notes: str | None = None


@dataclass(frozen=True)
class CostDecision:
    item_id: int
    purchase_cost: Decimal | None = None
    purchasing_note: str | None = None


@dataclass(frozen=True)
class FinalDecision:
    item_id: int
    final_purchase_status: str
    final_purchase_cost: Decimal | None = None
    final_quantity: Decimal | None = None


Decision = TypeVar("Decision", LogisticsDecision, NeededDecision, CostDecision, FinalDecision)


@dataclass
class BatchResult:
    """Outcome of a decision batch.

    Attributes:
        stage: Stage the batch decided
        updated: Items whose decision fields were recorded
        advanced: Items whose current step moved
        unchanged: Items already past this stage (no-op)
        budget_ids: Budgets touched by the batch
        advanced_budget_ids: Budgets with at least one advanced item
        completed_budgets: Budgets flipped to review_been_completed
        notification_scheduled: Whether the stage-waiting email was scheduled
    """

    stage: str
    updated: list[int] = field(default_factory=list)
    advanced: list[int] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    budget_ids: set[int] = field(default_factory=set)
    advanced_budget_ids: set[int] = field(default_factory=set)
    completed_budgets: list[int] = field(default_factory=list)
    notification_scheduled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "stage": self.stage,
            "updated": len(self.updated),
            "advanced": self.advanced,
            "unchanged": self.unchanged,
            "completed_budgets": self.completed_budgets,
        }


# --- Pure decision helpers ---


def to_decimal(value: Any, name: str) -> Decimal | None:
    """Parse an optional non-negative decimal field."""
    if value is None or value == "":
        return None
    try:
        number = Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"{name} must be a number") from e
    if not number.is_finite() or number < 0:
        raise ValidationError(f"{name} must be a non-negative number")
    return number


def storage_status_for(requested: Decimal, provided: Decimal) -> str:
    """Classify provided stock against the requested quantity."""
    if provided <= 0:
        return "out_of_stock"
    if provided >= requested:
        return "in_stock"
    return "in_partial"


def clamp_provided(provided: Decimal, requested: Decimal) -> Decimal:
    return max(Decimal(0), min(provided, requested))


def parse_needed_status(value: Any) -> int | None:
    """Normalize the needed flag to 1, 0 or None.

    Accepts 1/0, booleans and the literals "uygundur"/"uygun_degil".
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    normalized = str(value).strip().lower()
    if normalized in _NEEDED_TRUE:
        return 1
    if normalized in _NEEDED_FALSE:
        return 0
    raise ValidationError(f"Invalid needed_status '{value}'")


def resolve_final(
    status: str,
    final_cost: Decimal | None,
    final_quantity: Decimal | None,
    baseline_cost: Decimal | None,
    baseline_quantity: Decimal | None,
) -> tuple[str, Decimal | None, Decimal | None]:
    """Normalize a coordinator decision.

    An approval that changes cost or quantity is recorded as ``adjusted``;
    a rejection clears both finals.

    Returns:
        Tuple of (status, final cost, final quantity)
    """
    normalized = (status or "").strip().lower()
    if normalized not in FINAL_STATUSES:
        raise ValidationError(f"final_purchase_status must be one of {', '.join(FINAL_STATUSES)}")
    if normalized == "rejected":
        return normalized, None, None
    if normalized == "approved":
        cost_changed = final_cost is not None and final_cost != baseline_cost
        quantity_changed = final_quantity is not None and final_quantity != baseline_quantity
        if cost_changed or quantity_changed:
            normalized = "adjusted"
    return normalized, final_cost, final_quantity


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    return {
        key: str(value) if isinstance(value, Decimal) else value
        for key, value in values.items()
        if key != "item_id"
    }


# --- Recorders: write decision fields and return the outcome, if any ---


def _record_logistics(
    item: BudgetItem, decision: LogisticsDecision, principal: Principal, now: datetime
) -> StepOutcome | None:
    requested = Decimal(item.quantity or 0)
    provided = to_decimal(decision.provided_qty, "provided_qty")
    status = decision.storage_status.strip().lower() if decision.storage_status else None
    if status is not None and status not in STORAGE_STATUSES:
        raise ValidationError(f"storage_status must be one of {', '.join(STORAGE_STATUSES)}")

    if provided is not None:
        # A provided quantity always decides the status
        provided = clamp_provided(provided, requested)
        status = storage_status_for(requested, provided)
    elif status is None:
        raise ValidationError(f"Item {item.id}: provided_qty or storage_status is required")
    elif status == "in_partial":
        raise ValidationError("provided_qty is required for in_partial")
    else:
        provided = requested if status == "in_stock" else Decimal(0)

    item.storage_status = status
    item.storage_provided_qty = provided.quantize(CENTS)
    item.storage_reviewed_by = principal.id
    item.storage_reviewed_at = now
    return LogisticsOutcome(status)


def _record_needed(
    item: BudgetItem, decision: NeededDecision, principal: Principal, now: datetime
) -> StepOutcome | None:
    status = parse_needed_status(decision.needed_status)
    if status is None and decision.needed_notes is None:
        raise ValidationError(f"Item {item.id}: needed_status or needed_notes is required")

    if decision.needed_notes is not None:
        item.needed_notes = decision.needed_notes
    item.needed_noted_by = principal.id
    item.needed_noted_at = now
    if status is None:
        return None
    item.needed_status = status
    return NeededOutcome(bool(status))


def _record_cost(
    item: BudgetItem, decision: CostDecision, principal: Principal, now: datetime
) -> StepOutcome | None:
    cost = to_decimal(decision.purchase_cost, "purchase_cost")
    if cost is None and decision.purchasing_note is None:
        raise ValidationError(f"Item {item.id}: purchase_cost or purchasing_note is required")

    if decision.purchasing_note is not None:
        item.purchasing_note = decision.purchasing_note
    item.purchase_reviewed_by = principal.id
    item.purchase_reviewed_at = now
    if cost is None:
        return None
    item.purchase_cost = cost.quantize(CENTS)
    return CostOutcome()


def _record_final(
    item: BudgetItem, decision: FinalDecision, principal: Principal, now: datetime
) -> StepOutcome | None:
    final_cost = to_decimal(decision.final_purchase_cost, "final_purchase_cost")
    final_quantity = to_decimal(decision.final_quantity, "final_quantity")
    baseline_cost = item.purchase_cost if item.purchase_cost is not None else item.cost
    status, final_cost, final_quantity = resolve_final(
        decision.final_purchase_status,
        final_cost,
        final_quantity,
        Decimal(baseline_cost) if baseline_cost is not None else None,
        Decimal(item.quantity) if item.quantity is not None else None,
    )

    item.final_purchase_status = status
    item.final_purchase_cost = final_cost.quantize(CENTS) if final_cost is not None else None
    item.final_quantity = final_quantity
    item.coordinator_reviewed_by = principal.id
    item.coordinator_reviewed_at = now
    return CoordinatorOutcome(status)


# --- Loading and ownership ---


async def _load_items(session: AsyncSession, item_ids: list[int]) -> dict[int, BudgetItem]:
    # Row locks serialize batches that target the same items
    result = await session.execute(
        select(BudgetItem).where(BudgetItem.id.in_(item_ids)).with_for_update()
    )
    items = {item.id: item for item in result.scalars().all()}
    missing = [item_id for item_id in item_ids if item_id not in items]
    if missing:
        raise NotFoundError(f"Budget items not found: {', '.join(map(str, missing))}")
    return items


async def _load_steps(session: AsyncSession, item_ids: list[int]) -> dict[int, list[Step]]:
    result = await session.execute(
        select(Step)
        .where(Step.budget_item_id.in_(item_ids))
        .order_by(Step.budget_item_id, Step.sort_order)
    )
    steps: dict[int, list[Step]] = {item_id: [] for item_id in item_ids}
    for step in result.scalars().all():
        steps.setdefault(step.budget_item_id, []).append(step)
    return steps


def awaiting_step(item: BudgetItem, steps: list[Step], stage: str) -> Step | None:
    """Return the item's current step if it is the ``stage`` step.

    Returns None when the item is already past ``stage``.

    Raises:
        ValidationError: If the item's route has no ``stage`` step
        ForbiddenError: If the item has not reached ``stage`` yet
    """
    stage_step = next((step for step in steps if stage_matches(step.step_name, stage)), None)
    if stage_step is None:
        raise ValidationError(f"Item {item.id} has no {stage} step")
    current = current_step(steps)
    if current is None or current.sort_order > stage_step.sort_order:
        return None
    if current is not stage_step:
        raise ForbiddenError(
            f"Item {item.id} is awaiting the {current.step_name} decision, not {stage}"
        )
    return current


def check_owner(item: BudgetItem, step: Step, principal: Principal) -> None:
    if principal.department_id is None or step.owner_of_step != principal.department_id:
        logger.warning(
            f"Department {principal.department_id} tried to decide item {item.id} "
            f"owned by department {step.owner_of_step}"
        )
        raise ForbiddenError(f"Item {item.id} is not owned by your department at this step")


# --- Batches ---


async def _run_batch(
    session: AsyncSession,
    principal: Principal,
    stage: str,
    decisions: list[Decision],
    record: Callable[[BudgetItem, Decision, Principal, datetime], StepOutcome | None],
) -> BatchResult:
    if not decisions:
        raise ValidationError("items must be a non-empty list")
    item_ids = [decision.item_id for decision in decisions]
    if len(set(item_ids)) != len(item_ids):
        raise ValidationError("Each item may appear only once per batch")

    items = await _load_items(session, item_ids)
    steps_by_item = await _load_steps(session, item_ids)
    result = BatchResult(stage=stage)

    # Ownership of every item is verified before anything is written
    targets: list[tuple[Decision, BudgetItem, list[Step]]] = []
    for decision in decisions:
        item = items[decision.item_id]
        steps = steps_by_item[item.id]
        current = awaiting_step(item, steps, stage)
        if current is None:
            result.unchanged.append(item.id)
            continue
        check_owner(item, current, principal)
        targets.append((decision, item, steps))

    now = datetime.now(UTC)
    for decision, item, steps in targets:
        outcome = record(item, decision, principal, now)
        result.updated.append(item.id)
        result.budget_ids.add(item.budget_id)
        if outcome is not None:
            plan = plan_advance(steps, outcome)
            if plan is not None:
                apply_advance(item, steps, plan)
                result.advanced.append(item.id)
                result.advanced_budget_ids.add(item.budget_id)
        await log_item_event(
            session,
            item.budget_id,
            item.id,
            f"{stage}_decided",
            principal.id,
            _jsonable(vars(decision)),
        )

    await session.flush()
    return result


async def complete_reviewed_budgets(session: AsyncSession, budget_ids: set[int]) -> list[int]:
    """Flip in-review budgets whose items have no current step left.

    The "no current step" condition is evaluated inside the UPDATE itself so
    that concurrent batches finishing the last items of the same budget
    cannot both miss the flip or stamp ``closed_at`` twice.

    Returns:
        Ids of the budgets that were flipped
    """
    if not budget_ids:
        return []
    has_current_step = exists().where(Step.budget_id == Budget.id, Step.is_current.is_(True))
    has_decided_item = exists().where(
        BudgetItem.budget_id == Budget.id, BudgetItem.workflow_done.is_(True)
    )
    stmt = (
        update(Budget)
        .where(
            and_(
                Budget.id.in_(sorted(budget_ids)),
                Budget.budget_status == "in_review",
                ~has_current_step,
                has_decided_item,
            )
        )
        .values(
            budget_status="review_been_completed",
            closed_at=func.coalesce(Budget.closed_at, func.now()),
        )
        .returning(Budget.id)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def _commit_batch(
    session: AsyncSession,
    result: BatchResult,
    item_hints: list[dict[str, Any]] | None = None,
) -> BatchResult:
    await session.commit()
    logger.info(
        f"{result.stage} batch committed: {len(result.updated)} updated, "
        f"{len(result.advanced)} advanced, {len(result.unchanged)} unchanged"
    )

    # Separate transaction: the flip must see item advances committed by
    # concurrent batches, not just our own
    if result.budget_ids:
        try:
            result.completed_budgets = await complete_reviewed_budgets(session, result.budget_ids)
            await session.commit()
        except SQLAlchemyError:
            logger.exception(f"Budget completion check failed for {sorted(result.budget_ids)}")
            await session.rollback()
        else:
            if result.completed_budgets:
                logger.info(f"Budgets completed review: {result.completed_budgets}")

    if result.advanced:
        result.notification_scheduled = schedule_stage_waiting(
            result.advanced_budget_ids, item_hints
        )
    return result


async def decide_logistics(
    session: AsyncSession,
    principal: Principal,
    decisions: list[LogisticsDecision],
) -> BatchResult:
    """Record stock checks and advance the items.

    Provided quantities are clamped to [0, quantity]. A fully in-stock item
    skips its cost steps.
    """
    result = await _run_batch(session, principal, LOGISTICS, decisions, _record_logistics)
    return await _commit_batch(session, result)


async def decide_needed(
    session: AsyncSession,
    principal: Principal,
    decisions: list[NeededDecision],
) -> BatchResult:
    """Record need decisions and advance the items that received a status.

    Notes-only entries are stored without advancing. A not-needed item skips
    every remaining step and finishes its workflow.
    """
    result = await _run_batch(session, principal, NEEDED, decisions, _record_needed)
    hints = [{"item_id": item_id, "source_stage": NEEDED} for item_id in result.advanced]
    return await _commit_batch(session, result, hints)


async def decide_cost(
    session: AsyncSession,
    principal: Principal,
    decisions: list[CostDecision],
) -> BatchResult:
    """Record purchase costs and advance the items that received one."""
    result = await _run_batch(session, principal, COST, decisions, _record_cost)
    return await _commit_batch(session, result)


async def decide_final(
    session: AsyncSession,
    principal: Principal,
    decisions: list[FinalDecision],
) -> BatchResult:
    """Record coordinator decisions and advance the items."""
    result = await _run_batch(session, principal, COORDINATOR, decisions, _record_final)
    return await _commit_batch(session, result)


# --- Revise back ---


async def revise_item(
    session: AsyncSession,
    principal: Principal,
    item_id: int,
    reason: str,
) -> BudgetItem:
    """Send an item back to its author for revision.

    Only the department owning the item's current step may do this, and only
    when that stage allows revise-back. Steps do not move.

    Raises:
        ValidationError: If the reason is empty
        NotFoundError: If the item does not exist
        ForbiddenError: If the caller does not own the current step or the
            stage does not allow revise-back
    """
    if not reason or not reason.strip():
        raise ValidationError("revise_reason is required")
    items = await _load_items(session, [item_id])
    item = items[item_id]
    steps = (await _load_steps(session, [item_id]))[item_id]
    current = current_step(steps)
    if current is None:
        raise ForbiddenError(f"Item {item_id} has finished its workflow")
    check_owner(item, current, principal)

    if not current.allow_revise:
        raise ForbiddenError(f"Stage {current.step_name} does not allow revise-back")

    item.revision_state = "pending"
    item.revise_reason = reason.strip()
    item.revised_at = datetime.now(UTC)
    await log_item_event(
        session,
        item.budget_id,
        item.id,
        "revise_requested",
        principal.id,
        {"reason": item.revise_reason, "stage": current.step_name},
    )
    await session.flush()
    logger.info(f"Item {item_id} sent back for revision from {current.step_name}")
    return item


# --- Read models ---


async def stage_counts(session: AsyncSession, department_id: int) -> dict[str, int]:
    """Count distinct budgets waiting on the department, per stage."""
    stage_name = func.lower(Step.step_name)
    result = await session.execute(
        select(stage_name, func.count(distinct(Step.budget_id)))
        .where(Step.is_current.is_(True), Step.owner_of_step == department_id)
        .group_by(stage_name)
    )
    counts = {LOGISTICS: 0, NEEDED: 0, COST: 0, COORDINATOR: 0}
    for name, count in result:
        counts[name] = count
    return counts


async def stage_queue(
    session: AsyncSession,
    department_id: int,
    stage: str,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[BudgetItem], int]:
    """List items whose current step is ``stage`` and owned by the department.

    Returns:
        Tuple of (items for the page, total matching items)
    """
    condition = and_(
        Step.budget_item_id == BudgetItem.id,
        Step.is_current.is_(True),
        Step.owner_of_step == department_id,
        func.lower(Step.step_name) == stage.lower(),
    )
    total_result = await session.execute(
        select(func.count()).select_from(BudgetItem).where(exists().where(condition))
    )
    total = total_result.scalar() or 0

    result = await session.execute(
        select(BudgetItem)
        .where(exists().where(condition))
        .order_by(BudgetItem.budget_id, BudgetItem.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


async def item_route(session: AsyncSession, item_id: int) -> dict[str, Any]:
    """Get an item's steps annotated as done, current, upcoming or skipped."""
    item = await session.get(BudgetItem, item_id)
    if item is None:
        raise NotFoundError(f"Budget item {item_id} not found")
    steps = (await _load_steps(session, [item_id]))[item_id]
    current = current_step(steps)
    return {
        "item_id": item.id,
        "budget_id": item.budget_id,
        "workflow_done": item.workflow_done,
        "current_owner_department_id": current.owner_of_step if current else None,
        "steps": [
            {
                "id": step.id,
                "step_name": step.step_name,
                "sort_order": step.sort_order,
                "owner_of_step": step.owner_of_step,
                "step_status": step.step_status,
                "state": step_state(step),
            }
            for step in ordered(steps)
        ],
    }
