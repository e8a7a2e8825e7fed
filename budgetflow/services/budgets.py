"""Budget drafts and their items.

A budget starts as a ``draft`` owned by its author. Items can only be added,
edited or removed while it is a draft; ``submit_budget`` then freezes the
lines and materializes their review steps.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import Principal
from budgetflow.exceptions import ConflictError, NotFoundError, ValidationError
from budgetflow.models.budget import Budget, BudgetItem
from budgetflow.models.organization import School, SubAccount

logger = logging.getLogger(__name__)

PERIOD_PATTERN = re.compile(r"^(0[1-9]|1[0-2])-\d{4}$")


@dataclass(frozen=True)
class BudgetItemInput:
    """A budget line as entered by its author."""

    account_id: int
    item_name: str
    quantity: Decimal
    cost: Decimal
    itemdescription: str | None = None
    unit: str | None = None
    period_months: int | None = None
    notes: str | None = None


@dataclass
class BudgetBundle:
    budget: Budget
    items: list[BudgetItem] = field(default_factory=list)


def validate_period(period: str) -> str:
    """Return the trimmed period, raising ValidationError unless it is MM-YYYY."""
    value = (period or "").strip()
    if not PERIOD_PATTERN.match(value):
        raise ValidationError("Invalid period (expected MM-YYYY)")
    return value


def clamp_months(period_months: int | None) -> int:
    if period_months is None:
        return 1
    return min(12, max(1, int(period_months)))


def validate_item(item: BudgetItemInput) -> None:
    """Reject blank names, non-positive quantities and negative costs."""
    if not item.item_name or not item.item_name.strip():
        raise ValidationError("item_name is required")
    if not item.quantity.is_finite() or item.quantity <= 0:
        raise ValidationError("quantity must be greater than zero")
    if not item.cost.is_finite() or item.cost < 0:
        raise ValidationError("cost must be a non-negative number")


def _apply_item(row: BudgetItem, item: BudgetItemInput) -> None:
    row.account_id = item.account_id
    row.item_name = item.item_name.strip()
    row.itemdescription = item.itemdescription
    row.quantity = item.quantity
    row.cost = item.cost
    row.unit = item.unit
    row.period_months = clamp_months(item.period_months)
    row.notes = item.notes


async def _check_account(session: AsyncSession, account_id: int) -> None:
    if await session.get(SubAccount, account_id) is None:
        raise ValidationError(f"Unknown account {account_id}")


async def load_draft(session: AsyncSession, principal: Principal, budget_id: int) -> Budget:
    """Lock a budget for editing.

    Raises:
        NotFoundError: If the budget does not exist or belongs to someone else
        ConflictError: If the budget is no longer a draft
    """
    budget = await session.get(Budget, budget_id, with_for_update=True)
    if budget is None or budget.user_id != principal.id:
        raise NotFoundError(f"Budget {budget_id} not found")
    if budget.budget_status != "draft":
        raise ConflictError(f"Budget {budget_id} is already {budget.budget_status}")
    return budget


async def create_budget(
    session: AsyncSession,
    principal: Principal,
    period: str,
    title: str | None = None,
    description: str | None = None,
    request_type: str = "new",
) -> Budget:
    """Create an empty draft budget for the caller's school.

    Only one ``new`` budget may exist per school and period. Without a title
    the school's name is used.

    Raises:
        ValidationError: If the caller has no school or the period is malformed
        ConflictError: If a ``new`` budget already exists for the period
    """
    if principal.school_id is None:
        raise ValidationError("Caller has no school")
    period = validate_period(period)
    kind = (request_type or "new").strip().lower()

    if kind == "new":
        existing = await session.execute(
            select(Budget.id)
            .where(
                Budget.school_id == principal.school_id,
                Budget.period == period,
                Budget.request_type == "new",
            )
            .limit(1)
        )
        existing_id = existing.scalar_one_or_none()
        if existing_id is not None:
            raise ConflictError(f"A new budget for {period} already exists (budget {existing_id})")

    if not title or not title.strip():
        school = await session.get(School, principal.school_id)
        title = school.name if school is not None else ""

    budget = Budget(
        user_id=principal.id,
        school_id=principal.school_id,
        period=period,
        title=title.strip(),
        description=description,
        request_type=kind,
        budget_status="draft",
    )
    session.add(budget)
    await session.flush()
    logger.info(f"Budget {budget.id} drafted by user {principal.id} for {period}")
    return budget


async def list_own_budgets(session: AsyncSession, principal: Principal) -> list[BudgetBundle]:
    """List the caller's budgets, newest first, each with its items."""
    result = await session.execute(
        select(Budget)
        .where(Budget.user_id == principal.id)
        .order_by(Budget.created_at.desc(), Budget.id.desc())
    )
    budgets = list(result.scalars().all())
    if not budgets:
        return []

    bundles = {budget.id: BudgetBundle(budget=budget) for budget in budgets}
    items = await session.execute(
        select(BudgetItem)
        .where(BudgetItem.budget_id.in_(list(bundles)))
        .order_by(BudgetItem.budget_id, BudgetItem.id)
    )
    for item in items.scalars().all():
        bundles[item.budget_id].items.append(item)
    return list(bundles.values())


async def add_item(
    session: AsyncSession,
    principal: Principal,
    budget_id: int,
    item: BudgetItemInput,
) -> BudgetItem:
    """Append a line to a draft budget."""
    validate_item(item)
    await load_draft(session, principal, budget_id)
    await _check_account(session, item.account_id)

    row = BudgetItem(budget_id=budget_id)
    _apply_item(row, item)
    session.add(row)
    await session.flush()
    logger.info(f"Item {row.id} added to budget {budget_id}")
    return row


async def _load_item(session: AsyncSession, budget_id: int, item_id: int) -> BudgetItem:
    row = await session.get(BudgetItem, item_id)
    if row is None or row.budget_id != budget_id:
        raise NotFoundError(f"Item {item_id} not found in budget {budget_id}")
    return row


async def edit_item(
    session: AsyncSession,
    principal: Principal,
    budget_id: int,
    item_id: int,
    item: BudgetItemInput,
) -> BudgetItem:
    """Replace a draft line's fields."""
    validate_item(item)
    await load_draft(session, principal, budget_id)
    row = await _load_item(session, budget_id, item_id)
    if row.account_id != item.account_id:
        await _check_account(session, item.account_id)

    _apply_item(row, item)
    await session.flush()
    return row


async def delete_item(
    session: AsyncSession,
    principal: Principal,
    budget_id: int,
    item_id: int,
) -> None:
    await load_draft(session, principal, budget_id)
    row = await _load_item(session, budget_id, item_id)
    await session.delete(row)
    await session.flush()
    logger.info(f"Item {item_id} removed from budget {budget_id}")
