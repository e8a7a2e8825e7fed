"""Revision ledger for budget items sent back to their authors.

This module provides functions for:
- Listing items under revision with their latest answer and aging
- Summarizing revisions per state and aging bucket
- Recording an author's answer
- Resolving a revision
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import Principal
from budgetflow.exceptions import ConflictError, NotFoundError, ValidationError
from budgetflow.models.budget import Budget, BudgetItem
from budgetflow.models.organization import User
from budgetflow.models.revision import RevisionAnswer
from budgetflow.services.audit_log import log_item_event
from budgetflow.services.notifications import broadcast_revision_answer
from budgetflow.services.workflow_engine import CENTS, to_decimal

logger = logging.getLogger(__name__)

REVISION_STATES = ("pending", "answered", "resolved")
OPEN_STATES = ("pending", "answered")
FINAL_PURCHASE_STATUSES = ("approved", "adjusted", "rejected")
AGING_BUCKETS = ("0-1", "2-3", "4-7", ">7")
MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class RevisionFilters:
    """Filters for listing revisions.

    Attributes:
        state: pending, answered or resolved (all three when None)
        period: Budget period "MM-YYYY"
        school_id: Budget school
        account_id: Item sub-account
        assigned_to: Department owning the item's current step
        q: Substring of the item name or description
    """

    state: str | None = None
    period: str | None = None
    school_id: int | None = None
    account_id: int | None = None
    assigned_to: int | None = None
    q: str | None = None


@dataclass(frozen=True)
class RevisionRow:
    """An item under revision as listed."""

    item: BudgetItem
    period: str
    school_id: int
    revision_answer: str | None
    revision_answered_at: datetime | None
    aging_days: int | None


def aging_days(
    now: datetime,
    answered_at: datetime | None,
    revised_at: datetime | None,
) -> int | None:
    """Calendar days since the last revision activity, in the timezone of ``now``."""
    last_activity = answered_at or revised_at
    if last_activity is None:
        return None
    if last_activity.tzinfo is not None and now.tzinfo is not None:
        last_activity = last_activity.astimezone(now.tzinfo)
    return max(0, (now.date() - last_activity.date()).days)


def aging_bucket(days: int | None) -> str:
    """Place an age in days into one of 0-1, 2-3, 4-7 or >7."""
    if days is None or days < 2:
        return "0-1"
    if days < 4:
        return "2-3"
    if days < 7:
        return "4-7"
    return ">7"


def _latest_answers() -> Any:
    ranked = select(
        RevisionAnswer.budget_id,
        RevisionAnswer.item_id,
        RevisionAnswer.answer_text,
        RevisionAnswer.created_at,
        func.row_number()
        .over(
            partition_by=(RevisionAnswer.budget_id, RevisionAnswer.item_id),
            order_by=(RevisionAnswer.created_at.desc(), RevisionAnswer.id.desc()),
        )
        .label("rn"),
    ).subquery()
    return select(ranked).where(ranked.c.rn == 1).subquery("latest_answer")


def _filtered(
    query: Select,
    principal: Principal,
    filters: RevisionFilters,
    states: tuple[str, ...],
) -> Select:
    query = query.where(
        BudgetItem.revision_state.in_(states),
        or_(
            BudgetItem.final_purchase_status.is_(None),
            func.lower(BudgetItem.final_purchase_status).notin_(FINAL_PURCHASE_STATUSES),
        ),
    )
    if filters.period:
        query = query.where(Budget.period == filters.period)
    if filters.school_id is not None:
        query = query.where(Budget.school_id == filters.school_id)
    if filters.account_id is not None:
        query = query.where(BudgetItem.account_id == filters.account_id)
    if filters.assigned_to is not None:
        query = query.where(BudgetItem.current_owner_department_id == filters.assigned_to)
    if filters.q:
        pattern = f"%{filters.q.strip()}%"
        query = query.where(
            or_(BudgetItem.item_name.ilike(pattern), BudgetItem.itemdescription.ilike(pattern))
        )
    if principal.role == "moderator":
        # Moderators follow the schools of users whose budgets they moderate
        moderated_schools = select(User.school_id).where(User.budget_mod == principal.id)
        query = query.where(Budget.school_id.in_(moderated_schools))
    return query


def _states_for(filters: RevisionFilters) -> tuple[str, ...]:
    if filters.state is None:
        return REVISION_STATES
    if filters.state not in REVISION_STATES:
        raise ValidationError(f"state must be one of {', '.join(REVISION_STATES)}")
    return (filters.state,)


async def list_revisions(
    session: AsyncSession,
    principal: Principal,
    filters: RevisionFilters,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[RevisionRow], int]:
    """List items under revision, newest revision first.

    Args:
        session: Database session
        principal: Caller; moderators are limited to their schools
        filters: Listing filters
        page: Page number (1-indexed)
        page_size: Items per page, at most 200

    Returns:
        Tuple of (rows for the page, total matching rows)
    """
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
    page = max(page, 1)
    states = _states_for(filters)
    latest = _latest_answers()

    base = (
        select(BudgetItem, Budget.period, Budget.school_id, latest.c.answer_text, latest.c.created_at)
        .join(Budget, Budget.id == BudgetItem.budget_id)
        .outerjoin(
            latest,
            (latest.c.budget_id == BudgetItem.budget_id) & (latest.c.item_id == BudgetItem.id),
        )
    )
    query = _filtered(base, principal, filters, states)

    count_query = _filtered(
        select(func.count()).select_from(BudgetItem).join(Budget, Budget.id == BudgetItem.budget_id),
        principal,
        filters,
        states,
    )
    total = (await session.execute(count_query)).scalar() or 0

    result = await session.execute(
        query.order_by(BudgetItem.revised_at.desc().nullslast(), BudgetItem.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    now = datetime.now(UTC)
    rows = [
        RevisionRow(
            item=row[0],
            period=row[1],
            school_id=row[2],
            revision_answer=row[3],
            revision_answered_at=row[4],
            aging_days=aging_days(now, row[4], row[0].revised_at),
        )
        for row in result
    ]
    return rows, total


async def revision_summary(
    session: AsyncSession,
    principal: Principal,
    filters: RevisionFilters,
) -> dict[str, Any]:
    """Count revisions per state, and open ones per aging bucket."""
    latest = _latest_answers()
    query = _filtered(
        select(BudgetItem.revision_state, BudgetItem.revised_at, latest.c.created_at)
        .join(Budget, Budget.id == BudgetItem.budget_id)
        .outerjoin(
            latest,
            (latest.c.budget_id == BudgetItem.budget_id) & (latest.c.item_id == BudgetItem.id),
        ),
        principal,
        filters,
        REVISION_STATES,
    )
    result = await session.execute(query)

    now = datetime.now(UTC)
    by_state = {state: 0 for state in REVISION_STATES}
    aging = {bucket: 0 for bucket in AGING_BUCKETS}
    for state, revised_at, answered_at in result:
        by_state[state] = by_state.get(state, 0) + 1
        if state in OPEN_STATES:
            aging[aging_bucket(aging_days(now, answered_at, revised_at))] += 1
    return {"by_state": by_state, "aging": aging}


async def _load_item(session: AsyncSession, item_id: int) -> tuple[BudgetItem, Budget]:
    row = (
        await session.execute(
            select(BudgetItem, Budget)
            .join(Budget, Budget.id == BudgetItem.budget_id)
            .where(BudgetItem.id == item_id)
            .with_for_update(of=BudgetItem)
        )
    ).first()
    if row is None:
        raise NotFoundError(f"Budget item {item_id} not found")
    return row[0], row[1]


async def resolve_revision(
    session: AsyncSession,
    principal: Principal,
    item_id: int,
) -> BudgetItem:
    """Close an item's revision."""
    item, _ = await _load_item(session, item_id)
    if item.revision_state not in OPEN_STATES:
        raise ConflictError(f"Item {item_id} has no open revision")
    item.revision_state = "resolved"
    await log_item_event(session, item.budget_id, item.id, "revision_resolved", principal.id)
    await session.flush()
    return item


async def answer_revision(
    session: AsyncSession,
    principal: Principal,
    item_id: int,
    answer_text: str,
    quantity: Any = None,
    cost: Any = None,
) -> RevisionAnswer:
    """Record the author's answer to a revision request.

    Optional quantity and cost corrections are applied to the item. The
    answer is committed, then broadcast to the item's chat thread; a failed
    broadcast is only logged.

    Raises:
        ValidationError: If the text is empty or a number is negative
        NotFoundError: If the item is missing or not the caller's
        ConflictError: If the item has no pending revision
    """
    if not answer_text or not answer_text.strip():
        raise ValidationError("answer_text is required")
    new_quantity = to_decimal(quantity, "quantity")
    new_cost = to_decimal(cost, "cost")

    item, budget = await _load_item(session, item_id)
    if budget.user_id != principal.id:
        raise NotFoundError(f"Budget item {item_id} not found")
    if item.revision_state != "pending":
        raise ConflictError(f"Item {item_id} has no pending revision")

    answer = RevisionAnswer(
        budget_id=item.budget_id,
        item_id=item.id,
        answer_text=answer_text.strip(),
        author_id=principal.id,
        created_at=datetime.now(UTC),
    )
    session.add(answer)
    if new_quantity is not None:
        item.quantity = new_quantity.quantize(CENTS)
    if new_cost is not None:
        item.cost = new_cost.quantize(CENTS)
    item.revision_state = "answered"
    await session.flush()
    await log_item_event(
        session,
        item.budget_id,
        item.id,
        "revision_answered",
        principal.id,
        {
            "answer_id": answer.id,
            "quantity": str(new_quantity) if new_quantity is not None else None,
            "cost": str(new_cost) if new_cost is not None else None,
        },
    )
    await session.commit()

    await broadcast_revision_answer(
        item.budget_id,
        item.id,
        {
            "type": "revision_answer",
            "item_id": item.id,
            "answer_text": answer.answer_text,
            "author_id": principal.id,
            "created_at": answer.created_at.isoformat(),
        },
    )
    return answer

