"""FastAPI routes for the revision ledger."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import CurrentPrincipal, Principal, require_permission, require_role
from budgetflow.database import get_db
from budgetflow.services import revisions
from budgetflow.services.revisions import MAX_PAGE_SIZE, RevisionFilters

router = APIRouter(prefix="/revisions", tags=["revisions"])

ReviewerPrincipal = Annotated[
    Principal, Depends(require_role("moderator", "coordinator", "reviewer", "admin"))
]
ResolverPrincipal = Annotated[Principal, Depends(require_permission("revisions.resolve"))]


# --- Pydantic Schemas ---


class RevisionItemResponse(BaseModel):
    """Response schema for an item under revision."""

    item_id: int = Field(description="Budget item ID")
    budget_id: int = Field(description="Budget ID")
    period: str = Field(description="Budget period MM-YYYY")
    school_id: int = Field(description="Budget school")
    account_id: int = Field(description="Sub-account ID")
    item_name: str = Field(description="Item name")
    quantity: Decimal = Field(description="Requested quantity")
    cost: Decimal = Field(description="Requested unit cost")
    revision_state: str = Field(description="pending, answered or resolved")
    revise_reason: str | None = Field(description="Why the item was sent back")
    revised_at: datetime | None = Field(description="When the item was sent back")
    current_stage: str | None = Field(description="Stage awaiting a decision")
    current_owner_department_id: int | None = Field(description="Department deciding now")
    revision_answer: str | None = Field(description="Latest answer text")
    revision_answered_at: datetime | None = Field(description="Latest answer timestamp")
    aging_days: int | None = Field(description="Days since the last revision activity")


class RevisionListResponse(BaseModel):
    """Response schema for a paginated revision list."""

    items: list[RevisionItemResponse]
    total: int = Field(description="Total matching items")
    page: int = Field(description="Current page number")
    page_size: int = Field(description="Items per page")
    total_pages: int = Field(description="Total number of pages")


class RevisionSummaryResponse(BaseModel):
    by_state: dict[str, int] = Field(description="Items per revision state")
    aging: dict[str, int] = Field(description="Open items per aging bucket")


class AnswerRequest(BaseModel):
    """Author's answer, with optional corrections."""

    answer_text: str = Field(min_length=1, description="Answer to the reviewer")
    quantity: Decimal | None = Field(default=None, ge=0, description="Corrected quantity")
    cost: Decimal | None = Field(default=None, ge=0, description="Corrected unit cost")


class AnswerResponse(BaseModel):
    id: int
    budget_id: int
    item_id: int
    answer_text: str
    author_id: int
    created_at: datetime

    model_config = {"from_attributes": True}


def _filters(
    state: str | None = Query(None, description="pending, answered or resolved"),
    period: str | None = Query(None, description="Budget period MM-YYYY"),
    school_id: int | None = Query(None, description="Filter by school"),
    account_id: int | None = Query(None, description="Filter by sub-account"),
    assigned_to: int | None = Query(None, description="Filter by current owner department"),
    q: str | None = Query(None, description="Search item name or description"),
) -> RevisionFilters:
    return RevisionFilters(
        state=state,
        period=period,
        school_id=school_id,
        account_id=account_id,
        assigned_to=assigned_to,
        q=q,
    )


# --- API Endpoints ---


@router.get("", response_model=RevisionListResponse)
async def list_revisions(
    principal: ReviewerPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
    filters: Annotated[RevisionFilters, Depends(_filters)],
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE, description="Items per page"),
) -> RevisionListResponse:
    """List items under revision, newest first.

    Moderators only see schools of the users whose budgets they moderate.
    """
    rows, total = await revisions.list_revisions(db, principal, filters, page, page_size)
    return RevisionListResponse(
        items=[
            RevisionItemResponse(
                item_id=row.item.id,
                budget_id=row.item.budget_id,
                period=row.period,
                school_id=row.school_id,
                account_id=row.item.account_id,
                item_name=row.item.item_name,
                quantity=row.item.quantity,
                cost=row.item.cost,
                revision_state=row.item.revision_state,
                revise_reason=row.item.revise_reason,
                revised_at=row.item.revised_at,
                current_stage=row.item.current_stage,
                current_owner_department_id=row.item.current_owner_department_id,
                revision_answer=row.revision_answer,
                revision_answered_at=row.revision_answered_at,
                aging_days=row.aging_days,
            )
            for row in rows
        ],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=max(1, (total + page_size - 1) // page_size),
    )


@router.get("/summary", response_model=RevisionSummaryResponse)
async def get_summary(
    principal: ReviewerPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
    filters: Annotated[RevisionFilters, Depends(_filters)],
) -> dict[str, Any]:
    """Count revisions per state and open revisions per aging bucket."""
    return await revisions.revision_summary(db, principal, filters)


@router.post("/items/{item_id}/resolve")
async def resolve(
    item_id: int,
    principal: ResolverPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    item = await revisions.resolve_revision(db, principal, item_id)
    return {"ok": True, "item_id": item.id, "revision_state": item.revision_state}


@router.post("/items/{item_id}/answer", response_model=AnswerResponse)
async def answer(
    item_id: int,
    body: AnswerRequest,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> AnswerResponse:
    """Answer a revision on one of the caller's budget items."""
    created = await revisions.answer_revision(
        db, principal, item_id, body.answer_text, body.quantity, body.cost
    )
    return AnswerResponse.model_validate(created)
