"""FastAPI routes for direct purchase requests.

This module provides API endpoints for:
- Authors: create, list, read, edit and delete their requests
- Moderators: per-item decisions, send, revise, create on behalf
- Coordinators: per-item decisions, approve, revise
- Accountant archivers: approved requests and the printed flag
- Administrators: review queue, force approve, decision override
- Verification of approval tokens
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, StrictBool
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import CurrentPrincipal, Principal, require_role
from budgetflow.database import get_db
from budgetflow.models.purchasing import PurchasingRequest
from budgetflow.services import purchase_requests
from budgetflow.services.audit_log import get_request_route
from budgetflow.services.purchase_requests import ItemOverride, RequestBundle, RequestItemInput

router = APIRouter(prefix="/purchasing", tags=["purchasing"])

AuthorPrincipal = Annotated[Principal, Depends(require_role("user", "moderator"))]
EditorPrincipal = Annotated[Principal, Depends(require_role("user", "moderator", "admin"))]
ModeratorPrincipal = Annotated[Principal, Depends(require_role("moderator"))]
CoordinatorPrincipal = Annotated[Principal, Depends(require_role("coordinator"))]
ArchiverPrincipal = Annotated[Principal, Depends(require_role("muhasebeci"))]
AdminPrincipal = Annotated[Principal, Depends(require_role("admin"))]


# --- Pydantic Schemas ---


class RequestItemIn(BaseModel):
    """A requested line."""

    item_name: str = Field(min_length=1, description="Item name")
    quantity: Decimal = Field(gt=0, description="Requested quantity")
    unit: str | None = Field(default=None, description="Unit")
    unit_price: Decimal = Field(ge=0, description="Unit price")
    description: str | None = Field(default=None, description="Description")


class RequestItemsBody(BaseModel):
    items: list[RequestItemIn] = Field(min_length=1, description="Requested lines")


class ItemDecision(BaseModel):
    item_id: int = Field(description="Request item ID")
    decision: str | None = Field(default=None, description="needed, not-needed or empty")


class DecisionsBody(BaseModel):
    decisions: list[ItemDecision] = Field(min_length=1)


class ReviseBody(BaseModel):
    comment: str = Field(default="", description="Note for the author")


class PrintedBody(BaseModel):
    is_printed: StrictBool = Field(alias="isPrinted", description="Must be true")

    model_config = {"populate_by_name": True}


class OverrideItem(BaseModel):
    item_id: int = Field(description="Request item ID")
    mod_decision: str | None = Field(default=None, description="needed, not-needed or null")
    coordinator_decision: str | None = Field(
        default=None, description="needed, not-needed or null"
    )


class OverrideBody(BaseModel):
    items: list[OverrideItem] = Field(min_length=1)


class RequestItemResponse(BaseModel):
    item_id: int
    item_name: str
    quantity: Decimal
    unit: str | None
    unit_price: Decimal
    description: str | None
    total_price: Decimal
    mod_decision: str | None
    coordinator_decision: str | None

    model_config = {"from_attributes": True}


class RouteEntryResponse(BaseModel):
    stage: str = Field(description="Route stage label")
    user: str = Field(description="Actor display name")
    time: datetime = Field(description="When the entry was written")

    model_config = {"from_attributes": True}


class RequestResponse(BaseModel):
    """Response schema for a purchase request."""

    request_id: int = Field(description="Request ID")
    user_id: int = Field(description="Author ID")
    author_name: str | None = Field(default=None, description="Author display name")
    status: str = Field(description="Pending, Forwarded, Revised, RevisedByUp or Approved")
    mod_status: str | None = Field(description="Moderator decision status")
    coordinator_status: str | None = Field(description="Coordinator decision status")
    revise_comment: str | None = Field(description="Moderator revise note")
    revise_comment_by_coordinator: str | None = Field(description="Coordinator revise note")
    total_amount: Decimal = Field(description="Total of needed items")
    is_printed: bool = Field(serialization_alias="isPrinted", description="Printed by archiver")
    verification_token: str | None = Field(description="Approval verification token")
    created_at: datetime | None = Field(description="Creation timestamp")
    updated_at: datetime | None = Field(description="Last update timestamp")
    items: list[RequestItemResponse] = Field(default_factory=list)
    route: list[RouteEntryResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


def _header(request: PurchasingRequest, **extra: Any) -> RequestResponse:
    return RequestResponse.model_validate(request).model_copy(update=extra)


def _response(bundle: RequestBundle) -> RequestResponse:
    return _header(
        bundle.request,
        author_name=bundle.author_name,
        items=[RequestItemResponse.model_validate(item) for item in bundle.items],
        route=[RouteEntryResponse.model_validate(entry) for entry in bundle.route],
    )


def _item_inputs(body: RequestItemsBody) -> list[RequestItemInput]:
    return [RequestItemInput(**item.model_dump()) for item in body.items]


def _decisions(body: DecisionsBody) -> dict[int, str | None]:
    return {decision.item_id: decision.decision for decision in body.decisions}


# --- Author ---


@router.post(
    "/requests",
    response_model=RequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_request(
    body: RequestItemsBody,
    principal: AuthorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    """Create a request. Moderators create it already forwarded."""
    bundle = await purchase_requests.create_request(db, principal, _item_inputs(body))
    return _response(bundle)


@router.get("/requests/mine", response_model=list[RequestResponse])
async def list_my_requests(
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[RequestResponse]:
    bundles = await purchase_requests.list_own_requests(db, principal)
    return [_response(bundle) for bundle in bundles]


@router.get("/requests/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: int,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    """Get a request within the caller's scope."""
    return _response(await purchase_requests.get_request(db, principal, request_id))


@router.put("/requests/{request_id}", response_model=RequestResponse)
async def edit_request(
    request_id: int,
    body: RequestItemsBody,
    principal: EditorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    """Replace a request's items. Approved requests cannot be edited."""
    bundle = await purchase_requests.edit_request(db, principal, request_id, _item_inputs(body))
    return _response(bundle)


@router.delete("/requests/{request_id}")
async def delete_request(
    request_id: int,
    principal: EditorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, bool]:
    """Delete a request. Approved requests cannot be deleted."""
    await purchase_requests.delete_request(db, principal, request_id)
    return {"ok": True}


@router.get("/requests/{request_id}/route", response_model=list[RouteEntryResponse])
async def get_route(
    request_id: int,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[RouteEntryResponse]:
    await purchase_requests.get_request(db, principal, request_id)
    return [RouteEntryResponse.model_validate(entry) for entry in await get_request_route(db, request_id)]


# --- Moderator ---


@router.get("/moderator/requests", response_model=list[RequestResponse])
async def list_moderator_requests(
    principal: ModeratorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[RequestResponse]:
    """List requests of authors assigned to the moderator."""
    bundles = await purchase_requests.list_moderator_requests(db, principal)
    return [_response(bundle) for bundle in bundles]


@router.patch("/moderator/requests/{request_id}/decisions", response_model=RequestResponse)
async def patch_mod_decisions(
    request_id: int,
    body: DecisionsBody,
    principal: ModeratorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    request = await purchase_requests.set_mod_decisions(db, principal, request_id, _decisions(body))
    return _header(request)


@router.patch("/moderator/requests/{request_id}/send", response_model=RequestResponse)
async def send_request(
    request_id: int,
    principal: ModeratorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    return _header(await purchase_requests.send_request(db, principal, request_id))


@router.patch("/moderator/requests/{request_id}/revise", response_model=RequestResponse)
async def moderator_revise(
    request_id: int,
    body: ReviseBody,
    principal: ModeratorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    request = await purchase_requests.moderator_revise(db, principal, request_id, body.comment)
    return _header(request)


# --- Coordinator ---


@router.get("/coordinator/requests", response_model=list[RequestResponse])
async def list_coordinator_requests(
    principal: CoordinatorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[RequestResponse]:
    bundles = await purchase_requests.list_coordinator_requests(db, principal)
    return [_response(bundle) for bundle in bundles]


@router.patch("/coordinator/requests/{request_id}/decisions", response_model=RequestResponse)
async def patch_coordinator_decisions(
    request_id: int,
    body: DecisionsBody,
    principal: CoordinatorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    request = await purchase_requests.set_coordinator_decisions(
        db, principal, request_id, _decisions(body)
    )
    return _header(request)


@router.patch("/coordinator/requests/{request_id}/approve", response_model=RequestResponse)
async def approve_request(
    request_id: int,
    principal: CoordinatorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    """Approve a request and mint its verification token."""
    return _header(await purchase_requests.approve_request(db, principal, request_id))


@router.patch("/coordinator/requests/{request_id}/revise", response_model=RequestResponse)
async def coordinator_revise(
    request_id: int,
    body: ReviseBody,
    principal: CoordinatorPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    request = await purchase_requests.coordinator_revise(db, principal, request_id, body.comment)
    return _header(request)


@router.get("/verify-request")
async def verify_request(
    db: Annotated[AsyncSession, Depends(get_db)],
    request_id: int = Query(..., description="Request ID"),
    token: str = Query(..., description="Verification token"),
) -> dict[str, Any]:
    """Check that a verification token belongs to the approved request."""
    return await purchase_requests.verify_request(db, request_id, token)


# --- Accountant archiver ---


@router.get("/muhasebeci/requests", response_model=list[RequestResponse])
async def list_approved_requests(
    principal: ArchiverPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[RequestResponse]:
    bundles = await purchase_requests.list_approved_requests(db, principal)
    return [_response(bundle) for bundle in bundles]


@router.patch("/muhasebeci/requests/{request_id}/printed", response_model=RequestResponse)
async def mark_printed(
    request_id: int,
    body: PrintedBody,
    principal: ArchiverPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    request = await purchase_requests.mark_printed(db, principal, request_id, body.is_printed)
    return _header(request)


# --- Administrator ---


@router.get("/admin/requests", response_model=list[RequestResponse])
async def list_reviewable_requests(
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[RequestResponse]:
    """List every request still under review, with its route."""
    bundles = await purchase_requests.list_reviewable_requests(db)
    return [_response(bundle) for bundle in bundles]


@router.patch("/admin/requests/{request_id}/approve", response_model=RequestResponse)
async def admin_approve(
    request_id: int,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    return _header(await purchase_requests.admin_approve(db, principal, request_id))


@router.patch("/admin/requests/{request_id}/override", response_model=RequestResponse)
async def admin_override(
    request_id: int,
    body: OverrideBody,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RequestResponse:
    """Overwrite moderator and coordinator decisions of the given items."""
    overrides = [ItemOverride(**item.model_dump()) for item in body.items]
    request = await purchase_requests.admin_override(db, principal, request_id, overrides)
    return _header(request)
