"""Purchase request aggregator.

Direct purchase requests follow their own lifecycle, separate from budget
items:

    Pending -> Forwarded -> Revised | RevisedByUp | Approved

``Approved`` is terminal. Moderators and coordinators decide per item
(``needed`` / ``not-needed``); after every decision batch the request total
is recomputed from the items both roles still consider needed, treating an
undecided item as needed.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import jwt
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import Principal
from budgetflow.config import settings
from budgetflow.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from budgetflow.models.organization import User
from budgetflow.models.purchasing import PurchasingRequest, PurchasingRequestItem, RequestRoute
from budgetflow.services.audit_log import (
    STAGE_ADMIN_APPROVED,
    STAGE_ADMIN_OVERRIDE,
    STAGE_APPROVED,
    STAGE_CREATED,
    STAGE_EDITED,
    STAGE_REVISED,
    STAGE_SENT,
    append_route_entry,
    get_request_route,
    get_routes_for_requests,
)

logger = logging.getLogger(__name__)

ITEM_DECISIONS = ("needed", "not-needed")
REVIEWABLE_STATUSES = ("Pending", "Forwarded", "Revised", "RevisedByUp")
VERIFICATION_ALGORITHM = "HS256"
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class RequestItemInput:
    """A requested line as submitted by the author or moderator."""

    item_name: str
    quantity: Decimal
    unit_price: Decimal
    unit: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class ItemOverride:
    """Admin override of both decisions on one item."""

    item_id: int
    mod_decision: str | None
    coordinator_decision: str | None


@dataclass
class RequestBundle:
    """A request with its items, route and author name."""

    request: PurchasingRequest
    items: list[PurchasingRequestItem] = field(default_factory=list)
    route: list[RequestRoute] = field(default_factory=list)
    author_name: str | None = None


# --- Pure rules ---


def line_total(quantity: Decimal, unit_price: Decimal) -> Decimal:
    return (Decimal(quantity) * Decimal(unit_price)).quantize(CENTS)


def counts_toward_total(mod_decision: str | None, coordinator_decision: str | None) -> bool:
    """An item counts unless either role marked it not-needed."""
    return (mod_decision or "needed") != "not-needed" and (
        coordinator_decision or "needed"
    ) != "not-needed"


def compute_total(items: list[PurchasingRequestItem]) -> Decimal:
    """Sum the totals of items still considered needed, rounded to cents."""
    total = sum(
        (
            Decimal(item.total_price)
            for item in items
            if counts_toward_total(item.mod_decision, item.coordinator_decision)
        ),
        Decimal(0),
    )
    return total.quantize(CENTS)


def decision_status(decisions: list[str | None]) -> str:
    """Decided iff every item carries a non-empty decision."""
    return "Decided" if all(decisions) else "Incomplete"


def normalize_decision(decision: str | None, allow_empty: bool = True) -> str | None:
    if decision is None or decision == "":
        if allow_empty:
            return None
        raise ValidationError("decision is required")
    normalized = decision.strip().lower()
    if normalized not in ITEM_DECISIONS:
        raise ValidationError(f"decision must be one of {', '.join(ITEM_DECISIONS)}")
    return normalized


def validate_items(items: list[RequestItemInput]) -> None:
    if not items:
        raise ValidationError("A request needs at least one item")
    for item in items:
        if not item.item_name or not item.item_name.strip():
            raise ValidationError("item_name is required")
        if item.quantity is None or Decimal(item.quantity) <= 0:
            raise ValidationError(f"quantity of '{item.item_name}' must be positive")
        if item.unit_price is None or Decimal(item.unit_price) < 0:
            raise ValidationError(f"unit_price of '{item.item_name}' must be non-negative")


def mint_verification_token(request_id: int, approved_at: datetime | None = None) -> str:
    """Sign ``{request_id, approvedAt}`` with the verification secret."""
    payload = {
        "request_id": request_id,
        "approvedAt": (approved_at or datetime.now(UTC)).isoformat(),
    }
    return jwt.encode(payload, settings.verification_secret, algorithm=VERIFICATION_ALGORITHM)


def decode_verification_token(token: str) -> dict[str, Any]:
    """Verify a token's signature and return its payload.

    Raises:
        ValidationError: If the token is malformed or the signature is wrong
    """
    try:
        return jwt.decode(token, settings.verification_secret, algorithms=[VERIFICATION_ALGORITHM])
    except jwt.PyJWTError as e:
        raise ValidationError("Invalid verification token") from e


def can_see(principal: Principal, request: PurchasingRequest, author: User) -> bool:
    """Whether a principal may see a request.

    Moderators see requests of authors assigned to them in their own school;
    coordinators see their school; accountant archivers see approved
    requests of their school; authors see their own.
    """
    if principal.role == "admin":
        return True
    if request.user_id == principal.id:
        return True
    if principal.role == "moderator":
        return (
            author.assigned_moderator_id == principal.id
            and author.school_id == principal.school_id
        )
    if principal.role == "coordinator":
        return author.school_id == principal.school_id
    if principal.role == "muhasebeci":
        return request.status == "Approved" and author.school_id == principal.school_id
    return False


# --- Loading ---


async def _load_request(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
    lock: bool = False,
) -> tuple[PurchasingRequest, User]:
    query = (
        select(PurchasingRequest, User)
        .join(User, User.id == PurchasingRequest.user_id)
        .where(PurchasingRequest.request_id == request_id)
    )
    if lock:
        query = query.with_for_update(of=PurchasingRequest)
    row = (await session.execute(query)).first()
    # Out-of-scope requests look exactly like missing ones
    if row is None or not can_see(principal, row[0], row[1]):
        raise NotFoundError(f"Request {request_id} not found")
    return row[0], row[1]


async def _load_items(session: AsyncSession, request_id: int) -> list[PurchasingRequestItem]:
    result = await session.execute(
        select(PurchasingRequestItem)
        .where(PurchasingRequestItem.request_id == request_id)
        .order_by(PurchasingRequestItem.item_id)
    )
    return list(result.scalars().all())


async def _items_by_request(
    session: AsyncSession, request_ids: list[int]
) -> dict[int, list[PurchasingRequestItem]]:
    grouped: dict[int, list[PurchasingRequestItem]] = {rid: [] for rid in request_ids}
    if not request_ids:
        return grouped
    result = await session.execute(
        select(PurchasingRequestItem)
        .where(PurchasingRequestItem.request_id.in_(request_ids))
        .order_by(PurchasingRequestItem.request_id, PurchasingRequestItem.item_id)
    )
    for item in result.scalars().all():
        grouped.setdefault(item.request_id, []).append(item)
    return grouped


def _ensure_editable(request: PurchasingRequest) -> None:
    if request.status == "Approved":
        raise ConflictError(f"Request {request.request_id} is approved and can no longer change")


async def _bundles(
    session: AsyncSession,
    rows: list[tuple[PurchasingRequest, str]],
    with_route: bool = False,
) -> list[RequestBundle]:
    request_ids = [request.request_id for request, _ in rows]
    items = await _items_by_request(session, request_ids)
    routes = await get_routes_for_requests(session, request_ids) if with_route else {}
    return [
        RequestBundle(
            request=request,
            items=items.get(request.request_id, []),
            route=routes.get(request.request_id, []),
            author_name=author_name,
        )
        for request, author_name in rows
    ]


async def get_request(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
) -> RequestBundle:
    """Get a request visible to the caller, with its items and route."""
    request, author = await _load_request(session, principal, request_id)
    return RequestBundle(
        request=request,
        items=await _load_items(session, request_id),
        route=await get_request_route(session, request_id),
        author_name=author.name,
    )


async def recalculate_total(session: AsyncSession, request_id: int) -> None:
    """Recompute ``total_amount`` in a single UPDATE.

    Items count unless either decision is ``not-needed``; NULL decisions
    count as needed.
    """
    needed_sum = (
        select(func.coalesce(func.sum(PurchasingRequestItem.total_price), 0))
        .where(
            PurchasingRequestItem.request_id == request_id,
            func.coalesce(PurchasingRequestItem.mod_decision, "needed") != "not-needed",
            func.coalesce(PurchasingRequestItem.coordinator_decision, "needed") != "not-needed",
        )
        .scalar_subquery()
    )
    await session.execute(
        update(PurchasingRequest)
        .where(PurchasingRequest.request_id == request_id)
        .values(total_amount=func.round(needed_sum, 2), updated_at=func.now())
        .execution_options(synchronize_session=False)
    )


def _new_items(
    request_id: int,
    items: list[RequestItemInput],
    mod_decision: str | None,
) -> list[PurchasingRequestItem]:
    return [
        PurchasingRequestItem(
            request_id=request_id,
            item_name=item.item_name.strip(),
            quantity=Decimal(item.quantity),
            unit=item.unit,
            unit_price=Decimal(item.unit_price).quantize(CENTS),
            description=item.description,
            total_price=line_total(item.quantity, item.unit_price),
            mod_decision=mod_decision,
        )
        for item in items
    ]


# --- Author and moderator ---


async def create_request(
    session: AsyncSession,
    principal: Principal,
    items: list[RequestItemInput],
) -> RequestBundle:
    """Create a purchase request.

    Authors create ``Pending`` requests with undecided items. A moderator
    creating a request starts it ``Forwarded`` with every item already
    marked needed and ``mod_status`` Decided.
    """
    validate_items(items)
    by_moderator = principal.role == "moderator"

    request = PurchasingRequest(
        user_id=principal.id,
        status="Forwarded" if by_moderator else "Pending",
        mod_status="Decided" if by_moderator else None,
        total_amount=Decimal(0),
    )
    session.add(request)
    await session.flush()

    new_items = _new_items(request.request_id, items, "needed" if by_moderator else None)
    session.add_all(new_items)
    request.total_amount = compute_total(new_items)
    await session.flush()

    entry = await append_route_entry(session, request.request_id, STAGE_CREATED, principal.name)
    logger.info(f"Request {request.request_id} created by user {principal.id} ({request.status})")
    return RequestBundle(
        request=request,
        items=new_items,
        route=[entry] if entry else [],
        author_name=principal.name,
    )


async def list_own_requests(session: AsyncSession, principal: Principal) -> list[RequestBundle]:
    result = await session.execute(
        select(PurchasingRequest)
        .where(PurchasingRequest.user_id == principal.id)
        .order_by(PurchasingRequest.created_at.desc())
    )
    rows = [(request, principal.name) for request in result.scalars().all()]
    return await _bundles(session, rows)


async def edit_request(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
    items: list[RequestItemInput],
) -> RequestBundle:
    """Replace a request's items.

    An author's edit sends the request back to ``Pending`` for the moderator;
    a moderator's edit keeps it ``Forwarded``.

    Raises:
        ConflictError: If the request is approved
    """
    validate_items(items)
    request, author = await _load_request(session, principal, request_id, lock=True)
    if principal.role not in ("user", "moderator", "admin") or (
        principal.role == "user" and request.user_id != principal.id
    ):
        raise ForbiddenError("You may not edit this request")
    _ensure_editable(request)

    by_moderator = principal.role == "moderator"
    await session.execute(
        delete(PurchasingRequestItem).where(PurchasingRequestItem.request_id == request_id)
    )
    new_items = _new_items(request_id, items, "needed" if by_moderator else None)
    session.add_all(new_items)

    request.total_amount = compute_total(new_items)
    request.coordinator_status = None
    if by_moderator:
        request.status = "Forwarded"
        request.mod_status = "Decided"
    else:
        request.status = "Pending"
        request.mod_status = None
    await session.flush()

    await append_route_entry(session, request_id, STAGE_EDITED, principal.name)
    return RequestBundle(request=request, items=new_items, author_name=author.name)


async def delete_request(session: AsyncSession, principal: Principal, request_id: int) -> None:
    """Delete a request with its items and route.

    Raises:
        ConflictError: If the request is approved
    """
    request, _ = await _load_request(session, principal, request_id, lock=True)
    if principal.role == "user" and request.user_id != principal.id:
        raise ForbiddenError("You may not delete this request")
    _ensure_editable(request)
    await session.delete(request)
    await session.flush()
    logger.info(f"Request {request_id} deleted by user {principal.id}")


async def list_moderator_requests(
    session: AsyncSession, principal: Principal
) -> list[RequestBundle]:
    """List requests of authors assigned to the moderator in their school."""
    result = await session.execute(
        select(PurchasingRequest, User.name)
        .join(User, User.id == PurchasingRequest.user_id)
        .where(
            User.assigned_moderator_id == principal.id,
            User.school_id == principal.school_id,
        )
        .order_by(PurchasingRequest.created_at.desc())
    )
    return await _bundles(session, [(row[0], row[1]) for row in result])


async def _apply_decisions(
    session: AsyncSession,
    request_id: int,
    decisions: dict[int, str | None],
    column: str,
) -> list[PurchasingRequestItem]:
    if not decisions:
        raise ValidationError("decisions must be a non-empty list")
    items = await _load_items(session, request_id)
    by_id = {item.item_id: item for item in items}
    unknown = [item_id for item_id in decisions if item_id not in by_id]
    if unknown:
        raise NotFoundError(f"Items not found on request {request_id}: {unknown}")
    for item_id, decision in decisions.items():
        setattr(by_id[item_id], column, normalize_decision(decision))
    await session.flush()
    return items


async def set_mod_decisions(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
    decisions: dict[int, str | None],
) -> PurchasingRequest:
    """Record moderator decisions, then refresh ``mod_status`` and the total."""
    request, _ = await _load_request(session, principal, request_id, lock=True)
    _ensure_editable(request)
    items = await _apply_decisions(session, request_id, decisions, "mod_decision")
    request.mod_status = decision_status([item.mod_decision for item in items])
    await recalculate_total(session, request_id)
    await session.refresh(request)
    return request


async def send_request(
    session: AsyncSession, principal: Principal, request_id: int
) -> PurchasingRequest:
    """Forward a request to the coordinator."""
    request, _ = await _load_request(session, principal, request_id, lock=True)
    _ensure_editable(request)
    request.status = "Forwarded"
    await session.flush()
    await append_route_entry(session, request_id, STAGE_SENT, principal.name)
    return request


async def moderator_revise(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
    comment: str,
) -> PurchasingRequest:
    """Send a request back to its author."""
    request, _ = await _load_request(session, principal, request_id, lock=True)
    _ensure_editable(request)
    request.status = "Revised"
    request.mod_status = "Revised"
    request.revise_comment = comment
    await session.flush()
    await append_route_entry(session, request_id, STAGE_REVISED, principal.name)
    return request


# --- Coordinator ---


async def list_coordinator_requests(
    session: AsyncSession, principal: Principal
) -> list[RequestBundle]:
    """List forwarded, approved or coordinator-revised requests of the school."""
    result = await session.execute(
        select(PurchasingRequest, User.name)
        .join(User, User.id == PurchasingRequest.user_id)
        .where(
            User.school_id == principal.school_id,
            PurchasingRequest.status.in_(("Forwarded", "Approved"))
            | (PurchasingRequest.coordinator_status == "Revised"),
        )
        .order_by(PurchasingRequest.created_at.desc())
    )
    return await _bundles(session, [(row[0], row[1]) for row in result])


async def set_coordinator_decisions(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
    decisions: dict[int, str | None],
) -> PurchasingRequest:
    """Record coordinator decisions, then refresh ``coordinator_status`` and the total."""
    request, _ = await _load_request(session, principal, request_id, lock=True)
    _ensure_editable(request)
    items = await _apply_decisions(session, request_id, decisions, "coordinator_decision")
    request.coordinator_status = decision_status([item.coordinator_decision for item in items])
    await recalculate_total(session, request_id)
    await session.refresh(request)
    return request


async def approve_request(
    session: AsyncSession, principal: Principal, request_id: int
) -> PurchasingRequest:
    """Approve a request and mint its verification token."""
    request, _ = await _load_request(session, principal, request_id, lock=True)
    _ensure_editable(request)
    request.verification_token = mint_verification_token(request_id)
    request.status = "Approved"
    await session.flush()
    await append_route_entry(session, request_id, STAGE_APPROVED, principal.name)
    logger.info(f"Request {request_id} approved by coordinator {principal.id}")
    return request


async def coordinator_revise(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
    comment: str,
) -> PurchasingRequest:
    """Send a request back down with the coordinator's comment."""
    request, _ = await _load_request(session, principal, request_id, lock=True)
    _ensure_editable(request)
    request.status = "RevisedByUp"
    request.coordinator_status = "Revised"
    request.revise_comment_by_coordinator = comment
    await session.flush()
    await append_route_entry(session, request_id, STAGE_REVISED, principal.name)
    return request


async def verify_request(session: AsyncSession, request_id: int, token: str) -> dict[str, Any]:
    """Check a verification token against the one stored on the request.

    Returns:
        ``{"valid": True, "payload": ...}``

    Raises:
        NotFoundError: If the request does not exist
        ValidationError: If the token differs from the stored one or its
            signature does not verify
    """
    if not token:
        raise ValidationError("token is required")
    request = await session.get(PurchasingRequest, request_id)
    if request is None:
        raise NotFoundError(f"Request {request_id} not found")
    if not request.verification_token or request.verification_token != token:
        raise ValidationError("Token does not match this request")
    payload = decode_verification_token(token)
    if payload.get("request_id") != request_id:
        raise ValidationError("Token does not match this request")
    return {"valid": True, "payload": payload}


# --- Accountant archiver ---


async def list_approved_requests(
    session: AsyncSession, principal: Principal
) -> list[RequestBundle]:
    """List approved requests of the caller's school, with their route."""
    result = await session.execute(
        select(PurchasingRequest, User.name)
        .join(User, User.id == PurchasingRequest.user_id)
        .where(
            PurchasingRequest.status == "Approved",
            User.school_id == principal.school_id,
        )
        .order_by(PurchasingRequest.updated_at.desc())
    )
    return await _bundles(session, [(row[0], row[1]) for row in result], with_route=True)


async def mark_printed(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
    is_printed: Any,
) -> PurchasingRequest:
    """Mark an approved request as printed. Only ``true`` is accepted."""
    if is_printed is not True:
        raise ValidationError("isPrinted can only be set to true")
    request, _ = await _load_request(session, principal, request_id, lock=True)
    request.is_printed = True
    await session.flush()
    return request


# --- Administrator ---


async def list_reviewable_requests(session: AsyncSession) -> list[RequestBundle]:
    """List every request still under review, with its route."""
    result = await session.execute(
        select(PurchasingRequest, User.name)
        .join(User, User.id == PurchasingRequest.user_id)
        .where(PurchasingRequest.status.in_(REVIEWABLE_STATUSES))
        .order_by(PurchasingRequest.created_at.desc())
    )
    return await _bundles(session, [(row[0], row[1]) for row in result], with_route=True)


async def admin_approve(
    session: AsyncSession, principal: Principal, request_id: int
) -> PurchasingRequest:
    """Force a request to Approved."""
    request, _ = await _load_request(session, principal, request_id, lock=True)
    request.status = "Approved"
    await session.flush()
    await append_route_entry(session, request_id, STAGE_ADMIN_APPROVED, principal.name)
    logger.info(f"Request {request_id} force-approved by admin {principal.id}")
    return request


async def admin_override(
    session: AsyncSession,
    principal: Principal,
    request_id: int,
    overrides: list[ItemOverride],
) -> PurchasingRequest:
    """Overwrite both decisions of the given items and recompute the total.

    The override is logged even when nothing actually changed.
    """
    if not overrides:
        raise ValidationError("items must be a non-empty list")
    request, _ = await _load_request(session, principal, request_id, lock=True)
    items = await _load_items(session, request_id)
    by_id = {item.item_id: item for item in items}
    for override in overrides:
        item = by_id.get(override.item_id)
        if item is None:
            raise NotFoundError(f"Item {override.item_id} not found on request {request_id}")
        item.mod_decision = normalize_decision(override.mod_decision)
        item.coordinator_decision = normalize_decision(override.coordinator_decision)
    await session.flush()
    await recalculate_total(session, request_id)
    await session.refresh(request)
    await append_route_entry(session, request_id, STAGE_ADMIN_OVERRIDE, principal.name)
    return request
