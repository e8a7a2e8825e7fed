"""Append-only audit trails for purchase requests and budget items.

This module provides functions for:
- Appending purchase-request route entries ("Başlatan", "Onaylandı", ...)
- Recording budget item decision events
- Reading both trails back in chronological order

Appends run inside a SAVEPOINT. When one fails after the primary mutation
succeeded, the savepoint is rolled back, a warning is logged and the caller
carries on: the mutation is still reported as successful.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.models.purchasing import RequestRoute
from budgetflow.models.revision import BudgetItemEvent

logger = logging.getLogger(__name__)

# Route stage labels, stored byte-exact
STAGE_CREATED = "Başlatan"
STAGE_EDITED = "Değişiklik Yapıldı"
STAGE_SENT = "Talep edildi"
STAGE_REVISED = "Revize edildi"
STAGE_APPROVED = "Onaylandı"
STAGE_ADMIN_APPROVED = "Admin Approved"
STAGE_ADMIN_OVERRIDE = "Admin Override"


async def append_route_entry(
    session: AsyncSession,
    request_id: int,
    stage: str,
    user: str,
    time: datetime | None = None,
) -> RequestRoute | None:
    """Append an entry to a purchase request's route log.

    Args:
        session: Database session
        request_id: Purchase request id
        stage: Stage label, stored exactly as given
        user: Display name of the actor
        time: Entry timestamp (defaults to now)

    Returns:
        The created entry, or None if the append failed
    """
    entry = RequestRoute(
        request_id=request_id,
        stage=stage,
        user=user,
        time=time or datetime.now(UTC),
    )
    try:
        async with session.begin_nested():
            session.add(entry)
    except SQLAlchemyError:
        logger.warning(
            "Route log append failed for request %s (stage=%s)", request_id, stage, exc_info=True
        )
        return None
    return entry


async def get_request_route(session: AsyncSession, request_id: int) -> list[RequestRoute]:
    """Get a purchase request's route log, oldest first."""
    result = await session.execute(
        select(RequestRoute)
        .where(RequestRoute.request_id == request_id)
        .order_by(RequestRoute.time, RequestRoute.id)
    )
    return list(result.scalars().all())


async def get_routes_for_requests(
    session: AsyncSession, request_ids: list[int]
) -> dict[int, list[RequestRoute]]:
    """Get route logs for several requests, keyed by request id."""
    routes: dict[int, list[RequestRoute]] = {request_id: [] for request_id in request_ids}
    if not request_ids:
        return routes
    result = await session.execute(
        select(RequestRoute)
        .where(RequestRoute.request_id.in_(request_ids))
        .order_by(RequestRoute.time, RequestRoute.id)
    )
    for entry in result.scalars().all():
        routes.setdefault(entry.request_id, []).append(entry)
    return routes


async def log_item_event(
    session: AsyncSession,
    budget_id: int,
    item_id: int,
    event_type: str,
    actor_id: int | None,
    payload: dict[str, Any] | None = None,
) -> BudgetItemEvent | None:
    """Record a decision taken on a budget item.

    Returns:
        The created event, or None if the append failed
    """
    event = BudgetItemEvent(
        budget_id=budget_id,
        item_id=item_id,
        event_type=event_type,
        actor_id=actor_id,
        payload=payload,
        created_at=datetime.now(UTC),
    )
    try:
        async with session.begin_nested():
            session.add(event)
    except SQLAlchemyError:
        logger.warning(
            "Item event append failed for item %s (%s)", item_id, event_type, exc_info=True
        )
        return None
    return event


async def get_item_events(session: AsyncSession, item_id: int) -> list[BudgetItemEvent]:
    """Get a budget item's event trail, oldest first."""
    result = await session.execute(
        select(BudgetItemEvent)
        .where(BudgetItemEvent.item_id == item_id)
        .order_by(BudgetItemEvent.created_at, BudgetItemEvent.id)
    )
    return list(result.scalars().all())
