"""Post-commit notification fan-out.

Workflow batches call these after their transaction committed. Failures here
never change the caller's response; they are logged as degraded side effects.
"""

import logging
from collections.abc import Iterable
from typing import Any

from budgetflow.config import settings
from budgetflow.services.collaborators import CollaboratorClient, CollaboratorError
from budgetflow.tasks.stage_notifications import enqueue_stage_waiting

logger = logging.getLogger(__name__)


def stage_waiting_payload(
    budget_ids: Iterable[int],
    item_hints: list[dict[str, Any]] | None = None,
) -> dict[str, Any] | list[dict[str, Any]] | None:
    """Build the email service payload for a committed batch.

    Needed-stage batches send per-item hints so the email service can limit
    recipients to the accounts involved; every other batch sends the unique
    budget ids. Returns None when there is nothing to notify.
    """
    if item_hints:
        return item_hints
    unique_ids = sorted({int(budget_id) for budget_id in budget_ids})
    if not unique_ids:
        return None
    return {"budgetIds": unique_ids}


def schedule_stage_waiting(
    budget_ids: Iterable[int],
    item_hints: list[dict[str, Any]] | None = None,
) -> bool:
    """Schedule the stage-waiting notification after a short delay.

    Returns:
        True if a notification was scheduled
    """
    payload = stage_waiting_payload(budget_ids, item_hints)
    if payload is None:
        return False
    try:
        enqueue_stage_waiting.apply_async(
            args=[payload],
            countdown=settings.notification_delay_seconds,
        )
    except Exception:
        # Broker outages must not fail a committed workflow batch
        logger.warning("Could not schedule stage-waiting notification for %s", payload, exc_info=True)
        return False
    return True


def revision_thread_id(budget_id: int, item_id: int) -> str:
    return f"budget-{budget_id}-item-{item_id}"


async def broadcast_revision_answer(
    budget_id: int,
    item_id: int,
    payload: dict[str, Any],
) -> bool:
    """Push a revision answer to the item's chat thread.

    Returns:
        True if the chat service accepted the broadcast
    """
    thread_id = revision_thread_id(budget_id, item_id)
    try:
        async with CollaboratorClient() as client:
            await client.broadcast_thread(thread_id, payload)
    except CollaboratorError:
        logger.warning("Chat broadcast to %s failed", thread_id, exc_info=True)
        return False
    return True
