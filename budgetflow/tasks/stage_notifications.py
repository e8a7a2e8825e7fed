"""Celery task delivering stage-waiting notifications to the email service."""

import asyncio
import logging
from typing import Any

from budgetflow.celery_app import celery_app
from budgetflow.services.collaborators import CollaboratorClient, CollaboratorError

logger = logging.getLogger(__name__)


async def _async_enqueue_stage_waiting(
    payload: dict[str, Any] | list[dict[str, Any]],
) -> dict[str, Any]:
    async with CollaboratorClient() as client:
        return await client.enqueue_stage_waiting(payload)


@celery_app.task(
    bind=True,
    name="budgetflow.tasks.stage_notifications.enqueue_stage_waiting",
    max_retries=3,
    default_retry_delay=30,
    autoretry_for=(CollaboratorError,),
)
def enqueue_stage_waiting(self: Any, payload: dict[str, Any] | list[dict[str, Any]]) -> dict[str, Any]:
    """Forward a coalesced stage-waiting notification to the email service.

    Scheduled with a short countdown after a workflow batch commits, so
    rapid successive commits on the same budgets reach the email service
    close together and it can de-duplicate them.

    Returns:
        The email service's response body
    """
    logger.info("Enqueueing stage-waiting notification: %s", payload)
    try:
        return asyncio.run(_async_enqueue_stage_waiting(payload))
    except CollaboratorError as e:
        logger.exception("Stage-waiting notification failed")
        raise self.retry(exc=e) from e
