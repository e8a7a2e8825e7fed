"""Tests for post-commit notification fan-out and the collaborator client."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from budgetflow.config import settings
from budgetflow.services.collaborators import CollaboratorClient, CollaboratorError
from budgetflow.services.notifications import (
    broadcast_revision_answer,
    revision_thread_id,
    schedule_stage_waiting,
    stage_waiting_payload,
)
from budgetflow.tasks.stage_notifications import enqueue_stage_waiting


class TestStageWaitingPayload:
    """Tests for stage_waiting_payload."""

    def test_budget_ids_are_sorted_and_unique(self) -> None:
        assert stage_waiting_payload([4, 2, 4, 3]) == {"budgetIds": [2, 3, 4]}

    def test_item_hints_take_precedence(self) -> None:
        hints = [{"item_id": 1, "source_stage": "needed"}]
        assert stage_waiting_payload([4], hints) == hints

    def test_nothing_to_notify(self) -> None:
        assert stage_waiting_payload([]) is None


class TestScheduleStageWaiting:
    """Tests for schedule_stage_waiting."""

    def test_schedules_with_countdown(self) -> None:
        with patch("budgetflow.services.notifications.enqueue_stage_waiting") as task:
            assert schedule_stage_waiting({2, 1}) is True

        task.apply_async.assert_called_once_with(args=[{"budgetIds": [1, 2]}], countdown=settings.notification_delay_seconds)

    def test_broker_failure_is_degraded(self) -> None:
        """Test that a failing broker does not raise."""
        with patch("budgetflow.services.notifications.enqueue_stage_waiting") as task:
            task.apply_async.side_effect = ConnectionError("redis down")
            assert schedule_stage_waiting({1}) is False

    def test_empty_batch_schedules_nothing(self) -> None:
        with patch("budgetflow.services.notifications.enqueue_stage_waiting") as task:
            assert schedule_stage_waiting(set()) is False
        task.apply_async.assert_not_called()


class TestBroadcastRevisionAnswer:
    """Tests for broadcast_revision_answer."""

    def test_thread_id_format(self) -> None:
        assert revision_thread_id(9, 3) == "budget-9-item-3"

    @pytest.mark.asyncio
    async def test_broadcast_failure_is_degraded(self) -> None:
        client = MagicMock()
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        client.broadcast_thread = AsyncMock(side_effect=CollaboratorError("chat down"))

        with patch("budgetflow.services.notifications.CollaboratorClient", return_value=client):
            assert await broadcast_revision_answer(9, 3, {"answer_text": "ok"}) is False

        client.broadcast_thread.assert_awaited_once_with("budget-9-item-3", {"answer_text": "ok"})


class TestCollaboratorClient:
    """Tests for CollaboratorClient."""

    @pytest.mark.asyncio
    async def test_requires_context_manager(self) -> None:
        client = CollaboratorClient()
        with pytest.raises(RuntimeError):
            await client.enqueue_stage_waiting({"budgetIds": [1]})

    @pytest.mark.asyncio
    async def test_posts_to_email_service(self) -> None:
        """Test that stage-waiting payloads go to the email service."""
        client = CollaboratorClient(email_base_url="http://email.test/")
        response = httpx.Response(200, json={"queued": 1}, request=httpx.Request("POST", "http://email.test"))

        async with client:
            with patch.object(client._client, "post", AsyncMock(return_value=response)) as post:
                result = await client.enqueue_stage_waiting({"budgetIds": [1]})

        assert result == {"queued": 1}
        post.assert_awaited_once_with("http://email.test/stage-waiting", json={"budgetIds": [1]})

    @pytest.mark.asyncio
    async def test_http_error_raises_collaborator_error(self) -> None:
        client = CollaboratorClient(chat_base_url="http://chat.test")
        response = httpx.Response(503, text="busy", request=httpx.Request("POST", "http://chat.test"))

        async with client:
            with patch.object(client._client, "post", AsyncMock(return_value=response)):
                with pytest.raises(CollaboratorError):
                    await client.broadcast_thread("budget-1-item-2", {"x": 1})


class TestEnqueueStageWaitingTask:
    """Tests for the stage-waiting Celery task."""

    def test_task_is_registered_by_name(self) -> None:
        assert enqueue_stage_waiting.name == "budgetflow.tasks.stage_notifications.enqueue_stage_waiting"
        assert enqueue_stage_waiting.max_retries == 3

    def test_task_forwards_payload(self) -> None:
        with patch(
            "budgetflow.tasks.stage_notifications._async_enqueue_stage_waiting",
            new_callable=AsyncMock,
            return_value={"queued": 2},
        ) as forward:
            result = enqueue_stage_waiting.run({"budgetIds": [1, 2]})

        assert result == {"queued": 2}
        forward.assert_awaited_once_with({"budgetIds": [1, 2]})
