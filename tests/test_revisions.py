"""Tests for the revision ledger."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import Principal
from budgetflow.exceptions import ConflictError, NotFoundError, ValidationError
from budgetflow.models.budget import Budget, BudgetItem
from budgetflow.services.revisions import (
    RevisionFilters,
    aging_bucket,
    aging_days,
    answer_revision,
    list_revisions,
    resolve_revision,
    revision_summary,
)

AUTHOR = Principal(id=1, name="Author", role="user", school_id=5)
MODERATOR = Principal(id=20, name="Moderator", role="moderator", school_id=5)


def create_item(revision_state: str = "pending") -> BudgetItem:
    return BudgetItem(
        id=3,
        budget_id=9,
        account_id=100,
        item_name="Flour",
        quantity=Decimal("4"),
        cost=Decimal("2.00"),
        revision_state=revision_state,
        revised_at=datetime.now(UTC) - timedelta(days=3),
    )


def create_budget(user_id: int = 1) -> Budget:
    return Budget(id=9, user_id=user_id, school_id=5, period="01-2026", budget_status="in_review")


def item_row_result(item: BudgetItem, budget: Budget) -> MagicMock:
    result = MagicMock()
    result.first.return_value = (item, budget)
    return result


class TestAging:
    """Tests for aging helpers."""

    def test_aging_prefers_latest_answer(self) -> None:
        now = datetime(2026, 5, 10, tzinfo=UTC)
        assert aging_days(now, now - timedelta(days=1), now - timedelta(days=9)) == 1

    def test_aging_falls_back_to_revised_at(self) -> None:
        now = datetime(2026, 5, 10, tzinfo=UTC)
        assert aging_days(now, None, now - timedelta(days=9)) == 9

    def test_aging_counts_calendar_days(self) -> None:
        now = datetime(2026, 5, 11, 1, 0, tzinfo=UTC)
        assert aging_days(now, None, datetime(2026, 5, 10, 23, 0, tzinfo=UTC)) == 1
        assert aging_days(now, None, datetime(2026, 5, 11, 0, 30, tzinfo=UTC)) == 0

    def test_aging_without_activity(self) -> None:
        assert aging_days(datetime.now(UTC), None, None) is None

    @pytest.mark.parametrize(
        ("days", "bucket"),
        [(0, "0-1"), (1, "0-1"), (2, "2-3"), (3, "2-3"), (4, "4-7"), (6, "4-7"), (7, ">7"), (30, ">7")],
    )
    def test_aging_bucket(self, days: int, bucket: str) -> None:
        assert aging_bucket(days) == bucket


class TestListing:
    """Tests for revision listing and summary."""

    @pytest.mark.asyncio
    async def test_list_returns_rows_with_aging(self) -> None:
        item = create_item()
        session = AsyncMock(spec=AsyncSession)
        count_result = MagicMock()
        count_result.scalar.return_value = 1
        rows_result = MagicMock()
        rows_result.__iter__.return_value = iter([(item, "01-2026", 5, None, None)])
        session.execute.side_effect = [count_result, rows_result]

        rows, total = await list_revisions(session, MODERATOR, RevisionFilters(), page_size=500)

        assert total == 1
        assert rows[0].item is item
        assert rows[0].aging_days == 3

    @pytest.mark.asyncio
    async def test_unknown_state_is_invalid(self) -> None:
        with pytest.raises(ValidationError):
            await list_revisions(AsyncMock(spec=AsyncSession), MODERATOR, RevisionFilters(state="open"))

    @pytest.mark.asyncio
    async def test_summary_counts_open_items_by_age(self) -> None:
        """Test that resolved items are counted by state but not aged."""
        now = datetime.now(UTC)
        session = AsyncMock(spec=AsyncSession)
        result = MagicMock()
        result.__iter__.return_value = iter(
            [
                ("pending", now - timedelta(days=1), None),
                ("answered", now - timedelta(days=10), now - timedelta(days=5)),
                ("resolved", now - timedelta(days=30), None),
            ]
        )
        session.execute.return_value = result

        summary = await revision_summary(session, MODERATOR, RevisionFilters())

        assert summary["by_state"] == {"pending": 1, "answered": 1, "resolved": 1}
        assert summary["aging"] == {"0-1": 1, "2-3": 0, "4-7": 1, ">7": 0}


class TestAnswerRevision:
    """Tests for answer_revision and resolve_revision."""

    @pytest.mark.asyncio
    async def test_answer_updates_item_and_broadcasts(self) -> None:
        """Test that an answer applies corrections and reaches the chat thread."""
        item = create_item()
        session = AsyncMock(spec=AsyncSession)
        session.execute.return_value = item_row_result(item, create_budget())

        with (
            patch("budgetflow.services.revisions.log_item_event", new_callable=AsyncMock),
            patch(
                "budgetflow.services.revisions.broadcast_revision_answer", new_callable=AsyncMock
            ) as broadcast,
        ):
            answer = await answer_revision(session, AUTHOR, 3, " Fixed quantity ", quantity="6")

        assert answer.answer_text == "Fixed quantity"
        assert item.quantity == Decimal("6.00")
        assert item.revision_state == "answered"
        session.commit.assert_awaited_once()
        assert broadcast.await_args.args[:2] == (9, 3)

    @pytest.mark.asyncio
    async def test_answer_requires_text(self) -> None:
        with pytest.raises(ValidationError):
            await answer_revision(AsyncMock(spec=AsyncSession), AUTHOR, 3, "   ")

    @pytest.mark.asyncio
    async def test_answer_rejects_negative_cost(self) -> None:
        with pytest.raises(ValidationError):
            await answer_revision(AsyncMock(spec=AsyncSession), AUTHOR, 3, "ok", cost="-2")

    @pytest.mark.asyncio
    async def test_answer_on_someone_elses_item_is_not_found(self) -> None:
        session = AsyncMock(spec=AsyncSession)
        session.execute.return_value = item_row_result(create_item(), create_budget(user_id=2))

        with pytest.raises(NotFoundError):
            await answer_revision(session, AUTHOR, 3, "ok")

    @pytest.mark.asyncio
    async def test_answer_requires_pending_revision(self) -> None:
        session = AsyncMock(spec=AsyncSession)
        session.execute.return_value = item_row_result(create_item("resolved"), create_budget())

        with pytest.raises(ConflictError):
            await answer_revision(session, AUTHOR, 3, "ok")

    @pytest.mark.asyncio
    async def test_resolve_closes_open_revision(self) -> None:
        item = create_item("answered")
        session = AsyncMock(spec=AsyncSession)
        session.execute.return_value = item_row_result(item, create_budget())

        with patch("budgetflow.services.revisions.log_item_event", new_callable=AsyncMock):
            await resolve_revision(session, MODERATOR, 3)

        assert item.revision_state == "resolved"
