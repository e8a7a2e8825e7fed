"""Tests for workflow, assignment and application-level API behavior."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import Principal, get_principal
from budgetflow.database import get_db
from budgetflow.exceptions import ConflictError, ForbiddenError
from budgetflow.main import app
from budgetflow.models.budget import Budget, BudgetItem
from budgetflow.services.budgets import BudgetBundle
from budgetflow.services.workflow_engine import BatchResult

LOGISTICS_STAFF = Principal(id=50, name="Depo", role="reviewer", department_id=11)
AUTHOR = Principal(id=1, name="Author", role="user", school_id=5)
ADMIN = Principal(id=99, name="Admin", role="admin")


def override_dependencies(principal: Principal | None) -> AsyncMock:
    mock_session = AsyncMock(spec=AsyncSession)

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield mock_session

    app.dependency_overrides[get_db] = override_get_db
    if principal is not None:
        app.dependency_overrides[get_principal] = lambda: principal
    return mock_session


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_health_check(self) -> None:
        client = TestClient(app)
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "healthy"}


class TestAuthentication:
    """Tests for bearer token handling at the API boundary."""

    def test_missing_token_is_unauthorized(self) -> None:
        override_dependencies(None)
        try:
            client = TestClient(app)
            response = client.get("/workflow/stage-counts")

            assert response.status_code == status.HTTP_401_UNAUTHORIZED
            assert response.json() == {"error": "Missing bearer token"}
        finally:
            app.dependency_overrides.clear()

    def test_non_department_caller_is_forbidden(self) -> None:
        override_dependencies(Principal(id=1, name="Author", role="user"))
        try:
            client = TestClient(app)
            response = client.get("/workflow/stage-counts")

            assert response.status_code == status.HTTP_403_FORBIDDEN
            assert "error" in response.json()
        finally:
            app.dependency_overrides.clear()


class TestLogisticsBatchEndpoint:
    """Tests for PATCH /workflow/stages/logistics."""

    def test_batch_result_is_returned(self) -> None:
        """Test that a successful batch reports advanced items."""
        override_dependencies(LOGISTICS_STAFF)
        result = BatchResult(stage="logistics", updated=[1], advanced=[1], budget_ids={9})

        try:
            with patch(
                "budgetflow.api.workflow.workflow_engine.decide_logistics",
                new_callable=AsyncMock,
                return_value=result,
            ) as decide:
                client = TestClient(app)
                response = client.patch(
                    "/workflow/stages/logistics",
                    json={"items": [{"item_id": 1, "provided_qty": "5"}]},
                )

            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["ok"] is True
            assert data["advanced"] == [1]
            assert data["updated"] == 1
            decisions = decide.await_args.args[2]
            assert decisions[0].item_id == 1
        finally:
            app.dependency_overrides.clear()

    def test_empty_batch_is_bad_request(self) -> None:
        override_dependencies(LOGISTICS_STAFF)
        try:
            client = TestClient(app)
            response = client.patch("/workflow/stages/logistics", json={"items": []})

            assert response.status_code == status.HTTP_400_BAD_REQUEST
            assert response.json()["error"].startswith("items:")
        finally:
            app.dependency_overrides.clear()

    def test_foreign_step_is_forbidden(self) -> None:
        """Test that domain errors render as error bodies with their status."""
        override_dependencies(LOGISTICS_STAFF)
        try:
            with patch(
                "budgetflow.api.workflow.workflow_engine.decide_logistics",
                new_callable=AsyncMock,
                side_effect=ForbiddenError("Item 1 is owned by another department"),
            ):
                client = TestClient(app)
                response = client.patch(
                    "/workflow/stages/logistics", json={"items": [{"item_id": 1}]}
                )

            assert response.status_code == status.HTTP_403_FORBIDDEN
            assert response.json() == {"error": "Item 1 is owned by another department"}
        finally:
            app.dependency_overrides.clear()


class TestSyncEndpoint:
    """Tests for POST /assignments/departments/{id}/sync."""

    def test_strict_conflict_returns_conflicting_keys(self) -> None:
        override_dependencies(ADMIN)
        conflict = ConflictError(
            "Department 1 overlaps existing ownership",
            conflicts=[{"school_id": 1, "account_id": 100, "control_area": "logistics", "department_id": 2}],
        )
        try:
            with patch(
                "budgetflow.api.assignments.assignment_resolver.sync_for_department",
                new_callable=AsyncMock,
                side_effect=conflict,
            ):
                client = TestClient(app)
                response = client.post("/assignments/departments/1/sync?mode=strict")

            assert response.status_code == status.HTTP_409_CONFLICT
            assert response.json()["conflicts"][0]["department_id"] == 2
        finally:
            app.dependency_overrides.clear()

    def test_sync_requires_admin(self) -> None:
        override_dependencies(LOGISTICS_STAFF)
        try:
            client = TestClient(app)
            response = client.post("/assignments/departments/1/sync")

            assert response.status_code == status.HTTP_403_FORBIDDEN
        finally:
            app.dependency_overrides.clear()


class TestBudgetDraftEndpoints:
    """Tests for the /workflow/budgets draft endpoints."""

    def test_create_draft_budget(self) -> None:
        override_dependencies(AUTHOR)
        budget = Budget(
            id=9,
            user_id=1,
            school_id=5,
            period="03-2026",
            title="Merkez",
            request_type="new",
            budget_status="draft",
            created_at=datetime(2026, 2, 20, tzinfo=UTC),
        )
        try:
            with patch(
                "budgetflow.api.workflow.budgets.create_budget",
                new_callable=AsyncMock,
                return_value=budget,
            ) as create:
                client = TestClient(app)
                response = client.post("/workflow/budgets", json={"period": "03-2026"})

            assert response.status_code == status.HTTP_201_CREATED
            data = response.json()
            assert data["id"] == 9
            assert data["budget_status"] == "draft"
            assert data["items"] == []
            assert create.await_args.args[2] == "03-2026"
        finally:
            app.dependency_overrides.clear()

    def test_own_budgets_include_items(self) -> None:
        override_dependencies(AUTHOR)
        budget = Budget(
            id=9,
            user_id=1,
            school_id=5,
            period="03-2026",
            title="Merkez",
            request_type="new",
            budget_status="draft",
        )
        line = BudgetItem(
            id=40,
            budget_id=9,
            account_id=100,
            item_name="Flour",
            quantity=Decimal("4"),
            cost=Decimal("2.00"),
            period_months=1,
        )
        try:
            with patch(
                "budgetflow.api.workflow.budgets.list_own_budgets",
                new_callable=AsyncMock,
                return_value=[BudgetBundle(budget=budget, items=[line])],
            ):
                client = TestClient(app)
                response = client.get("/workflow/budgets/mine")

            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert len(data) == 1
            assert data[0]["items"][0]["item_name"] == "Flour"
        finally:
            app.dependency_overrides.clear()

    def test_add_item_passes_line_fields(self) -> None:
        override_dependencies(AUTHOR)
        line = BudgetItem(
            id=41,
            budget_id=9,
            account_id=100,
            item_name="Sugar",
            quantity=Decimal("3"),
            cost=Decimal("1.50"),
            period_months=1,
        )
        try:
            with patch(
                "budgetflow.api.workflow.budgets.add_item",
                new_callable=AsyncMock,
                return_value=line,
            ) as add:
                client = TestClient(app)
                response = client.post(
                    "/workflow/budgets/9/items",
                    json={"account_id": 100, "item_name": "Sugar", "quantity": "3", "cost": "1.50"},
                )

            assert response.status_code == status.HTTP_201_CREATED
            assert response.json()["id"] == 41
            item_input = add.await_args.args[3]
            assert item_input.quantity == Decimal("3")
            assert item_input.account_id == 100
        finally:
            app.dependency_overrides.clear()

    def test_zero_quantity_is_bad_request(self) -> None:
        override_dependencies(AUTHOR)
        try:
            client = TestClient(app)
            response = client.post(
                "/workflow/budgets/9/items",
                json={"account_id": 100, "item_name": "Sugar", "quantity": "0", "cost": "1"},
            )

            assert response.status_code == status.HTTP_400_BAD_REQUEST
        finally:
            app.dependency_overrides.clear()

    def test_editing_submitted_budget_conflicts(self) -> None:
        override_dependencies(AUTHOR)
        try:
            with patch(
                "budgetflow.api.workflow.budgets.delete_item",
                new_callable=AsyncMock,
                side_effect=ConflictError("Budget 9 is already in_review"),
            ):
                client = TestClient(app)
                response = client.delete("/workflow/budgets/9/items/40")

            assert response.status_code == status.HTTP_409_CONFLICT
            assert response.json() == {"error": "Budget 9 is already in_review"}
        finally:
            app.dependency_overrides.clear()
