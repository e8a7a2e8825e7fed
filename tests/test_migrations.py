"""Tests for Alembic migrations."""

import importlib.util
from pathlib import Path

import budgetflow.models  # noqa: F401
from budgetflow.database import Base

MIGRATION = (
    Path(__file__).resolve().parent.parent
    / "migrations"
    / "versions"
    / "7c1e9a3b5d20_create_budget_workflow_tables.py"
)


def _load_migration():
    spec = importlib.util.spec_from_file_location("budget_workflow_migration", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestBudgetWorkflowMigration:
    """Tests for the create_budget_workflow_tables migration (7c1e9a3b5d20)."""

    def test_is_the_root_revision(self) -> None:
        """Test that the migration starts the revision history."""
        module = _load_migration()
        assert module.revision == "7c1e9a3b5d20"
        assert module.down_revision is None

    def test_creates_every_model_table(self) -> None:
        """Test that every mapped table is created by the migration."""
        source = MIGRATION.read_text(encoding="utf-8")
        for table_name in Base.metadata.tables:
            assert f'"{table_name}"' in source, f"{table_name} missing from migration"

    def test_steps_cascade_on_item_delete(self) -> None:
        """Test that steps are removed with their budget item."""
        step_fks = Base.metadata.tables["steps"].c.budget_item_id.foreign_keys
        assert {fk.ondelete for fk in step_fks} == {"CASCADE"}

    def test_money_columns_are_numeric_12_2(self) -> None:
        """Test that amounts are stored as NUMERIC(12,2)."""
        items = Base.metadata.tables["budget_items"]
        for column in ("quantity", "cost", "purchase_cost", "final_purchase_cost"):
            assert items.c[column].type.precision == 12
            assert items.c[column].type.scale == 2
        requests = Base.metadata.tables["purchasing_requests"]
        assert requests.c.total_amount.type.scale == 2
