"""Create budget workflow tables.

Revision ID: 7c1e9a3b5d20
Revises:
Create Date: 2026-10-19

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "7c1e9a3b5d20"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

MONEY = sa.Numeric(12, 2)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create master data, templates, budgets, steps, purchasing and revision tables."""
    # Master data
    op.create_table(
        "schools",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
    )
    op.create_table(
        "departments",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("code", sa.String(50), unique=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "sub_accounts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("code", sa.String(50), unique=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("master_id", sa.Integer, nullable=True),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("role", sa.String(50), nullable=False, server_default="user"),
        sa.Column(
            "school_id",
            sa.Integer,
            sa.ForeignKey("schools.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "department_id",
            sa.Integer,
            sa.ForeignKey("departments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("assigned_moderator_id", sa.Integer, nullable=True),
        sa.Column("budget_mod", sa.Integer, nullable=True),
    )
    op.create_index("ix_users_school_id", "users", ["school_id"])
    op.create_index("ix_users_assigned_moderator_id", "users", ["assigned_moderator_id"])
    op.create_index("ix_users_budget_mod", "users", ["budget_mod"])
    op.create_table(
        "food_eaters",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "school_id",
            sa.Integer,
            sa.ForeignKey("schools.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("eating_number", sa.Integer, nullable=False, server_default="0"),
    )

    # Department assignment sets
    op.create_table(
        "department_schools",
        sa.Column(
            "department_id",
            sa.Integer,
            sa.ForeignKey("departments.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "school_id",
            sa.Integer,
            sa.ForeignKey("schools.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    op.create_table(
        "department_accounts",
        sa.Column(
            "department_id",
            sa.Integer,
            sa.ForeignKey("departments.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "account_id",
            sa.Integer,
            sa.ForeignKey("sub_accounts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    op.create_table(
        "department_controls",
        sa.Column(
            "department_id",
            sa.Integer,
            sa.ForeignKey("departments.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("control_area", sa.String(20), primary_key=True),
    )

    # Control-area ownership
    op.create_table(
        "control_assignments",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "school_id",
            sa.Integer,
            sa.ForeignKey("schools.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            sa.Integer,
            sa.ForeignKey("sub_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("control_area", sa.String(20), nullable=False),
        sa.Column(
            "department_id",
            sa.Integer,
            sa.ForeignKey("departments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "school_id",
            "account_id",
            "control_area",
            name="uq_control_assignments_school_account_area",
        ),
    )
    op.create_index(
        "ix_control_assignments_department_id", "control_assignments", ["department_id"]
    )

    # Workflow templates
    op.create_table(
        "workflow_templates",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        _timestamp("created_at"),
    )
    op.create_table(
        "workflow_template_stages",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "template_id",
            sa.Integer,
            sa.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stage_name", sa.String(100), nullable=False),
        sa.Column("sort_order", sa.Integer, nullable=False),
        sa.Column(
            "owner_department_id",
            sa.Integer,
            sa.ForeignKey("departments.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("allow_revise", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("template_id", "sort_order", name="uq_template_stage_order"),
        sa.CheckConstraint("sort_order >= 1", name="ck_template_stage_order_positive"),
    )
    op.create_index(
        "ix_workflow_template_stages_template_id",
        "workflow_template_stages",
        ["template_id"],
    )
    op.create_table(
        "workflow_bindings",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "school_id",
            sa.Integer,
            sa.ForeignKey("schools.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "account_id",
            sa.Integer,
            sa.ForeignKey("sub_accounts.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "template_id",
            sa.Integer,
            sa.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("priority", sa.Integer, nullable=False, server_default="100"),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_workflow_bindings_lookup",
        "workflow_bindings",
        ["school_id", "account_id", "priority"],
    )

    # Budgets and items
    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "school_id",
            sa.Integer,
            sa.ForeignKey("schools.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("period", sa.String(7), nullable=False),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("request_type", sa.String(50), nullable=False, server_default="new"),
        sa.Column("budget_status", sa.String(50), nullable=False, server_default="draft"),
        _timestamp("created_at"),
        _timestamp("closed_at", nullable=True),
    )
    op.create_index("ix_budgets_user_id", "budgets", ["user_id"])
    op.create_index("ix_budgets_budget_status", "budgets", ["budget_status"])
    op.create_index("ix_budgets_school_period", "budgets", ["school_id", "period"])

    op.create_table(
        "budget_items",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer,
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            sa.Integer,
            sa.ForeignKey("sub_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        # Requested line
        sa.Column("item_id", sa.Integer, nullable=True),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("itemdescription", sa.Text, nullable=True),
        sa.Column("quantity", MONEY, nullable=False, server_default="0"),
        sa.Column("cost", MONEY, nullable=False, server_default="0"),
        sa.Column("unit", sa.String(50), nullable=True),
        sa.Column("period_months", sa.Integer, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        # Logistics review
        sa.Column("storage_status", sa.String(20), nullable=True),
        sa.Column("storage_provided_qty", MONEY, nullable=True),
        sa.Column("storage_reviewed_by", sa.Integer, nullable=True),
        _timestamp("storage_reviewed_at", nullable=True),
        # Needed review
        sa.Column("needed_status", sa.SmallInteger, nullable=True),
        sa.Column("needed_notes", sa.Text, nullable=True),
        sa.Column("needed_noted_by", sa.Integer, nullable=True),
        _timestamp("needed_noted_at", nullable=True),
        # Cost review
        sa.Column("purchase_cost", MONEY, nullable=True),
        sa.Column("purchasing_note", sa.Text, nullable=True),
        sa.Column("purchase_reviewed_by", sa.Integer, nullable=True),
        _timestamp("purchase_reviewed_at", nullable=True),
        # Coordinator decision
        sa.Column("final_purchase_status", sa.String(20), nullable=True),
        sa.Column("final_purchase_cost", MONEY, nullable=True),
        sa.Column("final_quantity", MONEY, nullable=True),
        sa.Column("coordinator_reviewed_by", sa.Integer, nullable=True),
        _timestamp("coordinator_reviewed_at", nullable=True),
        # Workflow position
        sa.Column("workflow_done", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("route_template_id", sa.Integer, nullable=True),
        sa.Column("route_steps_json", sa.JSON, nullable=True),
        sa.Column("current_step_id", sa.Integer, nullable=True),
        sa.Column("current_stage", sa.String(100), nullable=True),
        sa.Column("current_step_order", sa.Integer, nullable=True),
        sa.Column("current_owner_department_id", sa.Integer, nullable=True),
        sa.Column("next_step_id", sa.Integer, nullable=True),
        sa.Column("next_stage", sa.String(100), nullable=True),
        sa.Column("next_owner_department_id", sa.Integer, nullable=True),
        # Revision
        sa.Column("revision_state", sa.String(20), nullable=False, server_default="none"),
        sa.Column("revise_reason", sa.Text, nullable=True),
        _timestamp("revised_at", nullable=True),
        sa.CheckConstraint(
            "needed_status IS NULL OR needed_status IN (0, 1)",
            name="ck_budget_items_needed_status",
        ),
    )
    op.create_index("ix_budget_items_budget", "budget_items", ["budget_id"])
    op.create_index("ix_budget_items_revision_state", "budget_items", ["revision_state"])
    op.create_index(
        "ix_budget_items_current_owner_department_id",
        "budget_items",
        ["current_owner_department_id"],
    )

    # Review steps
    op.create_table(
        "steps",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer,
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "budget_item_id",
            sa.Integer,
            sa.ForeignKey("budget_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("account_id", sa.Integer, nullable=False),
        sa.Column("step_name", sa.String(100), nullable=False),
        sa.Column("sort_order", sa.Integer, nullable=False),
        sa.Column("owner_of_step", sa.Integer, nullable=False),
        sa.Column("allow_revise", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("step_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("is_current", sa.Boolean, nullable=False, server_default=sa.false()),
        _timestamp("updated_at"),
        sa.UniqueConstraint("budget_item_id", "sort_order", name="uq_steps_item_order"),
    )
    # Queues and the completion check only look at current steps
    op.create_index(
        "ix_steps_current_owner",
        "steps",
        ["owner_of_step", "step_name"],
        postgresql_where=sa.text("is_current"),
    )
    op.create_index("ix_steps_budget_current", "steps", ["budget_id", "is_current"])
    # At most one current step per item
    op.create_index(
        "uq_steps_one_current",
        "steps",
        ["budget_item_id"],
        unique=True,
        postgresql_where=sa.text("is_current"),
    )

    # Direct purchase requests
    op.create_table(
        "purchasing_requests",
        sa.Column("request_id", sa.Integer, primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="Pending"),
        sa.Column("mod_status", sa.String(20), nullable=True),
        sa.Column("coordinator_status", sa.String(20), nullable=True),
        sa.Column("revise_comment", sa.Text, nullable=True),
        sa.Column("revise_comment_by_coordinator", sa.Text, nullable=True),
        sa.Column("total_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("is_printed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("verification_token", sa.Text, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_purchasing_requests_user_id", "purchasing_requests", ["user_id"])
    op.create_index(
        "ix_purchasing_requests_status_created",
        "purchasing_requests",
        ["status", "created_at"],
    )
    op.create_table(
        "purchasing_request_items",
        sa.Column("item_id", sa.Integer, primary_key=True),
        sa.Column(
            "request_id",
            sa.Integer,
            sa.ForeignKey("purchasing_requests.request_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("quantity", MONEY, nullable=False),
        sa.Column("unit", sa.String(50), nullable=True),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("total_price", MONEY, nullable=False),
        sa.Column("mod_decision", sa.String(20), nullable=True),
        sa.Column("coordinator_decision", sa.String(20), nullable=True),
    )
    op.create_index(
        "ix_purchasing_request_items_request_id",
        "purchasing_request_items",
        ["request_id"],
    )
    op.create_table(
        "request_routes",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "request_id",
            sa.Integer,
            sa.ForeignKey("purchasing_requests.request_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stage", sa.String(100), nullable=False),
        sa.Column("user", sa.String(255), nullable=False),
        _timestamp("time"),
    )
    op.create_index("ix_request_routes_request_id", "request_routes", ["request_id"])

    # Revisions and item events
    op.create_table(
        "revision_answers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer,
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "item_id",
            sa.Integer,
            sa.ForeignKey("budget_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("answer_text", sa.Text, nullable=False),
        sa.Column("author_id", sa.Integer, nullable=False),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_revision_answers_item_created",
        "revision_answers",
        ["budget_id", "item_id", "created_at"],
    )
    op.create_table(
        "budget_item_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("budget_id", sa.Integer, nullable=False),
        sa.Column(
            "item_id",
            sa.Integer,
            sa.ForeignKey("budget_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.Integer, nullable=True),
        sa.Column("payload", sa.JSON, nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_budget_item_events_item_created",
        "budget_item_events",
        ["item_id", "created_at"],
    )


def downgrade() -> None:
    """Drop budget workflow tables."""
    op.drop_index("ix_budget_item_events_item_created", table_name="budget_item_events")
    op.drop_table("budget_item_events")
    op.drop_index("ix_revision_answers_item_created", table_name="revision_answers")
    op.drop_table("revision_answers")
    op.drop_index("ix_request_routes_request_id", table_name="request_routes")
    op.drop_table("request_routes")
    op.drop_index(
        "ix_purchasing_request_items_request_id", table_name="purchasing_request_items"
    )
    op.drop_table("purchasing_request_items")
    op.drop_index("ix_purchasing_requests_status_created", table_name="purchasing_requests")
    op.drop_index("ix_purchasing_requests_user_id", table_name="purchasing_requests")
    op.drop_table("purchasing_requests")
    op.drop_index("uq_steps_one_current", table_name="steps")
    op.drop_index("ix_steps_budget_current", table_name="steps")
    op.drop_index("ix_steps_current_owner", table_name="steps")
    op.drop_table("steps")
    op.drop_index("ix_budget_items_current_owner_department_id", table_name="budget_items")
    op.drop_index("ix_budget_items_revision_state", table_name="budget_items")
    op.drop_index("ix_budget_items_budget", table_name="budget_items")
    op.drop_table("budget_items")
    op.drop_index("ix_budgets_school_period", table_name="budgets")
    op.drop_index("ix_budgets_budget_status", table_name="budgets")
    op.drop_index("ix_budgets_user_id", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_workflow_bindings_lookup", table_name="workflow_bindings")
    op.drop_table("workflow_bindings")
    op.drop_index(
        "ix_workflow_template_stages_template_id", table_name="workflow_template_stages"
    )
    op.drop_table("workflow_template_stages")
    op.drop_table("workflow_templates")
    op.drop_index("ix_control_assignments_department_id", table_name="control_assignments")
    op.drop_table("control_assignments")
    op.drop_table("department_controls")
    op.drop_table("department_accounts")
    op.drop_table("department_schools")
    op.drop_table("food_eaters")
    op.drop_index("ix_users_budget_mod", table_name="users")
    op.drop_index("ix_users_assigned_moderator_id", table_name="users")
    op.drop_index("ix_users_school_id", table_name="users")
    op.drop_table("users")
    op.drop_table("sub_accounts")
    op.drop_table("departments")
    op.drop_table("schools")
