"""expense definitions, matches and budget assignments

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None


RECURRENCE_TYPES = ("weekly", "fortnightly", "monthly", "quarterly", "yearly", "one-time")


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("partnership_id", sa.Integer(), nullable=False),
        sa.Column("external_id", sa.String(length=64), nullable=True, unique=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("settled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_transactions_partnership_created",
        "transactions",
        ["partnership_id", "created_at"],
    )

    op.create_table(
        "expense_definitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("partnership_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category_name", sa.String(length=100), nullable=False),
        sa.Column("expected_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "recurrence_type",
            sa.Enum(*RECURRENCE_TYPES, name="recurrencetype"),
            nullable=False,
        ),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "auto_detected", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("merchant_name", sa.String(length=200), nullable=True),
        sa.Column("match_pattern", sa.String(length=200), nullable=True),
        sa.Column("linked_transaction_id", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "expected_amount_cents >= 0", name="ck_expense_amount_positive"
        ),
    )
    op.create_index(
        "ix_expense_partnership_active",
        "expense_definitions",
        ["partnership_id", "is_active"],
    )

    op.create_table(
        "expense_matches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "expense_definition_id",
            sa.Integer(),
            sa.ForeignKey("expense_definitions.id"),
            nullable=False,
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("match_confidence", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("matched_by", sa.String(length=64), nullable=True),
        sa.Column("for_period", sa.Date(), nullable=True),
        sa.Column("matched_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "match_confidence >= 0.0 AND match_confidence <= 1.0",
            name="ck_expense_match_confidence_range",
        ),
    )
    op.create_index(
        "ix_expense_matches_period",
        "expense_matches",
        ["expense_definition_id", "for_period"],
    )

    op.create_table(
        "budget_assignments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("partnership_id", sa.Integer(), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column(
            "assignment_type",
            sa.Enum("category", "goal", "asset", name="assignmenttype"),
            nullable=False,
        ),
        sa.Column(
            "budget_view",
            sa.Enum("individual", "shared", name="budgetview"),
            nullable=False,
            server_default="shared",
        ),
        sa.Column("budget_id", sa.Integer(), nullable=True),
        sa.Column("category_name", sa.String(length=100), nullable=True),
        sa.Column("subcategory_name", sa.String(length=100), nullable=True),
        sa.Column("goal_id", sa.Integer(), nullable=True),
        sa.Column("asset_id", sa.Integer(), nullable=True),
        sa.Column("assigned_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "(CASE WHEN category_name IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN goal_id IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN asset_id IS NOT NULL THEN 1 ELSE 0 END) = 1",
            name="ck_budget_assignment_single_target",
        ),
    )
    op.create_index(
        "ix_budget_assignment_partnership_period",
        "budget_assignments",
        ["partnership_id", "period"],
    )

    # One live row per logical key, with NULL targets folded to sentinels.
    op.execute(
        "CREATE UNIQUE INDEX uq_budget_assignment_key ON budget_assignments("
        "partnership_id, period, assignment_type, budget_view, "
        "COALESCE(budget_id, -1), COALESCE(category_name, ''), "
        "COALESCE(subcategory_name, ''), COALESCE(goal_id, -1), "
        "COALESCE(asset_id, -1))"
    )


def downgrade() -> None:
    op.drop_index("uq_budget_assignment_key", table_name="budget_assignments")
    op.drop_index(
        "ix_budget_assignment_partnership_period", table_name="budget_assignments"
    )
    op.drop_table("budget_assignments")
    op.drop_index("ix_expense_matches_period", table_name="expense_matches")
    op.drop_table("expense_matches")
    op.drop_index("ix_expense_partnership_active", table_name="expense_definitions")
    op.drop_table("expense_definitions")
    op.drop_index("ix_transactions_partnership_created", table_name="transactions")
    op.drop_table("transactions")
