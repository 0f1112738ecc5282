"""Initial meal planning schema.

Revision ID: 5a1f3c2d9e10
Revises:
Create Date: 2026-10-19 09:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5a1f3c2d9e10"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    ]


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "user_accounts",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("plan", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("plan_lookup_key", sa.String(length=64), nullable=True),
        sa.Column("subscription_status", sa.String(length=32), nullable=True),
        sa.Column("entitlements", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("allergies", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("dietary_restrictions", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("avoid_ingredients", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("health_conditions", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("diet_type", sa.String(length=32), nullable=True),
        sa.Column("diet_settings", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("latest_glucose", _jsonb(), nullable=True),
        sa.Column("daily_calorie_target", sa.Integer(), nullable=True),
        sa.Column("daily_protein_target", sa.Integer(), nullable=True),
        sa.Column("daily_carbs_target", sa.Integer(), nullable=True),
        sa.Column("daily_fat_target", sa.Integer(), nullable=True),
        sa.Column("push_tokens", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("notification_preferences", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
    )

    op.create_table(
        "week_boards",
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("user_accounts.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("week_start_iso", sa.String(length=10), primary_key=True, nullable=False),
        sa.Column("board_json", _jsonb(), nullable=False),
        *_timestamps(),
    )
    op.create_index("week_boards_user_week_idx", "week_boards", ["user_id", "week_start_iso"])

    op.create_table(
        "meal_boards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("program", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("days", sa.Integer(), nullable=False, server_default="7"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "program", "start_date", name="uq_meal_boards_user_program_start"),
    )
    op.create_index("ix_meal_boards_user_id", "meal_boards", ["user_id"])

    op.create_table(
        "meal_board_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "board_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("meal_boards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day_index", sa.Integer(), nullable=False),
        sa.Column("slot", sa.String(length=16), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("meal_id", sa.String(length=128), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("servings", sa.Float(), nullable=False, server_default="1"),
        sa.Column("nutrition", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("payload", _jsonb(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_meal_board_items_board_id", "meal_board_items", ["board_id"])

    op.create_table(
        "macro_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String(length=24), nullable=False, server_default="quick"),
        sa.Column("meal_id", sa.String(length=128), nullable=True),
        sa.Column("meal_name", sa.String(length=255), nullable=True),
        sa.Column("servings", sa.Float(), nullable=False, server_default="1"),
        sa.Column("kcal", sa.Float(), nullable=False),
        sa.Column("protein", sa.Float(), nullable=False),
        sa.Column("carbs", sa.Float(), nullable=False),
        sa.Column("fat", sa.Float(), nullable=False),
        sa.Column("fiber", sa.Float(), nullable=False, server_default="0"),
        sa.Column("alcohol", sa.Float(), nullable=False, server_default="0"),
        sa.Column("starchy_carbs", sa.Float(), nullable=False, server_default="0"),
        sa.Column("fibrous_carbs", sa.Float(), nullable=False, server_default="0"),
        sa.Column("idempotency_key", sa.String(length=160), nullable=True),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_macro_logs_user_idem"),
    )
    op.create_index("macro_logs_user_at_idx", "macro_logs", ["user_id", "at"])

    op.create_table(
        "biometric_samples",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("sample_type", sa.String(length=32), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="manual"),
        sa.Column("extra", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index(
        "biometric_samples_user_type_idx",
        "biometric_samples",
        ["user_id", "sample_type", "recorded_at"],
    )

    op.create_table(
        "meal_reminders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("meal_type", sa.String(length=16), nullable=False),
        sa.Column("recipe_name", sa.Text(), nullable=False),
        sa.Column("scheduled_time", sa.String(length=5), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("reminder_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_sent", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meal_plan_ref", sa.String(length=128), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_meal_reminders_user_id", "meal_reminders", ["user_id"])

    op.create_table(
        "meal_generation_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("meal_type", sa.String(length=16), nullable=False),
        sa.Column("request_text", sa.Text(), nullable=True),
        sa.Column("diet_type", sa.String(length=32), nullable=True),
        sa.Column("model", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("result", _jsonb(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_meal_generation_runs_user_id", "meal_generation_runs", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_meal_generation_runs_user_id", table_name="meal_generation_runs")
    op.drop_table("meal_generation_runs")
    op.drop_index("ix_meal_reminders_user_id", table_name="meal_reminders")
    op.drop_table("meal_reminders")
    op.drop_index("biometric_samples_user_type_idx", table_name="biometric_samples")
    op.drop_table("biometric_samples")
    op.drop_index("macro_logs_user_at_idx", table_name="macro_logs")
    op.drop_table("macro_logs")
    op.drop_index("ix_meal_board_items_board_id", table_name="meal_board_items")
    op.drop_table("meal_board_items")
    op.drop_index("ix_meal_boards_user_id", table_name="meal_boards")
    op.drop_table("meal_boards")
    op.drop_index("week_boards_user_week_idx", table_name="week_boards")
    op.drop_table("week_boards")
    op.drop_table("user_accounts")
