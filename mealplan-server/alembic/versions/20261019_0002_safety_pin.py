"""Safety PIN and allergy override tokens.

Revision ID: 8c4e2b7f1a63
Revises: 5a1f3c2d9e10
Create Date: 2026-10-19 15:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "8c4e2b7f1a63"
down_revision = "5a1f3c2d9e10"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("user_accounts", sa.Column("safety_pin_hash", sa.String(length=255), nullable=True))
    op.add_column("user_accounts", sa.Column("safety_pin_set_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column(
        "user_accounts",
        sa.Column("pin_failed_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.add_column("user_accounts", sa.Column("pin_locked_until", sa.DateTime(timezone=True), nullable=True))

    op.create_table(
        "safety_override_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("allergen", sa.String(length=128), nullable=False),
        sa.Column("meal_request", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_safety_override_tokens_user_id", "safety_override_tokens", ["user_id"])

    op.create_table(
        "safety_override_audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("meal_request", sa.Text(), nullable=True),
        sa.Column("allergen", sa.String(length=128), nullable=False),
        sa.Column("safety_mode", sa.String(length=32), nullable=False, server_default="CUSTOM_AUTHENTICATED"),
        sa.Column("builder_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_safety_override_audit_logs_user_id", "safety_override_audit_logs", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_safety_override_audit_logs_user_id", table_name="safety_override_audit_logs")
    op.drop_table("safety_override_audit_logs")
    op.drop_index("ix_safety_override_tokens_user_id", table_name="safety_override_tokens")
    op.drop_table("safety_override_tokens")
    op.drop_column("user_accounts", "pin_locked_until")
    op.drop_column("user_accounts", "pin_failed_attempts")
    op.drop_column("user_accounts", "safety_pin_set_at")
    op.drop_column("user_accounts", "safety_pin_hash")
