from __future__ import annotations

from datetime import date, datetime
import uuid
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


json_type = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TimestampMixin:
    """Common created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SubscriptionStatus:
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class UserAccount(Base, TimestampMixin):
    """Plan, safety profile and notification state for an authenticated user."""

    __tablename__ = "user_accounts"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    plan_lookup_key: Mapped[Optional[str]] = mapped_column(String(64))
    subscription_status: Mapped[Optional[str]] = mapped_column(String(32))
    entitlements: Mapped[list] = mapped_column(json_type, nullable=False, default=list)
    trial_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    allergies: Mapped[list] = mapped_column(json_type, nullable=False, default=list)
    dietary_restrictions: Mapped[list] = mapped_column(json_type, nullable=False, default=list)
    avoid_ingredients: Mapped[list] = mapped_column(json_type, nullable=False, default=list)
    health_conditions: Mapped[list] = mapped_column(json_type, nullable=False, default=list)
    diet_type: Mapped[Optional[str]] = mapped_column(String(32))
    diet_settings: Mapped[dict] = mapped_column(json_type, nullable=False, default=dict)
    latest_glucose: Mapped[Optional[dict]] = mapped_column(json_type)

    daily_calorie_target: Mapped[Optional[int]] = mapped_column(Integer)
    daily_protein_target: Mapped[Optional[int]] = mapped_column(Integer)
    daily_carbs_target: Mapped[Optional[int]] = mapped_column(Integer)
    daily_fat_target: Mapped[Optional[int]] = mapped_column(Integer)

    push_tokens: Mapped[list] = mapped_column(json_type, nullable=False, default=list)
    notification_preferences: Mapped[dict] = mapped_column(json_type, nullable=False, default=dict)

    safety_pin_hash: Mapped[Optional[str]] = mapped_column(String(255))
    safety_pin_set_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    pin_failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pin_locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"UserAccount(id={self.id}, plan={self.plan}, status={self.subscription_status})"


class WeekBoard(Base, TimestampMixin):
    __tablename__ = "week_boards"
    __table_args__ = (Index("week_boards_user_week_idx", "user_id", "week_start_iso"),)

    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("user_accounts.id", ondelete="CASCADE"), primary_key=True
    )
    week_start_iso: Mapped[str] = mapped_column(String(10), primary_key=True)
    board_json: Mapped[dict] = mapped_column(json_type, nullable=False)


class MealBoard(Base, TimestampMixin):
    __tablename__ = "meal_boards"
    __table_args__ = (UniqueConstraint("user_id", "program", "start_date", name="uq_meal_boards_user_program_start"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    program: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255))
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)

    items: Mapped[list["MealBoardItem"]] = relationship(
        back_populates="board",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class MealBoardItem(Base, TimestampMixin):
    __tablename__ = "meal_board_items"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    board_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meal_boards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_index: Mapped[int] = mapped_column(Integer, nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meal_id: Mapped[Optional[str]] = mapped_column(String(128))
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    servings: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    nutrition: Mapped[dict] = mapped_column(json_type, nullable=False, default=dict)
    payload: Mapped[Optional[dict]] = mapped_column(json_type)

    board: Mapped[MealBoard] = relationship(back_populates="items")


class MacroLog(Base):
    __tablename__ = "macro_logs"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_macro_logs_user_idem"),
        Index("macro_logs_user_at_idx", "user_id", "at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[str] = mapped_column(String(24), nullable=False, default="quick")
    meal_id: Mapped[Optional[str]] = mapped_column(String(128))
    meal_name: Mapped[Optional[str]] = mapped_column(String(255))
    servings: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    kcal: Mapped[float] = mapped_column(Float, nullable=False)
    protein: Mapped[float] = mapped_column(Float, nullable=False)
    carbs: Mapped[float] = mapped_column(Float, nullable=False)
    fat: Mapped[float] = mapped_column(Float, nullable=False)
    fiber: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    alcohol: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    starchy_carbs: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fibrous_carbs: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(160))


class BiometricSample(Base):
    __tablename__ = "biometric_samples"
    __table_args__ = (Index("biometric_samples_user_type_idx", "user_id", "sample_type", "recorded_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sample_type: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="manual")
    extra: Mapped[Optional[dict]] = mapped_column(json_type)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class MealReminder(Base, TimestampMixin):
    __tablename__ = "meal_reminders"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    meal_type: Mapped[str] = mapped_column(String(16), nullable=False)
    recipe_name: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_time: Mapped[str] = mapped_column(String(5), nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    reminder_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_sent: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    meal_plan_ref: Mapped[Optional[str]] = mapped_column(String(128))


class GenerationRunStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MealGenerationRun(Base, TimestampMixin):
    __tablename__ = "meal_generation_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    meal_type: Mapped[str] = mapped_column(String(16), nullable=False)
    request_text: Mapped[Optional[str]] = mapped_column(Text)
    diet_type: Mapped[Optional[str]] = mapped_column(String(32))
    model: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[list] = mapped_column(json_type, nullable=False, default=list)
    result: Mapped[Optional[dict]] = mapped_column(json_type)


class SafetyOverrideToken(Base):
    """One-time token that relaxes allergy protection for a single generation."""

    __tablename__ = "safety_override_tokens"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    allergen: Mapped[str] = mapped_column(String(128), nullable=False)
    meal_request: Mapped[Optional[str]] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class SafetyOverrideAudit(Base):
    __tablename__ = "safety_override_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    meal_request: Mapped[Optional[str]] = mapped_column(Text)
    allergen: Mapped[str] = mapped_column(String(128), nullable=False)
    safety_mode: Mapped[str] = mapped_column(String(32), nullable=False, default="CUSTOM_AUTHENTICATED")
    builder_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
