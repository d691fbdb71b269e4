from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UTCDateTime(TypeDecorator):
    """Timestamp stored as naive UTC and loaded back as aware UTC.

    Aware values are converted on the way in; naive values are taken as
    UTC already.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class RecurrenceType(str, Enum):
    weekly = "weekly"
    fortnightly = "fortnightly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"
    one_time = "one-time"


RECURRENCE_TYPE_ENUM = SAEnum(
    RecurrenceType,
    name="recurrencetype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class AssignmentType(str, Enum):
    category = "category"
    goal = "goal"
    asset = "asset"


class BudgetView(str, Enum):
    individual = "individual"
    shared = "shared"


SYSTEM_ACTOR = "system"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Transaction(Base):
    """Bank-feed transaction. Written by ingestion, read-only to the engine."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    partnership_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )

    match: Mapped[Optional["ExpenseMatch"]] = relationship(
        "ExpenseMatch", back_populates="transaction", uselist=False
    )

    __table_args__ = (
        Index("ix_transactions_partnership_created", "partnership_id", "created_at"),
    )


class ExpenseDefinition(Base, TimestampMixin):
    __tablename__ = "expense_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    partnership_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    expected_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    recurrence_type: Mapped[RecurrenceType] = mapped_column(
        RECURRENCE_TYPE_ENUM, nullable=False
    )
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_detected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(200))
    match_pattern: Mapped[Optional[str]] = mapped_column(String(200))
    linked_transaction_id: Mapped[Optional[str]] = mapped_column(String(64))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))

    matches: Mapped[list["ExpenseMatch"]] = relationship(
        "ExpenseMatch", back_populates="expense"
    )

    __table_args__ = (
        CheckConstraint(
            "expected_amount_cents >= 0", name="ck_expense_amount_positive"
        ),
        Index("ix_expense_partnership_active", "partnership_id", "is_active"),
    )


class ExpenseMatch(Base):
    __tablename__ = "expense_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    expense_definition_id: Mapped[int] = mapped_column(
        ForeignKey("expense_definitions.id"), nullable=False
    )
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, unique=True
    )
    match_confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    matched_by: Mapped[Optional[str]] = mapped_column(String(64))
    # Nullable for rows created before period bucketing existed.
    for_period: Mapped[Optional[date]] = mapped_column(Date)
    matched_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )

    expense: Mapped["ExpenseDefinition"] = relationship(
        "ExpenseDefinition", back_populates="matches"
    )
    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="match"
    )

    __table_args__ = (
        CheckConstraint(
            "match_confidence >= 0.0 AND match_confidence <= 1.0",
            name="ck_expense_match_confidence_range",
        ),
        Index("ix_expense_matches_period", "expense_definition_id", "for_period"),
    )


class BudgetAssignment(Base, TimestampMixin):
    __tablename__ = "budget_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    partnership_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    assignment_type: Mapped[AssignmentType] = mapped_column(
        SAEnum(AssignmentType), nullable=False
    )
    budget_view: Mapped[BudgetView] = mapped_column(
        SAEnum(BudgetView), nullable=False, default=BudgetView.shared
    )
    budget_id: Mapped[Optional[int]] = mapped_column(Integer)
    category_name: Mapped[Optional[str]] = mapped_column(String(100))
    subcategory_name: Mapped[Optional[str]] = mapped_column(String(100))
    goal_id: Mapped[Optional[int]] = mapped_column(Integer)
    asset_id: Mapped[Optional[int]] = mapped_column(Integer)
    assigned_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        CheckConstraint(
            "(CASE WHEN category_name IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN goal_id IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN asset_id IS NOT NULL THEN 1 ELSE 0 END) = 1",
            name="ck_budget_assignment_single_target",
        ),
        Index("ix_budget_assignment_partnership_period", "partnership_id", "period"),
    )


# One live row per logical key. The target spans three nullable columns, so
# the constraint has to be an expression index.
Index(
    "uq_budget_assignment_key",
    BudgetAssignment.partnership_id,
    BudgetAssignment.period,
    BudgetAssignment.assignment_type,
    BudgetAssignment.budget_view,
    func.coalesce(BudgetAssignment.budget_id, -1),
    func.coalesce(BudgetAssignment.category_name, ""),
    func.coalesce(BudgetAssignment.subcategory_name, ""),
    func.coalesce(BudgetAssignment.goal_id, -1),
    func.coalesce(BudgetAssignment.asset_id, -1),
    unique=True,
)
