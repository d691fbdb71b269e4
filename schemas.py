from datetime import date
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import AssignmentType, BudgetView, RecurrenceType


PERIOD_KEY_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class ExpenseDefinitionIn(BaseModel):
    partnership_id: int
    name: str = Field(..., min_length=1, max_length=120)
    category_name: str = Field(..., min_length=1, max_length=100)
    expected_amount_cents: int = Field(..., ge=0)
    recurrence_type: RecurrenceType
    next_due_date: date
    merchant_name: Optional[str] = Field(default=None, max_length=200)
    match_pattern: Optional[str] = Field(default=None, max_length=200)
    linked_transaction_id: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = None
    auto_detected: bool = False


class CategoryTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["category"] = "category"
    name: str = Field(..., min_length=1, max_length=100)
    subcategory: Optional[str] = Field(default=None, min_length=1, max_length=100)


class GoalTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["goal"] = "goal"
    goal_id: int


class AssetTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["asset"] = "asset"
    asset_id: int


AssignmentTarget = Annotated[
    Union[CategoryTarget, GoalTarget, AssetTarget], Field(discriminator="kind")
]


class AssignmentKey(BaseModel):
    """Logical identity of one budget assignment row."""

    model_config = ConfigDict(frozen=True)

    partnership_id: int
    period: str = Field(..., pattern=PERIOD_KEY_PATTERN)
    view: BudgetView = BudgetView.shared
    budget_id: Optional[int] = None
    target: AssignmentTarget

    @property
    def assignment_type(self) -> AssignmentType:
        return AssignmentType(self.target.kind)


class BudgetAssignmentIn(BaseModel):
    """Flat request shape, as submitted by forms and API callers.

    Exactly one of ``category_name``, ``goal_id`` or ``asset_id`` must be set;
    that check happens in the service so the caller gets an ``InvalidTarget``
    result rather than a validation exception.
    """

    partnership_id: int
    period: str = Field(..., pattern=PERIOD_KEY_PATTERN)
    assigned_cents: int
    assignment_type: Optional[AssignmentType] = None
    budget_view: BudgetView = BudgetView.shared
    budget_id: Optional[int] = None
    category_name: Optional[str] = Field(default=None, max_length=100)
    subcategory_name: Optional[str] = Field(default=None, max_length=100)
    goal_id: Optional[int] = None
    asset_id: Optional[int] = None
    expected_version: Optional[int] = None
