from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional, Union

from rapidfuzz import fuzz
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import (
    AssignmentType,
    BudgetAssignment,
    BudgetView,
    ExpenseDefinition,
    ExpenseMatch,
    RecurrenceType,
    SYSTEM_ACTOR,
    Transaction,
    utcnow,
)
from periods import (
    effective_date,
    month_period,
    period_for_transaction,
    resolve_period,
)
from projections import Projection, project
from recurrence import add_months, advance_past_date, local_today
from schemas import (
    AssetTarget,
    AssignmentKey,
    BudgetAssignmentIn,
    CategoryTarget,
    ExpenseDefinitionIn,
    GoalTarget,
)


logger = logging.getLogger(__name__)

MERCHANT_MATCH_CONFIDENCE = 0.95


class ExpenseNotFound(ValueError):
    pass


class MatchNotFound(ValueError):
    pass


class AssignmentNotFound(ValueError):
    pass


class TransientStoreError(RuntimeError):
    """A store write failed twice in a row for reasons other than a conflict."""


class ExpenseService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(
        self, data: ExpenseDefinitionIn, actor: Optional[str] = None
    ) -> ExpenseDefinition:
        expense = ExpenseDefinition(
            partnership_id=data.partnership_id,
            name=data.name.strip(),
            category_name=data.category_name.strip(),
            expected_amount_cents=data.expected_amount_cents,
            recurrence_type=data.recurrence_type,
            anchor_date=data.next_due_date,
            next_due_date=data.next_due_date,
            merchant_name=(data.merchant_name or "").strip() or None,
            match_pattern=data.match_pattern,
            linked_transaction_id=data.linked_transaction_id,
            notes=data.notes,
            auto_detected=data.auto_detected,
            created_by=actor,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def get(
        self, expense_id: int, partnership_id: Optional[int] = None
    ) -> ExpenseDefinition:
        expense = self.session.get(ExpenseDefinition, expense_id)
        if not expense:
            raise ExpenseNotFound("Expense not found")
        if partnership_id is not None and expense.partnership_id != partnership_id:
            raise ExpenseNotFound("Expense not found")
        return expense

    def list_active(self, partnership_id: int) -> list[ExpenseDefinition]:
        stmt = (
            select(ExpenseDefinition)
            .where(
                ExpenseDefinition.partnership_id == partnership_id,
                ExpenseDefinition.is_active.is_(True),
            )
            .order_by(ExpenseDefinition.next_due_date, ExpenseDefinition.id)
        )
        return self.session.scalars(stmt).all()

    def update_expected_amount(
        self, expense_id: int, amount_cents: int, partnership_id: Optional[int] = None
    ) -> ExpenseDefinition:
        if amount_cents < 0:
            raise ValueError("Expected amount cannot be negative")
        expense = self.get(expense_id, partnership_id)
        expense.expected_amount_cents = amount_cents
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def deactivate(self, expense_id: int, partnership_id: Optional[int] = None) -> None:
        expense = self.get(expense_id, partnership_id)
        expense.is_active = False
        self.session.commit()


class MatchOutcome(str, Enum):
    created = "created"
    already_matched = "already_matched"
    already_linked = "already_linked"


@dataclass(frozen=True)
class MatchResult:
    outcome: MatchOutcome
    expense_id: int
    transaction_id: int
    for_period: Optional[date]
    next_due_date: Optional[date] = None

    @property
    def created(self) -> bool:
        return self.outcome == MatchOutcome.created


@dataclass
class IncomingMatch:
    result: Optional[MatchResult] = None
    price_changed: list[int] = field(default_factory=list)


def like_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a SQL ``LIKE`` pattern (``%``/``_`` wildcards), case-insensitive."""
    escaped = re.escape(pattern)
    return re.compile(
        "^" + escaped.replace("%", ".*").replace("_", ".") + "$", re.IGNORECASE
    )


def merchant_matches(description: str, expense: ExpenseDefinition) -> bool:
    if expense.merchant_name:
        return expense.merchant_name.lower() in (description or "").lower()
    if expense.match_pattern:
        return bool(like_to_regex(expense.match_pattern).match(description or ""))
    return False


def within_tolerance(
    amount_cents: int, expected_cents: int, tolerance_percent: float
) -> bool:
    if expected_cents <= 0:
        return True
    actual = abs(amount_cents)
    low = expected_cents * (1 - tolerance_percent / 100)
    high = expected_cents * (1 + tolerance_percent / 100)
    return low <= actual <= high


def score_confidence(transaction: Transaction, expense: ExpenseDefinition) -> float:
    """Advisory 0..1 score: description (0.4), amount (0.4), timing (0.2)."""
    description = transaction.description or ""
    if merchant_matches(description, expense):
        confidence = 0.4
    elif fuzz.partial_ratio(expense.name.lower(), description.lower()) >= 80:
        confidence = 0.2
    else:
        return 0.0

    expected = expense.expected_amount_cents
    if expected > 0:
        diff = abs(abs(transaction.amount_cents) - expected) / expected
        if diff <= 0.05:
            confidence += 0.4
        elif diff <= 0.10:
            confidence += 0.3
        elif diff <= 0.20:
            confidence += 0.2
        elif diff <= 0.50:
            confidence += 0.1

    txn_date = effective_date(transaction.settled_at, transaction.created_at)
    if txn_date is not None:
        days = abs((txn_date - expense.next_due_date).days)
        if days <= 1:
            confidence += 0.2
        elif days <= 3:
            confidence += 0.15
        elif days <= 7:
            confidence += 0.1
        elif days <= 14:
            confidence += 0.05

    return round(min(1.0, confidence), 4)


def for_period_of(expense: ExpenseDefinition, txn_date: date) -> date:
    if expense.recurrence_type == RecurrenceType.one_time:
        return expense.next_due_date
    return period_for_transaction(
        txn_date, expense.recurrence_type, anchor=expense.anchor_date
    )


class MatchService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def match(
        self,
        transaction: Transaction,
        expense: ExpenseDefinition,
        actor: Optional[str] = None,
        *,
        confidence: float = 1.0,
    ) -> MatchResult:
        """Link ``transaction`` to ``expense`` at most once and advance the due date.

        A transaction that is already linked (to this or any other expense) is
        left untouched; the result reports the existing link instead. An
        expense from another partnership is treated as not found.
        """
        if transaction.partnership_id != expense.partnership_id:
            raise ExpenseNotFound("Expense not found")
        txn_date = effective_date(transaction.settled_at, transaction.created_at)
        if txn_date is None:
            raise ValueError("Transaction has no settled or created date")
        for_period = for_period_of(expense, txn_date)

        inserted = self._insert_match(
            {
                "expense_definition_id": expense.id,
                "transaction_id": transaction.id,
                "match_confidence": max(0.0, min(1.0, confidence)),
                "matched_by": actor or SYSTEM_ACTOR,
                "for_period": for_period,
                "matched_at": utcnow(),
            }
        )
        if not inserted:
            existing = self.session.scalar(
                select(ExpenseMatch)
                .where(ExpenseMatch.transaction_id == transaction.id)
                .execution_options(populate_existing=True)
            )
            if existing is None:
                # Unlinked concurrently between the insert and this read.
                raise TransientStoreError(
                    f"Match for transaction {transaction.id} could not be resolved"
                )
            if existing.expense_definition_id == expense.id:
                outcome = MatchOutcome.already_matched
            else:
                outcome = MatchOutcome.already_linked
            logger.info(
                f"match_skipped: outcome={outcome.value} transaction={transaction.id} "
                f"expense={expense.id} linked_expense={existing.expense_definition_id}"
            )
            return MatchResult(
                outcome=outcome,
                expense_id=existing.expense_definition_id,
                transaction_id=transaction.id,
                for_period=existing.for_period,
            )

        logger.info(
            f"match_created: transaction={transaction.id} expense={expense.id} "
            f"for_period={for_period.isoformat()} actor={actor or SYSTEM_ACTOR}"
        )
        next_due = self._advance_due_date(expense.id, txn_date)
        self.session.refresh(expense)
        return MatchResult(
            outcome=MatchOutcome.created,
            expense_id=expense.id,
            transaction_id=transaction.id,
            for_period=for_period,
            next_due_date=next_due,
        )

    def _insert_match(self, values: dict[str, object]) -> bool:
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            stmt = sqlite.insert(ExpenseMatch.__table__)
        elif dialect == "postgresql":
            stmt = postgresql.insert(ExpenseMatch.__table__)
        else:
            self.session.add(ExpenseMatch(**values))
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                return False
            return True

        stmt = stmt.values(**values).on_conflict_do_nothing(
            index_elements=["transaction_id"]
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def _advance_due_date(self, expense_id: int, reference: date) -> Optional[date]:
        # Advance from the persisted value; the guarded write keeps it monotonic.
        row = self.session.execute(
            select(
                ExpenseDefinition.recurrence_type,
                ExpenseDefinition.anchor_date,
                ExpenseDefinition.next_due_date,
            ).where(ExpenseDefinition.id == expense_id)
        ).one()
        if row.recurrence_type == RecurrenceType.one_time:
            return row.next_due_date

        new_due = advance_past_date(
            row.next_due_date,
            row.recurrence_type,
            reference,
            anchor_day=row.anchor_date.day,
        )
        if new_due == row.next_due_date:
            return new_due

        result = self.session.execute(
            update(ExpenseDefinition)
            .where(
                ExpenseDefinition.id == expense_id,
                ExpenseDefinition.next_due_date < new_due,
            )
            .values(next_due_date=new_due, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount != 1:
            # Another writer already moved it at least this far.
            current = self.session.scalar(
                select(ExpenseDefinition.next_due_date).where(
                    ExpenseDefinition.id == expense_id
                )
            )
            logger.info(
                f"due_date_advance_skipped: expense={expense_id} "
                f"wanted={new_due.isoformat()} current={current.isoformat()}"
            )
            return current
        logger.info(
            f"due_date_advanced: expense={expense_id} "
            f"from={row.next_due_date.isoformat()} to={new_due.isoformat()}"
        )
        return new_due

    def unlink(self, transaction_id: int, partnership_id: int) -> None:
        match = self.session.scalar(
            select(ExpenseMatch)
            .join(ExpenseDefinition, ExpenseMatch.expense_definition_id == ExpenseDefinition.id)
            .where(
                ExpenseMatch.transaction_id == transaction_id,
                ExpenseDefinition.partnership_id == partnership_id,
            )
        )
        if not match:
            raise MatchNotFound("Match not found")
        self.session.delete(match)
        self.session.commit()
        logger.info(f"match_removed: transaction={transaction_id}")

    def recalculate_periods(self, partnership_id: int) -> int:
        stmt = (
            select(ExpenseMatch)
            .options(
                joinedload(ExpenseMatch.expense), joinedload(ExpenseMatch.transaction)
            )
            .join(ExpenseDefinition, ExpenseMatch.expense_definition_id == ExpenseDefinition.id)
            .where(
                ExpenseDefinition.partnership_id == partnership_id,
                ExpenseDefinition.is_active.is_(True),
            )
        )
        updated = 0
        for match in self.session.scalars(stmt).all():
            txn = match.transaction
            txn_date = effective_date(txn.settled_at, txn.created_at)
            if txn_date is None:
                continue
            correct = for_period_of(match.expense, txn_date)
            if match.for_period != correct:
                match.for_period = correct
                updated += 1
        self.session.commit()
        logger.info(
            f"periods_recalculated: partnership={partnership_id} updated={updated}"
        )
        return updated

    def match_expense_history(
        self,
        expense_id: int,
        *,
        tolerance_percent: Optional[float] = None,
        limit_months: Optional[int] = None,
        today: Optional[date] = None,
    ) -> int:
        """Match every unlinked historical transaction that fits the expense.

        Returns the number of matches created.
        """
        expense = ExpenseService(self.session).get(expense_id)
        if not expense.merchant_name and not expense.match_pattern:
            return 0
        tolerance = (
            self.settings.match_tolerance_percent
            if tolerance_percent is None
            else tolerance_percent
        )

        stmt = (
            select(Transaction)
            .outerjoin(ExpenseMatch, ExpenseMatch.transaction_id == Transaction.id)
            .where(
                Transaction.partnership_id == expense.partnership_id,
                Transaction.amount_cents < 0,
                ExpenseMatch.id.is_(None),
            )
            .order_by(Transaction.created_at, Transaction.id)
        )
        if expense.merchant_name:
            stmt = stmt.where(Transaction.description.ilike(f"%{expense.merchant_name}%"))
        else:
            stmt = stmt.where(Transaction.description.ilike(expense.match_pattern))
        if limit_months is not None:
            today = today or local_today()
            cutoff = add_months(today, -limit_months, desired_day=today.day)
            stmt = stmt.where(
                Transaction.created_at >= datetime.combine(cutoff, time.min)
            )

        created = 0
        for txn in self.session.scalars(stmt).all():
            if not within_tolerance(
                txn.amount_cents, expense.expected_amount_cents, tolerance
            ):
                continue
            result = self.match(
                txn, expense, SYSTEM_ACTOR, confidence=MERCHANT_MATCH_CONFIDENCE
            )
            if result.created:
                created += 1
        logger.info(f"expense_history_matched: expense={expense_id} created={created}")
        return created

    def match_incoming_transaction(self, transaction: Transaction) -> IncomingMatch:
        """Webhook path: link a freshly ingested transaction to its best expense.

        Merchant hits outside the amount tolerance are reported as price
        changes rather than matched.
        """
        outcome = IncomingMatch()
        if transaction.amount_cents >= 0:
            return outcome

        expenses = ExpenseService(self.session).list_active(transaction.partnership_id)
        if transaction.external_id:
            direct = next(
                (
                    e
                    for e in expenses
                    if e.linked_transaction_id
                    and e.linked_transaction_id == transaction.external_id
                ),
                None,
            )
            if direct is not None:
                outcome.result = self.match(
                    transaction, direct, SYSTEM_ACTOR, confidence=1.0
                )
                return outcome

        tolerance = self.settings.match_tolerance_percent
        candidates: list[tuple[float, ExpenseDefinition]] = []
        for expense in expenses:
            if not merchant_matches(transaction.description, expense):
                continue
            if not within_tolerance(
                transaction.amount_cents, expense.expected_amount_cents, tolerance
            ):
                outcome.price_changed.append(expense.id)
                continue
            candidates.append((score_confidence(transaction, expense), expense))

        if not candidates:
            return outcome
        candidates.sort(key=lambda item: (-item[0], item[1].next_due_date, item[1].id))
        best_score, best = candidates[0]
        if best_score < self.settings.auto_match_min_confidence:
            logger.info(
                f"match_below_threshold: transaction={transaction.id} "
                f"expense={best.id} confidence={best_score}"
            )
            return outcome
        outcome.result = self.match(
            transaction, best, SYSTEM_ACTOR, confidence=best_score
        )
        return outcome


class ProjectionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def matches_in_range(
        self, partnership_id: int, start: date, end: date
    ) -> dict[int, list[ExpenseMatch]]:
        # Legacy rows without for_period are placed by transaction date in
        # project(). One day of slack on each side covers the offset between
        # stored UTC timestamps and household dates.
        txn_at = func.coalesce(Transaction.settled_at, Transaction.created_at)
        stmt = (
            select(ExpenseMatch)
            .options(joinedload(ExpenseMatch.transaction))
            .join(ExpenseDefinition, ExpenseMatch.expense_definition_id == ExpenseDefinition.id)
            .join(Transaction, ExpenseMatch.transaction_id == Transaction.id)
            .where(
                ExpenseDefinition.partnership_id == partnership_id,
                or_(
                    ExpenseMatch.for_period.between(start, end),
                    and_(
                        ExpenseMatch.for_period.is_(None),
                        txn_at >= datetime.combine(start - timedelta(days=1), time.min),
                        txn_at < datetime.combine(end + timedelta(days=2), time.min),
                    ),
                ),
            )
            .order_by(ExpenseMatch.id)
        )
        grouped: dict[int, list[ExpenseMatch]] = {}
        for match in self.session.scalars(stmt).all():
            grouped.setdefault(match.expense_definition_id, []).append(match)
        return grouped

    def project_window(self, partnership_id: int, start: date, end: date) -> Projection:
        expenses = ExpenseService(self.session).list_active(partnership_id)
        matches = self.matches_in_range(partnership_id, start, end)
        return project(expenses, matches, start, end)

    def project_period(
        self,
        partnership_id: int,
        period: Optional[str],
        start: Optional[str] = None,
        end: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> Projection:
        window = resolve_period(period, start, end, today=today or local_today())
        return self.project_window(partnership_id, window.start, window.end)

    def project_month(self, partnership_id: int, period_key: str) -> Projection:
        window = month_period(period_key)
        return self.project_window(partnership_id, window.start, window.end)


@dataclass(frozen=True)
class AssignmentSaved:
    assignment: BudgetAssignment
    created: bool


@dataclass(frozen=True)
class AssignmentConflict:
    """The row changed since the caller read it; refetch before retrying."""

    key: AssignmentKey
    expected_version: Optional[int]
    current_version: Optional[int]
    current_cents: Optional[int]


@dataclass(frozen=True)
class InvalidTarget:
    reason: str


AssignResult = Union[AssignmentSaved, AssignmentConflict, InvalidTarget]


def resolve_target(
    data: BudgetAssignmentIn,
) -> Union[CategoryTarget, GoalTarget, AssetTarget, InvalidTarget]:
    category = (data.category_name or "").strip() or None
    subcategory = (data.subcategory_name or "").strip() or None
    populated = [
        kind
        for kind, value in (
            (AssignmentType.category, category),
            (AssignmentType.goal, data.goal_id),
            (AssignmentType.asset, data.asset_id),
        )
        if value is not None
    ]
    if len(populated) != 1:
        return InvalidTarget(
            "Must specify exactly one of: category_name, goal_id, or asset_id"
        )
    kind = populated[0]
    if data.assignment_type is not None and data.assignment_type != kind:
        return InvalidTarget(
            f"assignment_type {data.assignment_type.value} does not match the "
            f"{kind.value} target"
        )
    if subcategory is not None and kind != AssignmentType.category:
        return InvalidTarget("subcategory_name requires a category target")
    if kind == AssignmentType.category:
        return CategoryTarget(name=category, subcategory=subcategory)
    if kind == AssignmentType.goal:
        return GoalTarget(goal_id=data.goal_id)
    return AssetTarget(asset_id=data.asset_id)


class BudgetAssignmentService:
    """Compare-and-swap ledger of budget assignments.

    The logical key spans three mutually exclusive nullable target columns,
    so there is no single-statement upsert. ``assign`` reads the current row,
    writes conditionally on its version, and recovers from a lost insert
    race with exactly one re-read and update. Every step commits on its own.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def assign_from_input(
        self, data: BudgetAssignmentIn, actor: Optional[str] = None
    ) -> AssignResult:
        target = resolve_target(data)
        if isinstance(target, InvalidTarget):
            return target
        key = AssignmentKey(
            partnership_id=data.partnership_id,
            period=data.period,
            view=data.budget_view,
            budget_id=data.budget_id,
            target=target,
        )
        return self.assign(
            key,
            data.assigned_cents,
            expected_version=data.expected_version,
            actor=actor,
        )

    def assign(
        self,
        key: AssignmentKey,
        amount_cents: int,
        *,
        expected_version: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> AssignResult:
        current = self._find_row(key)
        if current is not None:
            version = current.version if expected_version is None else expected_version
            saved = self._update_if_version(current.id, version, amount_cents)
            if saved is not None:
                return AssignmentSaved(saved, created=False)
            if expected_version is not None:
                return self._conflict(key, expected_version)
            logger.info(
                f"assignment_update_raced: id={current.id} version={current.version}"
            )
        elif expected_version is not None:
            return self._conflict(key, expected_version)

        inserted = self._insert(key, amount_cents, actor)
        if inserted is not None:
            return AssignmentSaved(inserted, created=True)

        logger.info(
            f"assignment_insert_raced: partnership={key.partnership_id} "
            f"period={key.period} target={key.target.kind}"
        )
        current = self._find_row(key)
        if current is not None:
            saved = self._update_if_version(current.id, current.version, amount_cents)
            if saved is not None:
                return AssignmentSaved(saved, created=False)
        raise TransientStoreError(
            f"Budget assignment for {key.period} could not be written after retry"
        )

    def get(self, key: AssignmentKey) -> Optional[BudgetAssignment]:
        return self._find_row(key)

    def list_for_period(
        self,
        partnership_id: int,
        period: str,
        *,
        view: Optional[BudgetView] = None,
        budget_id: Optional[int] = None,
    ) -> list[BudgetAssignment]:
        stmt = select(BudgetAssignment).where(
            BudgetAssignment.partnership_id == partnership_id,
            BudgetAssignment.period == period,
            BudgetAssignment.budget_id.is_(None)
            if budget_id is None
            else BudgetAssignment.budget_id == budget_id,
        )
        if view is not None:
            stmt = stmt.where(BudgetAssignment.budget_view == view)
        stmt = stmt.order_by(BudgetAssignment.assignment_type, BudgetAssignment.id)
        return self.session.scalars(stmt).all()

    def delete(self, assignment_id: int, partnership_id: int) -> None:
        assignment = self.session.get(BudgetAssignment, assignment_id)
        if not assignment or assignment.partnership_id != partnership_id:
            raise AssignmentNotFound("Assignment not found")
        self.session.delete(assignment)
        self.session.commit()

    def _find_row(self, key: AssignmentKey) -> Optional[BudgetAssignment]:
        target = key.target
        stmt = select(BudgetAssignment).where(
            BudgetAssignment.partnership_id == key.partnership_id,
            BudgetAssignment.period == key.period,
            BudgetAssignment.assignment_type == key.assignment_type,
            BudgetAssignment.budget_view == key.view,
            BudgetAssignment.budget_id.is_(None)
            if key.budget_id is None
            else BudgetAssignment.budget_id == key.budget_id,
        )
        if isinstance(target, CategoryTarget):
            stmt = stmt.where(
                BudgetAssignment.category_name == target.name,
                BudgetAssignment.subcategory_name.is_(None)
                if target.subcategory is None
                else BudgetAssignment.subcategory_name == target.subcategory,
                BudgetAssignment.goal_id.is_(None),
                BudgetAssignment.asset_id.is_(None),
            )
        elif isinstance(target, GoalTarget):
            stmt = stmt.where(
                BudgetAssignment.goal_id == target.goal_id,
                BudgetAssignment.category_name.is_(None),
                BudgetAssignment.asset_id.is_(None),
            )
        else:
            stmt = stmt.where(
                BudgetAssignment.asset_id == target.asset_id,
                BudgetAssignment.category_name.is_(None),
                BudgetAssignment.goal_id.is_(None),
            )
        return self.session.scalar(stmt.execution_options(populate_existing=True))

    def _update_if_version(
        self, assignment_id: int, version: int, amount_cents: int
    ) -> Optional[BudgetAssignment]:
        result = self.session.execute(
            update(BudgetAssignment)
            .where(
                BudgetAssignment.id == assignment_id,
                BudgetAssignment.version == version,
            )
            .values(
                assigned_cents=amount_cents,
                version=BudgetAssignment.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount != 1:
            return None
        return self.session.get(BudgetAssignment, assignment_id, populate_existing=True)

    def _insert(
        self, key: AssignmentKey, amount_cents: int, actor: Optional[str]
    ) -> Optional[BudgetAssignment]:
        target = key.target
        assignment = BudgetAssignment(
            partnership_id=key.partnership_id,
            period=key.period,
            assignment_type=key.assignment_type,
            budget_view=key.view,
            budget_id=key.budget_id,
            category_name=target.name if isinstance(target, CategoryTarget) else None,
            subcategory_name=(
                target.subcategory if isinstance(target, CategoryTarget) else None
            ),
            goal_id=target.goal_id if isinstance(target, GoalTarget) else None,
            asset_id=target.asset_id if isinstance(target, AssetTarget) else None,
            assigned_cents=amount_cents,
            version=1,
            created_by=actor,
        )
        self.session.add(assignment)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return None
        self.session.refresh(assignment)
        return assignment

    def _conflict(
        self, key: AssignmentKey, expected_version: Optional[int]
    ) -> AssignmentConflict:
        current = self._find_row(key)
        logger.info(
            f"assignment_conflict: partnership={key.partnership_id} "
            f"period={key.period} expected={expected_version} "
            f"current={current.version if current else None}"
        )
        return AssignmentConflict(
            key=key,
            expected_version=expected_version,
            current_version=current.version if current else None,
            current_cents=current.assigned_cents if current else None,
        )


class ReconciliationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def rematch_all(self, partnership_id: Optional[int] = None) -> int:
        stmt = select(ExpenseDefinition.id).where(
            ExpenseDefinition.is_active.is_(True),
            or_(
                ExpenseDefinition.merchant_name.is_not(None),
                ExpenseDefinition.match_pattern.is_not(None),
            ),
        )
        if partnership_id is not None:
            stmt = stmt.where(ExpenseDefinition.partnership_id == partnership_id)
        expense_ids = self.session.scalars(stmt.order_by(ExpenseDefinition.id)).all()

        matcher = MatchService(self.session)
        total = 0
        for expense_id in expense_ids:
            total += matcher.match_expense_history(expense_id)
        logger.info(
            f"reconcile_run: expenses={len(expense_ids)} matches_created={total}"
        )
        return total

    def recalculate_all_periods(self) -> int:
        partnership_ids = self.session.scalars(
            select(ExpenseDefinition.partnership_id)
            .where(ExpenseDefinition.is_active.is_(True))
            .distinct()
            .order_by(ExpenseDefinition.partnership_id)
        ).all()
        matcher = MatchService(self.session)
        return sum(matcher.recalculate_periods(pid) for pid in partnership_ids)
