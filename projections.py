"""Paid/unpaid view of expense definitions for a reporting window.

Pure functions over already-loaded rows; ``ProjectionService`` in
``services`` does the loading.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Mapping, Optional, Sequence

from models import ExpenseDefinition, ExpenseMatch, RecurrenceType
from periods import effective_date, parse_period_date, to_local_date


@dataclass(frozen=True)
class PaidInstance:
    expense_id: int
    name: str
    category_name: str
    recurrence_type: RecurrenceType
    expected_amount_cents: int
    matched_amount_cents: int
    matched_date: date
    for_period: Optional[date]
    transaction_id: int


@dataclass(frozen=True)
class UnpaidInstance:
    expense_id: int
    name: str
    category_name: str
    recurrence_type: RecurrenceType
    expected_amount_cents: int
    due_date: date


@dataclass
class Projection:
    paid: list[PaidInstance] = field(default_factory=list)
    unpaid: list[UnpaidInstance] = field(default_factory=list)

    @property
    def paid_total_cents(self) -> int:
        return sum(item.matched_amount_cents for item in self.paid)

    @property
    def unpaid_total_cents(self) -> int:
        return sum(item.expected_amount_cents for item in self.unpaid)


def _transaction_date(match: ExpenseMatch) -> Optional[date]:
    txn = match.transaction
    if txn is None:
        return None
    return effective_date(txn.settled_at, txn.created_at)


def _bucket_date(match: ExpenseMatch) -> Optional[date]:
    # for_period is authoritative; legacy rows without one fall back to
    # the transaction's own date.
    bucket = parse_period_date(match.for_period)
    if bucket is not None:
        return bucket
    return _transaction_date(match)


def match_in_window(match: ExpenseMatch, window_start: date, window_end: date) -> bool:
    bucket = _bucket_date(match)
    if bucket is None:
        return False
    return window_start <= bucket <= window_end


def _paid_instance(expense: ExpenseDefinition, match: ExpenseMatch) -> PaidInstance:
    txn = match.transaction
    matched_date = _transaction_date(match)
    if matched_date is None:
        matched_date = parse_period_date(match.for_period) or to_local_date(
            match.matched_at
        )
    if txn is not None:
        amount = abs(txn.amount_cents)
    else:
        amount = expense.expected_amount_cents
    return PaidInstance(
        expense_id=expense.id,
        name=expense.name,
        category_name=expense.category_name,
        recurrence_type=expense.recurrence_type,
        expected_amount_cents=expense.expected_amount_cents,
        matched_amount_cents=amount,
        matched_date=matched_date,
        for_period=parse_period_date(match.for_period),
        transaction_id=match.transaction_id,
    )


def project(
    expenses: Iterable[ExpenseDefinition],
    matches_by_expense: Mapping[int, Sequence[ExpenseMatch]],
    window_start: date,
    window_end: date,
) -> Projection:
    """Split expenses into paid instances and unpaid items for a window.

    Window bounds are inclusive. Every in-window match of an expense becomes
    its own paid instance; an expense with none is a single unpaid item due
    on its ``next_due_date``. Paid instances come most recent first, unpaid
    items soonest first.
    """
    if window_start > window_end:
        raise ValueError("Window start must not be after window end")

    result = Projection()
    for expense in expenses:
        in_window = [
            match
            for match in matches_by_expense.get(expense.id, ())
            if match_in_window(match, window_start, window_end)
        ]
        if in_window:
            result.paid.extend(_paid_instance(expense, match) for match in in_window)
        else:
            result.unpaid.append(
                UnpaidInstance(
                    expense_id=expense.id,
                    name=expense.name,
                    category_name=expense.category_name,
                    recurrence_type=expense.recurrence_type,
                    expected_amount_cents=expense.expected_amount_cents,
                    due_date=expense.next_due_date,
                )
            )

    result.paid.sort(key=lambda item: (item.name.lower(), item.transaction_id))
    result.paid.sort(key=lambda item: item.matched_date, reverse=True)
    result.unpaid.sort(key=lambda item: (item.due_date, item.name.lower()))
    return result
