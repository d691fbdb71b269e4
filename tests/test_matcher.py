from datetime import date, datetime, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import Session, sessionmaker

import services
from database import Base, build_engine
from models import ExpenseDefinition, ExpenseMatch, RecurrenceType, Transaction
from schemas import ExpenseDefinitionIn
from services import (
    ExpenseNotFound,
    ExpenseService,
    MatchNotFound,
    MatchOutcome,
    MatchService,
    ProjectionService,
    ReconciliationService,
    like_to_regex,
    merchant_matches,
    score_confidence,
    within_tolerance,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _expense(session, **overrides) -> ExpenseDefinition:
    fields = dict(
        partnership_id=1,
        name="Rent",
        category_name="Housing",
        expected_amount_cents=200_000,
        recurrence_type=RecurrenceType.monthly,
        next_due_date=date(2026, 1, 1),
    )
    fields.update(overrides)
    return ExpenseService(session).create(ExpenseDefinitionIn(**fields), actor="sam")


def _txn(
    session,
    amount_cents: int,
    settled: Optional[date],
    description: str = "RENT PAYMENT",
    *,
    created: Optional[date] = None,
    external_id: Optional[str] = None,
    partnership_id: int = 1,
) -> Transaction:
    created = created or settled
    txn = Transaction(
        partnership_id=partnership_id,
        external_id=external_id,
        description=description,
        amount_cents=amount_cents,
        settled_at=datetime.combine(settled, datetime.min.time()) if settled else None,
        created_at=datetime.combine(created, datetime.min.time()),
    )
    session.add(txn)
    session.commit()
    return txn


def _match_count(session) -> int:
    return session.scalar(select(func.count(ExpenseMatch.id)))


def test_rent_matches_advance_due_date_month_by_month() -> None:
    session = make_session()
    rent = _expense(session)
    matcher = MatchService(session)

    first = matcher.match(_txn(session, -200_000, date(2026, 1, 5)), rent, "sam")
    assert first.outcome == MatchOutcome.created
    assert first.for_period == date(2026, 1, 1)
    assert first.next_due_date == date(2026, 2, 1)
    assert rent.next_due_date == date(2026, 2, 1)

    second = matcher.match(_txn(session, -200_000, date(2026, 2, 3)), rent, "sam")
    assert second.created
    assert second.for_period == date(2026, 2, 1)
    assert rent.next_due_date == date(2026, 3, 1)

    stored = session.scalars(select(ExpenseMatch).order_by(ExpenseMatch.id)).all()
    assert [m.matched_by for m in stored] == ["sam", "sam"]
    assert [m.match_confidence for m in stored] == [1.0, 1.0]


def test_matching_same_transaction_twice_is_idempotent() -> None:
    session = make_session()
    rent = _expense(session)
    txn = _txn(session, -200_000, date(2026, 1, 5))
    matcher = MatchService(session)

    first = matcher.match(txn, rent)
    again = matcher.match(txn, rent)

    assert again.outcome == MatchOutcome.already_matched
    assert not again.created
    assert again.for_period == first.for_period
    assert again.expense_id == rent.id
    assert _match_count(session) == 1
    assert rent.next_due_date == date(2026, 2, 1)


def test_transaction_linked_elsewhere_is_left_untouched() -> None:
    session = make_session()
    rent = _expense(session)
    storage = _expense(
        session,
        name="Storage unit",
        expected_amount_cents=200_000,
        next_due_date=date(2026, 1, 3),
    )
    txn = _txn(session, -200_000, date(2026, 1, 5))
    matcher = MatchService(session)

    matcher.match(txn, rent)
    result = matcher.match(txn, storage)

    assert result.outcome == MatchOutcome.already_linked
    assert result.expense_id == rent.id
    assert _match_count(session) == 1
    existing = session.scalar(select(ExpenseMatch))
    assert existing.expense_definition_id == rent.id
    assert storage.next_due_date == date(2026, 1, 3)


def test_one_time_expense_buckets_on_due_date_and_never_advances() -> None:
    session = make_session()
    rego = _expense(
        session,
        name="Car rego",
        category_name="Transport",
        expected_amount_cents=85_000,
        recurrence_type=RecurrenceType.one_time,
        next_due_date=date(2026, 2, 10),
    )
    result = MatchService(session).match(
        _txn(session, -85_000, date(2026, 1, 30)), rego
    )
    assert result.created
    assert result.for_period == date(2026, 2, 10)
    assert rego.next_due_date == date(2026, 2, 10)


def test_due_date_never_moves_backwards() -> None:
    session = make_session()
    rent = _expense(session)
    matcher = MatchService(session)

    matcher.match(_txn(session, -200_000, date(2026, 3, 2)), rent)
    assert rent.next_due_date == date(2026, 4, 1)

    late_import = matcher.match(_txn(session, -200_000, date(2026, 1, 5)), rent)
    assert late_import.created
    assert late_import.for_period == date(2026, 1, 1)
    assert rent.next_due_date == date(2026, 4, 1)


def test_month_end_due_date_keeps_its_day() -> None:
    session = make_session()
    card = _expense(
        session,
        name="Credit card",
        category_name="Debt",
        expected_amount_cents=50_000,
        next_due_date=date(2026, 1, 31),
    )
    matcher = MatchService(session)

    matcher.match(_txn(session, -50_000, date(2026, 2, 2)), card)
    assert card.next_due_date == date(2026, 2, 28)
    matcher.match(_txn(session, -50_000, date(2026, 3, 1)), card)
    assert card.next_due_date == date(2026, 3, 31)


def test_match_uses_created_date_when_not_settled() -> None:
    session = make_session()
    rent = _expense(session)
    txn = _txn(session, -200_000, None, created=date(2026, 1, 6))
    result = MatchService(session).match(txn, rent)
    assert result.for_period == date(2026, 1, 1)
    assert rent.next_due_date == date(2026, 2, 1)


def test_match_rejects_expense_from_another_partnership() -> None:
    session = make_session()
    rent = _expense(session)
    txn = _txn(session, -200_000, date(2026, 1, 5), partnership_id=2)

    with pytest.raises(ExpenseNotFound):
        MatchService(session).match(txn, rent)
    assert _match_count(session) == 0
    assert rent.next_due_date == date(2026, 1, 1)


def test_evening_utc_payment_keeps_household_date_after_reload(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'budget.db'}")
    Base.metadata.create_all(engine)
    # 20:00 UTC on Jan 31 is Feb 1 in Perth.
    paid_at = datetime(2026, 1, 31, 20, 0, tzinfo=timezone.utc)

    with Session(engine) as session:
        rent = _expense(session, next_due_date=date(2026, 2, 1))
        txn = Transaction(
            partnership_id=1,
            description="RENT PAYMENT",
            amount_cents=-200_000,
            settled_at=paid_at,
            created_at=paid_at,
        )
        session.add(txn)
        session.commit()
        result = MatchService(session).match(txn, rent)
        assert result.for_period == date(2026, 2, 1)
        assert result.next_due_date == date(2026, 3, 1)

    with Session(engine) as session:
        stored = session.scalar(select(Transaction))
        assert stored.settled_at == paid_at
        assert MatchService(session).recalculate_periods(1) == 0
        assert session.scalar(select(ExpenseMatch.for_period)) == date(2026, 2, 1)
        february = ProjectionService(session).project_month(1, "2026-02")
        assert [p.name for p in february.paid] == ["Rent"]


def test_due_date_moved_by_another_writer_is_reported_as_stored(monkeypatch) -> None:
    session = make_session()
    rent = _expense(session)
    original = services.advance_past_date

    def advance_then_race(*args, **kwargs):
        new_due = original(*args, **kwargs)
        session.execute(
            update(ExpenseDefinition)
            .where(ExpenseDefinition.id == rent.id)
            .values(next_due_date=date(2026, 6, 1))
            .execution_options(synchronize_session=False)
        )
        return new_due

    monkeypatch.setattr(services, "advance_past_date", advance_then_race)
    result = MatchService(session).match(_txn(session, -200_000, date(2026, 1, 5)), rent)

    assert result.created
    assert result.next_due_date == date(2026, 6, 1)
    assert rent.next_due_date == date(2026, 6, 1)


def test_unlink_removes_match_for_owning_partnership_only() -> None:
    session = make_session()
    rent = _expense(session)
    txn = _txn(session, -200_000, date(2026, 1, 5))
    matcher = MatchService(session)
    matcher.match(txn, rent)

    with pytest.raises(MatchNotFound):
        matcher.unlink(txn.id, partnership_id=2)
    assert _match_count(session) == 1

    matcher.unlink(txn.id, partnership_id=1)
    assert _match_count(session) == 0

    relinked = matcher.match(txn, rent)
    assert relinked.outcome == MatchOutcome.created


def test_recalculate_periods_fills_legacy_rows() -> None:
    session = make_session()
    cleaner = _expense(
        session,
        name="Cleaner",
        category_name="Home",
        expected_amount_cents=12_000,
        recurrence_type=RecurrenceType.weekly,
        next_due_date=date(2026, 1, 8),
    )
    txn = _txn(session, -12_000, date(2026, 1, 14))
    session.add(
        ExpenseMatch(
            expense_definition_id=cleaner.id,
            transaction_id=txn.id,
            match_confidence=0.8,
            for_period=None,
        )
    )
    session.commit()

    matcher = MatchService(session)
    assert matcher.recalculate_periods(1) == 1
    assert session.scalar(select(ExpenseMatch.for_period)) == date(2026, 1, 8)
    assert matcher.recalculate_periods(1) == 0


def test_match_expense_history_links_merchant_transactions_within_tolerance() -> None:
    session = make_session()
    netflix = _expense(
        session,
        name="Netflix",
        category_name="Subscriptions",
        expected_amount_cents=1_599,
        next_due_date=date(2026, 1, 10),
        merchant_name="NETFLIX",
    )
    _txn(session, -1_599, None, "NETFLIX.COM 123", created=date(2025, 12, 10))
    _txn(session, -1_650, None, "Netflix monthly", created=date(2026, 1, 9))
    _txn(session, -2_999, None, "NETFLIX", created=date(2026, 1, 2))
    _txn(session, -1_599, None, "SPOTIFY", created=date(2026, 1, 9))
    _txn(session, 1_599, None, "NETFLIX REFUND", created=date(2026, 1, 11))
    _txn(session, -1_599, None, "NETFLIX", created=date(2026, 1, 9), partnership_id=2)

    matcher = MatchService(session)
    assert matcher.match_expense_history(netflix.id) == 2
    confidences = session.scalars(select(ExpenseMatch.match_confidence)).all()
    assert confidences == [0.95, 0.95]
    assert netflix.next_due_date == date(2026, 1, 10)

    assert matcher.match_expense_history(netflix.id) == 0

    with pytest.raises(ExpenseNotFound):
        matcher.match_expense_history(999)


def test_match_expense_history_respects_lookback() -> None:
    session = make_session()
    gym = _expense(
        session,
        name="Gym",
        category_name="Health",
        expected_amount_cents=2_000,
        next_due_date=date(2026, 1, 20),
        match_pattern="%anytime fitness%",
    )
    _txn(session, -2_000, None, "ANYTIME FITNESS PERTH", created=date(2025, 11, 20))
    _txn(session, -2_000, None, "ANYTIME FITNESS PERTH", created=date(2025, 12, 20))

    created = MatchService(session).match_expense_history(
        gym.id, limit_months=1, today=date(2026, 1, 15)
    )
    assert created == 1


def test_incoming_transaction_prefers_direct_link() -> None:
    session = make_session()
    insurance = _expense(
        session,
        name="Insurance",
        category_name="Insurance",
        expected_amount_cents=9_000,
        next_due_date=date(2026, 1, 15),
        linked_transaction_id="up-123",
    )
    txn = _txn(
        session, -9_000, date(2026, 1, 15), "DIRECT DEBIT 8812", external_id="up-123"
    )

    outcome = MatchService(session).match_incoming_transaction(txn)
    assert outcome.result is not None
    assert outcome.result.expense_id == insurance.id
    assert outcome.price_changed == []
    assert session.scalar(select(ExpenseMatch.match_confidence)) == 1.0


def test_incoming_transaction_matches_merchant_and_reports_price_changes() -> None:
    session = make_session()
    gym = _expense(
        session,
        name="Gym",
        category_name="Health",
        expected_amount_cents=2_000,
        next_due_date=date(2026, 1, 15),
        merchant_name="ANYTIME FITNESS",
    )
    matcher = MatchService(session)

    pricier = _txn(session, -2_600, date(2026, 1, 15), "ANYTIME FITNESS PERTH")
    outcome = matcher.match_incoming_transaction(pricier)
    assert outcome.result is None
    assert outcome.price_changed == [gym.id]
    assert _match_count(session) == 0

    usual = _txn(session, -2_000, date(2026, 1, 15), "ANYTIME FITNESS PERTH")
    outcome = matcher.match_incoming_transaction(usual)
    assert outcome.result is not None and outcome.result.created
    assert outcome.result.for_period == date(2026, 1, 1)
    assert gym.next_due_date == date(2026, 2, 15)
    assert session.scalar(select(ExpenseMatch.match_confidence)) == pytest.approx(1.0)

    refund = _txn(session, 2_000, date(2026, 1, 16), "ANYTIME FITNESS PERTH")
    assert matcher.match_incoming_transaction(refund).result is None


def test_score_confidence_weights() -> None:
    netflix = ExpenseDefinition(
        name="Netflix",
        expected_amount_cents=1_599,
        next_due_date=date(2026, 1, 10),
        merchant_name="NETFLIX",
    )
    exact = Transaction(
        description="NETFLIX.COM",
        amount_cents=-1_599,
        settled_at=datetime(2026, 1, 10, 8, 0),
        created_at=datetime(2026, 1, 10, 8, 0),
    )
    assert score_confidence(exact, netflix) == pytest.approx(1.0)

    close = Transaction(
        description="NETFLIX.COM",
        amount_cents=-1_700,
        settled_at=datetime(2026, 1, 12, 8, 0),
        created_at=datetime(2026, 1, 12, 8, 0),
    )
    assert score_confidence(close, netflix) == pytest.approx(0.85)

    by_name = ExpenseDefinition(
        name="Netflix", expected_amount_cents=1_599, next_due_date=date(2026, 2, 1)
    )
    fuzzy = Transaction(
        description="netflix.com 12345",
        amount_cents=-1_599,
        settled_at=datetime(2026, 1, 10, 8, 0),
        created_at=datetime(2026, 1, 10, 8, 0),
    )
    assert score_confidence(fuzzy, by_name) == pytest.approx(0.6)

    unrelated = Transaction(
        description="WOOLWORTHS 1042",
        amount_cents=-1_599,
        settled_at=datetime(2026, 1, 10, 8, 0),
        created_at=datetime(2026, 1, 10, 8, 0),
    )
    assert score_confidence(unrelated, by_name) == 0.0


def test_merchant_and_tolerance_helpers() -> None:
    assert like_to_regex("%AMZN*MKTP%").match("amzn*mktp au 1234")
    assert not like_to_regex("spotify_").match("spotify premium")

    spotify = ExpenseDefinition(name="Spotify", match_pattern="%spotify%")
    assert merchant_matches("SPOTIFY P1234", spotify)
    assert not merchant_matches("NETFLIX", spotify)

    assert within_tolerance(-1_650, 1_599, 10)
    assert not within_tolerance(-2_999, 1_599, 10)
    assert within_tolerance(-5_000, 0, 10)


def test_reconciliation_rematches_every_active_expense() -> None:
    session = make_session()
    netflix = _expense(
        session,
        name="Netflix",
        category_name="Subscriptions",
        expected_amount_cents=1_599,
        next_due_date=date(2026, 1, 10),
        merchant_name="NETFLIX",
    )
    retired = _expense(
        session,
        name="Stan",
        category_name="Subscriptions",
        expected_amount_cents=1_200,
        next_due_date=date(2026, 1, 10),
        merchant_name="STAN.COM",
    )
    ExpenseService(session).deactivate(retired.id)
    _txn(session, -1_599, date(2026, 1, 10), "NETFLIX.COM")
    _txn(session, -1_200, date(2026, 1, 10), "STAN.COM.AU")

    reconciler = ReconciliationService(session)
    assert reconciler.rematch_all() == 1
    assert reconciler.rematch_all(partnership_id=1) == 0
    assert session.scalar(select(ExpenseMatch.expense_definition_id)) == netflix.id
