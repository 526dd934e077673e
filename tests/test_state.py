import logging
import math
import random
from datetime import datetime

import pytest

from finance_tracker.models import Stats, TransactionRecord
from finance_tracker.services.state import ReconciliationState
from finance_tracker.services.stats import compute_stats


def _record(amount: float, tx_type: str = "expense", **extra: object) -> TransactionRecord:
    return TransactionRecord(
        amount=amount,
        type=tx_type,
        category=extra.pop("category", "Food"),
        description="",
        date=datetime(2024, 1, 1),
        **extra,
    )


def test_compute_stats_totals() -> None:
    stats = compute_stats(
        [_record(100, "income", id="1"), _record(30, id="2")],
        [_record(20, temp_id="tmp-1")],
    )

    assert stats == Stats(
        total_income=100,
        total_expenses=50,
        net_balance=50,
        transaction_count=3,
        income_count=1,
        expense_count=2,
    )


def test_compute_stats_is_order_independent() -> None:
    records = [_record(value / 7, "income" if value % 3 else "expense", id=str(value)) for value in range(1, 200)]
    shuffled = records[:]
    random.Random(4).shuffle(shuffled)

    assert compute_stats(records, []) == compute_stats(shuffled, [])


def test_compute_stats_reports_zeros_on_invalid_records(caplog: pytest.LogCaptureFixture) -> None:
    bad = _record(10, id="1").model_copy(update={"amount": math.nan})

    with caplog.at_level(logging.ERROR):
        stats = compute_stats([bad], [])

    assert stats == Stats()
    assert "[STATS]" in caplog.text


def test_stats_follow_every_mutation() -> None:
    state = ReconciliationState()

    state.add_optimistic("tmp-1", {"amount": 40, "type": "expense", "category": "Food"})
    assert state.stats.total_expenses == 40

    state.update_optimistic("tmp-1", {"amount": 45})
    assert state.stats.total_expenses == 45

    state.confirm([{"_id": "a", "amount": 45, "type": "expense", "category": "Food"}])
    assert state.stats.transaction_count == 1
    assert state.stats.total_expenses == 45
    assert len(state.ledger) == 0

    state.remove_confirmed("a")
    assert state.stats == Stats()


def test_confirm_evicts_most_recent_match() -> None:
    state = ReconciliationState()
    for temp_id in ("tmp-1", "tmp-2", "tmp-3"):
        state.add_optimistic(temp_id, {"amount": 10, "type": "expense", "category": "Food"})

    (record, matched), = state.confirm([{"id": "srv-1", "amount": 10.004, "type": "expense", "category": "Food"}])

    assert matched == "tmp-3"
    assert record.id == "srv-1"
    assert record.temp_id is None
    assert record.is_optimistic is False
    assert [temp_id for temp_id, _ in state.ledger.items()] == ["tmp-1", "tmp-2"]


def test_confirm_batch_never_claims_twice() -> None:
    state = ReconciliationState()
    state.add_optimistic("tmp-1", {"amount": 10, "category": "Food"})
    state.add_optimistic("tmp-2", {"amount": 10, "category": "Food"})

    results = state.confirm(
        [
            {"id": "a", "amount": 10, "category": "Food"},
            {"id": "b", "amount": 10, "category": "Food"},
            {"id": "c", "amount": 10, "category": "Food"},
        ]
    )

    assert [matched for _, matched in results] == ["tmp-2", "tmp-1", None]
    assert state.mismatch_count == 1
    assert len(state.ledger) == 0
    assert state.stats.transaction_count == 3


def test_confirm_requires_matching_type_and_category() -> None:
    state = ReconciliationState()
    state.add_optimistic("tmp-1", {"amount": 10, "type": "expense", "category": "Food"})

    results = state.confirm(
        [
            {"id": "a", "amount": 10, "type": "income", "category": "Food"},
            {"id": "b", "amount": 10, "type": "expense", "category": "Travel"},
            {"id": "c", "amount": 10.02, "type": "expense", "category": "Food"},
        ]
    )

    assert all(matched is None for _, matched in results)
    assert "tmp-1" in state.ledger


def test_confirm_rejects_records_without_id() -> None:
    state = ReconciliationState()
    with pytest.raises(ValueError):
        state.confirm([{"amount": 10}])


def test_replace_confirmed_skips_records_without_id() -> None:
    state = ReconciliationState()
    state.upsert_confirmed({"id": "old", "amount": 1})

    records = state.replace_confirmed([{"_id": "x", "amount": "5"}, {"amount": 3}])

    assert [record.id for record in records] == ["x"]
    assert state.get_confirmed("old") is None
    assert state.stats.total_expenses == 5


def test_merged_records_lists_pending_first() -> None:
    state = ReconciliationState()
    state.merge_confirmed([{"id": "a", "amount": 1}, {"id": "b", "amount": 2}])
    state.add_optimistic("tmp-1", {"amount": 3})
    state.add_optimistic("tmp-2", {"amount": 4})

    merged = state.merged_records()

    assert [record.temp_id or record.id for record in merged] == ["tmp-2", "tmp-1", "b", "a"]


def test_upsert_and_review_queue() -> None:
    state = ReconciliationState()
    state.merge_confirmed([{"id": "a", "amount": 0, "needsManualReview": True}, {"id": "b", "amount": 2}])

    assert [record.id for record in state.review_queue()] == ["a"]

    state.upsert_confirmed({"_id": "a", "amount": 12})

    assert state.review_queue() == []
    assert state.stats.total_expenses == 14
    assert [record.id for record in state.confirmed_records()] == ["a", "b"]


def _assert_stats_agree(state: ReconciliationState) -> None:
    assert state.stats == compute_stats(state.confirmed_records(), state.optimistic_records())


def test_stats_match_a_full_recompute_after_every_mutation() -> None:
    state = ReconciliationState()
    steps = [
        lambda: state.add_optimistic("tmp-1", {"amount": 40, "category": "Food"}),
        lambda: state.add_optimistic("tmp-2", {"amount": 15, "type": "income", "category": "Salary"}),
        lambda: state.update_optimistic("tmp-2", {"amount": "20.25"}),
        lambda: state.confirm([{"_id": "a", "amount": 40, "category": "Food"}]),
        lambda: state.merge_confirmed([{"id": "b", "amount": 7}, {"id": "c", "amount": 1, "type": "income"}]),
        lambda: state.upsert_confirmed({"id": "b", "amount": 9}),
        lambda: state.remove_optimistic("tmp-2"),
        lambda: state.remove_confirmed("c"),
        lambda: state.replace_confirmed([{"_id": "d", "amount": 3}, {"amount": 4}]),
        lambda: state.clear(),
    ]

    for step in steps:
        step()
        _assert_stats_agree(state)


def test_rejected_confirm_batch_leaves_state_untouched() -> None:
    state = ReconciliationState()
    state.add_optimistic("tmp-1", {"amount": 40, "type": "expense", "category": "Food"})
    before = state.stats

    with pytest.raises(ValueError):
        state.confirm([{"_id": "a", "amount": 40, "type": "expense", "category": "Food"}, {"amount": 10}])

    assert state.confirmed_records() == []
    assert "tmp-1" in state.ledger
    assert state.mismatch_count == 0
    assert state.stats == before
    _assert_stats_agree(state)


def test_rejected_merge_batch_leaves_state_untouched() -> None:
    state = ReconciliationState()
    state.upsert_confirmed({"id": "a", "amount": 5})

    with pytest.raises(ValueError):
        state.merge_confirmed([{"id": "b", "amount": 7}, {"amount": 8}])

    assert [record.id for record in state.confirmed_records()] == ["a"]
    _assert_stats_agree(state)


def test_held_records_are_listed_but_not_counted() -> None:
    state = ReconciliationState()
    state.upsert_confirmed({"id": "a", "amount": 5})

    held = state.hold("review-1", {"description": "Unreadable", "source": "receipt_upload"})

    assert held.id == "review-1"
    assert held.needs_manual_review is True
    assert held.amount == 0.0
    assert [record.id for record in state.review_queue()] == ["review-1"]
    assert [record.id for record in state.merged_records()] == ["review-1", "a"]
    assert state.stats.transaction_count == 1
    _assert_stats_agree(state)

    assert state.release_held("review-1") == held
    assert state.held_records() == []


def test_state_owns_its_fallback_counter() -> None:
    first = ReconciliationState()
    second = ReconciliationState()

    first.add_optimistic("tmp-1", {"amount": "n/a", "date": "someday"})

    assert first.fallbacks.counts() == {"amount": 1, "date": 1}
    assert second.fallbacks.counts() == {"amount": 0, "date": 0}

    first.clear()
    assert first.fallbacks.counts() == {"amount": 0, "date": 0}
