import math
from collections.abc import Iterable

from finance_tracker.logger import get_logger
from finance_tracker.models import Stats, TransactionRecord

logger = get_logger(__name__)


def compute_stats(
    confirmed: Iterable[TransactionRecord],
    optimistic: Iterable[TransactionRecord],
) -> Stats:
    """Totals over confirmed and optimistic records, recomputed from scratch.

    ``math.fsum`` keeps the sums independent of record order, so any two
    states holding the same records report identical figures.
    """
    try:
        income: list[float] = []
        expenses: list[float] = []
        for record in [*confirmed, *optimistic]:
            amount = float(record.amount)
            if not math.isfinite(amount) or amount < 0:
                raise ValueError(f"invalid amount {record.amount!r} on record {record.id or record.temp_id}")
            if record.type == "income":
                income.append(amount)
            elif record.type == "expense":
                expenses.append(amount)
            else:
                raise ValueError(f"invalid type {record.type!r}")

        total_income = math.fsum(income)
        total_expenses = math.fsum(expenses)
        return Stats(
            total_income=total_income,
            total_expenses=total_expenses,
            net_balance=total_income - total_expenses,
            transaction_count=len(income) + len(expenses),
            income_count=len(income),
            expense_count=len(expenses),
        )
    except Exception:
        logger.exception("[STATS] Failed to compute statistics; reporting zeros.")
        return Stats()
