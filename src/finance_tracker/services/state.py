from collections.abc import Iterable, Mapping
from typing import Any

from finance_tracker.domain.normalize import FallbackCounter
from finance_tracker.domain.records import validate_transaction
from finance_tracker.logger import get_logger
from finance_tracker.models import Stats, TransactionRecord
from finance_tracker.services.ledger import OptimisticLedger
from finance_tracker.services.stats import compute_stats

logger = get_logger(__name__)

MATCH_EPSILON = 0.01

RawRecord = Mapping[str, Any] | TransactionRecord


def is_match(pending: TransactionRecord, confirmed: TransactionRecord) -> bool:
    return (
        abs(pending.amount - confirmed.amount) < MATCH_EPSILON
        and pending.type == confirmed.type
        and pending.category == confirmed.category
    )


def _as_confirmed(raw: RawRecord, fallbacks: FallbackCounter | None = None) -> TransactionRecord:
    record = validate_transaction(raw, fallbacks)
    if record.id is None:
        raise ValueError("Confirmed records must carry a server id")
    return record.model_copy(update={"temp_id": None, "is_optimistic": False})


class ReconciliationState:
    """Confirmed records, the optimistic ledger, and the statistics derived from both.

    Every mutating method validates its input first and finishes by
    recomputing ``stats`` from the full current state, so a reader never
    observes figures older than the last applied mutation and a rejected
    batch leaves nothing half-applied.

    Ingested records that could not be stored for lack of an amount are held
    locally for review. They are listed and queued for review but are not part
    of ``stats`` until they are resolved and stored.
    """

    def __init__(self) -> None:
        self.fallbacks = FallbackCounter()
        self.ledger = OptimisticLedger(self.fallbacks)
        self._confirmed: dict[str, TransactionRecord] = {}
        self._held: dict[str, TransactionRecord] = {}
        self._stats = Stats()
        self.mismatch_count = 0

    @property
    def stats(self) -> Stats:
        return self._stats

    def _recompute(self) -> None:
        self._stats = compute_stats(self._confirmed.values(), self.ledger.list_all())

    # Optimistic entries

    def add_optimistic(self, temp_id: str, raw: RawRecord) -> TransactionRecord:
        record = self.ledger.add(temp_id, raw)
        self._recompute()
        return record

    def update_optimistic(self, temp_id: str, fields: Mapping[str, Any]) -> TransactionRecord | None:
        record = self.ledger.update(temp_id, fields)
        if record is not None:
            self._recompute()
        return record

    def remove_optimistic(self, temp_id: str) -> TransactionRecord | None:
        record = self.ledger.remove(temp_id)
        if record is not None:
            self._recompute()
        return record

    def find_match(
        self,
        record: TransactionRecord,
        *,
        claimed: set[str] | None = None,
        among: Iterable[str] | None = None,
    ) -> str | None:
        """Most recently added unclaimed pending entry matching ``record``."""
        allowed = set(among) if among is not None else None
        for temp_id, pending in reversed(self.ledger.items()):
            if claimed and temp_id in claimed:
                continue
            if allowed is not None and temp_id not in allowed:
                continue
            if is_match(pending, record):
                return temp_id
        return None

    def confirm(self, records: Iterable[RawRecord]) -> list[tuple[TransactionRecord, str | None]]:
        """Accept authoritative records, evicting the pending entry each one matches.

        An entry claimed earlier in the same pass is never matched twice.
        """
        validated = [_as_confirmed(raw, self.fallbacks) for raw in records]
        claimed: set[str] = set()
        results: list[tuple[TransactionRecord, str | None]] = []
        for record in validated:
            temp_id = self.find_match(record, claimed=claimed)
            if temp_id is not None:
                claimed.add(temp_id)
                self.ledger.remove(temp_id)
                logger.info("[RECONCILE] %s confirmed as %s.", temp_id, record.id)
            else:
                self.mismatch_count += 1
                logger.warning(
                    "[RECONCILE] No pending entry matches confirmed record %s (%s %.2f '%s').",
                    record.id,
                    record.type,
                    record.amount,
                    record.category,
                )
            self._confirmed[record.id] = record
            results.append((record, temp_id))
        self._recompute()
        return results

    # Confirmed collection

    def get_confirmed(self, record_id: str) -> TransactionRecord | None:
        return self._confirmed.get(record_id)

    def upsert_confirmed(self, raw: RawRecord) -> TransactionRecord:
        record = _as_confirmed(raw, self.fallbacks)
        self._confirmed[record.id] = record
        self._recompute()
        return record

    def merge_confirmed(self, records: Iterable[RawRecord]) -> list[TransactionRecord]:
        merged = [_as_confirmed(raw, self.fallbacks) for raw in records]
        for record in merged:
            self._confirmed[record.id] = record
        self._recompute()
        return merged

    def remove_confirmed(self, record_id: str) -> TransactionRecord | None:
        record = self._confirmed.pop(record_id, None)
        if record is not None:
            self._recompute()
        return record

    def replace_confirmed(self, records: Iterable[RawRecord]) -> list[TransactionRecord]:
        replaced: dict[str, TransactionRecord] = {}
        for raw in records:
            try:
                record = _as_confirmed(raw, self.fallbacks)
            except ValueError:
                logger.warning("[RECONCILE] Skipping listed record without an id.")
                continue
            replaced[record.id] = record
        self._confirmed = replaced
        self._recompute()
        return list(replaced.values())

    # Held for review

    def hold(self, record_id: str, raw: RawRecord) -> TransactionRecord:
        record = validate_transaction(raw, self.fallbacks).model_copy(
            update={"id": record_id, "temp_id": None, "is_optimistic": False, "needs_manual_review": True}
        )
        self._held[record_id] = record
        return record

    def get_held(self, record_id: str) -> TransactionRecord | None:
        return self._held.get(record_id)

    def release_held(self, record_id: str) -> TransactionRecord | None:
        return self._held.pop(record_id, None)

    def held_records(self) -> list[TransactionRecord]:
        return list(self._held.values())

    # Reads

    def confirmed_records(self) -> list[TransactionRecord]:
        return list(self._confirmed.values())

    def optimistic_records(self) -> list[TransactionRecord]:
        return self.ledger.list_all()

    def merged_records(self) -> list[TransactionRecord]:
        """Pending entries first, then held and confirmed ones; newest first within each."""
        return [
            *reversed(self.ledger.list_all()),
            *reversed(self._held.values()),
            *reversed(self._confirmed.values()),
        ]

    def review_queue(self) -> list[TransactionRecord]:
        flagged = [record for record in self._confirmed.values() if record.needs_manual_review]
        return [*self._held.values(), *flagged]

    def clear(self) -> None:
        self.ledger.clear()
        self._confirmed.clear()
        self._held.clear()
        self.fallbacks.reset()
        self.mismatch_count = 0
        self._recompute()
