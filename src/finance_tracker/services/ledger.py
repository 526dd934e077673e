from collections.abc import Mapping
from time import monotonic
from typing import Any

from finance_tracker.domain.normalize import FallbackCounter
from finance_tracker.domain.records import canonical_fields, merge_fields, validate_transaction
from finance_tracker.errors import DuplicateTempIdError
from finance_tracker.logger import get_logger
from finance_tracker.models import TransactionRecord

logger = get_logger(__name__)


class OptimisticLedger:
    """Pending client-side records keyed by ``temp_id``, in insertion order."""

    def __init__(self, fallbacks: FallbackCounter | None = None) -> None:
        self.fallbacks = fallbacks
        self._entries: dict[str, TransactionRecord] = {}
        self._added_at: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, temp_id: object) -> bool:
        return temp_id in self._entries

    def add(self, temp_id: str, raw: Mapping[str, Any] | TransactionRecord) -> TransactionRecord:
        if temp_id in self._entries:
            logger.warning("[LEDGER] Rejected duplicate optimistic entry %s.", temp_id)
            raise DuplicateTempIdError(temp_id)

        fields = raw.model_dump() if isinstance(raw, TransactionRecord) else canonical_fields(raw)
        fields["temp_id"] = temp_id
        fields["id"] = None
        record = validate_transaction(fields, self.fallbacks)

        self._entries[temp_id] = record
        self._added_at[temp_id] = monotonic()
        logger.debug("[LEDGER] Added %s (%s %.2f).", temp_id, record.type, record.amount)
        return record

    def update(self, temp_id: str, fields: Mapping[str, Any]) -> TransactionRecord | None:
        current = self._entries.get(temp_id)
        if current is None:
            return None
        changes = dict(canonical_fields(fields))
        # The key is owned by the ledger; callers cannot re-identify an entry.
        changes["temp_id"] = temp_id
        changes["id"] = None
        record = merge_fields(current, changes, self.fallbacks)
        self._entries[temp_id] = record
        logger.debug("[LEDGER] Updated %s.", temp_id)
        return record

    def remove(self, temp_id: str) -> TransactionRecord | None:
        record = self._entries.pop(temp_id, None)
        self._added_at.pop(temp_id, None)
        if record is not None:
            logger.debug("[LEDGER] Removed %s.", temp_id)
        return record

    def get(self, temp_id: str) -> TransactionRecord | None:
        return self._entries.get(temp_id)

    def added_at(self, temp_id: str) -> float | None:
        return self._added_at.get(temp_id)

    def items(self) -> list[tuple[str, TransactionRecord]]:
        return list(self._entries.items())

    def list_all(self) -> list[TransactionRecord]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()
        self._added_at.clear()
