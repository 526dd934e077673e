import asyncio
import itertools
from collections import deque
from collections.abc import Awaitable, Iterable, Mapping
from time import monotonic
from typing import Any, TypeVar

from finance_tracker.core import settings
from finance_tracker.domain.normalize import normalize_amount
from finance_tracker.domain.records import build_patch_payload, build_service_payload, merge_fields
from finance_tracker.errors import UpstreamServiceError
from finance_tracker.integration.base import TransactionService
from finance_tracker.logger import get_logger
from finance_tracker.models import CreateOutcome, FailedEntry, TransactionRecord
from finance_tracker.services.state import RawRecord, ReconciliationState

logger = get_logger(__name__)

T = TypeVar("T")

RECENT_FAILURES_LIMIT = 50


class ReconciliationCoordinator:
    """Drives transactions through Pending -> Confirmed | Reverted.

    The coordinator is the only writer of its ``ReconciliationState``. State
    mutations are synchronous and run on the event loop; the service calls are
    the only suspension points.
    """

    def __init__(
        self,
        state: ReconciliationState,
        service: TransactionService,
        *,
        timeout: float | None = None,
        stale_ttl: float | None = None,
        failure_policy: str | None = None,
    ) -> None:
        self.state = state
        self.service = service
        self.timeout = timeout if timeout is not None else settings.create_timeout_seconds()
        self.stale_ttl = stale_ttl if stale_ttl is not None else settings.stale_ttl_seconds()
        self.failure_policy = failure_policy or settings.failure_policy()
        self._counter = itertools.count(1)
        self._review_counter = itertools.count(1)
        self._in_flight: set[str] = set()
        # Calls still outstanding whose pending entry the user discarded.
        self._discarded: set[str] = set()
        self._retry_box: dict[str, FailedEntry] = {}
        self._recent_failures: deque[FailedEntry] = deque(maxlen=RECENT_FAILURES_LIMIT)
        self._background: set[asyncio.Task[Any]] = set()

    def next_temp_id(self) -> str:
        while True:
            temp_id = f"tmp-{next(self._counter)}"
            if temp_id not in self.state.ledger and temp_id not in self._retry_box:
                return temp_id

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def failed_entries(self) -> list[FailedEntry]:
        return [*self._retry_box.values(), *self._recent_failures]

    async def _call(self, call: Awaitable[T], action: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamServiceError(
                f"Transaction service did not {action} within {self.timeout:g}s",
                timed_out=True,
            ) from exc
        except UpstreamServiceError:
            raise
        except Exception as exc:
            raise UpstreamServiceError(f"Failed to {action}: {exc}") from exc

    # Create lifecycle

    def _begin(self, temp_id: str, payload: RawRecord) -> TransactionRecord:
        record = self.state.add_optimistic(temp_id, payload)
        self._in_flight.add(temp_id)
        logger.info(
            "[RECONCILE] %s pending: %s %.2f '%s'.",
            temp_id,
            record.type,
            record.amount,
            record.category,
        )
        return record

    async def create(self, payload: RawRecord) -> CreateOutcome:
        temp_id = self.next_temp_id()
        record = self._begin(temp_id, payload)
        return await self._complete(temp_id, record, retryable=True)

    def create_nowait(self, payload: RawRecord) -> TransactionRecord:
        """Register the optimistic entry and confirm it in a background task."""
        temp_id = self.next_temp_id()
        record = self._begin(temp_id, payload)
        task = asyncio.create_task(self._complete_in_background(temp_id, record, retryable=True))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return record

    async def retry(self, temp_id: str) -> CreateOutcome:
        entry = self._retry_box.pop(temp_id, None)
        if entry is None:
            raise KeyError(temp_id)
        logger.info("[RECONCILE] Retrying %s.", temp_id)
        record = self._begin(temp_id, entry.record)
        return await self._complete(temp_id, record, retryable=False)

    async def _complete_in_background(
        self,
        temp_id: str,
        record: TransactionRecord,
        *,
        retryable: bool,
    ) -> None:
        try:
            await self._complete(temp_id, record, retryable=retryable)
        except UpstreamServiceError:
            # Already reverted and recorded in failed_entries().
            pass

    async def _complete(
        self,
        temp_id: str,
        record: TransactionRecord,
        *,
        retryable: bool,
    ) -> CreateOutcome:
        try:
            response = await self._call(
                self.service.create_transaction(build_service_payload(record)),
                "create the transaction",
            )
            if not isinstance(response, Mapping):
                raise UpstreamServiceError("Transaction service returned no record")
            try:
                confirmed, matched = self.state.confirm([response])[0]
            except ValueError as exc:
                raise UpstreamServiceError(str(exc)) from exc
        except asyncio.CancelledError:
            self._revert(temp_id, record, "request cancelled", retryable=retryable)
            raise
        except UpstreamServiceError as exc:
            self._revert(temp_id, record, exc.message, retryable=retryable)
            raise

        self._in_flight.discard(temp_id)
        self._discarded.discard(temp_id)
        self.sweep_stale()
        return CreateOutcome(temp_id=temp_id, record=confirmed, matched_temp_id=matched)

    def _revert(self, temp_id: str, record: TransactionRecord, reason: str, *, retryable: bool) -> None:
        self._in_flight.discard(temp_id)
        if temp_id in self._discarded:
            self._discarded.discard(temp_id)
            logger.info("[RECONCILE] %s failed after it was discarded (%s).", temp_id, reason)
            self.sweep_stale()
            return
        removed = self.state.remove_optimistic(temp_id)
        if removed is None:
            # Our entry was claimed by another confirmation; drop the orphan
            # that now stands in for this failed call.
            surrogate = self.state.find_match(record, among=self._orphans())
            if surrogate is not None:
                self.state.remove_optimistic(surrogate)
                removed = record

        keep = retryable and self.failure_policy == "retain_once"
        entry = FailedEntry(temp_id=temp_id, record=removed or record, error=reason, retryable=keep)
        if keep:
            self._retry_box[temp_id] = entry
        else:
            self._recent_failures.append(entry)

        logger.warning(
            "[RECONCILE] %s reverted (%s)%s.",
            temp_id,
            reason,
            "; kept for one retry" if keep else "",
        )
        self.sweep_stale()

    def _orphans(self) -> list[str]:
        return [temp_id for temp_id, _ in self.state.ledger.items() if temp_id not in self._in_flight]

    def sweep_stale(self, now: float | None = None) -> list[str]:
        """Drop pending entries no outstanding call can still confirm.

        Entries whose own call finished may still stand in for a call whose
        entry was matched elsewhere, so only the surplus over those calls is
        removed, oldest first and only once older than ``stale_ttl``.
        """
        orphans = self._orphans()
        displaced = sum(1 for temp_id in self._in_flight if temp_id not in self.state.ledger)
        surplus = len(orphans) - displaced
        if surplus <= 0:
            return []

        current = monotonic() if now is None else now
        removed: list[str] = []
        for temp_id in orphans:
            if len(removed) >= surplus:
                break
            added_at = self.state.ledger.added_at(temp_id)
            if added_at is not None and current - added_at >= self.stale_ttl:
                self.state.remove_optimistic(temp_id)
                removed.append(temp_id)

        if removed:
            logger.info("[RECONCILE] Swept stale pending entries: %s.", ", ".join(removed))
        return removed

    # Pending entry edits

    def update_pending(self, temp_id: str, fields: Mapping[str, Any]) -> TransactionRecord | None:
        return self.state.update_optimistic(temp_id, fields)

    def discard(self, temp_id: str) -> bool:
        removed = self.state.remove_optimistic(temp_id) is not None
        if removed and temp_id in self._in_flight:
            self._in_flight.discard(temp_id)
            self._discarded.add(temp_id)
        retained = self._retry_box.pop(temp_id, None) is not None
        if removed or retained:
            logger.info("[RECONCILE] %s discarded by user.", temp_id)
        return removed or retained

    def reset(self) -> None:
        """Forget every pending, failed and confirmed record, e.g. on logout."""
        self._discarded.update(self._in_flight)
        self._in_flight.clear()
        self.state.clear()
        self._retry_box.clear()
        self._recent_failures.clear()
        logger.info("[RECONCILE] State reset.")

    # Confirmed records

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> TransactionRecord:
        patch = build_patch_payload(fields, self.state.fallbacks)
        response = await self._call(
            self.service.update_transaction(record_id, patch),
            "update the transaction",
        )
        if not isinstance(response, Mapping):
            raise UpstreamServiceError("Transaction service returned no record")
        raw = dict(response)
        if not (raw.get("id") or raw.get("_id")):
            raw["id"] = record_id
        record = self.state.upsert_confirmed(raw)
        logger.info("[RECONCILE] Updated %s.", record_id)
        return record

    async def delete(self, record_id: str) -> TransactionRecord | None:
        held = self.state.release_held(record_id)
        if held is not None:
            logger.info("[RECONCILE] Dropped held record %s.", record_id)
            return held
        await self._call(self.service.delete_transaction(record_id), "delete the transaction")
        logger.info("[RECONCILE] Deleted %s.", record_id)
        return self.state.remove_confirmed(record_id)

    async def refresh(self, filters: dict[str, Any] | None = None) -> list[TransactionRecord]:
        listed = await self._call(self.service.list_transactions(filters), "list transactions")
        records = self.state.replace_confirmed(listed)
        logger.info("[RECONCILE] Loaded %d transactions.", len(records))
        return records

    async def store(self, record: TransactionRecord) -> Mapping[str, Any]:
        """Persist a record without an optimistic entry; state is left untouched."""
        response = await self._call(
            self.service.create_transaction(build_service_payload(record)),
            "store the transaction",
        )
        if not isinstance(response, Mapping):
            raise UpstreamServiceError("Transaction service returned no record")
        return response

    def ingest(self, records: Iterable[RawRecord]) -> list[TransactionRecord]:
        """Merge records the ingestion pipeline already stored; no optimistic phase."""
        merged = self.state.merge_confirmed(records)
        logger.info("[RECONCILE] Merged %d ingested transactions.", len(merged))
        return merged

    def hold_for_review(self, records: Iterable[RawRecord]) -> list[TransactionRecord]:
        """Keep ingested records the service cannot store yet until a user resolves them."""
        held = [self.state.hold(f"review-{next(self._review_counter)}", raw) for raw in records]
        if held:
            logger.info("[RECONCILE] Holding %d ingested transactions for review.", len(held))
        return held

    async def resolve_review(
        self,
        record_id: str,
        amount: Any,
        category: str | None = None,
    ) -> TransactionRecord:
        value = normalize_amount(amount, self.state.fallbacks)
        if value <= 0:
            raise ValueError("Amount must be greater than 0")
        fields: dict[str, Any] = {"amount": value, "needs_manual_review": False}
        if category:
            fields["category"] = category

        held = self.state.get_held(record_id)
        if held is None:
            return await self.update(record_id, fields)

        resolved = merge_fields(held.model_copy(update={"id": None}), fields, self.state.fallbacks)
        response = await self.store(resolved)
        try:
            record = self.state.upsert_confirmed(response)
        except ValueError as exc:
            raise UpstreamServiceError(str(exc)) from exc
        self.state.release_held(record_id)
        logger.info("[RECONCILE] Stored held record %s as %s.", record_id, record.id)
        return record

    async def shutdown(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
