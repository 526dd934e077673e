from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from finance_tracker.domain.normalize import FallbackCounter, normalize_amount, normalize_date
from finance_tracker.models import TRANSACTION_TYPES, TransactionRecord

DEFAULT_CATEGORY = "Other"
DEFAULT_TYPE = "expense"
DEFAULT_SOURCE = "manual"

# Wire names used by the Express/Mongo API and the browser client.
_KEY_ALIASES = {
    "_id": "id",
    "tempId": "temp_id",
    "isOptimistic": "is_optimistic",
    "needsManualReview": "needs_manual_review",
    "needsManualAmount": "needs_manual_review",
}

_SERVICE_FIELDS = ("amount", "type", "category", "description", "date", "source")


def canonical_fields(raw: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in raw.items():
        canonical = _KEY_ALIASES.get(key, key)
        if canonical != key and canonical in raw:
            continue
        fields[canonical] = value
    return fields


def _identity(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _text(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def validate_transaction(
    raw: Mapping[str, Any] | TransactionRecord,
    fallbacks: FallbackCounter | None = None,
) -> TransactionRecord:
    """Coerce a loosely-typed payload into a canonical ``TransactionRecord``.

    Pure and idempotent: feeding the result back in yields an equal record.
    Identity fields (``id`` / ``temp_id``) are carried over as given.
    """
    if isinstance(raw, TransactionRecord):
        fields = raw.model_dump()
    else:
        fields = canonical_fields(raw)

    tx_type = fields.get("type")
    if tx_type not in TRANSACTION_TYPES:
        tx_type = DEFAULT_TYPE

    raw_amount = fields.get("amount")
    amount = 0.0 if raw_amount is None else normalize_amount(raw_amount, fallbacks)

    raw_date = fields.get("date")
    date_value = datetime.now() if raw_date is None else normalize_date(raw_date, fallbacks)

    description = fields.get("description")
    record_id = _identity(fields.get("id"))
    temp_id = _identity(fields.get("temp_id"))

    return TransactionRecord(
        amount=amount,
        type=tx_type,
        category=_text(fields.get("category"), DEFAULT_CATEGORY),
        description="" if description is None else str(description),
        date=date_value,
        source=_text(fields.get("source"), DEFAULT_SOURCE),
        id=record_id,
        temp_id=temp_id,
        is_optimistic=temp_id is not None and record_id is None,
        needs_manual_review=bool(fields.get("needs_manual_review", False)),
    )


def merge_fields(
    record: TransactionRecord,
    fields: Mapping[str, Any],
    fallbacks: FallbackCounter | None = None,
) -> TransactionRecord:
    merged = record.model_dump()
    merged.update(canonical_fields(fields))
    return validate_transaction(merged, fallbacks)


def build_service_payload(record: TransactionRecord) -> dict[str, Any]:
    """Fields sent to the transaction service on create."""
    payload = record.model_dump(include=set(_SERVICE_FIELDS))
    payload["date"] = record.date.isoformat()
    if record.needs_manual_review:
        payload["needsManualReview"] = True
    return payload


def build_patch_payload(
    fields: Mapping[str, Any],
    fallbacks: FallbackCounter | None = None,
) -> dict[str, Any]:
    """Normalize the subset of fields present in a partial update."""
    canonical = canonical_fields(fields)
    patch: dict[str, Any] = {}
    if canonical.get("amount") is not None:
        patch["amount"] = normalize_amount(canonical["amount"], fallbacks)
    if canonical.get("type") in TRANSACTION_TYPES:
        patch["type"] = canonical["type"]
    if "category" in canonical:
        patch["category"] = _text(canonical["category"], DEFAULT_CATEGORY)
    if "description" in canonical and canonical["description"] is not None:
        patch["description"] = str(canonical["description"])
    if canonical.get("date") is not None:
        patch["date"] = normalize_date(canonical["date"], fallbacks).isoformat()
    if "needs_manual_review" in canonical:
        patch["needsManualReview"] = bool(canonical["needs_manual_review"])
    return patch
