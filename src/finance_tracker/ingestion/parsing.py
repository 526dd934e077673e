import asyncio
import json
import os
import re
from typing import Any

from openai import OpenAI
from rapidfuzz import fuzz, process, utils

from finance_tracker.core import settings
from finance_tracker.domain.normalize import normalize_amount
from finance_tracker.logger import get_logger
from finance_tracker.models import TRANSACTION_TYPES, IngestionCandidate, UploadKind

logger = get_logger(__name__)

VALID_CATEGORIES = (
    "Food & Dining",
    "Transportation",
    "Shopping",
    "Entertainment",
    "Bills & Utilities",
    "Healthcare",
    "Education",
    "Travel",
    "Groceries",
    "Other Expense",
)
FALLBACK_CATEGORY = "Other Expense"
CATEGORY_MATCH_THRESHOLD = 80.0

MIN_PARSE_TEXT_LENGTH = 10
MAX_FALLBACK_ITEMS = 20

EXCLUDE_KEYWORDS = (
    "total",
    "subtotal",
    "tax",
    "gst",
    "vat",
    "discount",
    "change",
    "payment",
    "cash",
    "card",
    "balance",
    "amount due",
    "grand total",
)

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
_TRAILING_AMOUNT = re.compile(r"(?:₹|Rs\.?|\$)?\s*(\d+(?:[.,]\d{2})?)\s*$")

_DOCUMENT_LABELS = {
    "receipt": "POS receipt",
    "bank_statement": "bank statement",
}


def snap_category(raw: Any) -> str:
    """Map a free-form category onto the known list, or the fallback category."""
    name = str(raw or "").strip()
    if name in VALID_CATEGORIES:
        return name
    if not name:
        return FALLBACK_CATEGORY
    match = process.extractOne(
        name,
        VALID_CATEGORIES,
        scorer=fuzz.token_sort_ratio,
        processor=utils.default_process,
    )
    if match and match[1] >= CATEGORY_MATCH_THRESHOLD:
        return match[0]
    return FALLBACK_CATEGORY


def clean_candidate(raw: Any) -> IngestionCandidate | None:
    if not isinstance(raw, dict):
        return None

    description = str(raw.get("description") or "").strip()
    if not description:
        return None

    amount: float | None = None
    value = raw.get("amount")
    if value is not None and not isinstance(value, bool):
        parsed = normalize_amount(value)
        if parsed > 0:
            amount = parsed

    tx_type = raw.get("type")
    if tx_type not in TRANSACTION_TYPES:
        tx_type = "expense"

    return IngestionCandidate(
        description=description,
        amount=amount,
        category=snap_category(raw.get("category")),
        type=tx_type,
        needs_manual_review=amount is None,
    )


def candidates_from_response(text: str) -> list[IngestionCandidate]:
    """Pull the JSON array out of a model reply; raises ``ValueError`` if there is none."""
    match = _JSON_ARRAY.search(text)
    if not match:
        raise ValueError("No JSON array found in AI response")
    items = json.loads(match.group(0))
    if not isinstance(items, list):
        raise ValueError("AI response is not an array")
    candidates = [clean_candidate(item) for item in items]
    return [candidate for candidate in candidates if candidate is not None]


def fallback_parse(text: str) -> list[IngestionCandidate]:
    """Line-oriented parse: a description followed by a trailing amount."""
    candidates: list[IngestionCandidate] = []
    for line in (raw.strip() for raw in text.splitlines()):
        if not line:
            continue
        lowered = line.lower()
        if any(keyword in lowered for keyword in EXCLUDE_KEYWORDS):
            continue
        match = _TRAILING_AMOUNT.search(line)
        if not match:
            continue
        amount = float(match.group(1).replace(",", "."))
        description = line[: match.start()].strip()
        if amount <= 0 or not description:
            continue
        candidates.append(
            IngestionCandidate(
                description=description,
                amount=amount,
                category=FALLBACK_CATEGORY,
            )
        )
        if len(candidates) >= MAX_FALLBACK_ITEMS:
            break

    logger.info("[INGEST] Regex parsing found %d potential transactions.", len(candidates))
    return candidates


def build_prompt(text: str, kind: UploadKind) -> str:
    categories = "|".join(VALID_CATEGORIES)
    return f"""
You are an expert expense data extraction AI. Extract transaction line items from this {_DOCUMENT_LABELS[kind]} text.

RULES:
1. ONLY extract actual line items (products, services, or statement entries).
2. EXCLUDE taxes, totals, subtotals, discounts, payment methods, store info, headers and footers.
3. If an amount is unclear, set it to null.
4. If no valid line items are found, return an empty array.

OUTPUT FORMAT: a JSON array only, no extra text:
[
  {{
    "description": "item name/description",
    "amount": numeric_value_or_null,
    "category": "{categories}",
    "type": "expense or income"
  }}
]

TEXT TO PARSE:
{text}

Return ONLY the JSON array:"""


def _extract_output_text(response: object) -> str | None:
    output_text = getattr(response, "output_text", None)
    if output_text:
        return output_text

    output = getattr(response, "output", None)
    if not output:
        return None

    parts: list[str] = []
    for item in output:
        for block in getattr(item, "content", None) or []:
            if getattr(block, "type", None) in {"output_text", "text"}:
                text = getattr(block, "text", None)
                if text:
                    parts.append(text)
    return "".join(parts) or None


class ReceiptParser:
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.client: OpenAI | None = None
        self.model = settings.DEFAULT_OPENAI_MODEL
        self.refresh(api_key=api_key, model=model, base_url=base_url)

    def refresh(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("OPENAI_MODEL") or settings.DEFAULT_OPENAI_MODEL
        if key:
            self.client = OpenAI(api_key=key, base_url=base_url or os.getenv("OPENAI_BASE_URL") or None)
            logger.info("[INGEST] AI parsing enabled: model=%s.", self.model)
        else:
            self.client = None
            logger.info("[INGEST] OPENAI_API_KEY not set; using regex parsing only.")

    def _request(self, prompt: str) -> str | None:
        if self.client is None:
            return None
        response = self.client.responses.create(
            model=self.model,
            instructions="You extract structured transactions from financial documents.",
            input=prompt,
            temperature=0.0,
        )
        return _extract_output_text(response)

    async def parse(self, text: str, kind: UploadKind = "receipt") -> list[IngestionCandidate]:
        if len(text.strip()) < MIN_PARSE_TEXT_LENGTH:
            logger.warning("[INGEST] Text too short for parsing.")
            return []

        if self.client is None:
            return fallback_parse(text)

        prompt = build_prompt(text, kind)
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug("[INGEST] AI parsing attempt %d/%d.", attempt, self.max_retries)
                output = await asyncio.to_thread(self._request, prompt)
                if not output:
                    raise ValueError("Empty response from AI model")
                candidates = candidates_from_response(output)
                logger.info("[INGEST] AI parsed %d candidates.", len(candidates))
                return candidates
            except Exception as exc:
                logger.warning("[INGEST] AI parsing attempt %d failed: %s", attempt, exc)
                message = str(exc)
                if "503" in message or "overloaded" in message.lower():
                    await asyncio.sleep(self.retry_delay * attempt)
                elif attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)

        logger.info("[INGEST] AI parsing failed; falling back to regex parsing.")
        return fallback_parse(text)
