from datetime import datetime
from typing import Literal

from pydantic import BaseModel

TransactionType = Literal["income", "expense"]
UploadKind = Literal["receipt", "bank_statement"]

TRANSACTION_TYPES: tuple[str, ...] = ("income", "expense")


class TransactionRecord(BaseModel):
    amount: float
    type: TransactionType
    category: str
    description: str
    date: datetime
    source: str = "manual"
    id: str | None = None
    temp_id: str | None = None
    is_optimistic: bool = False
    needs_manual_review: bool = False


class Stats(BaseModel):
    total_income: float = 0.0
    total_expenses: float = 0.0
    net_balance: float = 0.0
    transaction_count: int = 0
    income_count: int = 0
    expense_count: int = 0


class CreateOutcome(BaseModel):
    temp_id: str
    record: TransactionRecord
    matched_temp_id: str | None = None  # None when no pending entry matched


class FailedEntry(BaseModel):
    temp_id: str
    record: TransactionRecord
    error: str
    retryable: bool


class ExtractedText(BaseModel):
    text: str
    confidence: float  # 0 to 100
    method: str


class IngestionCandidate(BaseModel):
    description: str
    amount: float | None = None
    category: str = "Other Expense"
    type: TransactionType = "expense"
    needs_manual_review: bool = False


class IngestionResult(BaseModel):
    kind: UploadKind
    records: list[TransactionRecord]
    text_preview: str
    extraction_method: str
    extraction_confidence: float
    processing_ms: int
    needs_review_count: int = 0
