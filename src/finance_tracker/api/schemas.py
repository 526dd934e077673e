from datetime import date, datetime
from typing import Any

from pydantic import BaseModel

# Amounts and dates arrive as entered; the record validator normalizes them.
LooseAmount = float | str | None
LooseDate = datetime | date | str | None


class TransactionCreate(BaseModel):
    amount: LooseAmount = None
    type: str | None = None
    category: str | None = None
    description: str | None = None
    date: LooseDate = None
    source: str | None = None


class TransactionPatch(BaseModel):
    amount: LooseAmount = None
    type: str | None = None
    category: str | None = None
    description: str | None = None
    date: LooseDate = None
    needs_manual_review: bool | None = None

    def changes(self) -> dict[str, Any]:
        # An explicit null leaves the field as it is.
        return {key: value for key, value in self.model_dump(exclude_unset=True).items() if value is not None}


class RefreshRequest(BaseModel):
    search: str | None = None
    type: str | None = None
    category: str | None = None
    start_date: str | None = None
    end_date: str | None = None


class ReviewResolution(BaseModel):
    amount: float | str
    category: str | None = None
