import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from finance_tracker.core import settings
from finance_tracker.errors import IngestionError, UpstreamServiceError
from finance_tracker.ingestion.pipeline import IngestionPipeline
from finance_tracker.integration.transaction_api import HttpTransactionService
from finance_tracker.models import ExtractedText, IngestionCandidate
from finance_tracker.services.reconciliation import ReconciliationCoordinator
from finance_tracker.services.state import ReconciliationState

RECEIPT_TEXT = "Milk 1L 45.00\nBread 30.50\nTotal 75.50"


def _pipeline(candidates: list[IngestionCandidate], service: Any = None) -> IngestionPipeline:
    extractor = MagicMock()
    extractor.extract_image = AsyncMock(
        return_value=ExtractedText(text=RECEIPT_TEXT, confidence=91.5, method="tesseract-multi-pass")
    )
    extractor.extract_pdf = AsyncMock(
        return_value=ExtractedText(text="01/03/2024 Salary credit 50000.00", confidence=85.0, method="pdfplumber")
    )
    parser = MagicMock()
    parser.parse = AsyncMock(return_value=candidates)

    if service is None:
        service = AsyncMock()
        counter = iter(range(1, 100))

        async def create(payload: dict[str, Any]) -> dict[str, Any]:
            return {"_id": f"srv-{next(counter)}", **payload}

        service.create_transaction.side_effect = create

    coordinator = ReconciliationCoordinator(ReconciliationState(), service, timeout=5)
    return IngestionPipeline(extractor, parser, coordinator)


@pytest.mark.anyio
async def test_receipt_candidates_are_stored_and_merged() -> None:
    pipeline = _pipeline(
        [
            IngestionCandidate(description="Milk 1L", amount=45.0, category="Groceries"),
            IngestionCandidate(description="Unreadable", amount=None, needs_manual_review=True),
        ]
    )

    result = await pipeline.process("receipt", "scan.JPG", b"image-bytes")

    assert result.kind == "receipt"
    assert result.extraction_method == "tesseract-multi-pass"
    assert result.text_preview == RECEIPT_TEXT
    assert [record.id for record in result.records] == ["srv-1", "review-1"]
    assert all(record.source == "receipt_upload" for record in result.records)
    assert result.needs_review_count == 1

    state = pipeline.coordinator.state
    assert [record.id for record in state.review_queue()] == ["review-1"]
    assert state.stats.total_expenses == 45.0
    assert state.stats.transaction_count == 1
    assert len(state.ledger) == 0
    # Only the priced candidate is sent to the service.
    pipeline.coordinator.service.create_transaction.assert_awaited_once()


@pytest.mark.anyio
async def test_bank_statement_uses_pdf_extraction() -> None:
    pipeline = _pipeline([IngestionCandidate(description="Salary credit", amount=50000.0, type="income")])

    result = await pipeline.process("bank_statement", "march.pdf", b"%PDF")

    pipeline.extractor.extract_pdf.assert_awaited_once_with(b"%PDF")
    pipeline.extractor.extract_image.assert_not_awaited()
    pipeline.parser.parse.assert_awaited_once_with("01/03/2024 Salary credit 50000.00", "bank_statement")
    assert result.records[0].source == "bank_statement"
    assert pipeline.coordinator.state.stats.total_income == 50000.0


@pytest.mark.anyio
async def test_failed_candidates_are_skipped() -> None:
    service = AsyncMock()
    service.create_transaction.side_effect = [
        UpstreamServiceError("Category is required", status_code=400),
        {"_id": "srv-9", "amount": 30.5, "type": "expense", "category": "Groceries"},
    ]
    pipeline = _pipeline(
        [
            IngestionCandidate(description="Milk", amount=45.0),
            IngestionCandidate(description="Bread", amount=30.5, category="Groceries"),
        ],
        service=service,
    )

    result = await pipeline.process("receipt", "scan.png", b"image-bytes")

    assert [record.id for record in result.records] == ["srv-9"]
    assert pipeline.coordinator.state.stats.transaction_count == 1


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("kind", "filename"),
    [("receipt", "statement.pdf"), ("bank_statement", "scan.png"), ("receipt", None)],
)
async def test_rejects_wrong_file_types(kind: str, filename: str | None) -> None:
    pipeline = _pipeline([])

    with pytest.raises(IngestionError) as excinfo:
        await pipeline.process(kind, filename, b"data")

    assert excinfo.value.status_code == 400
    pipeline.parser.parse.assert_not_awaited()


@pytest.mark.anyio
async def test_rejects_oversized_and_empty_uploads() -> None:
    pipeline = _pipeline([])

    with pytest.raises(IngestionError, match="upload limit"):
        await pipeline.process("receipt", "big.png", b"x" * (settings.MAX_UPLOAD_BYTES + 1))
    with pytest.raises(IngestionError, match="empty"):
        await pipeline.process("receipt", "empty.png", b"")


@pytest.mark.anyio
async def test_rejects_too_little_text() -> None:
    pipeline = _pipeline([])
    pipeline.extractor.extract_pdf.return_value = ExtractedText(text="Page 1", confidence=85.0, method="pdfplumber")

    with pytest.raises(IngestionError) as excinfo:
        await pipeline.process("bank_statement", "short.pdf", b"%PDF")

    assert excinfo.value.status_code == 422


def _positive_amounts_only(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    if not body.get("amount") or body["amount"] <= 0:
        return httpx.Response(400, json={"success": False, "error": "Amount is required and must be greater than 0"})
    return httpx.Response(201, json={"success": True, "data": {"_id": f"srv-{body['description']}", **body}})


@pytest.mark.anyio
async def test_unpriced_candidates_reach_review_against_the_http_service() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_positive_amounts_only))
    service = HttpTransactionService(base_url="http://api.test", token="secret", client=client)
    pipeline = _pipeline(
        [
            IngestionCandidate(description="Milk", amount=45.0, category="Groceries"),
            IngestionCandidate(description="Smudged", amount=None, needs_manual_review=True),
        ],
        service=service,
    )

    result = await pipeline.process("receipt", "scan.png", b"image-bytes")

    assert [record.id for record in result.records] == ["srv-Milk", "review-1"]
    assert result.needs_review_count == 1
    coordinator = pipeline.coordinator
    assert [record.id for record in coordinator.state.review_queue()] == ["review-1"]

    resolved = await coordinator.resolve_review("review-1", "12.40", "Groceries")

    assert resolved.id == "srv-Smudged"
    assert resolved.amount == 12.4
    assert coordinator.state.review_queue() == []
    assert coordinator.state.stats.total_expenses == pytest.approx(57.4)
    await service.aclose()
