import os
from time import perf_counter

from finance_tracker.core import settings
from finance_tracker.domain.records import validate_transaction
from finance_tracker.errors import IngestionError, UpstreamServiceError
from finance_tracker.ingestion.extraction import TextExtractor
from finance_tracker.ingestion.parsing import ReceiptParser
from finance_tracker.logger import get_logger
from finance_tracker.models import ExtractedText, IngestionCandidate, IngestionResult, TransactionRecord, UploadKind
from finance_tracker.services.reconciliation import ReconciliationCoordinator

logger = get_logger(__name__)

ALLOWED_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "receipt": (".png", ".jpg", ".jpeg"),
    "bank_statement": (".pdf",),
}
MIN_TEXT_LENGTH: dict[str, int] = {
    "receipt": 10,
    "bank_statement": 20,
}
SOURCES: dict[str, str] = {
    "receipt": "receipt_upload",
    "bank_statement": "bank_statement",
}
TEXT_PREVIEW_LENGTH = 500


def validate_upload(kind: UploadKind, filename: str | None, content: bytes) -> None:
    extension = os.path.splitext(filename or "")[1].lower()
    allowed = ALLOWED_EXTENSIONS[kind]
    if extension not in allowed:
        raise IngestionError(f"Unsupported file type '{extension or filename}'; expected {', '.join(allowed)}")
    if not content:
        raise IngestionError("Uploaded file is empty")
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise IngestionError(
            f"File exceeds the {settings.MAX_UPLOAD_BYTES // (1024 * 1024)} MB upload limit"
        )


class IngestionPipeline:
    def __init__(
        self,
        extractor: TextExtractor,
        parser: ReceiptParser,
        coordinator: ReconciliationCoordinator,
    ):
        self.extractor = extractor
        self.parser = parser
        self.coordinator = coordinator

    async def _extract(self, kind: UploadKind, content: bytes) -> ExtractedText:
        if kind == "receipt":
            return await self.extractor.extract_image(content)
        return await self.extractor.extract_pdf(content)

    async def _persist(
        self,
        kind: UploadKind,
        candidates: list[IngestionCandidate],
    ) -> tuple[list[dict], list[TransactionRecord]]:
        """Store candidates with an amount; return the rest to be held for review."""
        stored: list[dict] = []
        unpriced: list[TransactionRecord] = []
        for candidate in candidates:
            record = validate_transaction(
                {
                    "description": candidate.description,
                    "amount": candidate.amount,
                    "category": candidate.category,
                    "type": candidate.type,
                    "source": SOURCES[kind],
                    "needs_manual_review": candidate.needs_manual_review,
                },
                self.coordinator.state.fallbacks,
            )
            if record.amount <= 0:
                # The service only accepts positive amounts.
                unpriced.append(record)
                continue
            try:
                response = await self.coordinator.store(record)
            except UpstreamServiceError as exc:
                logger.warning("[INGEST] Could not store '%s': %s", candidate.description, exc.message)
                continue
            if not (response.get("id") or response.get("_id")):
                logger.warning("[INGEST] Stored '%s' but the service returned no id.", candidate.description)
                continue
            stored_record = dict(response)
            if "needsManualReview" not in stored_record and "needs_manual_review" not in stored_record:
                stored_record["needs_manual_review"] = record.needs_manual_review
            stored.append(stored_record)
        return stored, unpriced

    async def process(self, kind: UploadKind, filename: str | None, content: bytes) -> IngestionResult:
        """Extract, parse, store and merge the transactions found in one upload."""
        started = perf_counter()
        validate_upload(kind, filename, content)
        logger.info("[INGEST] Processing %s '%s' (%d bytes).", kind, filename, len(content))

        extracted = await self._extract(kind, content)
        text = extracted.text.strip()
        if len(text) < MIN_TEXT_LENGTH[kind]:
            raise IngestionError("Could not extract readable text from the document", status_code=422)

        candidates = await self.parser.parse(text, kind)
        if not candidates:
            logger.warning("[INGEST] No transactions found in '%s'.", filename)

        stored, unpriced = await self._persist(kind, candidates)
        records = [*self.coordinator.ingest(stored), *self.coordinator.hold_for_review(unpriced)]
        elapsed_ms = int((perf_counter() - started) * 1000)
        needs_review = sum(1 for record in records if record.needs_manual_review)
        logger.info(
            "[INGEST] '%s': %d/%d transactions stored, %d held, %d need review (%d ms).",
            filename,
            len(stored),
            len(candidates),
            len(unpriced),
            needs_review,
            elapsed_ms,
        )
        return IngestionResult(
            kind=kind,
            records=records,
            text_preview=text[:TEXT_PREVIEW_LENGTH],
            extraction_method=extracted.method,
            extraction_confidence=extracted.confidence,
            processing_ms=elapsed_ms,
            needs_review_count=needs_review,
        )
