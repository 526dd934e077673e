from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from finance_tracker.api.dependencies import get_ingestion
from finance_tracker.errors import IngestionError
from finance_tracker.ingestion.pipeline import IngestionPipeline
from finance_tracker.logger import get_logger
from finance_tracker.models import IngestionResult, UploadKind

router = APIRouter()

logger = get_logger(__name__)


async def _process(pipeline: IngestionPipeline, kind: UploadKind, upload: UploadFile) -> IngestionResult:
    content = await upload.read()
    try:
        return await pipeline.process(kind, upload.filename, content)
    except IngestionError as exc:
        logger.warning("[API] Upload '%s' rejected: %s", upload.filename, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("/upload/receipt")
async def upload_receipt(
    file: Annotated[UploadFile, File()],
    pipeline: Annotated[IngestionPipeline, Depends(get_ingestion)],
) -> IngestionResult:
    return await _process(pipeline, "receipt", file)


@router.post("/upload/bank-statement")
async def upload_bank_statement(
    file: Annotated[UploadFile, File()],
    pipeline: Annotated[IngestionPipeline, Depends(get_ingestion)],
) -> IngestionResult:
    return await _process(pipeline, "bank_statement", file)
