import os
from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import Response

from finance_tracker.api.dependencies import get_converter
from finance_tracker.core import settings
from finance_tracker.errors import ConverterError
from finance_tracker.ingestion.converter import DocumentConverter
from finance_tracker.logger import get_logger

router = APIRouter()

logger = get_logger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg")


@router.post("/convert/image-to-pdf")
async def image_to_pdf(
    file: Annotated[UploadFile, File()],
    converter: Annotated[DocumentConverter, Depends(get_converter)],
) -> Response:
    filename = file.filename or "image"
    stem, extension = os.path.splitext(filename)
    if extension.lower() not in IMAGE_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Only PNG and JPEG images can be converted")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File exceeds the 10 MB upload limit")

    try:
        pdf = await converter.image_to_pdf(content, filename)
    except ConverterError as exc:
        logger.error("[CONVERT] Conversion of '%s' failed: %s", filename, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{stem or "document"}.pdf"'},
    )
