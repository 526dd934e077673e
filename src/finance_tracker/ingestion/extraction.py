import asyncio
import io
import os

import pdfplumber
import pytesseract
from PIL import Image, UnidentifiedImageError

from finance_tracker.errors import IngestionError
from finance_tracker.logger import get_logger
from finance_tracker.models import ExtractedText

logger = get_logger(__name__)

# Uniform block, single line, single word, single column, fully automatic.
PSM_MODES = (6, 7, 8, 4, 3)
CHAR_WHITELIST = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz.,/-:$₹"
MIN_PASS_TEXT_LENGTH = 10
PDF_TEXT_CONFIDENCE = 85.0


def _pass_score(result: ExtractedText) -> float:
    return result.confidence * (len(result.text) / 100)


def _mean_confidence(data: dict) -> float:
    scores = []
    for raw in data.get("conf", []):
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            scores.append(value)
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


class TextExtractor:
    def __init__(self, lang: str | None = None, psm_modes: tuple[int, ...] = PSM_MODES):
        self.lang = lang or os.getenv("TESSERACT_LANG", "eng")
        self.psm_modes = psm_modes

    def _load_image(self, content: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(content))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise IngestionError("Could not read the uploaded image", status_code=422) from exc
        return image.convert("L")

    def _ocr_pass(self, image: Image.Image, psm: int) -> ExtractedText | None:
        config = f"--oem 1 --psm {psm} -c tessedit_char_whitelist={CHAR_WHITELIST}"
        try:
            text = pytesseract.image_to_string(image, lang=self.lang, config=config).strip()
            data = pytesseract.image_to_data(
                image,
                lang=self.lang,
                config=config,
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractError as exc:
            logger.warning("[INGEST] OCR pass with PSM %s failed: %s", psm, exc)
            return None

        if len(text) <= MIN_PASS_TEXT_LENGTH:
            return None
        return ExtractedText(text=text, confidence=_mean_confidence(data), method=f"tesseract-psm-{psm}")

    def extract_image_text(self, content: bytes) -> ExtractedText:
        """Run several Tesseract passes and keep the best-scoring one."""
        image = self._load_image(content)
        results: list[ExtractedText] = []
        for index, psm in enumerate(self.psm_modes, start=1):
            logger.debug("[INGEST] OCR pass %d/%d (PSM %s).", index, len(self.psm_modes), psm)
            try:
                result = self._ocr_pass(image, psm)
            except pytesseract.TesseractNotFoundError as exc:
                raise IngestionError("Tesseract OCR is not installed", status_code=500) from exc
            if result:
                logger.debug("[INGEST] PSM %s confidence %.1f%%.", psm, result.confidence)
                results.append(result)

        if not results:
            raise IngestionError("All OCR attempts failed to extract readable text", status_code=422)

        best = max(results, key=_pass_score)
        logger.info("[INGEST] Best OCR pass: %s (confidence %.1f%%).", best.method, best.confidence)
        return ExtractedText(text=best.text, confidence=best.confidence, method="tesseract-multi-pass")

    def extract_pdf_text(self, content: bytes) -> ExtractedText:
        try:
            with pdfplumber.open(io.BytesIO(content)) as pdf:
                pages = [page.extract_text() or "" for page in pdf.pages]
        except Exception as exc:
            raise IngestionError(f"PDF extraction failed: {exc}", status_code=422) from exc

        text = "\n".join(pages).strip()
        if not text:
            raise IngestionError("No text found in PDF", status_code=422)
        return ExtractedText(text=text, confidence=PDF_TEXT_CONFIDENCE, method="pdfplumber")

    async def extract_image(self, content: bytes) -> ExtractedText:
        return await asyncio.to_thread(self.extract_image_text, content)

    async def extract_pdf(self, content: bytes) -> ExtractedText:
        return await asyncio.to_thread(self.extract_pdf_text, content)
