import asyncio
import io
import os
import shutil
import subprocess
import tempfile
from pathlib import Path

from docx import Document
from docx.shared import Inches

from finance_tracker.core import settings
from finance_tracker.errors import ConverterError
from finance_tracker.logger import get_logger

logger = get_logger(__name__)

PAGE_IMAGE_WIDTH = Inches(6)
PAGE_IMAGE_HEIGHT = Inches(8)


class DocumentConverter:
    """Turns an uploaded image into a PDF by way of a one-page DOCX."""

    def __init__(self, renderer_command: str | None = None, timeout: float | None = None):
        self.renderer_command = (
            renderer_command
            or os.getenv("RENDERER_COMMAND")
            or settings.DEFAULT_RENDERER_COMMAND
        )
        self.timeout = timeout if timeout is not None else settings.renderer_timeout_seconds()

    def refresh(self) -> None:
        self.renderer_command = os.getenv("RENDERER_COMMAND") or settings.DEFAULT_RENDERER_COMMAND
        self.timeout = settings.renderer_timeout_seconds()

    def _write_docx(self, image: bytes, path: Path) -> None:
        document = Document()
        try:
            document.add_picture(io.BytesIO(image), width=PAGE_IMAGE_WIDTH, height=PAGE_IMAGE_HEIGHT)
        except Exception as exc:
            raise ConverterError(f"Could not embed image: {exc}") from exc
        document.save(str(path))

    def _render(self, docx_path: Path, outdir: Path) -> None:
        command = [
            self.renderer_command,
            "--headless",
            "--convert-to",
            "pdf",
            "--outdir",
            str(outdir),
            str(docx_path),
        ]
        logger.debug("[CONVERT] Running: %s", " ".join(command))
        try:
            subprocess.run(command, capture_output=True, timeout=self.timeout, check=True)
        except FileNotFoundError as exc:
            raise ConverterError(f"Document renderer not found: {self.renderer_command}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ConverterError(f"Document renderer timed out after {self.timeout:g}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise ConverterError(f"Document renderer failed: {stderr or exc.returncode}") from exc

    def image_to_pdf_sync(self, image: bytes, name: str = "document") -> bytes:
        stem = Path(name).stem or "document"
        workdir = Path(tempfile.mkdtemp(prefix="convert-"))
        try:
            docx_path = workdir / f"{stem}.docx"
            self._write_docx(image, docx_path)
            self._render(docx_path, workdir)

            pdf_path = workdir / f"{stem}.pdf"
            if not pdf_path.exists():
                raise ConverterError("Document renderer produced no PDF")
            data = pdf_path.read_bytes()
            logger.info("[CONVERT] Rendered PDF (%d bytes).", len(data))
            return data
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def image_to_pdf(self, image: bytes, name: str = "document") -> bytes:
        return await asyncio.to_thread(self.image_to_pdf_sync, image, name)
