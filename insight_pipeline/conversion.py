"""Text extraction: plain files directly, PDFs through Docling."""

from __future__ import annotations

import importlib.util
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Optional

from .errors import PipelineError
from .models import Document
from .utils import SUPPORTED_SUFFIXES, content_hash

log = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n"


def create_converter(
    *,
    num_threads: int = 8,
    ocr_batch_size: int = 8,
    enable_ocr: bool = True,
) -> tuple[Any, str]:
    """Build a Docling ``DocumentConverter`` for PDFs.

    Args:
        num_threads: Thread count used by Docling accelerator options.
        ocr_batch_size: Batch size for OCR processing.
        enable_ocr: Whether OCR is enabled.

    Returns:
        (converter, ocr_engine) where ``ocr_engine`` names the OCR profile.
    """
    t0 = time.time()
    from docling.datamodel.accelerator_options import AcceleratorOptions
    from docling.datamodel.base_models import InputFormat
    from docling.datamodel.pipeline_options import (
        EasyOcrOptions,
        OcrAutoOptions,
        PdfPipelineOptions,
        TesseractOcrOptions,
    )
    from docling.document_converter import DocumentConverter, PdfFormatOption

    log.debug("create_converter: docling imported in %.2fs", time.time() - t0)
    accelerator_options = AcceleratorOptions(num_threads=max(1, num_threads))

    has_easyocr = importlib.util.find_spec("easyocr") is not None
    has_tesseract = shutil.which("tesseract") is not None

    if enable_ocr:
        if has_easyocr:
            ocr_options: Any = EasyOcrOptions()
            ocr_engine = "easyocr"
        elif has_tesseract:
            ocr_options = TesseractOcrOptions()
            ocr_engine = "tesseract"
        else:
            ocr_options = OcrAutoOptions()
            ocr_engine = "auto"
        pipeline_options = PdfPipelineOptions(
            do_ocr=True,
            ocr_options=ocr_options,
            accelerator_options=accelerator_options,
            ocr_batch_size=max(1, ocr_batch_size),
        )
    else:
        ocr_engine = "disabled"
        pipeline_options = PdfPipelineOptions(
            do_ocr=False,
            accelerator_options=accelerator_options,
        )

    converter = DocumentConverter(
        format_options={
            InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
        }
    )
    log.info(
        "Docling converter initialized (%s) in %.2fs", ocr_engine, time.time() - t0
    )
    return converter, ocr_engine


def document_id_for(path: Path) -> str:
    """Stable id derived from the file's resolved path."""
    return f"doc_{content_hash(str(path.resolve()))}"


def _pdf_text(doc: Any) -> tuple[str, Optional[list[int]]]:
    """Markdown for *doc*, page by page when page numbers are known.

    Returns the text and the character offsets where each page ends.
    """
    page_numbers = sorted(getattr(doc, "pages", None) or {})
    if not page_numbers:
        return doc.export_to_markdown(), None

    parts: list[str] = []
    page_breaks: list[int] = []
    offset = 0
    for page_no in page_numbers:
        page_md = doc.export_to_markdown(page_no=page_no)
        if parts:
            parts.append(PAGE_SEPARATOR)
            offset += len(PAGE_SEPARATOR)
        parts.append(page_md)
        offset += len(page_md)
        page_breaks.append(offset)
    return "".join(parts), page_breaks


def extract_document(
    path: Path,
    converter: Any = None,
    *,
    document_id: Optional[str] = None,
) -> Document:
    """Read *path* into a ``Document``.

    ``.txt`` and ``.md`` files are read as UTF-8; PDFs are converted with
    Docling (a converter is built on demand when none is given).

    Raises:
        PipelineError: unsupported file type.
        OSError: the file cannot be read.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise PipelineError(f"unsupported file type {suffix!r}: {path.name}")

    t0 = time.time()
    file_size = path.stat().st_size
    doc_id = document_id or document_id_for(path)

    if suffix in (".txt", ".md"):
        text = path.read_text(encoding="utf-8", errors="replace")
        title = path.stem
        page_breaks = None
    else:
        if converter is None:
            converter, _ = create_converter()
        result = converter.convert(source=str(path))
        doc = result.document
        text, page_breaks = _pdf_text(doc)
        title = doc.name if getattr(doc, "name", None) else path.stem

    log.info(
        "Extracted %s: %s chars%s in %.2fs",
        path.name,
        len(text),
        f", {len(page_breaks)} pages" if page_breaks else "",
        time.time() - t0,
    )
    return Document(
        document_id=doc_id,
        text=text,
        title=title,
        file_size=file_size,
        source_path=str(path),
        page_breaks=page_breaks,
    )
