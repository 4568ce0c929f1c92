"""
Text extraction from uploaded tender files (pdf, docx, txt)
"""
import io
import re
import logging
import zipfile
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError
from docx import Document as DocxDocument
from docx.opc.exceptions import PackageNotFoundError

from .errors import FileParseError

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = ("pdf", "docx", "doc", "txt")

PAGE_LINE = re.compile(r"^\s*page\s+\d+\s+(of|/)\s+\d+\s*$", re.IGNORECASE)
PAGE_PARTIAL = re.compile(r"page\s+\d+\s+(of|/)\s+\d+", re.IGNORECASE)
FILENAME_STAMP = re.compile(r"^[A-Za-z]+-\d{6,}-\d{8,}[A-Z]?\.?\w*$")
REPEATED_LINE_MIN = 3


@dataclass
class ParseResult:
    text: str
    file_type: str
    word_count: int
    page_count: Optional[int] = None


def get_file_type(filename: str) -> Optional[str]:
    ext = Path(filename).suffix.lower().lstrip(".")
    return ext if ext in SUPPORTED_TYPES else None


def is_supported(filename: str) -> bool:
    return get_file_type(filename) not in (None, "doc")


def count_words(text: str) -> int:
    return len(text.split())


def clean_pdf_text(text: str, filename: str) -> str:
    """Drop filename lines, page footers and short lines repeated on every page"""
    lines = text.split("\n")
    name_lower = filename.lower()
    stem_lower = Path(filename).stem.lower()
    occurrences = Counter(line.strip() for line in lines if 0 < len(line.strip()) < 100)

    kept = []
    for line in lines:
        stripped = line.strip()
        if not stripped:
            kept.append(line)
            continue
        lowered = stripped.lower()
        if name_lower in lowered or (stem_lower and stem_lower in lowered):
            continue
        if PAGE_LINE.match(stripped):
            continue
        if PAGE_PARTIAL.search(stripped) and re.search(r"\d{8,}", stripped):
            continue
        if len(stripped) < 80 and occurrences[stripped] >= REPEATED_LINE_MIN:
            continue
        if FILENAME_STAMP.match(stripped):
            continue
        kept.append(line)

    result = "\n".join(kept)
    return re.sub(r"\n{4,}", "\n\n\n", result).strip()


def get_page_count(data: bytes) -> Optional[int]:
    try:
        return len(PdfReader(io.BytesIO(data)).pages)
    except (PdfReadError, ValueError, OSError) as e:
        logger.warning(f"Could not read PDF page count: {e}")
        return None


def parse_pdf(data: bytes, filename: str) -> ParseResult:
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError, OSError) as e:
        raise FileParseError(f"Could not read PDF: {e}", filename) from e

    text = clean_pdf_text("\n\n".join(pages), filename)
    if not text:
        raise FileParseError("PDF appears to be empty or contains only images", filename)
    return ParseResult(text=text, file_type="pdf", word_count=count_words(text), page_count=len(pages))


def parse_docx(data: bytes, filename: str) -> ParseResult:
    try:
        doc = DocxDocument(io.BytesIO(data))
    except (zipfile.BadZipFile, PackageNotFoundError, ValueError, KeyError, OSError) as e:
        raise FileParseError(f"Could not read Word document: {e}", filename) from e

    paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                paragraphs.append(" | ".join(cells))

    text = "\n".join(paragraphs).strip()
    if not text:
        raise FileParseError("Word document appears to be empty", filename)
    return ParseResult(text=text, file_type="docx", word_count=count_words(text))


def parse_txt(data: bytes, filename: str) -> ParseResult:
    text = data.decode("utf-8", errors="ignore").strip()
    if not text:
        raise FileParseError("Text file is empty", filename)
    return ParseResult(text=text, file_type="txt", word_count=count_words(text))


def parse_file(data: bytes, filename: str) -> ParseResult:
    file_type = get_file_type(filename)
    if file_type is None:
        raise FileParseError(f"Unsupported file type: {filename}", filename)
    if file_type == "doc":
        raise FileParseError(".doc files are not supported. Please save as .docx and re-upload.", filename)

    parser = {"pdf": parse_pdf, "docx": parse_docx, "txt": parse_txt}[file_type]
    result = parser(data, filename)
    logger.info(f"📄 Parsed {filename}: {result.word_count} words"
                + (f", {result.page_count} pages" if result.page_count else ""))
    return result
