"""Tests for uploaded file parsing."""

import io

import pytest
from docx import Document
from PyPDF2 import PdfWriter

from freight_tender.errors import FileParseError
from freight_tender.file_parser import (
    clean_pdf_text,
    get_file_type,
    get_page_count,
    is_supported,
    parse_file,
)


def blank_pdf(pages=1):
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class TestFileTypes:

    @pytest.mark.parametrize("name,expected", [
        ("tender.PDF", "pdf"), ("tender.docx", "docx"), ("tender.doc", "doc"),
        ("tender.txt", "txt"), ("tender.xlsx", None), ("tender", None),
    ])
    def test_get_file_type(self, name, expected):
        assert get_file_type(name) == expected

    def test_doc_not_supported(self):
        assert not is_supported("tender.doc")
        assert is_supported("tender.docx")


class TestParseFile:

    def test_txt(self):
        result = parse_file(b"  PO# 118585\nShip to Chicago, IL 60601  ", "tender.txt")

        assert result.text == "PO# 118585\nShip to Chicago, IL 60601"
        assert result.file_type == "txt"
        assert result.word_count == 7
        assert result.page_count is None

    def test_empty_txt(self):
        with pytest.raises(FileParseError, match="empty"):
            parse_file(b"   \n", "tender.txt")

    def test_doc_rejected_with_hint(self):
        with pytest.raises(FileParseError, match="save as .docx"):
            parse_file(b"\xd0\xcf\x11\xe0", "tender.doc")

    def test_unsupported_type(self):
        with pytest.raises(FileParseError) as exc:
            parse_file(b"a,b", "tender.csv")
        assert exc.value.filename == "tender.csv"

    def test_docx_paragraphs_and_tables(self):
        document = Document()
        document.add_paragraph("PO# 118585")
        table = document.add_table(rows=1, cols=2)
        table.rows[0].cells[0].text = "Ship to"
        table.rows[0].cells[1].text = "Chicago, IL 60601"
        buffer = io.BytesIO()
        document.save(buffer)

        result = parse_file(buffer.getvalue(), "tender.docx")

        assert result.text == "PO# 118585\nShip to | Chicago, IL 60601"
        assert result.file_type == "docx"

    def test_corrupt_docx(self):
        with pytest.raises(FileParseError, match="Could not read Word document") as exc:
            parse_file(b"not a zip archive", "tender.docx")
        assert exc.value.filename == "tender.docx"

    def test_image_only_pdf(self):
        data = blank_pdf(pages=2)

        assert get_page_count(data) == 2
        with pytest.raises(FileParseError, match="only images"):
            parse_file(data, "scan.pdf")

    def test_corrupt_pdf(self):
        assert get_page_count(b"not a pdf") is None
        with pytest.raises(FileParseError):
            parse_file(b"not a pdf", "broken.pdf")


class TestCleanPdfText:

    def test_strips_headers_footers_and_filename(self):
        text = ("load-tender.pdf\nPO# 118585\nACME LOGISTICS\nPage 1 of 2\n\n"
                "ACME LOGISTICS\nShip to Chicago\nACME LOGISTICS\nPage 2 of 2")

        assert clean_pdf_text(text, "load-tender.pdf") == "PO# 118585\n\nShip to Chicago"

    def test_collapses_blank_runs(self):
        assert clean_pdf_text("PO# 1\n\n\n\n\n\nDel# 2", "x.pdf") == "PO# 1\n\n\nDel# 2"
