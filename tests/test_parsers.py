"""Upload type detection and text extraction."""
import io

import pytest
from pypdf import PdfWriter

from cvrecon.parsers import MediaType, ParseError, detect_media_type, extract_text


@pytest.mark.parametrize(
    "filename, declared, content, expected",
    [
        ("cv.pdf", "application/octet-stream", b"", MediaType.PDF),
        ("cv.bin", "application/pdf", b"", MediaType.PDF),
        ("cv", None, b"%PDF-1.7 ...", MediaType.PDF),
        ("cv.txt", None, b"", MediaType.TEXT),
        ("notes", "text/plain; charset=utf-8", b"", MediaType.TEXT),
    ],
)
def test_detect_media_type(filename, declared, content, expected):
    assert detect_media_type(filename, declared, content) is expected


def test_detect_media_type_rejects_other_formats():
    with pytest.raises(ParseError):
        detect_media_type("cv.docx", "application/vnd.openxmlformats-officedocument.wordprocessingml.document", b"PK")


def test_extract_plain_text_strips_bom():
    text = extract_text("﻿Education\nMD, 2005".encode("utf-8"), MediaType.TEXT.value)
    assert text == "Education\nMD, 2005"


@pytest.mark.parametrize("content", [b"", b"  hi  "])
def test_extract_rejects_empty_text(content):
    with pytest.raises(ParseError):
        extract_text(content, MediaType.TEXT.value)


def test_pdf_without_text_is_rejected():
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)

    with pytest.raises(ParseError):
        extract_text(buffer.getvalue(), MediaType.PDF.value)
