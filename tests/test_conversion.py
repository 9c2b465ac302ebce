from __future__ import annotations

import types

import pytest

from insight_pipeline.conversion import _pdf_text, document_id_for, extract_document
from insight_pipeline.errors import PipelineError


class _Doc:
    def __init__(self, pages=None):
        self.pages = pages
        self.name = "Converted"

    def export_to_markdown(self, page_no=None):
        return "whole document" if page_no is None else f"page {page_no}"


def test_text_file_read_directly(tmp_path):
    path = tmp_path / "minutes.md"
    path.write_text("# Minutes\n\nWe met.", encoding="utf-8")

    document = extract_document(path)

    assert document.text == "# Minutes\n\nWe met."
    assert document.title == "minutes"
    assert document.document_id == document_id_for(path)
    assert document.file_size == path.stat().st_size
    assert document.page_breaks is None


def test_explicit_document_id(tmp_path):
    path = tmp_path / "a.txt"
    path.write_text("text", encoding="utf-8")
    assert extract_document(path, document_id="custom").document_id == "custom"


def test_unsupported_suffix_raises(tmp_path):
    path = tmp_path / "sheet.xlsx"
    path.write_bytes(b"PK")
    with pytest.raises(PipelineError):
        extract_document(path)


def test_document_id_depends_on_path(tmp_path):
    assert document_id_for(tmp_path / "a.txt") != document_id_for(tmp_path / "b.txt")
    assert document_id_for(tmp_path / "a.txt").startswith("doc_")


def test_pdf_text_tracks_page_ends():
    text, breaks = _pdf_text(_Doc(pages={2: None, 1: None}))
    assert text == "page 1\n\npage 2"
    assert breaks == [len("page 1"), len(text)]


def test_pdf_text_without_pages():
    assert _pdf_text(_Doc()) == ("whole document", None)


def test_pdf_uses_given_converter(tmp_path):
    path = tmp_path / "scan.pdf"
    path.write_bytes(b"%PDF-1.4")
    converter = types.SimpleNamespace(
        convert=lambda source: types.SimpleNamespace(document=_Doc(pages={1: None}))
    )

    document = extract_document(path, converter)

    assert document.text == "page 1"
    assert document.title == "Converted"
    assert document.page_breaks == [6]
