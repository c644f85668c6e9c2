from __future__ import annotations

from pathlib import Path

import pytest

from statement_analyzer.pipeline.pack_documents import (
    DOCUMENT_SEPARATOR,
    build_content_parts,
    load_documents,
    pack_text_documents,
    resolve_document_ref,
)
from statement_analyzer.utils.error_taxonomy import InvalidInputError


@pytest.fixture
def uploads_dir(tmp_path: Path) -> Path:
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    (uploads / "jan.txt").write_text("01/01 Salary +5000", encoding="utf-8")
    (uploads / "feb.csv").write_text("date,amount\n2024-02-01,-120", encoding="utf-8")
    (uploads / "mar.pdf").write_bytes(b"%PDF-1.4 fake")
    (uploads / "notes.docx").write_bytes(b"PK")
    return uploads


def test_local_refs_resolve_inside_uploads_dir(uploads_dir: Path) -> None:
    assert resolve_document_ref("local://jan.txt", uploads_dir=uploads_dir) == (
        uploads_dir / "jan.txt"
    ).resolve()

    plain = uploads_dir / "feb.csv"
    assert (
        resolve_document_ref(str(plain), uploads_dir=uploads_dir, allow_paths=True)
        == plain
    )


def test_plain_paths_need_explicit_opt_in(uploads_dir: Path, tmp_path: Path) -> None:
    outside = tmp_path / "elsewhere.txt"
    outside.write_text("not an upload", encoding="utf-8")

    with pytest.raises(InvalidInputError):
        resolve_document_ref(str(outside), uploads_dir=uploads_dir)
    with pytest.raises(InvalidInputError):
        load_documents([str(outside)], uploads_dir=uploads_dir)


@pytest.mark.parametrize("ref", ["local://../secret.txt", "local://"])
def test_local_refs_cannot_escape_uploads_dir(uploads_dir: Path, ref: str) -> None:
    with pytest.raises(InvalidInputError):
        resolve_document_ref(ref, uploads_dir=uploads_dir)


def test_load_documents_skips_unsupported_and_unreadable(uploads_dir: Path) -> None:
    documents = load_documents(
        [
            "local://jan.txt",
            "local://notes.docx",
            "local://feb.csv",
            "local://missing.txt",
            "local://mar.pdf",
        ],
        uploads_dir=uploads_dir,
    )

    assert [document.name for document in documents] == ["jan.txt", "feb.csv", "mar.pdf"]
    assert documents[0].text == "01/01 Salary +5000"
    assert documents[1].mime_type == "text/csv"
    assert documents[2].is_pdf
    assert documents[2].data == b"%PDF-1.4 fake"
    assert documents[2].size == len(b"%PDF-1.4 fake")


def test_native_parts_keep_pdf_bytes_and_label_text(uploads_dir: Path) -> None:
    documents = load_documents(
        ["local://jan.txt", "local://mar.pdf"], uploads_dir=uploads_dir
    )

    parts = build_content_parts(prompt_text="Analyze", documents=documents)

    assert [part.text for part in parts[:2]] == [
        "Analyze",
        "Document: jan.txt\n\n01/01 Salary +5000",
    ]
    assert parts[2].data == b"%PDF-1.4 fake"
    assert parts[2].mime_type == "application/pdf"
    assert parts[2].name == "mar.pdf"


def test_text_mode_joins_documents_with_separator(uploads_dir: Path) -> None:
    documents = load_documents(
        ["local://jan.txt", "local://mar.pdf"], uploads_dir=uploads_dir
    )

    parts = pack_text_documents(
        prompt_text="Analyze",
        documents=documents,
        pdf_text_extractor=lambda data: "PDF TEXT",
    )

    assert len(parts) == 1
    text = parts[0].text or ""
    assert text.startswith("Analyze\n\nDOCUMENT CONTENT:\n")
    assert text.endswith(f"01/01 Salary +5000{DOCUMENT_SEPARATOR}PDF TEXT")
