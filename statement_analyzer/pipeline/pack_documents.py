from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from statement_analyzer.llm_client.base import ContentPart
from statement_analyzer.utils.error_taxonomy import InvalidInputError
from statement_analyzer.utils.pdf_text import extract_pdf_text

logger = logging.getLogger(__name__)

LOCAL_REF_PREFIX = "local://"
DOCUMENT_SEPARATOR = "\n\n--- DOCUMENT SEPARATOR ---\n\n"
SUPPORTED_EXTENSIONS: dict[str, str] = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".csv": "text/csv",
}


@dataclass(frozen=True, slots=True)
class DocumentContent:
    """A loaded upload: PDFs keep their bytes, text and CSV keep decoded text."""

    name: str
    mime_type: str
    data: bytes | None = None
    text: str | None = None

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"

    @property
    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        return len(self.text or "")


def resolve_document_ref(
    ref: str, *, uploads_dir: Path, allow_paths: bool = False
) -> Path:
    """Map a ref to a file.

    ``local://<name>`` stays inside ``uploads_dir``. Plain filesystem paths
    are only honoured with ``allow_paths``, which the CLI sets for local use.
    """
    if not ref.startswith(LOCAL_REF_PREFIX):
        if not allow_paths:
            raise InvalidInputError(
                f"Document references must use the {LOCAL_REF_PREFIX} scheme: {ref}"
            )
        return Path(ref).expanduser()

    relative_name = ref[len(LOCAL_REF_PREFIX) :]
    base_dir = uploads_dir.resolve()
    candidate = (base_dir / relative_name).resolve()
    if not relative_name or not candidate.is_relative_to(base_dir):
        raise InvalidInputError(f"Document reference escapes the uploads directory: {ref}")
    return candidate


def load_documents(
    refs: Sequence[str], *, uploads_dir: Path, allow_paths: bool = False
) -> list[DocumentContent]:
    """Read every supported document; unsupported or unreadable refs are skipped."""
    documents: list[DocumentContent] = []

    for index, ref in enumerate(refs, start=1):
        path = resolve_document_ref(ref, uploads_dir=uploads_dir, allow_paths=allow_paths)
        mime_type = SUPPORTED_EXTENSIONS.get(path.suffix.lower())
        if mime_type is None:
            logger.warning("Unsupported file type for %s, skipping", path.name or ref)
            continue

        try:
            raw = path.read_bytes()
        except OSError as error:
            logger.warning("Failed to read document %d/%d %s: %s", index, len(refs), ref, error)
            continue

        if mime_type == "application/pdf":
            documents.append(DocumentContent(name=path.name, mime_type=mime_type, data=raw))
        else:
            documents.append(
                DocumentContent(
                    name=path.name,
                    mime_type=mime_type,
                    text=raw.decode("utf-8", errors="replace"),
                )
            )

    return documents


def build_content_parts(
    *, prompt_text: str, documents: Sequence[DocumentContent]
) -> list[ContentPart]:
    """Prompt part followed by one part per document, PDFs inlined as bytes."""
    parts = [ContentPart(text=prompt_text)]

    for document in documents:
        if document.is_pdf:
            parts.append(
                ContentPart(
                    data=document.data,
                    mime_type=document.mime_type,
                    name=document.name,
                )
            )
        else:
            parts.append(
                ContentPart(
                    text=f"Document: {document.name}\n\n{document.text or ''}",
                    mime_type=document.mime_type,
                    name=document.name,
                )
            )

    return parts


def document_texts(
    documents: Sequence[DocumentContent],
    *,
    pdf_text_extractor: Callable[[bytes], str] = extract_pdf_text,
) -> list[str]:
    texts: list[str] = []
    for document in documents:
        if document.is_pdf:
            texts.append(pdf_text_extractor(document.data or b""))
        else:
            texts.append(document.text or "")
    return texts


def pack_text_documents(
    *,
    prompt_text: str,
    documents: Sequence[DocumentContent],
    pdf_text_extractor: Callable[[bytes], str] = extract_pdf_text,
) -> list[ContentPart]:
    combined = DOCUMENT_SEPARATOR.join(
        document_texts(documents, pdf_text_extractor=pdf_text_extractor)
    )
    return [ContentPart(text=f"{prompt_text}\n\nDOCUMENT CONTENT:\n{combined}")]
