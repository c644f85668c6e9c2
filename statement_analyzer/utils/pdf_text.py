def extract_pdf_text(data: bytes) -> str:
    """
    Extracts the plain text layer of a PDF document, page by page.

    Args:
        data: Raw PDF bytes

    Returns:
        Text of every page joined with blank lines. Scanned PDFs without a
        text layer yield an empty string.
    """
    try:
        import fitz
    except ImportError as error:
        raise RuntimeError("pymupdf package is not installed") from error

    doc = fitz.open(stream=data, filetype="pdf")
    try:
        pages = [page.get_text() for page in doc]
    finally:
        doc.close()

    return "\n\n".join(text.strip() for text in pages if text.strip())
