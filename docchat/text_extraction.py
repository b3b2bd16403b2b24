import json
import os
import zipfile
from dataclasses import dataclass
from typing import Any, List, Optional

from pypdf import PdfReader
from pypdf.errors import PyPdfError
from docx import Document as DocxDocument
from docx.opc.exceptions import PackageNotFoundError

from .exceptions import LoaderError


@dataclass(frozen=True)
class PageText:
    """Text of one source segment. page_number is None when the source has no pagination."""
    text: str
    page_number: Optional[int] = None


@dataclass(frozen=True)
class RawSource:
    """
    Where a document's text comes from.

    Either a file on disk (path + file_type), already extracted text,
    or a list of page strings in page order.
    """
    path: Optional[str] = None
    file_type: Optional[str] = None
    text: Optional[str] = None
    pages: Optional[List[str]] = None


def read_pages_from_pdf(file_path: str) -> List[PageText]:
    pdf = PdfReader(file_path)
    return [
        PageText(text=page.extract_text() or "", page_number=i)
        for i, page in enumerate(pdf.pages, start=1)
    ]


def read_text_from_docx(file_path: str) -> str:
    """
    Extract text from DOCX file including both paragraphs and tables.
    Tables are converted to readable text format.
    """
    doc = DocxDocument(file_path)
    parts = []

    for para in doc.paragraphs:
        text = para.text.strip()
        if text:
            parts.append(text)

    for table in doc.tables:
        table_text = extract_table_text(table)
        if table_text:
            parts.append("\n" + table_text)

    return "\n\n".join(parts)


def extract_table_text(table) -> str:
    """
    Convert a DOCX table to readable text format.
    Each row is preserved with clear separators.
    """
    lines = []

    for row in table.rows:
        cells = [cell.text.strip() for cell in row.cells]
        if not any(cells):
            continue
        lines.append(" | ".join(cells))

    return "\n".join(lines)


def read_text_from_txt(file_path: str, encoding="utf-8") -> str:
    with open(file_path, "r", encoding=encoding, errors="ignore") as f:
        return f.read()


def read_text_from_json(file_path: str) -> str:
    """Flatten every string value of a JSON file into one paragraph per value."""
    with open(file_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return "\n\n".join(_json_strings(data))


def _json_strings(node: Any) -> List[str]:
    if isinstance(node, str):
        return [node] if node.strip() else []
    if isinstance(node, dict):
        node = list(node.values())
    if isinstance(node, list):
        out = []
        for item in node:
            out.extend(_json_strings(item))
        return out
    return []


def file_type_of(filename: str, mime: str = "") -> str:
    name = (filename or "").lower()
    if name.endswith(".pdf") or mime == "application/pdf":
        return "pdf"
    if name.endswith(".docx") or mime == "application/vnd.openxmlformats-officedocument.wordprocessingml.document":
        return "docx"
    if name.endswith(".json") or mime == "application/json":
        return "json"
    if name.endswith(".md") or mime == "text/markdown":
        return "md"
    if name.endswith(".txt") or mime.startswith("text/"):
        return "txt"
    # Unknown extensions are passed through so callers can reject them
    return os.path.splitext(name)[1].lstrip(".") or "txt"


def load_pages(source: RawSource) -> List[PageText]:
    """
    Resolve a RawSource into page segments.

    Only PDFs and explicit page lists carry real page numbers; everything else
    comes back as a single unpaginated segment.
    """
    if source.pages is not None:
        return [PageText(text=t, page_number=i) for i, t in enumerate(source.pages, start=1)]
    if source.text is not None:
        return [PageText(text=source.text)]
    if not source.path:
        raise LoaderError("Source has neither a path, text nor pages")
    if not os.path.exists(source.path):
        raise LoaderError(f"Source file not found: {source.path}")

    kind = (source.file_type or file_type_of(source.path)).lower()
    try:
        if kind == "pdf":
            return read_pages_from_pdf(source.path)
        if kind == "docx":
            return [PageText(text=read_text_from_docx(source.path))]
        if kind == "json":
            return [PageText(text=read_text_from_json(source.path))]
        if kind in ("txt", "md"):
            return [PageText(text=read_text_from_txt(source.path))]
    except (OSError, ValueError, PyPdfError, PackageNotFoundError, zipfile.BadZipFile) as e:
        raise LoaderError(f"Failed to read {os.path.basename(source.path)}: {e}") from e
    raise LoaderError(f"Unsupported file type: {kind}")
