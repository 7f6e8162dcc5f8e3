"""Source loading for stored documents.

Turns a document's bytes (or its storage path) into a ``SourceDocument``:
spreadsheets are parsed into a header row plus data rows, text files are
decoded, and PDFs and images are kept as bytes and rendered to page images
only when a stage asks for them.
"""

import csv
import hashlib
import io
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from pathlib import Path

import numpy as np
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFPageCountError, PDFSyntaxError
from PIL import Image, UnidentifiedImageError

from docsense.errors import ValidationError
from docsense.records import Document
from docsense.utils.logger import get_logger

logger = get_logger(__name__)


class SourceKind(StrEnum):
    """Broad kind of a source document, used for routing."""

    PDF = "pdf"
    IMAGE = "image"
    SPREADSHEET = "spreadsheet"
    TEXT = "text"


_EXTENSIONS: dict[str, SourceKind] = {
    ".pdf": SourceKind.PDF,
    ".png": SourceKind.IMAGE,
    ".jpg": SourceKind.IMAGE,
    ".jpeg": SourceKind.IMAGE,
    ".tif": SourceKind.IMAGE,
    ".tiff": SourceKind.IMAGE,
    ".bmp": SourceKind.IMAGE,
    ".webp": SourceKind.IMAGE,
    ".xlsx": SourceKind.SPREADSHEET,
    ".xlsm": SourceKind.SPREADSHEET,
    ".csv": SourceKind.SPREADSHEET,
    ".txt": SourceKind.TEXT,
}

SUPPORTED_EXTENSIONS = tuple(_EXTENSIONS)


@dataclass
class SourceDocument:
    """Loaded content of a document, ready for assessment and extraction."""

    filename: str
    kind: SourceKind
    content: bytes
    header: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)
    text: str = ""
    _pages: dict[int, list[np.ndarray]] = field(default_factory=dict, repr=False)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def render_pages(self, dpi: int = 300, first_page_only: bool = False) -> list[np.ndarray]:
        """Render the document to RGB page images.

        Args:
            dpi: Resolution for PDF rendering.
            first_page_only: Render just the first page (used for previews).

        Returns:
            Page images as numpy arrays. Empty for spreadsheets and text.

        Raises:
            ValidationError: If the bytes cannot be decoded as a PDF or image.
        """
        if self.kind not in (SourceKind.PDF, SourceKind.IMAGE):
            return []
        cache_key = -dpi if first_page_only else dpi
        if cache_key in self._pages:
            return self._pages[cache_key]

        try:
            if self.kind == SourceKind.PDF:
                kwargs = {"first_page": 1, "last_page": 1} if first_page_only else {}
                pil_images = convert_from_bytes(self.content, dpi=dpi, **kwargs)
                pages = [np.array(img.convert("RGB")) for img in pil_images]
            else:
                with Image.open(io.BytesIO(self.content)) as img:
                    pages = [np.array(img.convert("RGB"))]
        except (UnidentifiedImageError, OSError) as exc:
            raise ValidationError(f"{self.filename}: unreadable image: {exc}") from exc
        except (PDFPageCountError, PDFSyntaxError) as exc:
            raise ValidationError(f"{self.filename}: PDF conversion failed: {exc}") from exc

        logger.debug("Rendered %d page(s) of %s at %d DPI", len(pages), self.filename, dpi)
        self._pages[cache_key] = pages
        return pages


def content_hash(content: bytes) -> str:
    """SHA-256 hex digest identifying a file's exact bytes."""
    return hashlib.sha256(content).hexdigest()


def detect_kind(filename: str, content: bytes = b"") -> SourceKind:
    """Detect the source kind from the extension, then from magic bytes.

    Raises:
        ValidationError: For unsupported types, including legacy ``.xls``.
    """
    suffix = Path(filename).suffix.lower()
    if suffix == ".xls":
        raise ValidationError(
            f"{filename}: legacy .xls workbooks are not supported, save as .xlsx"
        )
    if suffix in _EXTENSIONS:
        return _EXTENSIONS[suffix]

    if content.startswith(b"%PDF"):
        return SourceKind.PDF
    if content.startswith(b"\x89PNG") or content.startswith(b"\xff\xd8"):
        return SourceKind.IMAGE
    if content.startswith(b"PK"):
        return SourceKind.SPREADSHEET
    raise ValidationError(f"{filename}: unsupported file type '{suffix or 'unknown'}'")


def load_source(document: Document) -> SourceDocument:
    """Build a ``SourceDocument`` from a stored document.

    Args:
        document: Document with inline ``content`` or a ``storage_path``.

    Returns:
        Loaded source.

    Raises:
        ValidationError: If there is no content or it cannot be parsed.
    """
    content = document.content
    if content is None and document.storage_path:
        path = Path(document.storage_path)
        if not path.exists():
            raise ValidationError(f"{document.filename}: file not found at {path}")
        content = path.read_bytes()
    if not content:
        raise ValidationError(f"{document.filename}: document has no content")

    kind = detect_kind(document.filename, content)
    source = SourceDocument(filename=document.filename, kind=kind, content=content)

    if kind == SourceKind.SPREADSHEET:
        if Path(document.filename).suffix.lower() == ".csv":
            table = _read_csv(content)
        else:
            table = _read_xlsx(document.filename, content)
        if table:
            source.header, source.rows = table[0], table[1:]
        source.text = "\n".join(" | ".join(row) for row in table)
        logger.info(
            "Loaded spreadsheet %s: %d columns, %d rows",
            document.filename,
            len(source.header),
            source.row_count,
        )
    elif kind == SourceKind.TEXT:
        source.text = _decode(content)

    return source


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def _cell_to_str(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _non_empty(rows: list[list[str]]) -> list[list[str]]:
    return [row for row in rows if any(cell for cell in row)]


def _read_xlsx(filename: str, content: bytes) -> list[list[str]]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        raise ValidationError(f"{filename}: unreadable workbook: {exc}") from exc
    try:
        sheet = workbook.active
        rows = [
            [_cell_to_str(v) for v in row]
            for row in sheet.iter_rows(values_only=True)
        ]
    finally:
        workbook.close()
    return _non_empty(rows)


def _read_csv(content: bytes) -> list[list[str]]:
    text = _decode(content)
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    rows = [[cell.strip() for cell in row] for row in csv.reader(io.StringIO(text), dialect)]
    return _non_empty(rows)
