from __future__ import annotations

import csv
import io
import json
import logging
import re
from typing import Callable, Dict, List, Optional

from .errors import ParseError
from .models import DocumentFormat, ParsedSection

logger = logging.getLogger(__name__)

SECTION_BOUNDARY = "\n\n"
# A blank line in either Unix or Windows line endings.
SECTION_BOUNDARY_RE = re.compile(r"\r?\n\r?\n")


class TextExtractor:
    """
    Abstract text extractor for binary formats. Implementations should be
    stateless and reusable across documents.
    """

    def extract_text(self, content: bytes) -> str:
        raise NotImplementedError


class PypdfTextExtractor(TextExtractor):
    """
    Embedded-text PDF extraction using `pypdf` (no OCR). Pages are joined with
    a blank line so that each page boundary is also a section boundary.
    """

    def extract_text(self, content: bytes) -> str:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(content))
        if reader.is_encrypted and not reader.decrypt(""):
            raise ValueError("encrypted PDF is not supported")
        return SECTION_BOUNDARY.join((page.extract_text() or "") for page in reader.pages)


class DoclingTextExtractor(TextExtractor):
    """
    Docling-based DOCX extraction.

    The converter is built lazily on first use because docling's import and
    pipeline setup are expensive; one extractor is reused per worker process.
    Text items are emitted in reading order and tables are rendered as
    markdown, each separated by a blank line.
    """

    def __init__(self):
        self._converter = None

    @property
    def converter(self):
        if self._converter is None:
            from docling.datamodel.base_models import InputFormat
            from docling.document_converter import DocumentConverter

            self._converter = DocumentConverter(allowed_formats=[InputFormat.DOCX])
        return self._converter

    def extract_text(self, content: bytes) -> str:
        from docling.datamodel.base_models import DocumentStream
        from docling_core.types.doc.document import TableItem, TextItem

        result = self.converter.convert(DocumentStream(name="upload.docx", stream=io.BytesIO(content)))
        doc = result.document
        parts: List[str] = []
        for item, _level in doc.iterate_items():
            if isinstance(item, TableItem):
                parts.append(item.export_to_markdown(doc=doc))
            elif isinstance(item, TextItem):
                parts.append(item.text)
        return SECTION_BOUNDARY.join(parts)


def split_text_sections(text: str) -> List[ParsedSection]:
    """
    Split a text stream on blank lines. Every segment, empty ones included,
    becomes a section, so text without a boundary yields exactly one.
    """
    return [
        ParsedSection(index=n, heading=f"Section {n}", content=segment)
        for n, segment in enumerate(SECTION_BOUNDARY_RE.split(text), start=1)
    ]


def decode_text(content: bytes) -> str:
    # utf-8-sig drops a leading BOM; invalid bytes raise UnicodeDecodeError.
    return content.decode("utf-8-sig")


def parse_txt(content: bytes) -> List[ParsedSection]:
    return split_text_sections(decode_text(content))


def parse_csv(content: bytes) -> List[ParsedSection]:
    """
    One section per data row, serialized as a JSON object of header -> value.
    Values stay strings. A file with no data rows yields a single empty row.
    """
    reader = csv.reader(io.StringIO(decode_text(content), newline=""), strict=True)
    header: Optional[List[str]] = None
    sections: List[ParsedSection] = []
    for row in reader:
        if not row:
            continue
        if header is None:
            header = row
            continue
        if len(row) != len(header):
            raise ValueError(
                f"row {len(sections) + 1} has {len(row)} fields, expected {len(header)}"
            )
        n = len(sections) + 1
        sections.append(
            ParsedSection(
                index=n,
                heading=f"Row {n}",
                content=json.dumps(dict(zip(header, row)), ensure_ascii=False),
            )
        )
    if not sections:
        sections.append(ParsedSection(index=1, heading="Row 1", content=json.dumps({})))
    return sections


class ParsingEngine:
    """
    Format dispatch over `DocumentFormat`. Binary formats go through a text
    extractor and then the blank-line splitter; csv and txt are decoded
    directly. Any failure surfaces as `ParseError` and nothing is written.
    """

    def __init__(
        self,
        pdf_extractor: Optional[TextExtractor] = None,
        docx_extractor: Optional[TextExtractor] = None,
    ):
        self.pdf_extractor = pdf_extractor or PypdfTextExtractor()
        self.docx_extractor = docx_extractor or DoclingTextExtractor()
        self._parsers: Dict[DocumentFormat, Callable[[bytes], List[ParsedSection]]] = {
            DocumentFormat.DOCX: lambda data: split_text_sections(self.docx_extractor.extract_text(data)),
            DocumentFormat.PDF: lambda data: split_text_sections(self.pdf_extractor.extract_text(data)),
            DocumentFormat.CSV: parse_csv,
            DocumentFormat.TXT: parse_txt,
        }
        missing = set(DocumentFormat) - set(self._parsers)
        if missing:
            raise RuntimeError(f"No parser registered for formats: {sorted(f.value for f in missing)}")

    def parse(self, content: bytes, document_format: DocumentFormat, document_key: str) -> List[ParsedSection]:
        parser = self._parsers[document_format]
        try:
            sections = parser(content)
        except Exception as exc:  # noqa: BLE001
            raise ParseError(document_format, document_key, str(exc) or type(exc).__name__) from exc
        logger.debug("Parsed %s as %s into %d sections", document_key, document_format.value, len(sections))
        return sections
