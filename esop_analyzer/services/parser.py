# =============================================================================
# PDF Parser — Docling Document Intelligence
# =============================================================================
#
# Parses ESOP valuation reports with IBM's Docling library, extracting text,
# tables, and section headings with page numbers.
#
# DESIGN DECISION: Docling over PyPDF/pdfplumber because valuation reports
# are table-heavy (DCF schedules, capitalization tables, multi-year
# financials) and Docling reconstructs table structure and runs OCR on
# scanned pages.
#
# DESIGN DECISION: Everything downstream is page-scoped. Chunks, the
# "PAGE n:" document text, the page-grouped prompt context and citations all
# name exact pages, so the parser groups elements into `PageContent` objects.
#
# FALLBACK: Some PDFs come back without provenance (every element on page 0).
# In that case the concatenated text is split into logical pages using
# common page-break markers, or packed into ~2500 character pages when no
# marker is found.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

logger = logging.getLogger(__name__)

# Page-break markers, tried in order; the first one that splits the text wins.
PAGE_BREAK_PATTERNS = [
    re.compile(r"\n\s*Page\s+\d+\s*\n", re.IGNORECASE),
    re.compile(r"\n\s*\d+\s*\n(?=\s*[A-Z])"),
    re.compile(r"\n\s*-\s*\d+\s*-\s*\n", re.IGNORECASE),
    re.compile(r"\f"),
    re.compile(r"\n\s*PAGE\s+\d+\s*\n", re.IGNORECASE),
]

FALLBACK_PAGE_LENGTH = 2500


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ParsedElement:
    """A single paragraph, heading, or table with its page and section."""

    text: str  # The text content (markdown for tables)
    page_number: int  # 1-indexed page; 0 when Docling had no provenance
    element_type: str  # "text", "table", or "heading"
    section_title: str | None = None
    level: int = 0


@dataclass
class PageContent:
    """The text of one logical page, plus the element types it contains."""

    page_number: int
    content: str
    content_types: set[str] = field(default_factory=set)

    @property
    def contains_table(self) -> bool:
        return "table" in self.content_types


@dataclass
class ParsedDocument:
    """
    The complete result of parsing a PDF document.

    `elements` keeps reading order; `pages` is the page-grouped view used by
    the chunker and by the stored document text.
    """

    elements: list[ParsedElement] = field(default_factory=list)
    pages: list[PageContent] = field(default_factory=list)
    page_count: int = 0
    filename: str = ""
    parse_method: str = "docling"

    @property
    def full_text(self) -> str:
        """Document text rendered as `PAGE n:` sections."""
        return "\n\n".join(
            f"PAGE {page.page_number}:\n{page.content}" for page in self.pages
        )

    @property
    def table_count(self) -> int:
        return sum(1 for e in self.elements if e.element_type == "table")


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialization loads layout and table models (~2-5 seconds), so a single
# converter is shared by every document a worker processes.
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info(
            "Initializing Docling DocumentConverter "
            "(first use, may take a few seconds)..."
        )
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(
                    pipeline_options=pipeline_options,
                ),
            }
        )
        logger.info("Docling DocumentConverter initialized")
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_pdf(file_path: str) -> ParsedDocument:
    """
    Parse a PDF file with Docling and group its content by page.

    Args:
        file_path: Path to the PDF file on disk.

    Returns:
        ParsedDocument with elements in reading order and page contents.

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If Docling fails to convert the document.

    Pipeline position: Step 1 of processing (parse → chunk → embed → store).
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"PDF not found: {file_path}")

    logger.info("Parsing PDF: %s", path.name)
    converter = _get_converter()

    try:
        result = converter.convert(str(path))
    except Exception as exc:
        raise RuntimeError(
            f"Docling failed to parse '{path.name}': {exc}"
        ) from exc

    elements: list[ParsedElement] = []
    current_section: str | None = None
    table_number = 0

    for item, level in result.document.iterate_items():
        page_no = 0
        if hasattr(item, "prov") and item.prov:
            page_no = item.prov[0].page_no

        label = getattr(item, "label", None)

        if label in (DocItemLabel.SECTION_HEADER, DocItemLabel.TITLE):
            text = getattr(item, "text", "").strip()
            if text:
                current_section = text
                elements.append(ParsedElement(
                    text=text,
                    page_number=page_no,
                    element_type="heading",
                    section_title=current_section,
                    level=level,
                ))

        elif label == DocItemLabel.TABLE:
            table_md = _table_to_markdown(item)
            if table_md:
                table_number += 1
                elements.append(ParsedElement(
                    text=format_table_text(
                        table_number, page_no, current_section, table_md,
                    ),
                    page_number=page_no,
                    element_type="table",
                    section_title=current_section,
                    level=level,
                ))

        elif label in (DocItemLabel.TEXT, DocItemLabel.LIST_ITEM,
                       DocItemLabel.CAPTION, DocItemLabel.FOOTNOTE):
            text = getattr(item, "text", "").strip()
            if text:
                elements.append(ParsedElement(
                    text=text,
                    page_number=page_no,
                    element_type="text",
                    section_title=current_section,
                    level=level,
                ))

    parsed = build_parsed_document(elements, filename=path.name)

    logger.info(
        "Parsed '%s': %d elements (%d tables), %d pages via %s",
        path.name,
        len(elements),
        parsed.table_count,
        parsed.page_count,
        parsed.parse_method,
    )
    return parsed


def build_parsed_document(
    elements: list[ParsedElement],
    filename: str = "",
) -> ParsedDocument:
    """
    Group elements into pages.

    Uses element provenance when any element has a page number; otherwise
    falls back to `split_text_into_pages` over the concatenated text.
    """
    has_provenance = any(e.page_number > 0 for e in elements)

    if has_provenance:
        grouped: dict[int, list[ParsedElement]] = {}
        last_page = 1
        for element in elements:
            # Elements without provenance stay with the preceding page
            page = element.page_number if element.page_number > 0 else last_page
            last_page = page
            grouped.setdefault(page, []).append(element)

        pages = [
            PageContent(
                page_number=page,
                content="\n\n".join(e.text for e in grouped[page]),
                content_types={e.element_type for e in grouped[page]},
            )
            for page in sorted(grouped)
        ]
        parse_method = "docling"
    else:
        raw_text = "\n\n".join(e.text for e in elements)
        pages = split_text_into_pages(raw_text)
        parse_method = "docling_text_split"

    return ParsedDocument(
        elements=elements,
        pages=pages,
        page_count=max((p.page_number for p in pages), default=0),
        filename=filename,
        parse_method=parse_method,
    )


def split_text_into_pages(text: str) -> list[PageContent]:
    """
    Split raw text into logical pages using page-break markers.

    The first pattern in PAGE_BREAK_PATTERNS that produces more than one
    piece wins. Without any marker, paragraphs are packed into pages of
    about FALLBACK_PAGE_LENGTH characters.
    """
    pieces: list[str] = []
    for pattern in PAGE_BREAK_PATTERNS:
        splits = pattern.split(text)
        if len(splits) > 1:
            logger.debug("Found %d pages using pattern %s", len(splits), pattern.pattern)
            pieces = [s for s in splits if s.strip()]
            break

    if len(pieces) <= 1:
        pieces = split_by_length(text, FALLBACK_PAGE_LENGTH)

    pages = [piece.strip() for piece in pieces if piece.strip()]
    return [
        PageContent(page_number=i + 1, content=content, content_types={"text"})
        for i, content in enumerate(pages)
    ]


def split_by_length(text: str, target_length: int) -> list[str]:
    """Pack paragraphs into pieces of roughly `target_length` characters."""
    if len(text) <= target_length:
        return [text]

    pieces: list[str] = []
    current = ""
    for paragraph in re.split(r"\n\s*\n", text):
        if current and len(current) + len(paragraph) > target_length:
            pieces.append(current.strip())
            current = paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph

    if current.strip():
        pieces.append(current.strip())
    return pieces


def format_table_text(
    table_number: int,
    page_number: int,
    title: str | None,
    table_markdown: str,
) -> str:
    """Render a table as a self-describing block for chunking and prompts."""
    page_label = page_number if page_number > 0 else "Unknown"
    return (
        f"TABLE {table_number} (Page {page_label}): {title or 'Untitled table'}\n"
        f"{table_markdown}"
    )


def _table_to_markdown(table_item: object) -> str:
    """
    Convert a Docling TableItem to markdown.

    Uses export_to_dataframe() → pandas to_markdown(); falls back to the
    item's plain text.
    """
    try:
        if hasattr(table_item, "export_to_dataframe"):
            df = table_item.export_to_dataframe()
            return df.to_markdown(index=False)
    except Exception as exc:
        logger.warning("Table export to DataFrame failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""
