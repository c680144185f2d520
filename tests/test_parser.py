# =============================================================================
# Unit Tests — Parser Page Grouping
# =============================================================================
#
# Covers the pure page-grouping helpers. parse_pdf() itself needs Docling
# models and a real PDF, so it is not exercised here.
# =============================================================================

from esop_analyzer.services.parser import (
    FALLBACK_PAGE_LENGTH,
    ParsedElement,
    build_parsed_document,
    format_table_text,
    split_by_length,
    split_text_into_pages,
)


def _element(text: str, page: int, element_type: str = "text") -> ParsedElement:
    return ParsedElement(text=text, page_number=page, element_type=element_type)


class TestBuildParsedDocument:
    def test_groups_by_provenance(self):
        doc = build_parsed_document([
            _element("Intro", 1),
            _element("Valuation summary", 2),
            _element("| a | b |", 2, "table"),
        ], filename="report.pdf")

        assert doc.parse_method == "docling"
        assert doc.page_count == 2
        assert [p.page_number for p in doc.pages] == [1, 2]
        assert doc.pages[1].content == "Valuation summary\n\n| a | b |"
        assert doc.pages[1].contains_table
        assert not doc.pages[0].contains_table
        assert doc.table_count == 1

    def test_element_without_page_joins_previous(self):
        doc = build_parsed_document([
            _element("First", 1),
            _element("Orphan", 0),
            _element("Second", 2),
        ])
        assert doc.pages[0].content == "First\n\nOrphan"

    def test_full_text_has_page_headers(self):
        doc = build_parsed_document([_element("Alpha", 1), _element("Beta", 2)])
        assert doc.full_text == "PAGE 1:\nAlpha\n\nPAGE 2:\nBeta"

    def test_without_provenance_splits_text(self):
        doc = build_parsed_document([
            _element("Intro text", 0),
            _element("Page 2\nSecond page text", 0),
        ])
        assert doc.parse_method == "docling_text_split"
        assert len(doc.pages) == 2

    def test_empty_document(self):
        doc = build_parsed_document([])
        assert doc.page_count == 0
        assert doc.full_text == ""


class TestSplitTextIntoPages:
    def test_page_markers(self):
        text = "Cover\nPage 2\nExecutive summary\nPage 3\nConclusion"
        pages = split_text_into_pages(text)
        assert [p.content for p in pages] == ["Cover", "Executive summary", "Conclusion"]
        assert [p.page_number for p in pages] == [1, 2, 3]

    def test_form_feed(self):
        pages = split_text_into_pages("one\fTwo\fthree")
        assert [p.content for p in pages] == ["one", "Two", "three"]

    def test_no_markers_short_text(self):
        pages = split_text_into_pages("just one short page")
        assert len(pages) == 1
        assert pages[0].content == "just one short page"

    def test_no_markers_long_text_packs_paragraphs(self):
        paragraph = "x" * 1000
        text = "\n\n".join([paragraph] * 6)
        pages = split_text_into_pages(text)
        assert len(pages) > 1
        for page in pages:
            assert len(page.content) <= FALLBACK_PAGE_LENGTH + len(paragraph)


class TestHelpers:
    def test_split_by_length_short(self):
        assert split_by_length("abc", 10) == ["abc"]

    def test_split_by_length_paragraphs(self):
        assert split_by_length("aaaa\n\nbbbb\n\ncccc", 7) == ["aaaa", "bbbb", "cccc"]

    def test_format_table_text(self):
        rendered = format_table_text(1, 4, "Capital Structure", "| a |")
        assert rendered == "TABLE 1 (Page 4): Capital Structure\n| a |"

    def test_format_table_text_unknown_page(self):
        rendered = format_table_text(2, 0, None, "| a |")
        assert rendered.startswith("TABLE 2 (Page Unknown): Untitled table")
