"""
Tests for schema-driven extraction.

Tests:
- Field mapping, fallbacks and link resolution
- Item filtering (no title, no link)
- Selector validation and limits
"""

import pytest
from pydantic import ValidationError

from sloth_proxy.errors import InputError
from sloth_proxy.extractor import (
    ExtractedItem,
    Extractor,
    SelectorSchema,
    extract,
    parse_date,
)

from conftest import ARTICLE_PAGE


def schema(**selectors) -> SelectorSchema:
    return SelectorSchema.model_validate(selectors)


FULL_SCHEMA = schema(**{
    "list": ".item",
    "title": "h2",
    "link": "a",
    "date": "time",
    "summary": ".intro",
    "image": "img",
})


class TestSelectorSchema:
    """Tests for SelectorSchema."""

    def test_list_alias_and_optional_fields(self):
        s = schema(list=".item", title="h2")
        assert s.list_selector == ".item"
        assert s.link is None
        assert s.selectors() == {"list": ".item", "title": "h2"}

    def test_blank_selectors_become_none(self):
        s = schema(list=" .item ", title="   ")
        assert s.list_selector == ".item"
        assert s.title is None

    @pytest.mark.parametrize("payload", [{}, {"list": ""}, {"list": "   "}, {"title": "h2"}])
    def test_list_is_required(self, payload):
        with pytest.raises(ValidationError):
            SelectorSchema.model_validate(payload)


class TestExtractor:
    """Tests for Extractor.extract."""

    def test_minimal_item(self):
        html = '<div class="item"><h2>T</h2><a href="/x">link</a></div>'
        items = extract(html, schema(list=".item", title="h2", link="a"), "https://example.com")

        assert [i.to_dict() for i in items] == [
            {"title": "T", "link": "https://example.com/x", "date": None, "summary": "", "image": ""}
        ]

    def test_all_fields(self):
        items = extract(ARTICLE_PAGE, FULL_SCHEMA, "https://news.example.com/list")

        assert len(items) == 2
        first, second = items
        assert first == ExtractedItem(
            title="First story",
            link="https://news.example.com/first",
            date="2024-03-05T10:00:00+00:00",
            summary="Intro one",
            image="https://news.example.com/img/one.jpg",
        )
        assert second.link == "https://other.example.org/second"
        assert second.date is None
        assert second.summary == ""
        assert second.image == ""

    def test_item_without_link_is_dropped(self):
        html = """
        <div class="item"><h2>Has link</h2><a href="/ok">x</a></div>
        <div class="item"><h2>No href</h2><a>x</a></div>
        <div class="item"><h2>Empty href</h2><a href="">x</a></div>
        """
        items = extract(html, schema(list=".item", title="h2", link="a"), "https://example.com")
        assert [i.title for i in items] == ["Has link"]

    def test_item_without_title_is_dropped(self):
        html = '<div class="item"><h2>  </h2><a href="/x"></a></div>'
        items = extract(html, schema(list=".item", title="h2", link="a"), "https://example.com")
        assert items == []

    def test_non_http_links_are_dropped(self):
        html = """
        <div class="item"><h2>JS</h2><a href="javascript:void(0)">x</a></div>
        <div class="item"><h2>Mail</h2><a href="mailto:x@example.com">x</a></div>
        """
        items = extract(html, schema(list=".item", title="h2", link="a"), "https://example.com")
        assert items == []

    def test_title_falls_back_to_item_text(self):
        html = '<a class="item" href="/a">  Whole   item\n text </a>'
        items = extract(html, schema(list=".item"), "https://example.com")

        assert items == [ExtractedItem(title="Whole item text", link="https://example.com/a")]

    def test_link_falls_back_to_descendant_anchor(self):
        html = '<li class="item"><h3><a href="story.html">Nested</a></h3></li>'
        items = extract(html, schema(list=".item", title="h3"), "https://example.com/news/")

        assert items[0].title == "Nested"
        assert items[0].link == "https://example.com/news/story.html"

    def test_image_falls_back_to_nested_img(self):
        html = """
        <div class="item"><h2>T</h2><a href="/x">x</a>
          <figure class="pic"><img src="//cdn.example.com/p.png"></figure>
        </div>
        """
        items = extract(html, schema(list=".item", title="h2", link="a", image=".pic"), "https://example.com")
        assert items[0].image == "https://cdn.example.com/p.png"

    def test_date_from_text_when_no_datetime_attribute(self):
        html = '<div class="item"><h2>T</h2><a href="/x">x</a><span class="d">March 5, 2024</span></div>'
        items = extract(html, schema(list=".item", title="h2", link="a", date=".d"), "https://example.com")
        assert items[0].date == "2024-03-05T00:00:00+00:00"

    def test_unparseable_date_is_none(self):
        html = '<div class="item"><h2>T</h2><a href="/x">x</a><span class="d">yesterday-ish</span></div>'
        items = extract(html, schema(list=".item", title="h2", link="a", date=".d"), "https://example.com")
        assert items[0].date is None

    def test_base_href_is_honoured(self):
        html = """
        <html><head><base href="https://mirror.example.net/root/"></head>
        <body><div class="item"><h2>T</h2><a href="page">x</a></div></body></html>
        """
        items = extract(html, schema(list=".item", title="h2", link="a"), "https://example.com")
        assert items[0].link == "https://mirror.example.net/root/page"

    def test_document_order_and_duplicates_kept(self):
        html = "".join(
            f'<div class="item"><h2>T{i}</h2><a href="/same">x</a></div>' for i in range(3)
        )
        items = extract(html, schema(list=".item", title="h2", link="a"), "https://example.com")

        assert [i.title for i in items] == ["T0", "T1", "T2"]
        assert {i.link for i in items} == {"https://example.com/same"}

    def test_idempotent(self):
        first = extract(ARTICLE_PAGE, FULL_SCHEMA, "https://example.com")
        second = extract(ARTICLE_PAGE, FULL_SCHEMA, "https://example.com")
        assert first == second

    def test_malformed_html_does_not_fail(self):
        html = '<div class="item"><h2>Broken<a href="/x">link</div><div class="item"'
        items = extract(html, schema(list=".item", title="h2", link="a"), "https://example.com")
        assert items[0].link == "https://example.com/x"

    def test_no_matches_is_empty(self):
        assert extract("<html></html>", schema(list=".nothing"), "https://example.com") == []
        assert extract("", schema(list=".item"), "https://example.com") == []

    def test_invalid_selector_is_input_error(self):
        with pytest.raises(InputError) as exc:
            extract(ARTICLE_PAGE, schema(list="div[[["), "https://example.com")
        assert exc.value.code == "invalid_selector"

    def test_oversized_selector_is_rejected(self):
        extractor = Extractor(max_selector_length=10)
        with pytest.raises(InputError):
            extractor.extract(ARTICLE_PAGE, schema(list=".item", title="h2 > span.very-long"), "https://example.com")

    def test_item_count_is_capped(self):
        html = "".join(f'<div class="item"><h2>T{i}</h2><a href="/{i}">x</a></div>' for i in range(10))
        items = Extractor(max_items=3).extract(html, schema(list=".item", title="h2", link="a"), "https://example.com")
        assert [i.title for i in items] == ["T0", "T1", "T2"]


class TestParseDate:
    def test_iso_with_zone(self):
        assert parse_date("2024-03-05T10:00:00+02:00") == "2024-03-05T10:00:00+02:00"

    def test_naive_is_utc(self):
        assert parse_date("2024-03-05 10:00") == "2024-03-05T10:00:00+00:00"

    @pytest.mark.parametrize("value", [None, "", "  ", "not a date at all"])
    def test_unparseable(self, value):
        assert parse_date(value) is None
