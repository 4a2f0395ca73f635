"""
Schema-driven article extraction from rendered HTML.

A SelectorSchema names one CSS selector for the repeating item root
(`list`) and optional sub-selectors scoped within each match. Parsing is
permissive (lxml via BeautifulSoup): malformed HTML never fails extraction.
"""

from dataclasses import dataclass, asdict
from datetime import timezone
from typing import Optional

from bs4 import BeautifulSoup, Tag
from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator
import soupsieve
from soupsieve import SelectorSyntaxError

from .errors import InputError
from .urls import resolve_url

SCHEMA_FIELDS = ("list", "title", "link", "date", "summary", "image")


class SelectorSchema(BaseModel):
    """Per-site mapping of semantic fields to CSS selectors."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    list_selector: str = Field(..., alias="list", min_length=1)
    title: Optional[str] = None
    link: Optional[str] = None
    date: Optional[str] = None
    summary: Optional[str] = None
    image: Optional[str] = None

    @field_validator("list_selector", "title", "link", "date", "summary", "image")
    @classmethod
    def strip_selector(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("list_selector")
    @classmethod
    def require_list(cls, v: Optional[str]) -> str:
        if not v:
            raise ValueError("selectors.list is required")
        return v

    def selectors(self) -> dict[str, str]:
        """Non-empty selectors keyed by their public field name."""
        return {
            k: v for k, v in self.model_dump(by_alias=True).items() if v
        }


@dataclass(frozen=True)
class ExtractedItem:
    """One article record. title and link are never empty."""
    title: str
    link: str
    date: Optional[str] = None
    summary: str = ""
    image: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def check_schema(schema: SelectorSchema, max_selector_length: int = 512) -> None:
    """
    Reject schemas that cannot be evaluated, before any page is rendered.

    Raises:
        InputError: missing, oversized or unparsable selector
    """
    if schema is None or not schema.list_selector:
        raise InputError("selectors.list is required", code="missing_selectors")

    for name, selector in schema.selectors().items():
        if len(selector) > max_selector_length:
            raise InputError(
                f"selectors.{name} exceeds {max_selector_length} characters",
                code="invalid_selector",
            )
        try:
            soupsieve.compile(selector)
        except SelectorSyntaxError as e:
            raise InputError(f"Invalid selector in selectors.{name}: {e}", code="invalid_selector") from e


def _text(el: Optional[Tag]) -> str:
    if el is None:
        return ""
    return " ".join(el.get_text(" ").split())


def _attr(el: Optional[Tag], attr: str, fallback_selector: str) -> str:
    """Attribute of el, else of its first descendant carrying it."""
    if el is None:
        return ""
    value = el.get(attr)
    if not value:
        inner = el.select_one(fallback_selector)
        value = inner.get(attr) if inner is not None else ""
    if isinstance(value, list):
        value = " ".join(value)
    return (value or "").strip()


def parse_date(value: Optional[str]) -> Optional[str]:
    """Parse a free-form date to ISO-8601. Naive dates are taken as UTC."""
    if not value or not value.strip():
        return None
    try:
        dt = date_parser.parse(value.strip())
    except (ValueError, OverflowError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


class Extractor:
    """Maps rendered HTML and a selector schema to an ordered item list."""

    def __init__(self, max_items: int = 500, max_selector_length: int = 512):
        self.max_items = max_items
        self.max_selector_length = max_selector_length

    def extract(self, html: str, schema: SelectorSchema, base_url: str) -> list[ExtractedItem]:
        """
        Extract items in document order.

        Items without a title or a resolvable link are dropped. Repeated
        links are kept.

        Raises:
            InputError: invalid or oversized selectors
        """
        check_schema(schema, self.max_selector_length)

        soup = BeautifulSoup(html or "", "lxml")
        base_url = self._document_base(soup, base_url)

        try:
            elements = soup.select(schema.list_selector, limit=self.max_items)
            return [
                item for item in (self._parse_element(el, schema, base_url) for el in elements)
                if item is not None
            ]
        except SelectorSyntaxError as e:
            raise InputError(f"Invalid selector: {e}", code="invalid_selector") from e

    @staticmethod
    def _document_base(soup: BeautifulSoup, base_url: str) -> str:
        base = soup.find("base", href=True)
        if base is not None:
            resolved = resolve_url(base_url, base["href"])
            if resolved:
                return resolved
        return base_url

    def _parse_element(
        self,
        element: Tag,
        schema: SelectorSchema,
        base_url: str,
    ) -> Optional[ExtractedItem]:
        title_el = element.select_one(schema.title) if schema.title else None
        if title_el is None:
            title_el = element
        title = _text(title_el)

        link_el = element.select_one(schema.link) if schema.link else None
        if link_el is None:
            link_el = title_el
        link = resolve_url(base_url, _attr(link_el, "href", "a[href]"))

        if not title or not link:
            return None

        date = None
        if schema.date:
            date_el = element.select_one(schema.date)
            if date_el is not None:
                date = parse_date(date_el.get("datetime") or _text(date_el))

        summary = ""
        if schema.summary:
            summary = _text(element.select_one(schema.summary))

        image = ""
        if schema.image:
            image = resolve_url(
                base_url,
                _attr(element.select_one(schema.image), "src", "img[src]"),
            )

        return ExtractedItem(
            title=title,
            link=link,
            date=date,
            summary=summary,
            image=image,
        )


def extract(html: str, schema: SelectorSchema, base_url: str) -> list[ExtractedItem]:
    """Extract with default limits."""
    return Extractor().extract(html, schema, base_url)
