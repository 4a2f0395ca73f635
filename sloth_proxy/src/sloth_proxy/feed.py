"""
RSS 2.0 serialization of extracted items.

Items are emitted in extractor order. pubDate falls back to the build
time for undated items, guid is the item link, and an enclosure is added
only for items with an image.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Callable, Iterable, Optional
from xml.sax.saxutils import escape, quoteattr

from .extractor import ExtractedItem

ENCLOSURE_TYPE = "image/jpeg"
GENERATOR = "sloth-proxy"

# Characters not allowed anywhere in an XML 1.0 document
_ILLEGAL_XML_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")


def escape_full(text: str) -> str:
    """Escape all five XML reserved characters."""
    return escape(_ILLEGAL_XML_CHARS.sub("", text), {'"': "&quot;", "'": "&apos;"})


def escape_minimal(text: str) -> str:
    """Legacy escaper: only & and <. Leaves >, quotes untouched."""
    text = _ILLEGAL_XML_CHARS.sub("", text)
    return text.replace("&", "&amp;").replace("<", "&lt;")


ESCAPERS: dict[str, Callable[[str], str]] = {
    "full": escape_full,
    "minimal": escape_minimal,
}


def _attr(value: str) -> str:
    return quoteattr(_ILLEGAL_XML_CHARS.sub("", value))


def rfc1123(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)


@dataclass
class FeedChannel:
    """Channel metadata plus its ordered items."""
    title: str
    link: str
    description: str = ""
    last_build_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    items: list[ExtractedItem] = field(default_factory=list)
    self_url: Optional[str] = None


class FeedPublisher:
    """Builds RSS XML for a channel."""

    def __init__(self, escaping: str = "full", enclosure_type: str = ENCLOSURE_TYPE):
        if escaping not in ESCAPERS:
            raise ValueError(f"Unknown escaping mode: {escaping}")
        self.escaping = escaping
        self._escape = ESCAPERS[escaping]
        self.enclosure_type = enclosure_type

    def build(
        self,
        channel: FeedChannel,
        items: Optional[Iterable[ExtractedItem]] = None,
    ) -> str:
        """Serialize channel and items (default: channel.items) to RSS."""
        esc = self._escape
        items = list(channel.items if items is None else items)
        build_date = rfc1123(channel.last_build_date)

        lines = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<rss version="2.0" xmlns:atom="http://www.w3.org/2005/Atom">',
            "<channel>",
            f"<title>{esc(channel.title)}</title>",
            f"<link>{esc(channel.link)}</link>",
            f"<description>{esc(channel.description)}</description>",
            f"<lastBuildDate>{build_date}</lastBuildDate>",
            f"<generator>{GENERATOR}</generator>",
        ]
        if channel.self_url:
            lines.append(
                f'<atom:link href={_attr(channel.self_url)} rel="self" type="application/rss+xml"/>'
            )

        for item in items:
            lines.extend(self._item(item, build_date))

        lines.extend(["</channel>", "</rss>"])
        return "\n".join(lines) + "\n"

    def _item(self, item: ExtractedItem, build_date: str) -> list[str]:
        esc = self._escape
        out = [
            "<item>",
            f"<title>{esc(item.title)}</title>",
            f"<link>{esc(item.link)}</link>",
            f'<guid isPermaLink="true">{esc(item.link)}</guid>',
            f"<pubDate>{self._pub_date(item, build_date)}</pubDate>",
        ]
        if item.summary:
            out.append(f"<description>{esc(item.summary)}</description>")
        if item.image:
            out.append(
                f'<enclosure url={_attr(item.image)} type="{self.enclosure_type}" length="0"/>'
            )
        out.append("</item>")
        return out

    @staticmethod
    def _pub_date(item: ExtractedItem, build_date: str) -> str:
        if not item.date:
            return build_date
        try:
            return rfc1123(datetime.fromisoformat(item.date))
        except ValueError:
            return build_date
