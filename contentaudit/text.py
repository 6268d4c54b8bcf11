from __future__ import annotations

import re

from lxml import etree, html as lxml_html

from contentaudit.models import ContentEntity

_WS_RE = re.compile(r"\s+")
_MAX_TEXT = 15_000


def html_text(raw_html: str) -> str:
    """Text content of an HTML fragment with tags, scripts and styles removed.

    Inner whitespace is kept as written, so a whitespace-only edit still
    changes the content hash.
    """
    if not raw_html or not raw_html.strip():
        return ""
    try:
        tree = lxml_html.fragment_fromstring(raw_html, create_parent="div")
        for bad in tree.xpath("//script | //style"):
            bad.drop_tree()
        text = tree.text_content()
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        text = re.sub(r"<[^>]+>", " ", raw_html)
    return text.replace("\xa0", " ").replace("&nbsp;", " ").strip()


def strip_html(raw_html: str) -> str:
    """Return the text content of an HTML fragment, whitespace collapsed."""
    return _WS_RE.sub(" ", html_text(raw_html)).strip()


def analyzable_fields(entity: ContentEntity) -> list[str]:
    """Fields that feed the content hash: title and tag-stripped body."""
    return [entity.title or "", html_text(entity.body or "")]


def extract_text(entity: ContentEntity) -> str:
    """Plain-text rendering of an entity used as prompt content."""
    parts = [p for p in (entity.title.strip(), strip_html(entity.body)) if p]
    return _WS_RE.sub(" ", " ".join(parts)).strip()[:_MAX_TEXT]
