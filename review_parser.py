#!/usr/bin/env python3
"""Fetch the content review queue and normalize it into page records."""

from __future__ import annotations

import re
from html import unescape

from wiki_session import FetchError, WikiSession

STATUS_CLASS_PREFIX = "content-review__status--"


# ---------------------------------------------------------------------------
# HTML helpers
# ---------------------------------------------------------------------------

def _strip_tags(html_fragment: str) -> str:
    """Remove HTML tags and decode entities."""
    text = re.sub(r"<[^>]+>", " ", html_fragment)
    text = unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def _extract_link_text(cell_html: str) -> str | None:
    """Return the text content of the first <a> tag."""
    m = re.search(r"<a\b[^>]*>(.*?)</a>", cell_html, flags=re.I | re.S)
    return _strip_tags(m.group(1)) if m else None


def parse_revision(value) -> int | None:
    """Parse a revision id such as ``#12345``, ``"12345"`` or ``12345``.

    Returns None if *value* is not a revision number.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lstrip("#").strip()
    if not cleaned.isdigit():
        return None
    return int(cleaned)


def parse_status_token(value) -> str | None:
    """Reduce a status class token or name to the bare status name."""
    if not isinstance(value, str):
        return None
    token = value.strip()
    if token.startswith(STATUS_CLASS_PREFIX):
        token = token[len(STATUS_CLASS_PREFIX):]
    return token or None


def _extract_status(cell_html: str) -> str | None:
    for class_attr in re.findall(r'\bclass\s*=\s*["\']([^"\']*)["\']', cell_html, flags=re.I):
        for cls in class_attr.split():
            if cls.startswith(STATUS_CLASS_PREFIX):
                return parse_status_token(cls)
    return None


# ---------------------------------------------------------------------------
# Special:JSPages table
# ---------------------------------------------------------------------------

def parse_jspages_html(html: str) -> list[dict]:
    """Parse the Special:JSPages review table into page records.

    Raises FetchError if the page has no review table at all (for example a
    login wall or an error page was served instead).
    """
    table = re.search(
        r"<table\b[^>]*\bclass\s*=\s*[\"'][^\"']*\bcontent-review__table\b[^\"']*[\"'][^>]*>(.*?)</table>",
        html,
        flags=re.I | re.S,
    )
    if not table:
        raise FetchError("content review table not found in Special:JSPages response")

    body = re.search(r"<tbody\b[^>]*>(.*?)</tbody>", table.group(1), flags=re.I | re.S)
    rows = re.findall(r"<tr\b[^>]*>(.*?)</tr>", body.group(1) if body else table.group(1), flags=re.I | re.S)

    records: list[dict] = []
    for row_html in rows:
        cells = re.findall(r"<td\b[^>]*>(.*?)</td>", row_html, flags=re.I | re.S)
        # Header rows use <th>; "no pages" placeholders span a single cell.
        if len(cells) < 2:
            continue

        live_revision = None
        if len(cells) > 3:
            live_text = _extract_link_text(cells[3])
            if live_text is not None:
                live_revision = parse_revision(live_text)

        records.append({
            "title": _extract_link_text(cells[0]) or _strip_tags(cells[0]) or None,
            "revision": parse_revision(_extract_link_text(cells[1]) or ""),
            "status": _extract_status(cells[1]),
            "liveRevision": live_revision,
        })
    return records


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------

_FIELD_ALIASES = {
    "title": ("title", "pageTitle"),
    "revision": ("revision", "latestRevisionId", "rev"),
    "status": ("status", "latestStatus"),
    "liveRevision": ("liveRevision", "liveRevisionId", "liveRev"),
}


def _first(item: dict, keys: tuple[str, ...]):
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def parse_json_pages(data) -> list[dict]:
    """Normalize a JSON review-queue response into page records.

    Accepts a list of page objects, ``{"pages": [...]}``, or an object keyed
    by page title.
    """
    if isinstance(data, dict) and isinstance(data.get("pages"), (list, dict)):
        data = data["pages"]
    if isinstance(data, dict):
        items = []
        for title, item in data.items():
            if isinstance(item, dict):
                item = {"title": title, **item}
            items.append(item)
    elif isinstance(data, list):
        items = data
    else:
        raise FetchError(f"unexpected review queue JSON of type {type(data).__name__}")

    records: list[dict] = []
    for item in items:
        if not isinstance(item, dict):
            raise FetchError(f"unexpected review queue entry {item!r}")
        revision = _first(item, _FIELD_ALIASES["revision"])
        live_revision = _first(item, _FIELD_ALIASES["liveRevision"])
        records.append({
            "title": _first(item, _FIELD_ALIASES["title"]),
            "revision": parse_revision(revision),
            "status": parse_status_token(_first(item, _FIELD_ALIASES["status"])),
            "liveRevision": parse_revision(live_revision) if live_revision is not None else None,
        })
    return records


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class ReviewQueueSource:
    """Base class for review queue sources. ``fetch()`` returns page records."""

    def __init__(self, session: WikiSession, wiki_url: str):
        self.session = session
        self.wiki_url = wiki_url.rstrip("/")

    def fetch(self) -> list[dict]:
        raise NotImplementedError


class JSPagesSource(ReviewQueueSource):
    """Scrapes the Special:JSPages listing."""

    def page_url(self) -> str:
        return f"{self.wiki_url}/wiki/Special:JSPages"

    def fetch(self) -> list[dict]:
        return parse_jspages_html(self.session.get_text(self.page_url()))


class JsonApiSource(ReviewQueueSource):
    """Reads the review queue from a JSON endpoint under the wiki URL."""

    def __init__(self, session: WikiSession, wiki_url: str, api_path: str):
        super().__init__(session, wiki_url)
        if not api_path:
            raise ValueError("a JSON API path is required for the json source")
        self.api_path = api_path if api_path.startswith("/") else f"/{api_path}"

    def api_url(self) -> str:
        return f"{self.wiki_url}{self.api_path}"

    def fetch(self) -> list[dict]:
        return parse_json_pages(self.session.get_json(self.api_url()))


SOURCES = {
    "html": JSPagesSource,
    "json": JsonApiSource,
}


def build_source(kind: str, session: WikiSession, wiki_url: str, api_path: str | None = None) -> ReviewQueueSource:
    if kind not in SOURCES:
        raise ValueError(f"unknown source {kind!r} (expected one of: {', '.join(sorted(SOURCES))})")
    if kind == "json":
        return JsonApiSource(session, wiki_url, api_path or "")
    return SOURCES[kind](session, wiki_url)
