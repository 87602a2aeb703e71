#!/usr/bin/env python3
"""Classify review-queue snapshots against the stored state and format Discord embeds."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from urllib.parse import quote


class MalformedRecordError(ValueError):
    """A page record or stored entry is missing fields or has invalid values."""


class ReviewStatus(str, Enum):
    UNSUBMITTED = "unsubmitted"
    AWAITING = "awaiting"
    LIVE = "live"
    REJECTED = "rejected"


class Decision(str, Enum):
    SEED = "seed"
    STALE_IGNORE = "stale-ignore"
    SILENT_UPDATE = "silent-update"
    NOTIFY_UPDATE = "notify-update"


# Display title and embed colour per reportable status.
STATUS_DISPLAY = {
    ReviewStatus.AWAITING: ("Revision awaiting review", 0x008CCE),
    ReviewStatus.LIVE: ("Revision approved", 0x76BF06),
    ReviewStatus.REJECTED: ("Revision rejected", 0xE1390B),
}

# Statuses a reviewed page can fall back from when a stale read comes in.
_REVIEWED = frozenset({ReviewStatus.LIVE, ReviewStatus.REJECTED})


# ---------------------------------------------------------------------------
# Record validation
# ---------------------------------------------------------------------------

def _require_int(value, field: str, title) -> int:
    # bool is an int subclass; a JSON true/false is never a revision.
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecordError(f"{title!r}: {field} must be an integer, got {value!r}")
    return value


def parse_status(value, title=None) -> ReviewStatus:
    """Return the ReviewStatus for *value* or raise MalformedRecordError."""
    if isinstance(value, ReviewStatus):
        return value
    try:
        return ReviewStatus(value)
    except ValueError:
        raise MalformedRecordError(f"{title!r}: unknown review status {value!r}") from None


def normalize_entry(data, title) -> tuple[int, ReviewStatus, int | None]:
    if not isinstance(data, dict):
        raise MalformedRecordError(f"{title!r}: expected a mapping, got {type(data).__name__}")
    for field in ("revision", "status"):
        if data.get(field) is None:
            raise MalformedRecordError(f"{title!r}: missing required field {field!r}")
    revision = _require_int(data["revision"], "revision", title)
    status = parse_status(data["status"], title)
    live_revision = data.get("liveRevision")
    if live_revision is not None:
        live_revision = _require_int(live_revision, "liveRevision", title)
    return revision, status, live_revision


def normalize_record(record) -> dict:
    """Validate a fetched page record and return it with a ReviewStatus."""
    if not isinstance(record, dict):
        raise MalformedRecordError(f"expected a page record mapping, got {record!r}")
    title = record.get("title")
    if not isinstance(title, str) or not title:
        raise MalformedRecordError(f"page record has no usable title: {record!r}")
    revision, status, live_revision = normalize_entry(record, title)
    return {
        "title": title,
        "revision": revision,
        "status": status,
        "liveRevision": live_revision,
    }


def to_entry(record: dict) -> dict:
    """Build the persisted snapshot entry for a normalized record."""
    entry = {
        "revision": record["revision"],
        "status": parse_status(record["status"], record.get("title")).value,
    }
    if record.get("liveRevision") is not None:
        entry["liveRevision"] = record["liveRevision"]
    return entry


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def is_regression(
    prev_revision: int,
    prev_status: ReviewStatus,
    revision: int,
    status: ReviewStatus,
) -> bool:
    """Return True if the incoming state moved backward relative to the stored one.

    These are the signatures of the upstream serving a momentarily stale read:
    an older revision, or the same revision falling back from a reviewed state
    to ``awaiting`` or from anything to ``unsubmitted``.
    """
    if revision < prev_revision:
        return True
    if revision != prev_revision:
        return False
    if prev_status in _REVIEWED and status is ReviewStatus.AWAITING:
        return True
    return prev_status is not ReviewStatus.UNSUBMITTED and status is ReviewStatus.UNSUBMITTED


def is_notify_worthy(
    prev_revision: int,
    prev_status: ReviewStatus,
    revision: int,
    status: ReviewStatus,
) -> bool:
    if status is ReviewStatus.UNSUBMITTED:
        return False
    return revision != prev_revision or status is not prev_status


def classify(previous: dict | None, incoming: dict) -> Decision:
    """Decide what to do with *incoming* given the stored *previous* entry.

    Raises MalformedRecordError if either side is missing required fields.
    """
    record = normalize_record(incoming)
    if previous is None:
        return Decision.SEED

    prev_revision, prev_status, _ = normalize_entry(previous, record["title"])
    revision, status = record["revision"], record["status"]

    if is_regression(prev_revision, prev_status, revision, status):
        return Decision.STALE_IGNORE
    if is_notify_worthy(prev_revision, prev_status, revision, status):
        return Decision.NOTIFY_UPDATE
    return Decision.SILENT_UPDATE


def apply_decision(snapshot: dict, record: dict, decision: Decision) -> dict | None:
    """Update *snapshot* in place for *decision*.

    Returns the notification payload for NOTIFY_UPDATE, otherwise None.
    """
    record = normalize_record(record)
    if decision is Decision.STALE_IGNORE:
        return None
    snapshot[record["title"]] = to_entry(record)
    if decision is Decision.NOTIFY_UPDATE:
        return record
    return None


def process_records(snapshot: dict, records: list[dict]) -> dict:
    """Classify every fetched record of one poll cycle and update *snapshot*.

    Malformed records are skipped and reported; they never touch the snapshot.
    When a title appears more than once, only its last record is classified.

    Returns a dict with:
        payloads     - notification payloads, in fetch order
        counts       - number of records per Decision value
        transitions  - (title, stored entry, incoming record) for each notify
        stale        - (title, stored entry, incoming record) for each stale read
        malformed    - (raw record, reason) for each rejected record
    """
    result: dict = {
        "payloads": [],
        "counts": {d.value: 0 for d in Decision},
        "transitions": [],
        "stale": [],
        "malformed": [],
    }

    # A title listed twice keeps its first position and its last record.
    latest: dict = {}
    for index, raw in enumerate(records):
        title = raw.get("title") if isinstance(raw, dict) else None
        latest[title if isinstance(title, str) and title else ("", index)] = raw

    for raw in latest.values():
        title = raw.get("title") if isinstance(raw, dict) else None
        previous = snapshot.get(title) if isinstance(title, str) else None
        try:
            decision = classify(previous, raw)
        except MalformedRecordError as exc:
            result["malformed"].append((raw, str(exc)))
            continue

        result["counts"][decision.value] += 1
        if decision is Decision.STALE_IGNORE:
            result["stale"].append((title, dict(previous), raw))
        elif decision is Decision.NOTIFY_UPDATE:
            result["transitions"].append((title, dict(previous), raw))

        payload = apply_decision(snapshot, raw, decision)
        if payload is not None:
            result["payloads"].append(payload)

    return result


def format_cycle_summary(result: dict) -> str:
    """One-line summary of a processed cycle, suitable for logging."""
    parts: list[str] = []
    counts = result.get("counts", {})
    for decision, label in [
        (Decision.NOTIFY_UPDATE, "notify"),
        (Decision.SILENT_UPDATE, "silent"),
        (Decision.STALE_IGNORE, "stale"),
        (Decision.SEED, "seeded"),
    ]:
        count = counts.get(decision.value, 0)
        if count:
            parts.append(f"{count} {label}")
    malformed = len(result.get("malformed", []))
    if malformed:
        parts.append(f"{malformed} malformed")
    return ", ".join(parts) if parts else "no pages"


def format_transition(title: str, previous: dict, incoming: dict) -> str:
    """Debug line for a page's stored vs. incoming state."""
    status = incoming.get("status")
    if isinstance(status, ReviewStatus):
        status = status.value
    return (
        f"{title}: {previous.get('revision')} -> {incoming.get('revision')}, "
        f"{previous.get('status')} -> {status}"
    )


# ---------------------------------------------------------------------------
# Discord embed formatting
# ---------------------------------------------------------------------------

def encode_title(title: str) -> str:
    """Percent-encode a page title the way a URI-component encoder does."""
    return quote(title, safe="!'()*")


def format_embed(payload: dict, wiki_url: str, now: datetime | None = None) -> dict:
    """Build one Discord embed for a notify-worthy payload."""
    status = parse_status(payload["status"], payload.get("title"))
    if status not in STATUS_DISPLAY:
        raise ValueError(f"status {status.value!r} is not reportable")
    display_title, color = STATUS_DISPLAY[status]

    title = payload["title"]
    revision = payload["revision"]
    live_revision = payload.get("liveRevision")
    encoded = encode_title(title)

    description = f"[{title}]({wiki_url}/wiki/MediaWiki:{encoded}) | "
    if live_revision is not None and live_revision != revision:
        description += f"[Diff]({wiki_url}/?oldid={live_revision}&diff={revision})"
    else:
        description += f"[Permalink]({wiki_url}/?oldid={revision})"
    if status is ReviewStatus.REJECTED:
        description += f" | [Talk page]({wiki_url}/wiki/MediaWiki_talk:{encoded})"

    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    return {
        "color": color,
        "description": description,
        "timestamp": timestamp,
        "title": display_title,
        "url": f"{wiki_url}/?oldid={revision}",
    }


def format_embeds(payloads: list[dict], wiki_url: str, now: datetime | None = None) -> list[dict]:
    now = now or datetime.now(timezone.utc)
    return [format_embed(p, wiki_url, now) for p in payloads]
