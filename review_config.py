#!/usr/bin/env python3
"""Resolve notifier settings from command-line flags, environment and config.json."""

from __future__ import annotations

import argparse
import json
import os
import re
from pathlib import Path

from snapshot_store import DEFAULT_STATE_FILE
from wiki_session import DEFAULT_TIMEOUT

DEFAULT_CONFIG_FILE = "config.json"
DEFAULT_INTERVAL_MS = 60_000
DEFAULT_SOURCE = "html"

WIKI_REGEX = re.compile(
    r"^(?:https?://)?([a-z0-9-.]+)\.(wikia\.(?:com|org)|fandom\.com)(?:/([a-z-]+))?/?$"
)
WEBHOOK_REGEX = re.compile(
    r"^https://(?:canary\.|ptb\.)?discord(?:app)?\.com/api/webhooks/(\d+)/([a-zA-Z0-9-_]+)$"
)


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

def resolve_wiki_url(wiki: str, domain: str, language: str | None = None) -> str:
    """Turn a (subdomain, domain, language) triplet into a wiki base URL.

    A subdomain such as ``dev.de`` carries its own language path.
    """
    if "." in wiki:
        subdomain, lang = wiki.split(".")[:2]
        return f"https://{subdomain}.{domain}/{lang}"
    if language:
        return f"https://{wiki}.{domain}/{language}"
    return f"https://{wiki}.{domain}"


def parse_wiki_url(url: str) -> tuple[str, str, str | None]:
    """Split a wiki URL into (subdomain, domain, language). Raises ValueError."""
    m = WIKI_REGEX.match(url.strip().lower())
    if not m:
        raise ValueError(f"wiki URL {url!r} is not a Fandom wiki URL")
    return m.group(1), m.group(2), m.group(3)


def parse_webhook_url(url: str) -> tuple[str, str]:
    """Return (id, token) of a Discord webhook URL. Raises ValueError."""
    m = WEBHOOK_REGEX.match(url.strip())
    if not m:
        raise ValueError("webhook URL does not look like a Discord webhook URL")
    return m.group(1), m.group(2)


def build_webhook_url(webhook_id: str, token: str) -> str:
    return f"https://discord.com/api/webhooks/{webhook_id}/{token}"


# ---------------------------------------------------------------------------
# config.json
# ---------------------------------------------------------------------------

def load_config_file(path: str | Path) -> dict:
    """Load the JSON config file. A missing file yields an empty config."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise ValueError(f"failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a JSON object")
    return data


def _pick(*values):
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _parse_interval(value) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid interval {value!r}")
    try:
        interval = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid interval {value!r}") from None
    if interval <= 0:
        raise ValueError("interval must be greater than 0 milliseconds")
    return interval


def resolve_settings(args: argparse.Namespace, file_config: dict, environ=None) -> dict:
    """Merge flags, environment variables and config.json into one settings dict.

    Flags win over environment variables, which win over the config file.
    Raises ValueError when a required setting is missing or invalid.
    """
    env = os.environ if environ is None else environ
    cfg = file_config

    username = _pick(args.username, env.get("FANDOM_USERNAME"), cfg.get("username"))
    password = _pick(args.password, env.get("FANDOM_PASSWORD"), cfg.get("password"))
    if not username or not password:
        raise ValueError("provide a username and password (flags, FANDOM_USERNAME/FANDOM_PASSWORD or config.json)")

    interval_ms = _parse_interval(
        _pick(args.interval_ms, env.get("REVIEW_INTERVAL_MS"), cfg.get("interval"), DEFAULT_INTERVAL_MS)
    )

    wiki_url_arg = _pick(args.wiki_url, env.get("REVIEW_WIKI_URL"))
    if wiki_url_arg:
        wiki, domain, lang = parse_wiki_url(wiki_url_arg)
    else:
        wiki = _pick(args.wiki, cfg.get("wiki"))
        domain = _pick(args.domain, cfg.get("domain"), "fandom.com")
        lang = _pick(args.lang, cfg.get("lang"))
    if not wiki:
        raise ValueError("provide a wiki (--wiki-url, --wiki or config.json)")

    webhook_url = _pick(args.webhook_url, env.get("DISCORD_WEBHOOK_URL"), cfg.get("webhook_url"))
    if webhook_url is None and cfg.get("id") and cfg.get("token"):
        webhook_url = build_webhook_url(str(cfg["id"]), str(cfg["token"]))
    if webhook_url is not None:
        parse_webhook_url(webhook_url)
    elif not args.dry_run:
        raise ValueError("provide --webhook-url, set DISCORD_WEBHOOK_URL, or add id/token to config.json")

    source = _pick(args.source, cfg.get("source"), DEFAULT_SOURCE)
    api_path = _pick(args.api_path, cfg.get("api_path"))
    if source not in ("html", "json"):
        raise ValueError(f"unknown source {source!r}")
    if source == "json" and not api_path:
        raise ValueError("the json source needs --api-path (or api_path in config.json)")

    timeout = _pick(args.timeout, cfg.get("timeout"), DEFAULT_TIMEOUT)
    if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
        raise ValueError("timeout must be a positive integer number of seconds")
    if args.max_cycles is not None and args.max_cycles <= 0:
        raise ValueError("--max-cycles must be greater than 0")

    return {
        "username": username,
        "password": password,
        "interval_ms": interval_ms,
        "wiki": wiki,
        "domain": domain,
        "lang": lang,
        "wiki_url": resolve_wiki_url(wiki, domain, lang),
        "webhook_url": webhook_url,
        "source": source,
        "api_path": api_path,
        "timeout": timeout,
        "state_file": Path(_pick(args.state_file, cfg.get("cache"), DEFAULT_STATE_FILE)),
        "debug": bool(args.debug or cfg.get("debug")),
        "dry_run": bool(args.dry_run),
        "once": bool(args.once),
        "max_cycles": args.max_cycles,
    }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll a Fandom wiki's content review queue and post status changes to a Discord webhook."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(DEFAULT_CONFIG_FILE),
        help=f"Path to the JSON config file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument("--username", help="Fandom username (or set FANDOM_USERNAME)")
    parser.add_argument("--password", help="Fandom password (or set FANDOM_PASSWORD)")
    parser.add_argument(
        "--wiki-url",
        help="Wiki URL, e.g. https://dev.fandom.com/de (or set REVIEW_WIKI_URL)",
    )
    parser.add_argument("--wiki", help="Wiki subdomain, optionally with a language suffix (e.g. dev.de)")
    parser.add_argument("--domain", help="Wiki platform domain (default: fandom.com)")
    parser.add_argument("--lang", help="Language path of the wiki")
    parser.add_argument(
        "--webhook-url",
        help="Discord webhook URL (or set DISCORD_WEBHOOK_URL)",
    )
    parser.add_argument(
        "--interval-ms",
        type=int,
        help=f"Polling interval in milliseconds (default: {DEFAULT_INTERVAL_MS})",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        help=f"Path for the cached review state (default: {DEFAULT_STATE_FILE})",
    )
    parser.add_argument(
        "--source",
        choices=("html", "json"),
        help=f"Where to read the review queue from (default: {DEFAULT_SOURCE})",
    )
    parser.add_argument("--api-path", help="Path of the JSON review queue endpoint, relative to the wiki URL")
    parser.add_argument("--timeout", type=int, help=f"HTTP timeout in seconds (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--debug", action="store_true", help="Print debug output")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do everything except posting to Discord",
    )
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    parser.add_argument(
        "--max-cycles",
        type=int,
        help="Optional cap on the number of poll cycles",
    )
    return parser.parse_args(argv)
