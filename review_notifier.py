#!/usr/bin/env python3
"""Poll a Fandom wiki's content review queue and notify Discord when a page's review status changes."""

from __future__ import annotations

import http.client
import json
import math
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Callable
from urllib import error, request
from urllib.parse import urlparse

from review_config import load_config_file, parse_args, resolve_settings
from review_parser import ReviewQueueSource, build_source
from snapshot_diff import format_cycle_summary, format_embeds, format_transition, process_records
from snapshot_store import StoreError, load_snapshot, save_snapshot
from wiki_session import DEFAULT_TIMEOUT, USER_AGENT, AuthError, FetchError, WikiSession

DISCORD_WEBHOOK_HOSTS = (
    "discord.com",
    "discordapp.com",
    "ptb.discord.com",
    "canary.discord.com",
    "ptb.discordapp.com",
    "canary.discordapp.com",
)
# Discord rejects messages carrying more embeds than this.
MAX_EMBEDS_PER_MESSAGE = 10


class DeliveryError(Exception):
    """Posting to the Discord webhook failed."""


# ---------------------------------------------------------------------------
# Discord delivery
# ---------------------------------------------------------------------------

class DiscordWebhook:
    """Posts embed batches to one Discord webhook."""

    def __init__(self, url: str, timeout: int = DEFAULT_TIMEOUT, user_agent: str = USER_AGENT):
        cleaned_url = url.strip()
        if not cleaned_url:
            raise ValueError("Discord webhook URL is empty")
        parsed = urlparse(cleaned_url)
        if parsed.scheme != "https" or parsed.netloc not in DISCORD_WEBHOOK_HOSTS:
            raise ValueError("Webhook URL does not look like a Discord webhook URL")
        self.url = cleaned_url
        self.timeout = timeout
        self.user_agent = user_agent
        self.closed = False

    def _post(self, payload: dict) -> None:
        req = request.Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as response:
                if response.status < 200 or response.status >= 300:
                    raise DeliveryError(f"Discord webhook returned HTTP {response.status}")
        except error.HTTPError as exc:
            details = ""
            try:
                details = exc.read().decode("utf-8", errors="replace").strip()
            except OSError:
                details = ""
            message = f"HTTP {exc.code} {exc.reason}"
            if details:
                message += f" | {details}"
            raise DeliveryError(message) from exc
        except (error.URLError, http.client.HTTPException, OSError) as exc:
            raise DeliveryError(str(exc)) from exc

    def send(self, embeds: list[dict]) -> int:
        """Post *embeds*, batching as many as Discord allows per message.

        Returns the number of messages posted.
        """
        if self.closed:
            raise DeliveryError("webhook client is closed")
        sent = 0
        for start in range(0, len(embeds), MAX_EMBEDS_PER_MESSAGE):
            self._post({"embeds": embeds[start:start + MAX_EMBEDS_PER_MESSAGE]})
            sent += 1
        return sent

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Poll cycle
# ---------------------------------------------------------------------------

class PollContext:
    """Everything one poll cycle reads and writes.

    ``snapshot`` is None until the first successful fetch after a cold start.
    """

    def __init__(
        self,
        source: ReviewQueueSource,
        wiki_url: str,
        state_file: str | Path,
        snapshot: dict | None = None,
        webhook: DiscordWebhook | None = None,
        debug: bool = False,
        dry_run: bool = False,
    ):
        self.source = source
        self.wiki_url = wiki_url.rstrip("/")
        self.state_file = Path(state_file)
        self.snapshot = snapshot
        self.webhook = webhook
        self.debug = debug
        self.dry_run = dry_run

    def log_debug(self, message: str) -> None:
        if self.debug:
            print(message)


def deliver(ctx: PollContext, payloads: list[dict]) -> bool:
    """Format and post one cycle's notifications. Returns True if posted."""
    if not payloads:
        return False
    embeds = format_embeds(payloads, ctx.wiki_url)
    if ctx.dry_run or ctx.webhook is None:
        print("[dry-run] Would send Discord embeds:")
        print(json.dumps({"embeds": embeds}, indent=2, ensure_ascii=False))
        return False
    try:
        ctx.webhook.send(embeds)
    except DeliveryError as exc:
        print(f"Error while posting to Discord: {exc}", file=sys.stderr)
        return False
    print(f"Discord notification sent ({len(embeds)} revision(s)).")
    return True


def run_cycle(ctx: PollContext) -> dict:
    """Fetch, classify, persist and notify once.

    Never raises for fetch, store or delivery failures; they are reported and
    recorded in the returned dict.
    """
    outcome: dict = {
        "fetched": 0,
        "counts": {},
        "notified": 0,
        "saved": False,
        "delivered": False,
        "error": None,
    }

    ctx.log_debug("Polling...")
    try:
        records = ctx.source.fetch()
    except FetchError as exc:
        print(f"Polling failed: {exc}", file=sys.stderr)
        outcome["error"] = str(exc)
        return outcome
    outcome["fetched"] = len(records)
    ctx.log_debug(f"Poll response: {len(records)} page(s).")

    if ctx.snapshot is None:
        ctx.log_debug("Current revisions are not cached; seeding without notifications.")
        ctx.snapshot = {}

    result = process_records(ctx.snapshot, records)
    outcome["counts"] = result["counts"]
    outcome["notified"] = len(result["payloads"])

    for raw, reason in result["malformed"]:
        print(f"Warning: skipping malformed page record {raw!r}: {reason}", file=sys.stderr)
    for title, stored, incoming in result["stale"]:
        ctx.log_debug(f"Ignoring stale read for {format_transition(title, stored, incoming)}")
    for title, stored, incoming in result["transitions"]:
        ctx.log_debug(format_transition(title, stored, incoming))
    print(f"Poll complete: {format_cycle_summary(result)}.")

    try:
        save_snapshot(ctx.snapshot, ctx.state_file)
        outcome["saved"] = True
    except StoreError as exc:
        print(f"Warning: {exc}; keeping review state in memory until the next save.", file=sys.stderr)

    outcome["delivered"] = deliver(ctx, result["payloads"])
    return outcome


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class PollScheduler:
    """Run a cycle function on a fixed-rate timer, one cycle at a time.

    A cycle that overruns its slot skips the ticks it missed rather than
    running late cycles back to back.
    """

    def __init__(
        self,
        interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float], object] | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval must be greater than 0")
        self.interval = interval_seconds
        self.clock = clock
        self._stopped = threading.Event()
        self._wait = wait or self._stopped.wait
        self.skipped_ticks = 0

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self) -> None:
        self._stopped.set()

    def run(self, cycle: Callable[[], object], max_cycles: int | None = None) -> int:
        """Call *cycle* now and on every tick until stopped. Returns cycles run."""
        cycles = 0
        next_tick = self.clock()
        while not self.stopped:
            cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            next_tick += self.interval
            now = self.clock()
            if now > next_tick:
                missed = math.ceil((now - next_tick) / self.interval)
                self.skipped_ticks += missed
                print(f"Poll cycle overran the interval; skipping {missed} tick(s).", file=sys.stderr)
                next_tick += missed * self.interval
            if self.stopped:
                break
            self._wait(next_tick - now)
        return cycles


def install_signal_handlers(scheduler: PollScheduler) -> dict:
    """Stop *scheduler* on SIGINT/SIGTERM. Returns the previous handlers."""

    def _handle(signum, frame):
        print("Exiting...")
        scheduler.stop()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def run_notifier(
    settings: dict,
    session: WikiSession | None = None,
    source: ReviewQueueSource | None = None,
    webhook: DiscordWebhook | None = None,
    scheduler: PollScheduler | None = None,
) -> int:
    try:
        snapshot = load_snapshot(settings["state_file"])
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if snapshot is None:
        print(f"No {settings['state_file']} file found, data will be created from scratch.")

    session = session or WikiSession(settings["domain"], timeout=settings["timeout"])
    if webhook is None and settings.get("webhook_url") and not settings["dry_run"]:
        webhook = DiscordWebhook(settings["webhook_url"], timeout=settings["timeout"])

    if settings["debug"]:
        print("Logging in...")
    try:
        session.login(settings["username"], settings["password"])
    except AuthError as exc:
        print(f"Failed to log in! {exc}", file=sys.stderr)
        session.close()
        if webhook is not None:
            webhook.close()
        return 1
    if settings["debug"]:
        print("Logged in.")

    ctx = PollContext(
        source=source or build_source(settings["source"], session, settings["wiki_url"], settings.get("api_path")),
        wiki_url=settings["wiki_url"],
        state_file=settings["state_file"],
        snapshot=snapshot,
        webhook=webhook,
        debug=settings["debug"],
        dry_run=settings["dry_run"],
    )

    try:
        if settings["once"]:
            run_cycle(ctx)
        else:
            scheduler = scheduler or PollScheduler(settings["interval_ms"] / 1000)
            previous_handlers = install_signal_handlers(scheduler)
            try:
                scheduler.run(lambda: run_cycle(ctx), max_cycles=settings.get("max_cycles"))
            finally:
                restore_signal_handlers(previous_handlers)
    finally:
        if webhook is not None:
            webhook.close()
        session.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = resolve_settings(args, load_config_file(args.config))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    return run_notifier(settings)


if __name__ == "__main__":
    raise SystemExit(main())
