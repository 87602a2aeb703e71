#!/usr/bin/env python3
"""Cookie-carrying HTTP session for logging into Fandom and fetching wiki pages."""

from __future__ import annotations

import http.client
import json
import socket
import time
from http.cookiejar import CookieJar
from urllib import error, request
from urllib.parse import urlencode

__version__ = "1.0.0"

PROJECT_NAME = "content-review-notifier"
USER_AGENT = f"{PROJECT_NAME} v{__version__}"
DEFAULT_TIMEOUT = 30


class AuthError(Exception):
    """Logging into the wiki platform failed."""


class FetchError(Exception):
    """The review queue could not be retrieved or parsed."""


def _is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return True
    if isinstance(exc, error.URLError):
        return isinstance(getattr(exc, "reason", None), (TimeoutError, socket.timeout))
    return False


def describe_network_error(exc: BaseException) -> str:
    if isinstance(exc, error.HTTPError):
        return f"HTTP {exc.code} {exc.reason}"
    if _is_timeout_error(exc):
        return "timed out"
    return str(exc)


def login_url(domain: str) -> str:
    return f"https://services.{domain}/mobile-fandom-app/fandom-auth/login"


class WikiSession:
    """A logged-in (or anonymous) session against one wiki platform domain.

    Cookies set by the login endpoint are kept in a jar and sent with every
    later request.
    """

    def __init__(self, domain: str, timeout: int = DEFAULT_TIMEOUT, user_agent: str = USER_AGENT):
        self.domain = domain
        self.timeout = timeout
        self.user_agent = user_agent
        self.cookies = CookieJar()
        self._opener = request.build_opener(request.HTTPCookieProcessor(self.cookies))

    def _open(self, req: request.Request) -> bytes:
        if self._opener is None:
            raise RuntimeError("session is closed")
        req.add_header("User-Agent", self.user_agent)
        with self._opener.open(req, timeout=self.timeout) as response:
            return response.read()

    def login(self, username: str, password: str) -> None:
        """Log in through the mobile app auth endpoint. Raises AuthError."""
        payload = urlencode({"password": password, "username": username}).encode("utf-8")
        req = request.Request(
            login_url(self.domain),
            data=payload,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Fandom-Auth": "1",
                "X-Wikia-WikiaAppsID": "1234",
            },
            method="POST",
        )
        try:
            self._open(req)
        except (error.URLError, http.client.HTTPException, OSError) as exc:
            raise AuthError(f"login as {username!r} failed: {describe_network_error(exc)}") from exc

    def get_text(self, url: str, params: dict | None = None, cache_bust: bool = True) -> str:
        """GET *url* and return the decoded body. Raises FetchError.

        Adds a ``t`` millisecond timestamp unless *cache_bust* is False so
        intermediate caches do not serve an old listing.
        """
        params = dict(params or {})
        if cache_bust:
            params["t"] = int(time.time() * 1000)
        if params:
            url = f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"
        try:
            body = self._open(request.Request(url))
        except error.HTTPError as exc:
            hint = " (session may have expired)" if exc.code in (401, 403) else ""
            raise FetchError(f"GET {url} failed: HTTP {exc.code} {exc.reason}{hint}") from exc
        except (error.URLError, http.client.HTTPException, OSError) as exc:
            raise FetchError(f"GET {url} failed: {describe_network_error(exc)}") from exc
        return body.decode("utf-8", errors="replace")

    def get_json(self, url: str, params: dict | None = None, cache_bust: bool = True):
        text = self.get_text(url, params=params, cache_bust=cache_bust)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise FetchError(f"GET {url} returned invalid JSON: {exc}") from exc

    def close(self) -> None:
        self.cookies.clear()
        self._opener = None
