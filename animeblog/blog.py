#!/usr/bin/env python3
"""
A small community blog on top of a hosted Supabase project.

Rows live in the project's ``posts`` table (PostgREST), accounts and
sessions in its auth service (GoTrue).  This module only talks to them.
"""

import os
import re
import secrets
import threading
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import monotonic, time
from typing import Callable, DefaultDict, NamedTuple
from urllib.parse import urlparse

import click
import requests
from flask import (
    Flask,
    Response,
    abort,
    flash,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


_ENV_FILE_VALUES = _read_env_file()


def env(key: str, default: str = "") -> str:
    """Process env first, then the .env file next to this module."""
    return (os.environ.get(key) or _ENV_FILE_VALUES.get(key) or default).strip()


POSTS_KEY = "posts"
TEMP_ID_PREFIX = "temp-"
TITLE_MAX = 200
CONTENT_MAX = 5000
PASSWORD_MIN = 6
SESSION_REFRESH_MARGIN = 60  # seconds before expiry we swap tokens

FEED_EXCERPT = 200
PUBLIC_EXCERPT = 150
MY_POSTS_EXCERPT = 300
PUBLIC_FEED_LIMIT = 3

NOT_FOUND_CODE = "PGRST116"  # PostgREST: "single row expected, 0 returned"
PGRST_OBJECT = "application/vnd.pgrst.object+json"

MAILGUN_VALIDATE_URL = "https://api.mailgun.net/v4/address/validate"

MSG_LOGIN_REQUIRED = "You must be logged in to create a post"
MSG_FILL_BOTH = "Please fill in both title and content"
MSG_UNEXPECTED = "An unexpected error occurred. Please try again."

# ── email heuristics (data, not logic) ───────────────────────────────
EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
FAKE_LOCAL_PARTS = (
    "test",
    "fake",
    "temp",
    "tmp",
    "example",
    "demo",
    "sample",
    "dummy",
    "invalid",
    "noreply",
    "no-reply",
    "admin",
    "info",
    "contact",
    "hello",
    "hi",
    "user",
    "guest",
    "anonymous",
    "unknown",
    "random",
    "123",
    "abc",
    "xyz",
    "qwerty",
    "asdf",
    "password",
    "email",
    "mail",
)
DOMAIN_TYPOS = {
    "gmial.com": "gmail.com",
    "gmal.com": "gmail.com",
    "gmeil.com": "gmail.com",
    "gmil.com": "gmail.com",
    "gamil.com": "gmail.com",
    "gmai.com": "gmail.com",
    "yaho.com": "yahoo.com",
    "yhoo.com": "yahoo.com",
    "yahooo.com": "yahoo.com",
    "yhaoo.com": "yahoo.com",
    "hotmai.com": "hotmail.com",
    "hotmial.com": "hotmail.com",
    "outlok.com": "outlook.com",
    "outllok.com": "outlook.com",
}
MAILGUN_RESULT_ERRORS = {
    "undeliverable": "This email address appears to be invalid",
    "unknown": "Unable to verify this email address",
    "risky": "This email address appears to be risky or invalid",
}

try:
    __version__ = version("animeblog")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    SITE_NAME=env("SITE_NAME", "Anime Blog"),
    SUPABASE_URL=env("SUPABASE_URL").rstrip("/"),
    SUPABASE_ANON_KEY=env("SUPABASE_ANON_KEY"),
    MAILGUN_API_KEY=env("MAILGUN_API_KEY"),
    STORE_TIMEOUT=float(env("STORE_TIMEOUT", "10")),
    EMAIL_CHECK_TIMEOUT=float(env("EMAIL_CHECK_TIMEOUT", "5")),
    POSTS_REFRESH_INTERVAL=float(env("POSTS_REFRESH_INTERVAL", "30")),
    POSTS_DEDUPE_INTERVAL=float(env("POSTS_DEDUPE_INTERVAL", "2")),
    POSTS_ERROR_RETRY_COUNT=int(env("POSTS_ERROR_RETRY_COUNT", "3")),
    POSTS_ERROR_RETRY_INTERVAL=float(env("POSTS_ERROR_RETRY_INTERVAL", "5")),
    EMAIL_FAKE_LOCAL_PARTS=FAKE_LOCAL_PARTS,
    EMAIL_DOMAIN_TYPOS=DOMAIN_TYPOS,
    RATELIMIT_ENABLED=env("RATELIMIT_ENABLED", "1") != "0",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

_ext_lock = threading.Lock()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Event channel
###############################################################################
class EventChannel:
    """
    Tiny publish/subscribe hub.

    Events in use: ``SIGNED_IN``, ``SIGNED_OUT``, ``TOKEN_REFRESHED`` (payload:
    the session user) and ``reconnect`` (the store came back online).
    ``subscribe`` returns a zero-argument callable that undoes it.
    """

    def __init__(self):
        self._subs: DefaultDict[str, list[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: str, callback: Callable) -> Callable[[], None]:
        with self._lock:
            self._subs[event].append(callback)
        return lambda: self.unsubscribe(event, callback)

    def unsubscribe(self, event: str, callback: Callable) -> None:
        with self._lock:
            if callback in self._subs.get(event, ()):
                self._subs[event].remove(callback)

    def publish(self, event: str, payload=None) -> None:
        with self._lock:
            subscribers = list(self._subs.get(event, ()))
        for callback in subscribers:
            try:
                callback(payload)
            except Exception:
                app.logger.exception("Subscriber %r for %s failed", callback, event)


events = EventChannel()


###############################################################################
# Data model
###############################################################################
@dataclass(frozen=True)
class Post:
    id: str
    title: str
    content: str
    author_id: str
    created_at: str

    @classmethod
    def from_row(cls, row: dict) -> "Post":
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            content=row.get("content") or "",
            author_id=str(row.get("author_id") or ""),
            created_at=row.get("created_at") or "",
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Pending:
    """Optimistic placeholder; lives only in the feed cache."""

    temp_id: str
    post: Post
    pending = True


@dataclass(frozen=True)
class Confirmed:
    post: Post
    pending = False


def entry_key(entry: Pending | Confirmed) -> str:
    return entry.temp_id if isinstance(entry, Pending) else entry.post.id


###############################################################################
# Backing store (PostgREST)
###############################################################################
class StoreError(Exception):
    """The store answered, but with an error body."""

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class PostNotFound(StoreError):
    pass


def _store_error(resp: requests.Response) -> StoreError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = body.get("message") or resp.reason or f"HTTP {resp.status_code}"
    code = body.get("code")
    cls = PostNotFound if code == NOT_FOUND_CODE else StoreError
    return cls(message, code=code, status=resp.status_code)


class PostStore:
    """Row operations on the hosted ``posts`` table."""

    def __init__(self, url: str, anon_key: str, *, timeout: float = 10.0, events=None):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self.events = events
        self.online = True

    def _request(self, method: str, *, params: dict, token=None, json=None, headers=None):
        if not self.url:
            raise StoreError("Backing store is not configured")
        hdrs = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self.anon_key}",
            "Accept": "application/json",
        }
        hdrs.update(headers or {})
        try:
            resp = requests.request(
                method,
                f"{self.url}/rest/v1/posts",
                params=params,
                json=json,
                headers=hdrs,
                timeout=self.timeout,
            )
        except requests.ConnectionError:
            self.online = False
            raise

        if not self.online:
            self.online = True
            if self.events is not None:
                self.events.publish("reconnect")

        if resp.status_code >= 400:
            raise _store_error(resp)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def list_posts(self) -> list[Post]:
        rows = self._request("GET", params={"select": "*", "order": "created_at.desc"})
        return [Post.from_row(r) for r in rows or []]

    def list_posts_by_author(self, author_id: str) -> list[Post]:
        rows = self._request(
            "GET",
            params={
                "select": "*",
                "author_id": f"eq.{author_id}",
                "order": "created_at.desc",
            },
        )
        return [Post.from_row(r) for r in rows or []]

    def get_post(self, post_id: str) -> Post:
        row = self._request(
            "GET",
            params={"select": "*", "id": f"eq.{post_id}"},
            headers={"Accept": PGRST_OBJECT},
        )
        if not row:
            raise PostNotFound("Post not found", code=NOT_FOUND_CODE)
        return Post.from_row(row)

    def insert_post(self, title: str, content: str, author_id: str, *, token=None) -> Post:
        row = self._request(
            "POST",
            params={"select": "*"},
            token=token,
            json=[{"title": title, "content": content, "author_id": author_id}],
            headers={"Accept": PGRST_OBJECT, "Prefer": "return=representation"},
        )
        if not row:
            raise StoreError("The store returned no row for the new post")
        return Post.from_row(row)

    def delete_post(self, post_id: str, author_id: str, *, token=None) -> list[Post]:
        """Delete one of *author_id*'s posts; raises PostNotFound when nothing matched."""
        rows = self._request(
            "DELETE",
            params={"id": f"eq.{post_id}", "author_id": f"eq.{author_id}"},
            token=token,
            headers={"Prefer": "return=representation"},
        )
        # PostgREST answers 2xx for a filter that matched zero rows
        if not rows:
            raise PostNotFound("Post not found or not yours to delete", code=NOT_FOUND_CODE)
        return [Post.from_row(r) for r in rows]


###############################################################################
# Identity provider (GoTrue)
###############################################################################
class AuthError(Exception):
    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status


class AuthClient:
    """Sign-up, sign-in and token handling against the hosted auth service."""

    def __init__(self, url: str, anon_key: str, *, timeout: float = 10.0):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout

    def _call(self, method: str, path: str, *, token=None, params=None, json=None) -> dict:
        if not self.url:
            raise AuthError("Authentication is not configured")
        resp = requests.request(
            method,
            f"{self.url}/auth/v1/{path}",
            params=params,
            json=json,
            headers={
                "apikey": self.anon_key,
                "Authorization": f"Bearer {token or self.anon_key}",
            },
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            message = (
                body.get("msg")
                or body.get("error_description")
                or body.get("message")
                or body.get("error")
                or f"HTTP {resp.status_code}"
            )
            raise AuthError(message, status=resp.status_code)
        if not resp.content:
            return {}
        return resp.json()

    def sign_up(self, email: str, password: str, *, redirect_to: str | None = None) -> dict:
        params = {"redirect_to": redirect_to} if redirect_to else None
        data = self._call(
            "POST", "signup", params=params, json={"email": email, "password": password}
        )
        # autoconfirm projects answer with a session, the others with the user
        return data.get("user") or data

    def sign_in(self, email: str, password: str) -> dict:
        return self._call(
            "POST",
            "token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )

    def refresh(self, refresh_token: str) -> dict:
        return self._call(
            "POST",
            "token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )

    def get_user(self, access_token: str) -> dict:
        return self._call("GET", "user", token=access_token)

    def sign_out(self, access_token: str) -> None:
        self._call("POST", "logout", token=access_token)


###############################################################################
# Keyed cache (read path)
###############################################################################
@dataclass
class CacheEntry:
    data: list | None = None
    error: str | None = None
    fetched_at: float | None = None
    attempted_at: float | None = None
    stale: bool = False
    failures: int = 0
    retry_at: float | None = None
    generation: int = 0


class CacheView(NamedTuple):
    data: list
    error: str | None
    is_loading: bool = False


class FetchError(Exception):
    """Raised by fetchers with a message that is fit for display."""


class KeyedCache:
    """
    In-memory stale-while-revalidate cache keyed by string.

    A key is refetched when
      • it has never been fetched, or was marked stale by a mutation,
        ``invalidate()`` or ``reconnect()``
      • its last attempt is older than *refresh_interval*
      • its last fetch failed and a retry is due (*error_retry_interval*,
        at most *error_retry_count* times in a row)

    Concurrent callers share one fetch per key; a fetch that completed less
    than *dedupe_interval* ago is reused by ``revalidate()``.  A failed fetch
    keeps the previous data and exposes the error next to it.
    """

    def __init__(
        self,
        *,
        refresh_interval: float = 30.0,
        dedupe_interval: float = 2.0,
        error_retry_count: int = 3,
        error_retry_interval: float = 5.0,
        clock: Callable[[], float] = monotonic,
        logger=None,
    ):
        self.refresh_interval = refresh_interval
        self.dedupe_interval = dedupe_interval
        self.error_retry_count = error_retry_count
        self.error_retry_interval = error_retry_interval
        self.clock = clock
        self.logger = logger or app.logger
        self._entries: dict[str, CacheEntry] = {}
        self._fetchers: dict[str, tuple[Callable, Callable | None]] = {}
        self._key_locks: DefaultDict[str, threading.Lock] = defaultdict(threading.Lock)
        self._loading: set[str] = set()
        self._lock = threading.RLock()

    # ── registration / reads ───────────────────────────────────────────
    def register(self, key: str, fetcher: Callable[[], list], *, merge=None) -> None:
        """
        *merge(current, fresh)* decides what a successful fetch stores;
        by default the fresh list replaces the old one.
        """
        self._fetchers[key] = (fetcher, merge)

    def get(self, key: str, fetcher: Callable[[], list] | None = None) -> CacheView:
        if fetcher is not None and key not in self._fetchers:
            self.register(key, fetcher)
        self._fetch(key, only_if_due=True)
        return self.peek(key)

    def peek(self, key: str) -> CacheView:
        with self._lock:
            entry = self._entries.get(key) or CacheEntry()
            return CacheView(list(entry.data or []), entry.error, key in self._loading)

    def revalidate(self, key: str) -> CacheView:
        self._fetch(key, only_if_due=False)
        return self.peek(key)

    def refresh_all(self) -> None:
        for key in list(self._fetchers):
            self._fetch(key, only_if_due=False)

    # ── writes / invalidation ──────────────────────────────────────────
    def mutate(self, key: str, fn: Callable[[list], list], *, revalidate: bool = False) -> list:
        with self._lock:
            entry = self._entries.setdefault(key, CacheEntry())
            entry.data = fn(list(entry.data or []))
            if revalidate:
                entry.stale = True
            return list(entry.data)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.setdefault(key, CacheEntry()).stale = True

    def reconnect(self) -> None:
        with self._lock:
            for entry in self._entries.values():
                entry.stale = True
        self.logger.info("Store reconnected; %d cache key(s) marked stale", len(self._entries))

    # ── internals ──────────────────────────────────────────────────────
    def _is_due(self, entry: CacheEntry | None, now: float) -> bool:
        if entry is None or entry.stale or entry.attempted_at is None:
            return True
        if now - entry.attempted_at >= self.refresh_interval:
            return True
        return entry.error is not None and entry.retry_at is not None and now >= entry.retry_at

    def _fetch(self, key: str, *, only_if_due: bool) -> None:
        registered = self._fetchers.get(key)
        if registered is None:
            return
        fetcher, merge = registered

        with self._lock:
            entry = self._entries.get(key)
            if only_if_due and not self._is_due(entry, self.clock()):
                return
            generation = entry.generation if entry else 0
            key_lock = self._key_locks[key]

        with key_lock:
            with self._lock:
                entry = self._entries.setdefault(key, CacheEntry())
                if entry.generation != generation and not entry.stale:
                    return  # another caller fetched while we waited
                if (
                    not entry.stale
                    and entry.error is None
                    and entry.fetched_at is not None
                    and self.clock() - entry.fetched_at < self.dedupe_interval
                ):
                    return
                # writes that land while we fetch mark the key stale again
                entry.stale = False
                self._loading.add(key)
            try:
                fresh = fetcher()
            except Exception as exc:
                self._settle_error(key, exc)
            else:
                self._settle(key, fresh, merge)
            finally:
                with self._lock:
                    self._loading.discard(key)

    def _settle(self, key: str, fresh: list, merge) -> None:
        now = self.clock()
        with self._lock:
            entry = self._entries.setdefault(key, CacheEntry())
            # a write marked the key stale mid-fetch: this result predates it,
            # keep the written list and let the next read refetch
            if not entry.stale:
                entry.data = merge(list(entry.data or []), fresh) if merge else fresh
            entry.error = None
            entry.fetched_at = entry.attempted_at = now
            entry.failures = 0
            entry.retry_at = None
            entry.generation += 1
            count = len(entry.data)
        self.logger.debug("Cache %r refreshed (%d entries)", key, count)

    def _settle_error(self, key: str, exc: Exception) -> None:
        now = self.clock()
        message = str(exc) or exc.__class__.__name__
        with self._lock:
            entry = self._entries.setdefault(key, CacheEntry())
            entry.error = message
            entry.attempted_at = now
            entry.failures += 1
            entry.retry_at = (
                now + self.error_retry_interval
                if entry.failures <= self.error_retry_count
                else None
            )
            entry.generation += 1
        if isinstance(exc, FetchError):
            self.logger.warning("Cache fetch for %r failed: %s", key, message)
        else:
            self.logger.error("Cache fetch for %r crashed", key, exc_info=exc)


class Refresher(threading.Thread):
    """Background timer that revalidates every registered key."""

    def __init__(self, cache: KeyedCache, interval: float):
        super().__init__(name="posts-refresher", daemon=True)
        self.cache = cache
        self.interval = interval
        self._halt = threading.Event()

    def run(self):
        while not self._halt.wait(self.interval):
            self.cache.refresh_all()

    def stop(self):
        self._halt.set()


###############################################################################
# Service accessors
###############################################################################
def get_store() -> PostStore:
    store = app.extensions.get("post_store")
    if store is None:
        with _ext_lock:
            store = app.extensions.setdefault(
                "post_store",
                PostStore(
                    app.config["SUPABASE_URL"],
                    app.config["SUPABASE_ANON_KEY"],
                    timeout=app.config["STORE_TIMEOUT"],
                    events=events,
                ),
            )
    return store


def get_auth() -> AuthClient:
    auth = app.extensions.get("auth_client")
    if auth is None:
        with _ext_lock:
            auth = app.extensions.setdefault(
                "auth_client",
                AuthClient(
                    app.config["SUPABASE_URL"],
                    app.config["SUPABASE_ANON_KEY"],
                    timeout=app.config["STORE_TIMEOUT"],
                ),
            )
    return auth


def get_cache() -> KeyedCache:
    cache = app.extensions.get("posts_cache")
    if cache is None:
        with _ext_lock:
            cache = app.extensions.get("posts_cache")
            if cache is None:
                cache = KeyedCache(
                    refresh_interval=app.config["POSTS_REFRESH_INTERVAL"] or 30.0,
                    dedupe_interval=app.config["POSTS_DEDUPE_INTERVAL"],
                    error_retry_count=app.config["POSTS_ERROR_RETRY_COUNT"],
                    error_retry_interval=app.config["POSTS_ERROR_RETRY_INTERVAL"],
                )
                cache.register(POSTS_KEY, fetch_feed, merge=keep_pending)
                app.extensions["posts_cache"] = cache
    return cache


events.subscribe("reconnect", lambda _payload: get_cache().reconnect())


###############################################################################
# Feed
###############################################################################
def store_error_message(exc: Exception, action: str, unexpected: str) -> str:
    """'Error <action>: <store message>' for store errors, *unexpected* otherwise."""
    if isinstance(exc, StoreError):
        return f"Error {action}: {exc.message}"
    return unexpected


def fetch_feed() -> list[Confirmed]:
    try:
        posts = get_store().list_posts()
    except (StoreError, requests.RequestException, ValueError) as exc:
        raise FetchError(
            store_error_message(
                exc, "fetching posts", "An unexpected error occurred while fetching posts."
            )
        ) from exc
    return [Confirmed(p) for p in posts]


def keep_pending(current: list, fresh: list) -> list:
    """Carry in-flight placeholders over a refetch, at the head of the list."""
    return [e for e in current if isinstance(e, Pending)] + fresh


def feed_view() -> CacheView:
    return get_cache().get(POSTS_KEY)


def visible_entries(entries: list, me: dict | None) -> list:
    """Placeholders are shown to their author only."""
    return [
        e
        for e in entries
        if not isinstance(e, Pending) or (me and e.post.author_id == me["id"])
    ]


def drop_from_feed(cache: KeyedCache, post_id: str) -> None:
    cache.mutate(
        POSTS_KEY,
        lambda entries: [e for e in entries if entry_key(e) != post_id],
        revalidate=True,
    )


_refresher_lock = threading.Lock()


@app.before_request
def start_refresher():
    interval = app.config["POSTS_REFRESH_INTERVAL"]
    if app.config.get("TESTING") or interval <= 0 or "posts_refresher" in app.extensions:
        return
    with _refresher_lock:
        if "posts_refresher" not in app.extensions:
            refresher = Refresher(get_cache(), interval)
            refresher.start()
            app.extensions["posts_refresher"] = refresher
            app.logger.info("Feed refresher running every %ss", interval)


###############################################################################
# Optimistic post creation
###############################################################################
class PostCreator:
    """
    Create one post while the feed cache shows it straight away.

    A ``Pending`` placeholder goes to the head of the ``posts`` key before the
    store is asked; once the store answers it is swapped in place for the
    stored row (and the key is marked for revalidation) or removed again.
    """

    def __init__(self, store, cache: KeyedCache, user: dict | None, *, token=None, key=POSTS_KEY):
        self.store = store
        self.cache = cache
        self.user = user
        self.token = token
        self.key = key
        self.is_creating = False
        self.error: str | None = None

    def clear_error(self) -> None:
        self.error = None

    def create(self, title: str, content: str) -> Post | None:
        if not self.user:
            self.error = MSG_LOGIN_REQUIRED
            return None

        title, content = (title or "").strip(), (content or "").strip()
        if not title or not content:
            self.error = MSG_FILL_BOTH
            return None
        if len(title) > TITLE_MAX:
            self.error = f"Title must be {TITLE_MAX} characters or fewer"
            return None
        if len(content) > CONTENT_MAX:
            self.error = f"Content must be {CONTENT_MAX} characters or fewer"
            return None

        self.is_creating = True
        self.error = None
        temp_id = self._insert_placeholder(title, content)
        try:
            post = self.store.insert_post(title, content, self.user["id"], token=self.token)
        except StoreError as exc:
            self._rollback(temp_id)
            self.error = f"Error creating post: {exc.message}"
            app.logger.warning("Creating post failed: %s", exc.message)
            return None
        except Exception:
            self._rollback(temp_id)
            self.error = MSG_UNEXPECTED
            app.logger.exception("Unexpected error while creating a post")
            return None
        else:
            self._confirm(temp_id, post)
            return post
        finally:
            self.is_creating = False

    def _insert_placeholder(self, title: str, content: str) -> str:
        made = {}

        def _prepend(entries):
            taken = {entry_key(e) for e in entries}
            now = utc_now()
            stamp = int(now.timestamp() * 1000)
            while f"{TEMP_ID_PREFIX}{stamp}" in taken:
                stamp += 1
            temp_id = made["id"] = f"{TEMP_ID_PREFIX}{stamp}"
            post = Post(
                id=temp_id,
                title=title,
                content=content,
                author_id=str(self.user["id"]),
                created_at=now.isoformat(),
            )
            return [Pending(temp_id, post), *entries]

        self.cache.mutate(self.key, _prepend)
        return made["id"]

    def _rollback(self, temp_id: str) -> None:
        self.cache.mutate(
            self.key, lambda entries: [e for e in entries if entry_key(e) != temp_id]
        )

    def _confirm(self, temp_id: str, post: Post) -> None:
        def _swap(entries):
            if any(isinstance(e, Confirmed) and e.post.id == post.id for e in entries):
                return [e for e in entries if entry_key(e) != temp_id]
            return [
                Confirmed(post) if isinstance(e, Pending) and e.temp_id == temp_id else e
                for e in entries
            ]

        self.cache.mutate(self.key, _swap, revalidate=True)


###############################################################################
# Email checks
###############################################################################
class ValidationResult(NamedTuple):
    is_valid: bool
    error: str | None = None


def is_valid_email_format(email: str) -> bool:
    return bool(email) and EMAIL_RE.fullmatch(email) is not None


def get_email_validation_message(
    email: str,
    *,
    fake_local_parts=FAKE_LOCAL_PARTS,
    domain_typos=DOMAIN_TYPOS,
) -> str:
    """
    Cheap local checks, in order: format → throwaway local part → domain typo.
    Returns "" when nothing looks wrong.
    """
    if not email:
        return ""
    if not is_valid_email_format(email):
        return "Please enter a valid email format"

    local, _, domain = email.partition("@")
    if local.lower() in {p.lower() for p in fake_local_parts}:
        return "Please use a real email address"

    fixed = domain_typos.get(domain.lower())
    if fixed:
        return f"Did you mean {local}@{fixed}?"
    return ""


def validate_email_with_mailgun(email: str, *, api_key: str, timeout: float = 5.0) -> ValidationResult:
    """
    Ask Mailgun whether *email* is deliverable.

    Fails open: an unreachable or unhappy API never blocks a sign-up.
    """
    if not is_valid_email_format(email):
        return ValidationResult(False, "Please enter a valid email address format")
    if not api_key:
        app.logger.debug("No Mailgun key configured; skipping remote email check")
        return ValidationResult(True)

    try:
        resp = requests.get(
            MAILGUN_VALIDATE_URL,
            params={"address": email},
            auth=("api", api_key),
            timeout=timeout,
        )
        if not resp.ok:
            app.logger.warning(
                "Mailgun validation answered %s; accepting %s", resp.status_code, email
            )
            return ValidationResult(True)
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        app.logger.warning("Mailgun validation failed, falling back to local checks: %s", exc)
        return ValidationResult(True)

    result = data.get("result")
    if result == "deliverable":
        if data.get("is_disposable_address"):
            return ValidationResult(False, "Disposable email addresses are not allowed")
        if data.get("is_role_address"):
            return ValidationResult(
                False, "Role-based email addresses (admin@, info@, etc.) are not allowed"
            )
        return ValidationResult(True)
    return ValidationResult(False, MAILGUN_RESULT_ERRORS.get(result, "Email validation failed"))


def validate_email(
    email: str,
    *,
    api_key: str = "",
    timeout: float = 5.0,
    fake_local_parts=FAKE_LOCAL_PARTS,
    domain_typos=DOMAIN_TYPOS,
) -> ValidationResult:
    message = get_email_validation_message(
        email, fake_local_parts=fake_local_parts, domain_typos=domain_typos
    )
    if message:
        return ValidationResult(False, message)
    if not email:
        return ValidationResult(False, "Please enter a valid email address format")
    return validate_email_with_mailgun(email, api_key=api_key, timeout=timeout)


def email_rules() -> dict:
    """Configured heuristic tables, as keyword arguments."""
    return {
        "fake_local_parts": app.config["EMAIL_FAKE_LOCAL_PARTS"],
        "domain_typos": app.config["EMAIL_DOMAIN_TYPOS"],
    }


###############################################################################
# Sessions + authentication
###############################################################################
def _store_session(data: dict) -> dict:
    user = data.get("user") or {}
    expires_at = data.get("expires_at") or int(time()) + int(data.get("expires_in") or 3600)
    session["user"] = {
        "id": user.get("id"),
        "email": user.get("email"),
        "email_confirmed_at": user.get("email_confirmed_at"),
    }
    session["access_token"] = data.get("access_token")
    session["refresh_token"] = data.get("refresh_token")
    session["expires_at"] = int(expires_at)
    return session["user"]


def _end_session() -> None:
    user = session.get("user")
    session.clear()
    if user:
        events.publish("SIGNED_OUT", user)


def current_user() -> dict | None:
    """The signed-in user, refreshing the tokens shortly before they expire."""
    user = session.get("user")
    if user and session.get("expires_at", 0) - time() < SESSION_REFRESH_MARGIN:
        try:
            data = get_auth().refresh(session.get("refresh_token") or "")
        except (AuthError, requests.RequestException) as exc:
            app.logger.info("Session refresh failed, signing out: %s", exc)
            _end_session()
            return None
        user = _store_session(data)
        events.publish("TOKEN_REFRESHED", user)
    return user


def login_required() -> None:
    if current_user() is None:
        abort(redirect(url_for("login", next=request.full_path.rstrip("?"))))


def _safe_next(target: str | None, default: str) -> str:
    """Only same-site paths are acceptable redirect targets."""
    if not target or not target.startswith("/") or target.startswith("//"):
        return default
    parsed = urlparse(target)
    if parsed.scheme or parsed.netloc:
        return default
    return target


def client_ip() -> str:
    # left-most entry after ProxyFix = real client
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not app.config.get("RATELIMIT_ENABLED", True):
                return view(*args, **kwargs)

            now = time()
            dq = hits[client_ip()]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return
    # anonymous forms (login, register, refresh) carry no token yet
    if not session.get("user"):
        return
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Template filters + globals
###############################################################################
@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return iso
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d at %H:%M")


@app.template_filter("excerpt")
def excerpt_filter(text: str | None, limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


def site_name() -> str:
    return app.config["SITE_NAME"]


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    current_user=current_user,
    site_name=site_name,
    version=__version__,
    TITLE_MAX=TITLE_MAX,
    CONTENT_MAX=CONTENT_MAX,
    PASSWORD_MIN=PASSWORD_MIN,
)


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<link rel="icon" type="image/svg+xml" href="/favicon.svg">
<style>
body{margin:0;font:16px/1.6 -apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;background:#f3f4f6;color:#1f2937}
header.site{position:sticky;top:0;display:flex;justify-content:space-between;align-items:center;padding:1rem 1.5rem;background:#fff;border-bottom:1px solid #e5e7eb}
header.site nav{display:flex;gap:1rem;align-items:center}
.brand{display:flex;gap:.6rem;align-items:center;font-size:1.4rem;font-weight:700;color:#2563eb;text-decoration:none}
.logo{display:inline-flex;width:2rem;height:2rem;align-items:center;justify-content:center;border-radius:.5rem;background:#2563eb;color:#fff;font-size:.9rem}
main{max-width:56rem;margin:2rem auto;padding:0 1rem}
a{color:#2563eb}
.card{background:#fff;border-radius:.5rem;box-shadow:0 1px 3px rgba(0,0,0,.1);padding:1.5rem;margin-bottom:2rem}
.row{display:flex;justify-content:space-between;align-items:flex-start;gap:1rem}
.muted,.meta{color:#6b7280;font-size:.85rem}
.center{text-align:center}
.button,button{display:inline-block;padding:.5rem 1rem;border:0;border-radius:.375rem;background:#2563eb;color:#fff;font:inherit;text-decoration:none;cursor:pointer}
.button.secondary{background:#4b5563}
.button.small{padding:.25rem .75rem;font-size:.85rem}
button.danger{background:#dc2626}
button.link{background:none;color:#2563eb;padding:0}
form.inline{display:inline}
input,textarea{width:100%;box-sizing:border-box;padding:.5rem .75rem;border:1px solid #d1d5db;border-radius:.375rem;font:inherit;margin-bottom:.25rem}
label{display:block;font-weight:600;margin-top:1rem}
.error{background:#fef2f2;border:1px solid #fecaca;color:#b91c1c;padding:.75rem 1rem;border-radius:.375rem;margin-bottom:1rem}
.success{background:#f0fdf4;border:1px solid #bbf7d0;color:#15803d;padding:.75rem 1rem;border-radius:.375rem;margin-bottom:1rem}
.hint{color:#dc2626;font-size:.85rem}
article.post{border:1px solid #e5e7eb;border-radius:.5rem;padding:1rem;margin-bottom:1rem}
article.post.pending{border-style:dashed;opacity:.75}
.badge{display:inline-block;background:#2563eb;color:#fff;border-radius:.25rem;padding:.1rem .5rem;font-size:.75rem}
.content{white-space:pre-wrap}
footer{max-width:56rem;margin:2rem auto;padding:1rem;color:#9ca3af;font-size:.8rem;border-top:1px solid #e5e7eb}
</style>
<body>
<header class="site">
  <a href="{{ url_for('index') }}" class="brand"><span class="logo">{{ site_name()[:1] }}</span>{{ site_name() }}</a>
  <nav aria-label="Main">
  {% set viewer = current_user() %}
  {% if viewer %}
    <span class="muted">Welcome, <strong>{{ viewer['email'] }}</strong></span>
    <a href="{{ url_for('create_post') }}">Create Post</a>
    <a href="{{ url_for('my_posts') }}">My Posts</a>
    <form method="post" action="{{ url_for('logout') }}" class="inline">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <button class="danger">Sign Out</button>
    </form>
  {% else %}
    <a href="{{ url_for('login') }}">Sign In</a>
    <a href="{{ url_for('register') }}" class="button">Sign Up</a>
  {% endif %}
  </nav>
</header>
<main id="main-content">
{% with msgs = get_flashed_messages(with_categories=true) %}
  {% for cat, msg in msgs %}
    <div class="{{ 'error' if cat == 'error' else 'success' }}" role="status">{{ msg }}</div>
  {% endfor %}
{% endwith %}
"""

TEMPL_EPILOG = """
</main>
<footer>{{ site_name() }} · v{{ version }}</footer>
</body>
</html>
"""


###############################################################################
# Feed
###############################################################################
@app.route("/")
def index():
    me = current_user()
    view = feed_view()
    shown = visible_entries(view.data, me)
    entries = shown if me else shown[:PUBLIC_FEED_LIMIT]
    return render_template_string(
        TEMPL_INDEX,
        me=me,
        entries=entries,
        total=len(shown),
        error=view.error,
        excerpt_len=FEED_EXCERPT if me else PUBLIC_EXCERPT,
    )


@app.route("/refresh", methods=["POST"])
def refresh_posts():
    get_cache().revalidate(POSTS_KEY)
    return redirect(url_for("index"))


@app.route("/api/posts")
def api_posts():
    view = feed_view()
    shown = visible_entries(view.data, current_user())
    return {
        "posts": [e.post.to_dict() for e in shown],
        "pending": [e.temp_id for e in shown if isinstance(e, Pending)],
        "error": view.error,
    }


TEMPL_INDEX = wrap("""{% block body %}
<section class="center">
  {% if me %}
    <h2>Welcome to {{ site_name() }}!</h2>
    <p class="muted">Share your thoughts and reviews about your favorite anime series.</p>
    <p>
      <a class="button" href="{{ url_for('create_post') }}">Create New Post</a>
      <a class="button secondary" href="{{ url_for('my_posts') }}">My Posts</a>
    </p>
  {% else %}
    <h2>Welcome to {{ site_name() }}</h2>
    <p class="muted">Join our community to share and discover amazing anime reviews and discussions.</p>
    <p>
      <a class="button" href="{{ url_for('register') }}">Create Account</a>
      <a class="button secondary" href="{{ url_for('login') }}">Sign In</a>
    </p>
  {% endif %}
</section>

<section class="card">
  <div class="row">
    <h3 style="margin-top:0">{{ 'Recent Posts' if me else 'Recent Community Posts' }}</h3>
    <form method="post" action="{{ url_for('refresh_posts') }}" class="inline">
      {% if csrf_token() %}<input type="hidden" name="csrf" value="{{ csrf_token() }}">{% endif %}
      <button class="link">Refresh</button>
    </form>
  </div>

  {% if error %}<div class="error">{{ error }}</div>{% endif %}

  {% if not entries %}
    <div class="center">
      {% if me %}
        <p class="muted">No posts yet. Be the first to share!</p>
        <a class="button" href="{{ url_for('create_post') }}">Create First Post</a>
      {% else %}
        <p class="muted">No posts yet. Join the community to be the first!</p>
        <a class="button" href="{{ url_for('register') }}">Join Community</a>
      {% endif %}
    </div>
  {% else %}
    {% for entry in entries %}
      {% set p = entry.post %}
      <article class="post{% if entry.pending %} pending{% endif %}">
        <div class="row">
          <div>
            <h4 style="margin:0">{{ p.title }}</h4>
            <span class="muted">Posted on {{ p.created_at|ts }}</span>
          </div>
          {% if entry.pending %}
            <span class="badge">Creating post…</span>
          {% else %}
            <a class="button small" href="{{ url_for('post_detail', post_id=p.id) }}">Read More</a>
          {% endif %}
        </div>
        <p class="content">{{ p.content|excerpt(excerpt_len) }}
          {%- if p.content|length > excerpt_len and not entry.pending %}
            <a href="{{ url_for('post_detail', post_id=p.id) }}">Continue reading</a>
          {%- endif %}</p>
        {% if me %}
          <div class="row meta"><span>Post ID: {{ p.id }}</span><span>{{ p.content|length }} characters</span></div>
        {% endif %}
      </article>
    {% endfor %}
    {% if not me and total > entries|length %}
      <p class="center">
        Showing {{ entries|length }} of {{ total }} posts<br>
        <a href="{{ url_for('login') }}">Sign in to see all posts</a>
      </p>
    {% endif %}
  {% endif %}
</section>
{% endblock %}""")


###############################################################################
# Posts
###############################################################################
@app.route("/create-post", methods=["GET", "POST"])
def create_post():
    login_required()
    title = content = ""
    error = None

    if request.method == "POST":
        title = request.form.get("title", "")
        content = request.form.get("content", "")
        creator = PostCreator(
            get_store(), get_cache(), current_user(), token=session.get("access_token")
        )
        post = creator.create(title, content)
        if post is not None:
            app.logger.info("Post %s created by %s", post.id, post.author_id)
            flash("Post created successfully!")
            return redirect(url_for("index"))
        error = creator.error

    return render_template_string(
        TEMPL_CREATE_POST,
        title="Create Post",
        post_title=title,
        post_content=content,
        error=error,
    ), (400 if error else 200)


TEMPL_CREATE_POST = wrap("""
{% block body %}
<p><a href="{{ url_for('index') }}">← Back to Home</a></p>
<section class="card">
  <h2 style="margin-top:0">Create New Post</h2>
  {% if error %}<div class="error">{{ error }}</div>{% endif %}
  <form method="post">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <label for="title">Title</label>
    <input id="title" name="title" required maxlength="{{ TITLE_MAX }}"
           value="{{ post_title }}" placeholder="Enter your post title">
    <span class="muted">{{ post_title|length }}/{{ TITLE_MAX }} characters</span>

    <label for="content">Content</label>
    <textarea id="content" name="content" rows="10" required maxlength="{{ CONTENT_MAX }}"
              placeholder="Share your thoughts…">{{ post_content }}</textarea>
    <span class="muted">{{ post_content|length }}/{{ CONTENT_MAX }} characters</span>

    <p class="row" style="margin-top:1rem">
      <a class="button secondary" href="{{ url_for('index') }}">Cancel</a>
      <button type="submit">Create Post</button>
    </p>
  </form>
</section>
<section class="card">
  <h3 style="margin-top:0">Writing Tips</h3>
  <ul class="muted">
    <li>Use a clear, descriptive title</li>
    <li>Mention the series and episode you are writing about</li>
    <li>Warn readers about spoilers</li>
  </ul>
</section>
{% endblock %}
""")


@app.route("/my-posts")
def my_posts():
    login_required()
    me = current_user()
    posts: list[Post] = []
    error = None
    try:
        posts = get_store().list_posts_by_author(me["id"])
    except (StoreError, requests.RequestException, ValueError) as exc:
        if not isinstance(exc, StoreError):
            app.logger.exception("Fetching posts for %s failed", me["id"])
        error = store_error_message(
            exc, "fetching posts", "An unexpected error occurred while fetching posts."
        )

    return render_template_string(
        TEMPL_MY_POSTS,
        title="My Posts",
        posts=posts,
        error=error,
        excerpt_len=MY_POSTS_EXCERPT,
    )


TEMPL_MY_POSTS = wrap("""
{% block body %}
<p><a href="{{ url_for('index') }}">← Back to Home</a></p>
<div class="row">
  <h2 style="margin-top:0">My Posts</h2>
  <a class="button" href="{{ url_for('create_post') }}">Create New Post</a>
</div>
{% if error %}<div class="error">{{ error }}</div>{% endif %}

{% if not posts and not error %}
  <section class="card center">
    <h3>No posts yet</h3>
    <p class="muted">You haven't created any posts yet. Start sharing your anime reviews!</p>
    <a class="button" href="{{ url_for('create_post') }}">Create Your First Post</a>
  </section>
{% endif %}

{% for p in posts %}
  <section class="card">
    <div class="row">
      <div>
        <h3 style="margin:0">{{ p.title }}</h3>
        <span class="muted">Created on {{ p.created_at|ts }}</span>
      </div>
      <div>
        <a class="button small" href="{{ url_for('post_detail', post_id=p.id) }}">View</a>
        <form method="post" action="{{ url_for('delete_post', post_id=p.id) }}" class="inline"
              onsubmit="return confirm('Are you sure you want to delete this post? This action cannot be undone.');">
          <input type="hidden" name="csrf" value="{{ csrf_token() }}">
          <input type="hidden" name="next" value="{{ url_for('my_posts') }}">
          <input type="hidden" name="back" value="{{ url_for('my_posts') }}">
          <button class="danger">Delete</button>
        </form>
      </div>
    </div>
    <p class="content">{{ p.content|excerpt(excerpt_len) }}
      {%- if p.content|length > excerpt_len %}
        <a href="{{ url_for('post_detail', post_id=p.id) }}">Read more</a>
      {%- endif %}</p>
    <div class="row meta"><span>Post ID: {{ p.id }}</span><span>{{ p.content|length }} characters</span></div>
  </section>
{% endfor %}

{% if posts %}
  <p class="center muted">
    Showing {{ posts|length }} post{{ '' if posts|length == 1 else 's' }} •
    <a href="{{ url_for('index') }}">View all posts</a>
  </p>
{% endif %}
{% endblock %}
""")


@app.route("/post/<post_id>")
def post_detail(post_id):
    me = current_user()
    pending = False

    if post_id.startswith(TEMP_ID_PREFIX):
        entry = next(
            (
                e
                for e in visible_entries(get_cache().peek(POSTS_KEY).data, me)
                if entry_key(e) == post_id
            ),
            None,
        )
        if entry is None:
            return _post_error("Post not found", 404)
        post, pending = entry.post, entry.pending
    else:
        try:
            post = get_store().get_post(post_id)
        except PostNotFound:
            return _post_error("Post not found", 404)
        except StoreError as exc:
            return _post_error(f"Error fetching post: {exc.message}", 502)
        except (requests.RequestException, ValueError):
            app.logger.exception("Fetching post %s failed", post_id)
            return _post_error("An unexpected error occurred while fetching the post.", 502)

    return render_template_string(
        TEMPL_POST_DETAIL,
        title=post.title,
        p=post,
        me=me,
        pending=pending,
        is_author=bool(me) and me["id"] == post.author_id,
    )


def _post_error(message: str, status: int):
    return render_template_string(
        TEMPL_POST_ERROR, title="Post Not Found", message=message
    ), status


TEMPL_POST_DETAIL = wrap("""
{% block body %}
<p><a href="{{ url_for('index') }}">← Back to Home</a></p>
<article class="card">
  <div class="row">
    <div>
      <h1 style="margin-top:0">{{ p.title }}</h1>
      <span class="muted">
        Posted on {{ p.created_at|ts }} • {{ p.content|length }} characters • Post ID: {{ p.id }}
      </span>
    </div>
    {% if pending %}
      <span class="badge">Creating post…</span>
    {% elif is_author %}
      <form method="post" action="{{ url_for('delete_post', post_id=p.id) }}"
            onsubmit="return confirm('Are you sure you want to delete this post? This action cannot be undone.');">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="next" value="{{ url_for('index') }}">
        <input type="hidden" name="back" value="{{ url_for('post_detail', post_id=p.id) }}">
        <button class="danger">Delete</button>
      </form>
    {% endif %}
  </div>
  <div class="content" style="margin-top:1.5rem">{{ p.content }}</div>
  <div class="row meta" style="margin-top:1.5rem">
    <span>{{ 'You are the author of this post' if is_author else 'Posted by a community member' }}</span>
    <span>
      <a href="{{ url_for('index') }}">View All Posts</a>
      {% if me %}
        · <a href="{{ url_for('my_posts') }}">My Posts</a>
        · <a href="{{ url_for('create_post') }}">Create New Post</a>
      {% endif %}
    </span>
  </div>
</article>
<section class="card">
  <h2 style="margin-top:0">What's Next?</h2>
  <p><a href="{{ url_for('index') }}">Browse All Posts</a> – discover more anime reviews from the community</p>
  {% if me %}
    <p><a href="{{ url_for('create_post') }}">Share Your Review</a> – create your own anime review and join the discussion</p>
  {% else %}
    <p><a href="{{ url_for('register') }}">Join the Community</a> – sign up to create your own posts and engage with others</p>
  {% endif %}
</section>
{% endblock %}
""")

TEMPL_POST_ERROR = wrap("""
{% block body %}
<p><a href="{{ url_for('index') }}">← Back to Home</a></p>
<section class="card center">
  <h1 style="margin-top:0">Post Not Found</h1>
  <p class="muted">{{ message }}</p>
  <a class="button" href="{{ url_for('index') }}">Return to Home</a>
</section>
{% endblock %}
""")


@app.route("/post/<post_id>/delete", methods=["POST"])
def delete_post(post_id):
    login_required()
    me = current_user()
    done = _safe_next(request.form.get("next"), url_for("index"))
    back = _safe_next(request.form.get("back"), done)

    try:
        get_store().delete_post(post_id, me["id"], token=session.get("access_token"))
    except (StoreError, requests.RequestException, ValueError) as exc:
        if not isinstance(exc, StoreError):
            app.logger.exception("Deleting post %s failed", post_id)
        flash(
            store_error_message(
                exc, "deleting post", "An unexpected error occurred while deleting the post."
            ),
            "error",
        )
        return redirect(back)

    drop_from_feed(get_cache(), post_id)
    app.logger.info("Post %s deleted by %s", post_id, me["id"])
    flash("Post deleted.")
    return redirect(done)


###############################################################################
# Accounts
###############################################################################
@app.route("/register", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def register():
    email = request.form.get("email", "").strip()
    error = None

    if request.method == "POST":
        password = request.form.get("password", "")
        result = validate_email(
            email,
            api_key=app.config["MAILGUN_API_KEY"],
            timeout=app.config["EMAIL_CHECK_TIMEOUT"],
            **email_rules(),
        )
        if not result.is_valid:
            error = result.error or "Invalid email address"
        elif len(password) < PASSWORD_MIN:
            error = f"Password must be at least {PASSWORD_MIN} characters"
        else:
            try:
                get_auth().sign_up(
                    email, password, redirect_to=url_for("login", _external=True)
                )
            except AuthError as exc:
                error = exc.message
            except (requests.RequestException, ValueError):
                app.logger.exception("Sign-up request failed")
                error = MSG_UNEXPECTED
            else:
                app.logger.info("New registration for %s", email)
                return render_template_string(
                    TEMPL_REGISTER_DONE, title="Check your email", email=email
                )

    return render_template_string(
        TEMPL_REGISTER,
        title="Create your account",
        email=email,
        error=error,
        email_hint=get_email_validation_message(email, **email_rules()),
    ), (400 if error else 200)


TEMPL_REGISTER = wrap("""
{% block body %}
<section class="card" style="max-width:28rem;margin:auto">
  <h2 class="center" style="margin-top:0">Create your account</h2>
  <p class="center muted">Or <a href="{{ url_for('login') }}">sign in to your existing account</a></p>
  <form method="post">
    <label for="email">Email address</label>
    <input id="email" name="email" type="email" autocomplete="email" required
           value="{{ email }}" placeholder="Enter your email">
    <p id="email-hint" class="hint">{{ email_hint }}</p>

    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="new-password"
           required minlength="{{ PASSWORD_MIN }}" placeholder="Enter your password">

    {% if error %}<div class="error">{{ error }}</div>{% endif %}
    <button type="submit" style="width:100%;margin-top:1rem">Create account</button>
  </form>
</section>
<script>
(() => {
  const input = document.getElementById('email');
  const hint = document.getElementById('email-hint');
  let timer;
  input.addEventListener('input', () => {
    clearTimeout(timer);
    timer = setTimeout(async () => {
      if (!input.value) { hint.textContent = ''; return; }
      const res = await fetch("{{ url_for('api_email_check') }}?email=" + encodeURIComponent(input.value));
      if (res.ok) hint.textContent = (await res.json()).message;
    }, 250);
  });
})();
</script>
{% endblock %}
""")

TEMPL_REGISTER_DONE = wrap("""
{% block body %}
<section class="card center" style="max-width:28rem;margin:auto">
  <h2 style="margin-top:0">Check your email!</h2>
  <p>We've sent a confirmation link to <strong>{{ email }}</strong></p>
  <div class="success" style="text-align:left">
    <strong>What's next?</strong>
    <ul>
      <li>Check your email inbox (and spam folder)</li>
      <li>Click the confirmation link in the email</li>
      <li>Come back here to sign in</li>
    </ul>
  </div>
  <p>
    <a class="button secondary" href="{{ url_for('register') }}">Register with different email</a>
    <a class="button" href="{{ url_for('login') }}">Go to Login</a>
  </p>
</section>
{% endblock %}
""")


@app.route("/api/email-check")
def api_email_check():
    email = request.args.get("email", "").strip()
    return {"message": get_email_validation_message(email, **email_rules())}


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    next_url = _safe_next(request.values.get("next"), url_for("index"))
    email = request.form.get("email", "").strip()
    error = None

    if request.method == "POST":
        password = request.form.get("password", "")
        if not email or not password:
            error = "Please enter your email and password"
        else:
            try:
                data = get_auth().sign_in(email, password)
            except AuthError as exc:
                error = exc.message
            except (requests.RequestException, ValueError):
                app.logger.exception("Sign-in request failed")
                error = MSG_UNEXPECTED
            else:
                session.clear()
                session.permanent = True
                user = _store_session(data)
                session["csrf"] = secrets.token_hex(16)
                events.publish("SIGNED_IN", user)
                return redirect(next_url)

    return render_template_string(
        TEMPL_LOGIN, title="Sign in", email=email, error=error, next_url=next_url
    ), (401 if error else 200)


TEMPL_LOGIN = wrap("""
{% block body %}
<section class="card" style="max-width:28rem;margin:auto">
  <h2 class="center" style="margin-top:0">Sign in to your account</h2>
  <p class="center muted">Or <a href="{{ url_for('register') }}">create a new account</a></p>
  <form method="post">
    <input type="hidden" name="next" value="{{ next_url }}">
    <label for="email">Email address</label>
    <input id="email" name="email" type="email" autocomplete="email" required value="{{ email }}">
    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="current-password" required>
    {% if error %}<div class="error">{{ error }}</div>{% endif %}
    <button type="submit" style="width:100%;margin-top:1rem">Sign in</button>
  </form>
</section>
{% endblock %}
""")


@app.route("/logout", methods=["POST"])
def logout():
    token = session.get("access_token")
    if token:
        try:
            get_auth().sign_out(token)
        except (AuthError, requests.RequestException) as exc:
            app.logger.warning("Provider sign-out failed: %s", exc)
    _end_session()
    return redirect(url_for("index"))


@app.route("/account")
def account():
    login_required()
    me = current_user()
    try:
        fresh = get_auth().get_user(session.get("access_token") or "")
    except (AuthError, requests.RequestException, ValueError) as exc:
        app.logger.info("Could not reload user %s: %s", me["id"], exc)
    else:
        me = {**me, "email_confirmed_at": fresh.get("email_confirmed_at")}
        session["user"] = me
    return render_template_string(TEMPL_ACCOUNT, title="Account", me=me)


TEMPL_ACCOUNT = wrap("""
{% block body %}
<section class="card">
  <h2 style="margin-top:0">Account</h2>
  <p>Signed in as <strong>{{ me['email'] }}</strong></p>
  {% if me['email_confirmed_at'] %}
    <div class="success">Email confirmed on {{ me['email_confirmed_at']|ts }}</div>
  {% else %}
    <div class="error">Email not confirmed yet</div>
  {% endif %}
</section>
{% endblock %}
""")


###############################################################################
# Resources
###############################################################################
@app.route("/favicon.svg")
def favicon():
    letter = (site_name() or "A")[0].upper()
    svg = f"""<svg xmlns="http://www.w3.org/2000/svg" width="64" height="64" viewBox="0 0 64 64">
  <rect width="64" height="64" rx="12" ry="12" fill="#2563eb"/>
  <text x="32" y="45" text-anchor="middle" font-family="Arial,Helvetica,sans-serif"
        font-size="40" font-weight="800" fill="#ffffff">{letter}</text>
</svg>"""
    return Response(
        svg,
        mimetype="image/svg+xml",
        headers={"Cache-Control": "public, max-age=86400"},
    )


@app.route("/robots.txt")
def robots():
    rules = "User-agent: *\nDisallow: /api/\nDisallow: /account\n"
    return Response(
        rules, mimetype="text/plain", headers={"Cache-Control": "public, max-age=86400"}
    )


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title="Page not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    app.logger.error("Unhandled error: %s", exc)
    return render_template_string(TEMPL_500, title="Internal Server Error"), 500


TEMPL_404 = wrap("""
{% block body %}
  <section class="card">
    <h2 style="margin-top:0">Page not found</h2>
    <p>The URL you asked for doesn’t exist.
       <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
  </section>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <section class="card">
    <h2 style="margin-top:0">Internal Server Error</h2>
    <p>Our fault, not yours. Please try again in a minute.</p>
  </section>
{% endblock %}
""")


###############################################################################
# CLI
###############################################################################
@app.cli.command("check-email")
@click.argument("address")
def cli_check_email(address: str):
    """Run the sign-up email checks against ADDRESS."""
    hint = get_email_validation_message(address, **email_rules())
    click.echo(f"local checks : {hint or 'ok'}")

    result = validate_email(
        address,
        api_key=app.config["MAILGUN_API_KEY"],
        timeout=app.config["EMAIL_CHECK_TIMEOUT"],
        **email_rules(),
    )
    if result.is_valid:
        click.secho("✅  accepted", fg="green")
    else:
        click.secho(f"❌  rejected: {result.error}", fg="red")


@app.cli.command("posts")
@click.option("--author", default=None, help="Only posts by this author id")
def cli_posts(author: str | None):
    """List posts straight from the backing store, newest first."""
    store = get_store()
    try:
        posts = store.list_posts_by_author(author) if author else store.list_posts()
    except StoreError as exc:
        raise click.ClickException(f"Error fetching posts: {exc.message}") from None
    except requests.RequestException as exc:
        raise click.ClickException(f"Cannot reach the store – {exc}") from None

    if not posts:
        click.echo("No posts yet.")
        return
    for p in posts:
        click.echo(f"{p.created_at:<32}  {p.id:<36}  {p.title}")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
