"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import time
from typing import Any, Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from animeblog import blog
from animeblog.blog import AuthError, Post, PostNotFound, app

CSRF = "test-token"          # shared constant so the token matches the session


@pytest.fixture(scope="session", autouse=True)
def _configure_app() -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        SUPABASE_URL="https://project.supabase.test",
        SUPABASE_ANON_KEY="anon-key",
        MAILGUN_API_KEY="",
        # Rate-limit off for unit tests – test_auth turns it back on
        RATELIMIT_ENABLED=False,
    )


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch animeblog.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── fake backends ─────────────────────────────
class FakeStore:
    """
    In-memory stand-in for PostStore.

    ``errors[op]`` makes the next calls of *op* raise; ``calls`` records every
    call; ``on_insert(post)`` runs after a row is stored but before the
    insert returns.
    """

    def __init__(self):
        self.rows: list[Post] = []
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self.on_insert = None
        self._ids = itertools.count(1)

    def add(self, title: str, content: str = "Some content", author_id: str = "u-1") -> Post:
        post = Post(
            id=f"p{next(self._ids)}",
            title=title,
            content=content,
            author_id=author_id,
            created_at=blog.utc_now().isoformat(),
        )
        self.rows.append(post)
        return post

    def _hit(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        if op in self.errors:
            raise self.errors[op]

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)

    def list_posts(self) -> list[Post]:
        self._hit("list_posts")
        return sorted(self.rows, key=lambda p: p.created_at, reverse=True)

    def list_posts_by_author(self, author_id: str) -> list[Post]:
        self._hit("list_posts_by_author", author_id)
        return [p for p in self.list_posts() if p.author_id == author_id]

    def get_post(self, post_id: str) -> Post:
        self._hit("get_post", post_id)
        for p in self.rows:
            if p.id == post_id:
                return p
        raise PostNotFound("JSON object requested, multiple (or no) rows returned",
                           code="PGRST116")

    def insert_post(self, title, content, author_id, *, token=None) -> Post:
        self._hit("insert_post", title, content, author_id, token)
        post = self.add(title, content, author_id)
        if self.on_insert:
            self.on_insert(post)
        return post

    def delete_post(self, post_id, author_id, *, token=None) -> list[Post]:
        self._hit("delete_post", post_id, author_id, token)
        gone = [p for p in self.rows if p.id == post_id and p.author_id == author_id]
        if not gone:
            raise PostNotFound("Post not found or not yours to delete", code="PGRST116")
        self.rows = [p for p in self.rows if p not in gone]
        return gone


class FakeAuth:
    """In-memory stand-in for AuthClient."""

    def __init__(self):
        self.users: dict[str, tuple[str, dict]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self._ids = itertools.count(1)

    def _hit(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        if op in self.errors:
            raise self.errors[op]

    def _session(self, user: dict) -> dict[str, Any]:
        return {
            "access_token": f"access-{user['id']}",
            "refresh_token": f"refresh-{user['id']}",
            "expires_in": 3600,
            "user": user,
        }

    def sign_up(self, email, password, *, redirect_to=None) -> dict:
        self._hit("sign_up", email, redirect_to)
        if email in self.users:
            raise AuthError("User already registered", status=422)
        user = {"id": f"u-{next(self._ids)}", "email": email, "email_confirmed_at": None}
        self.users[email] = (password, user)
        return user

    def sign_in(self, email, password) -> dict:
        self._hit("sign_in", email)
        known = self.users.get(email)
        if not known or known[0] != password:
            raise AuthError("Invalid login credentials", status=400)
        return self._session(known[1])

    def refresh(self, refresh_token) -> dict:
        self._hit("refresh", refresh_token)
        for _pw, user in self.users.values():
            if refresh_token == f"refresh-{user['id']}":
                return self._session(user)
        raise AuthError("Invalid Refresh Token", status=400)

    def get_user(self, access_token) -> dict:
        self._hit("get_user", access_token)
        for _pw, user in self.users.values():
            if access_token == f"access-{user['id']}":
                return user
        raise AuthError("invalid JWT", status=401)

    def sign_out(self, access_token) -> None:
        self._hit("sign_out", access_token)


@pytest.fixture(autouse=True)
def store() -> Generator[FakeStore, None, None]:
    """Every test gets a fresh fake store and an empty feed cache."""
    fake = FakeStore()
    app.extensions["post_store"] = fake
    app.extensions.pop("posts_cache", None)
    yield fake
    app.extensions.pop("post_store", None)
    app.extensions.pop("posts_cache", None)


@pytest.fixture(autouse=True)
def auth() -> Generator[FakeAuth, None, None]:
    fake = FakeAuth()
    app.extensions["auth_client"] = fake
    yield fake
    app.extensions.pop("auth_client", None)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def login(client, auth):
    """
    Put a signed-in session on the test client.

    Returns the user dict; call with ``login(email=…, expires_in=…)`` to
    tweak it.
    """
    def _login(email: str = "fan@animefans.org", *, expires_in: int = 3600,
               confirmed: bool = False) -> dict:
        if email not in auth.users:
            auth.sign_up(email, "hunter22")
        user = dict(auth.users[email][1])
        user["email_confirmed_at"] = "2099-01-01T00:00:00Z" if confirmed else None
        with client.session_transaction() as sess:
            sess["user"] = user
            sess["access_token"] = f"access-{user['id']}"
            sess["refresh_token"] = f"refresh-{user['id']}"
            sess["expires_at"] = int(time.time()) + expires_in
            sess["csrf"] = CSRF
        return user

    return _login
