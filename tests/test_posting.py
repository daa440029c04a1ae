"""
tests/test_posting.py
"""
from __future__ import annotations

from typing import Any

import requests

from animeblog.blog import POSTS_KEY, StoreError, get_cache

CSRF = "test-token"          # matches the token the login fixture stores


def _submit(client, payload: dict[str, Any], **kw):
    """POST helper for the create form (token included)."""
    return client.post("/create-post", data={**payload, "csrf": CSRF}, **kw)


# ───────────────────────── create ───────────────────────────────────
def test_create_requires_login(client):
    rv = client.get("/create-post")
    assert rv.status_code == 302
    assert rv.headers["Location"].startswith("/login?next=/create-post")


def test_create_form_renders(client, login):
    login()
    html = client.get("/create-post").data.decode()
    assert 'maxlength="200"' in html
    assert 'maxlength="5000"' in html
    assert "0/200 characters" in html


def test_create_post_success(client, store, login):
    me = login()
    rv = _submit(client, {"title": "  Spy x Family  ", "content": " Anya! "},
                 follow_redirects=True)
    assert rv.status_code == 200
    html = rv.data.decode()
    assert "Post created successfully!" in html
    assert "Spy x Family" in html

    assert ("insert_post", "Spy x Family", "Anya!", me["id"],
            f"access-{me['id']}") in store.calls
    [row] = store.rows
    assert row.author_id == me["id"]


def test_create_post_shows_up_first_in_feed(client, store, login):
    store.add("Older")
    login()
    client.get("/")
    _submit(client, {"title": "Newest", "content": "body"})
    entries = get_cache().peek(POSTS_KEY).data
    assert [e.post.title for e in entries] == ["Newest", "Older"]

    html = client.get("/").data.decode()
    assert html.index("Newest") < html.index("Older")


def test_create_post_blank_fields(client, store, login):
    login()
    rv = _submit(client, {"title": "   ", "content": "body"})
    assert rv.status_code == 400
    assert b"Please fill in both title and content" in rv.data
    assert store.count("insert_post") == 0
    # inputs are kept
    assert b">body</textarea>" in rv.data


def test_create_post_store_error(client, store, login):
    login()
    store.errors["insert_post"] = StoreError("duplicate key value violates unique constraint")
    rv = _submit(client, {"title": "T", "content": "C"})
    assert rv.status_code == 400
    assert b"Error creating post: duplicate key value violates unique constraint" in rv.data
    assert get_cache().peek(POSTS_KEY).data == []


def test_create_post_transport_error(client, store, login):
    login()
    store.errors["insert_post"] = requests.ConnectionError("reset by peer")
    rv = _submit(client, {"title": "T", "content": "C"})
    assert rv.status_code == 400
    assert b"An unexpected error occurred. Please try again." in rv.data


def test_create_post_without_csrf_is_forbidden(client, store, login):
    login()
    rv = client.post("/create-post", data={"title": "T", "content": "C"})
    assert rv.status_code == 403
    assert store.count("insert_post") == 0


# ───────────────────────── my posts ─────────────────────────────────
def test_my_posts_only_lists_own(client, store, login):
    me = login()
    store.add("Mine A", author_id=me["id"])
    store.add("Someone else's", author_id="u-999")
    store.add("Mine B", author_id=me["id"])

    html = client.get("/my-posts").data.decode()
    assert "Mine A" in html and "Mine B" in html
    assert "Someone else" not in html
    assert "Showing 2 posts" in html
    assert ("list_posts_by_author", me["id"]) in store.calls


def test_my_posts_singular_and_cut(client, store, login):
    me = login()
    store.add("Only", content="c" * 320, author_id=me["id"])
    html = client.get("/my-posts").data.decode()
    assert "Showing 1 post •" in html
    assert "c" * 300 + "..." in html
    assert "Read more" in html


def test_my_posts_empty(client, login):
    login()
    assert b"You haven't created any posts yet" in client.get("/my-posts").data


def test_my_posts_errors(client, store, login):
    login()
    store.errors["list_posts_by_author"] = StoreError("relation does not exist")
    assert b"Error fetching posts: relation does not exist" in client.get("/my-posts").data

    store.errors["list_posts_by_author"] = requests.Timeout("slow")
    assert (b"An unexpected error occurred while fetching posts."
            in client.get("/my-posts").data)


def test_my_posts_requires_login(client):
    rv = client.get("/my-posts")
    assert rv.status_code == 302
    assert "/login" in rv.headers["Location"]


# ───────────────────────── delete ───────────────────────────────────
def test_delete_own_post(client, store, login):
    me = login()
    post = store.add("Doomed", author_id=me["id"])
    client.get("/")                           # warm the feed cache

    rv = client.post(f"/post/{post.id}/delete",
                     data={"csrf": CSRF, "next": "/my-posts"})
    assert rv.status_code == 302
    assert rv.headers["Location"] == "/my-posts"
    assert store.rows == []
    assert ("delete_post", post.id, me["id"], f"access-{me['id']}") in store.calls
    assert get_cache().peek(POSTS_KEY).data == []


def test_delete_error_goes_back(client, store, login):
    me = login()
    post = store.add("Sticky", author_id=me["id"])
    store.errors["delete_post"] = StoreError("permission denied")

    rv = client.post(
        f"/post/{post.id}/delete",
        data={"csrf": CSRF, "next": "/", "back": f"/post/{post.id}"},
    )
    assert rv.headers["Location"] == f"/post/{post.id}"
    html = client.get(f"/post/{post.id}").data.decode()
    assert "Error deleting post: permission denied" in html


def test_delete_someone_elses_post(client, store, login):
    login()
    theirs = store.add("Not mine", author_id="u-9")
    client.get("/")

    rv = client.post(f"/post/{theirs.id}/delete",
                     data={"csrf": CSRF}, follow_redirects=True)
    html = rv.data.decode()
    assert "Error deleting post: Post not found or not yours to delete" in html
    assert "Post deleted." not in html
    assert store.rows == [theirs]
    assert [e.post.id for e in get_cache().peek(POSTS_KEY).data] == [theirs.id]


def test_delete_transport_error_message(client, store, login):
    login()
    store.errors["delete_post"] = requests.ConnectionError("down")
    rv = client.post("/post/p1/delete", data={"csrf": CSRF}, follow_redirects=True)
    assert b"An unexpected error occurred while deleting the post." in rv.data


def test_delete_ignores_offsite_next(client, store, login):
    login()
    rv = client.post("/post/p1/delete",
                     data={"csrf": CSRF, "next": "//evil.example/phish"})
    assert rv.headers["Location"] == "/"


def test_delete_requires_login(client, store):
    rv = client.post("/post/p1/delete")
    assert rv.status_code == 302
    assert store.count("delete_post") == 0
