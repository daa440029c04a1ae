"""
tests/test_auth_client.py – GoTrue client, no network
"""
from __future__ import annotations

import json

import pytest

from animeblog import blog
from animeblog.blog import AuthClient, AuthError


class _FakeResp:
    def __init__(self, payload=None, *, status: int = 200):
        self.status_code = status
        self.content = b"" if payload is None else json.dumps(payload).encode()

    def json(self):
        return json.loads(self.content)


@pytest.fixture
def gotrue(monkeypatch):
    calls = []

    def _install(resp: _FakeResp) -> list:
        def _request(method, url, **kw):
            calls.append({"method": method, "url": url, **kw})
            return resp

        monkeypatch.setattr(blog.requests, "request", _request)
        return calls

    return _install


@pytest.fixture
def gt() -> AuthClient:
    return AuthClient("https://project.supabase.test", "anon-key")


SESSION = {
    "access_token": "jwt",
    "refresh_token": "r1",
    "expires_in": 3600,
    "user": {"id": "u-1", "email": "kaori@animefans.org"},
}


def test_sign_in_password_grant(gotrue, gt):
    calls = gotrue(_FakeResp(SESSION))
    assert gt.sign_in("kaori@animefans.org", "hunter22") == SESSION
    call = calls[0]
    assert call["url"] == "https://project.supabase.test/auth/v1/token"
    assert call["params"] == {"grant_type": "password"}
    assert call["json"] == {"email": "kaori@animefans.org", "password": "hunter22"}
    assert call["headers"]["apikey"] == "anon-key"


def test_refresh_grant(gotrue, gt):
    calls = gotrue(_FakeResp(SESSION))
    gt.refresh("r1")
    assert calls[0]["params"] == {"grant_type": "refresh_token"}
    assert calls[0]["json"] == {"refresh_token": "r1"}


def test_sign_up_returns_user(gotrue, gt):
    user = {"id": "u-2", "email": "new@animefans.org", "email_confirmed_at": None}
    calls = gotrue(_FakeResp(user))
    assert gt.sign_up("new@animefans.org", "hunter22", redirect_to="https://blog/login") == user
    assert calls[0]["url"].endswith("/auth/v1/signup")
    assert calls[0]["params"] == {"redirect_to": "https://blog/login"}


def test_sign_up_with_autoconfirm_session(gotrue, gt):
    gotrue(_FakeResp(SESSION))
    assert gt.sign_up("kaori@animefans.org", "hunter22") == SESSION["user"]


def test_get_user_and_sign_out_use_bearer(gotrue, gt):
    calls = gotrue(_FakeResp({"id": "u-1"}))
    gt.get_user("jwt")
    assert calls[0]["method"] == "GET"
    assert calls[0]["headers"]["Authorization"] == "Bearer jwt"

    gotrue(_FakeResp(None, status=204))
    gt.sign_out("jwt")
    assert calls[-1]["url"].endswith("/auth/v1/logout")


@pytest.mark.parametrize(
    "body, message",
    [
        ({"error": "invalid_grant", "error_description": "Invalid login credentials"},
         "Invalid login credentials"),
        ({"code": 422, "msg": "User already registered"}, "User already registered"),
        ({"message": "Password should be at least 6 characters"},
         "Password should be at least 6 characters"),
        (None, "HTTP 400"),
    ],
)
def test_provider_errors(gotrue, gt, body, message):
    gotrue(_FakeResp(body, status=400))
    with pytest.raises(AuthError) as err:
        gt.sign_in("kaori@animefans.org", "wrong")
    assert err.value.message == message
    assert err.value.status == 400


def test_unconfigured_client():
    with pytest.raises(AuthError, match="not configured"):
        AuthClient("", "").sign_in("a@b.co", "x")
