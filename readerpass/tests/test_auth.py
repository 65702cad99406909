"""Tests for caller authentication."""

import time

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from readerpass.core.auth import CurrentUser, get_current_user, get_optional_user
from readerpass.core.config import settings

SECRET = "test-jwt-secret"


def make_app():
    app = FastAPI()

    @app.get("/whoami")
    async def whoami(user: CurrentUser = Depends(get_current_user)):
        return {"user_id": user.user_id, "email": user.email}

    @app.get("/maybe")
    async def maybe(user=Depends(get_optional_user)):
        return {"user_id": user.user_id if user else None}

    return app


@pytest.fixture(autouse=True)
def jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", SECRET)


def token(**claims):
    return jwt.encode(claims, SECRET, algorithm="HS256")


def test_bearer_token_identifies_caller():
    client = TestClient(make_app())
    resp = client.get("/whoami", headers={"Authorization": f"Bearer {token(sub='user_alice', email='a@example.com')}"})
    assert resp.json() == {"user_id": "user_alice", "email": "a@example.com"}


def test_token_cookie_identifies_caller():
    client = TestClient(make_app(), cookies={settings.AUTH_COOKIE_NAME: token(sub="user_alice")})
    assert client.get("/maybe").json() == {"user_id": "user_alice"}


def test_invalid_and_expired_tokens_rejected():
    client = TestClient(make_app())
    forged = jwt.encode({"sub": "user_alice"}, "other-secret", algorithm="HS256")
    assert client.get("/whoami", headers={"Authorization": f"Bearer {forged}"}).status_code == 401

    expired = token(sub="user_alice", exp=int(time.time()) - 60)
    assert client.get("/whoami", headers={"Authorization": f"Bearer {expired}"}).status_code == 401

    no_subject = token(email="a@example.com")
    assert client.get("/whoami", headers={"Authorization": f"Bearer {no_subject}"}).status_code == 401


def test_header_fallback_only_outside_production(monkeypatch):
    client = TestClient(make_app())
    assert client.get("/maybe", headers={"X-User-Id": "dev_user"}).json() == {"user_id": "dev_user"}

    monkeypatch.setattr(settings, "ENV", "production")
    assert client.get("/maybe", headers={"X-User-Id": "dev_user"}).json() == {"user_id": None}
    assert client.get("/whoami", headers={"X-User-Id": "dev_user"}).status_code == 401
