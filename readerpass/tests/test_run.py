"""Tests for the server runner."""

from readerpass import run
from readerpass.core.config import settings


def test_main_serves_app_on_configured_address(monkeypatch):
    calls = []
    monkeypatch.setattr(run.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(settings, "HOST", "0.0.0.0")
    monkeypatch.setattr(settings, "PORT", 9100)
    monkeypatch.setattr(settings, "ENV", "production")

    run.main()

    assert calls == [("readerpass.main:app", {"host": "0.0.0.0", "port": 9100, "reload": False})]
