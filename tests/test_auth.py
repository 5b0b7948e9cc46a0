"""Tests for the Graph token cache."""
import threading
import time
import pytest

from auth import Credential, TokenCache
from conftest import FakeMsalApp
from upload_errors import AuthError


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _cache(app, clock=None, **kwargs):
    return TokenCache("client", "secret", "tenant", app_factory=lambda: app,
                      clock=clock or Clock(), **kwargs)


def test_token_reused_until_margin():
    app = FakeMsalApp(expires_in=3600)
    clock = Clock()
    tokens = _cache(app, clock, margin=300)

    assert tokens.get_token() == "token-1"
    clock.now += 3000
    assert tokens.get_token() == "token-1"
    assert app.calls == 1


def test_token_refreshed_inside_margin():
    app = FakeMsalApp(expires_in=3600)
    clock = Clock()
    tokens = _cache(app, clock, margin=300)

    tokens.get_token()
    clock.now += 3301
    assert tokens.get_token() == "token-2"
    assert app.calls == 2


def test_credential_expiry_tracks_issue_time():
    clock = Clock(500.0)
    cred = _cache(FakeMsalApp(expires_in=60), clock).get_credential()
    assert cred.expires_at == 560.0
    assert not cred.usable(margin=60, now=500.0)


def test_missing_configuration():
    tokens = TokenCache("", "secret", "", app_factory=lambda: FakeMsalApp())
    with pytest.raises(AuthError, match="client_id, tenant_id"):
        tokens.get_token()


def test_rejected_exchange():
    app = FakeMsalApp(result={"error": "invalid_client", "error_description": "bad secret"})
    with pytest.raises(AuthError, match="invalid_client"):
        _cache(app).get_token()


def test_exchange_exception_wrapped():
    class Broken:
        def acquire_token_for_client(self, scopes):
            raise ConnectionError("login.microsoftonline.com unreachable")

    with pytest.raises(AuthError, match="unreachable"):
        _cache(Broken()).get_token()


def test_invalidate_forces_exchange():
    app = FakeMsalApp()
    tokens = _cache(app)
    tokens.get_token()
    tokens.invalidate()
    assert tokens.get_token() == "token-2"


def test_concurrent_callers_share_one_exchange():
    class SlowApp(FakeMsalApp):
        def acquire_token_for_client(self, scopes):
            time.sleep(0.05)
            return super().acquire_token_for_client(scopes)

    app = SlowApp()
    tokens = TokenCache("client", "secret", "tenant", app_factory=lambda: app)
    results = []
    start = threading.Barrier(8)

    def worker():
        start.wait()
        results.append(tokens.get_token())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert app.calls == 1
    assert results == ["token-1"] * 8


def test_credential_repr_hides_token():
    assert "secret-token" not in repr(Credential("secret-token", 10.0))
