"""Pytest fixtures for the uploader tests."""
import os
import re
import pytest
import requests_mock

from graph_client import GraphClient, RetryPolicy
from upload_sessions import SessionManager, SessionStore, UploadTarget
from uploader import ChunkUploader

UPLOAD_URL = "https://upload.example.com/up/session-1"
UPLOAD_URL_2 = "https://upload.example.com/up/session-2"
CREATE_SESSION = re.compile(r".*/createUploadSession$")


class FakeTokens:
    def __init__(self):
        self.calls = 0
        self.invalidated = 0

    def get_token(self):
        self.calls += 1
        return "test-token"

    def invalidate(self):
        self.invalidated += 1


class FakeMsalApp:
    """Stands in for msal.ConfidentialClientApplication."""

    def __init__(self, expires_in=3600, result=None):
        self.expires_in = expires_in
        self.result = result
        self.calls = 0

    def acquire_token_for_client(self, scopes):
        self.calls += 1
        if self.result is not None:
            return self.result
        return {"access_token": f"token-{self.calls}", "expires_in": self.expires_in}


class FakeUploadServer:
    """
    In-memory upload session. Accepts contiguous ranges only, answers
    202 with nextExpectedRanges until the last byte arrives, then 201.
    ``script`` holds statuses to return (without accepting) for the
    next PUTs; None in the script means "behave normally".
    """

    def __init__(self, total, script=None):
        self.total = total
        self.data = bytearray()
        self.script = list(script or [])
        self.ranges = []
        self.expired = False

    def put(self, request, context):
        start, end, total = map(int, re.match(r"bytes (\d+)-(\d+)/(\d+)", request.headers["Content-Range"]).groups())
        self.ranges.append((start, end, total))
        if self.expired:
            context.status_code = 404
            return {"error": {"code": "itemNotFound"}}
        if self.script:
            status = self.script.pop(0)
            if status is not None:
                context.status_code = status
                if status == 429:
                    context.headers["Retry-After"] = "1"
                return {"error": {"code": "scripted", "status": status}}
        if start != len(self.data):
            context.status_code = 416
            return {"error": {"code": "invalidRange"}}
        self.data.extend(request.body)
        if len(self.data) >= self.total:
            context.status_code = 201
            return {"id": "item-1", "size": self.total}
        context.status_code = 202
        return {"nextExpectedRanges": [f"{len(self.data)}-"], "expirationDateTime": "2030-01-01T00:00:00Z"}

    def status(self, request, context):
        if self.expired:
            context.status_code = 404
            return {"error": {"code": "itemNotFound"}}
        context.status_code = 200
        return {"nextExpectedRanges": [f"{len(self.data)}-"]}


@pytest.fixture
def http():
    with requests_mock.Mocker() as m:
        yield m


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    retry = RetryPolicy(max_retries=3, wait=2.0, max_wait=10.0, sleep=sleeps.append)
    return GraphClient(FakeTokens(), drive_id="drv", addressing="drive", retry=retry)


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions")


@pytest.fixture
def sessions(client, store):
    return SessionManager(client, store)


@pytest.fixture
def make_uploader(client, sessions, sleeps):
    def _make(chunk_size=1024, **kwargs):
        return ChunkUploader(client, sessions, chunk_size=chunk_size, sleep=sleeps.append, **kwargs)
    return _make


@pytest.fixture
def make_file(tmp_path):
    def _make(size, name="doc.bin"):
        path = tmp_path / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(os.urandom(size))
        return path
    return _make


@pytest.fixture
def make_target(make_file):
    def _make(size, remote="Reports/doc.bin", name="doc.bin"):
        return UploadTarget(make_file(size, name), remote)
    return _make
