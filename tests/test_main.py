"""Tests for the command-line modes."""
import logging
import re
import pytest

import main
import settings
from conftest import CREATE_SESSION, FakeTokens, FakeUploadServer
from upload_sessions import SessionStore, UploadSession


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    for var in ("MS_CLIENT_ID", "MS_CLIENT_SECRET", "MS_TENANT_ID", "MS_SITE_ID", "MS_DRIVE_ID",
                "SP_ROOT", "WORKER", "CHUNK_SIZE_MB"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("MS_DRIVE_ID", "drv")
    monkeypatch.setenv("SESSION_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(settings, "CFG_PATH", str(tmp_path / "absent.json"))
    monkeypatch.setattr(main.signal, "signal", lambda *args: None)
    monkeypatch.chdir(tmp_path)
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    yield tmp_path
    for h in root.handlers:
        if h not in saved[0]:
            h.close()
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])


def _tree(base):
    (base / "src" / "Q1 2024").mkdir(parents=True)
    (base / "src" / "Q1 2024" / "report:final.pdf").write_bytes(b"x" * 3000)
    (base / "src" / "a.pdf").write_bytes(b"y" * 10)
    (base / "src" / "empty.pdf").write_bytes(b"")
    (base / "src" / ".DS_Store").write_bytes(b"junk")
    return base / "src"


def test_folder_targets(tmp_path):
    src = _tree(tmp_path)
    targets = main.folder_targets(str(src), "Documents/Migration", "20240102_030405")

    assert sorted(t.remote_path for t in targets) == [
        "Documents/Migration/20240102_030405/Q1 2024/report_final.pdf",
        "Documents/Migration/20240102_030405/a.pdf",
    ]
    assert {t.size for t in targets} == {3000, 10}


def test_file_target(tmp_path):
    path = tmp_path / "inv*01.pdf"
    path.write_bytes(b"z")
    assert main.file_target(str(path), "Root").remote_path == "Root/inv_01.pdf"
    assert main.file_target(str(path), "Root", dest="/Other/x.pdf").remote_path == "Other/x.pdf"


def test_format_size():
    assert main.format_size(512) == "512.0 B"
    assert main.format_size(5 * 1024 * 1024) == "5.0 MB"


def test_clear_sessions(workdir, make_target):
    store = SessionStore(workdir / "sessions")
    target = make_target(10)
    store.save(UploadSession("https://u", target.local_path, target.remote_path, 10, target.mtime))

    assert main.main(["--clear-sessions"]) == 0
    assert store.load(target.local_path) is None


def test_folder_run_end_to_end(workdir, http, monkeypatch):
    src = _tree(workdir)
    monkeypatch.setattr(main.TokenCache, "from_settings", classmethod(lambda cls, s: FakeTokens()))
    servers = {}

    def create(request, context):
        name = request.json()["item"]["name"]
        url = f"https://upload.example.com/up/{name}"
        servers[url] = FakeUploadServer(3000 if name == "report_final.pdf" else 10)
        return {"uploadUrl": url}

    http.post(CREATE_SESSION, json=create)
    http.put(re.compile(r"https://upload\.example\.com/up/[\w.]+"),
             json=lambda req, ctx: servers[req.url].put(req, ctx))

    code = main.main(["--folder", str(src), "--workers", "2"])

    assert code == 0
    assert sorted(len(s.data) for s in servers.values()) == [10, 3000]
    assert list((workdir / "logs").glob("upload_*.log"))
    assert not (workdir / "failed.txt").exists()


def test_failed_run_writes_failed_list(workdir, http, monkeypatch):
    src = _tree(workdir)
    monkeypatch.setattr(main.TokenCache, "from_settings", classmethod(lambda cls, s: FakeTokens()))
    http.post(CREATE_SESSION, status_code=400, json={"error": {"code": "invalidRequest"}})

    code = main.main(["--folder", str(src), "--workers", "1"])

    assert code == 1
    failed = (workdir / "failed.txt").read_text(encoding="utf-8").splitlines()
    assert len(failed) == 2


def test_missing_source_is_reported(workdir):
    assert main.main(["--file", str(workdir / "nope.pdf")]) == 2
    assert main.main(["--folder", str(workdir / "nowhere")]) == 2

    for h in logging.getLogger().handlers:
        h.flush()
    text = "".join(p.read_text(encoding="utf-8") for p in (workdir / "logs").glob("upload_*.log"))
    assert "File not found" in text
    assert "Folder not found" in text


def test_stop_wakes_every_backoff(workdir):
    s = settings.Settings({"drive_id": "drv", "session_dir": str(workdir / "sessions")})
    pool = main.build_pool(s)
    pool.request_stop()

    assert pool.sleep(30) is True
    assert pool.uploader.sleep(30) is True
    assert pool.uploader.client.retry.sleep(30) is True
