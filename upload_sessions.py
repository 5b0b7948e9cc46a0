# upload_sessions.py
import os
import json
import time
import hashlib
import logging
from pathlib import Path
import remote_paths
from upload_errors import EmptySourceError, RequestError, SessionCreateError

log = logging.getLogger(__name__)


class UploadTarget:
    """A local file and the logical drive path it should end up at."""

    def __init__(self, local_path, remote_path, size=None, mtime=None):
        self.local_path = os.path.abspath(local_path)
        self.remote_path = remote_path.replace("\\", "/").strip("/")
        if size is None or mtime is None:
            st = os.stat(self.local_path)
            size = st.st_size if size is None else size
            mtime = st.st_mtime if mtime is None else mtime
        self.size = int(size)
        self.mtime = int(mtime)

    @property
    def safe_path(self) -> str:
        return remote_paths.normalize(self.remote_path)

    @property
    def name(self) -> str:
        return remote_paths.sanitize_segment(self.remote_path.rsplit("/", 1)[-1])

    def open(self):
        return open(self.local_path, "rb")

    def check_not_empty(self):
        if self.size <= 0:
            raise EmptySourceError(f"Refusing to upload empty file {self.local_path}")

    def __repr__(self):
        return f"UploadTarget({self.local_path!r} -> {self.remote_path!r}, {self.size} B)"


class UploadSession:
    def __init__(self, upload_url, local_path, remote_path, size, mtime, created=None, expires=None):
        self.upload_url = upload_url
        self.local_path = local_path
        self.remote_path = remote_path
        self.size = size
        self.mtime = mtime
        self.created = created if created is not None else time.time()
        self.expires = expires

    def matches(self, target: UploadTarget) -> bool:
        return (self.local_path == target.local_path
                and self.remote_path == target.remote_path
                and self.size == target.size
                and self.mtime == target.mtime)

    def to_dict(self):
        return {
            "uploadUrl": self.upload_url,
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "size": self.size,
            "mtime": self.mtime,
            "created": self.created,
            "expirationDateTime": self.expires,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(data["uploadUrl"], data["local_path"], data["remote_path"],
                   int(data["size"]), int(data["mtime"]),
                   created=data.get("created"), expires=data.get("expirationDateTime"))


class SessionStore:
    """One JSON resume record per local file, kept under ``session_dir``."""

    def __init__(self, session_dir):
        self.session_dir = Path(session_dir)
        self.session_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def key(local_path: str) -> str:
        return hashlib.sha256(os.path.abspath(local_path).encode("utf-8")).hexdigest()

    def path_for(self, local_path: str) -> Path:
        return self.session_dir / f"{self.key(local_path)}.json"

    def load(self, local_path: str):
        p = self.path_for(local_path)
        if not p.exists():
            return None
        try:
            return UploadSession.from_dict(json.loads(p.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as ex:
            log.warning("Discarding unreadable session record %s: %s", p.name, ex)
            return None

    def save(self, session: UploadSession):
        """Write the record and fsync it before any chunk is sent."""
        p = self.path_for(session.local_path)
        tmp = p.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(session.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, p)

    def delete(self, local_path: str):
        p = self.path_for(local_path)
        try:
            p.unlink()
        except FileNotFoundError:
            pass

    def clear(self) -> int:
        removed = 0
        for f in self.session_dir.glob("*.json"):
            f.unlink()
            removed += 1
        return removed


class SessionManager:
    """
    Resolves the upload session for a target.

    NoSession -> Resumed when a stored record is bound to exactly this
    target, otherwise NoSession -> Created via createUploadSession. The
    record is persisted before the handle is returned. complete() and
    abandon() both drop the record; abandon() is used when the server no
    longer knows the upload URL.
    """

    def __init__(self, client, store: SessionStore, conflict_behavior="replace", log_fn=None):
        self.client = client
        self.store = store
        self.conflict_behavior = conflict_behavior
        self.log_fn = log_fn

    def _log(self, message):
        log.info(message)
        if self.log_fn:
            self.log_fn(message)

    def resolve(self, target: UploadTarget):
        """Return (session, resumed)."""
        stored = self.store.load(target.local_path)
        if stored is not None:
            if stored.matches(target):
                self._log(f"Resuming upload session for {target.remote_path}")
                return stored, True
            log.info("Stale session record for %s (file or destination changed)", target.local_path)
            self.store.delete(target.local_path)
        return self.create(target), False

    def create(self, target: UploadTarget) -> UploadSession:
        target.check_not_empty()
        body = {"item": {"@microsoft.graph.conflictBehavior": self.conflict_behavior, "name": target.name}}
        url = self.client.item_url(target.safe_path, "createUploadSession")
        try:
            r = self.client.request("POST", url, headers={"Content-Type": "application/json"}, json=body)
        except RequestError as ex:
            raise SessionCreateError(f"Failed to create upload session for {target.remote_path}: {ex}",
                                     status_code=ex.status_code, body=ex.body, permanent=ex.permanent) from ex
        if r.status_code not in (200, 201):
            raise SessionCreateError(f"Failed to create upload session: {r.status_code} {r.text[:200]}",
                                     status_code=r.status_code, body=r.text)
        try:
            data = r.json()
            upload_url = data["uploadUrl"]
        except (ValueError, KeyError) as ex:
            raise SessionCreateError(f"createUploadSession returned no uploadUrl: {r.text[:200]}",
                                     status_code=r.status_code, body=r.text) from ex
        session = UploadSession(upload_url, target.local_path, target.remote_path, target.size,
                                target.mtime, expires=data.get("expirationDateTime"))
        self.store.save(session)
        self._log(f"Upload session created for {remote_paths.display_path(target.safe_path)}")
        return session

    def complete(self, target: UploadTarget):
        self.store.delete(target.local_path)

    def abandon(self, target: UploadTarget):
        self._log(f"Upload session for {target.remote_path} expired; discarding it")
        self.store.delete(target.local_path)
