import time
import logging
from graph_client import SERVER_RETRY_STATUSES, RATE_LIMITED, retry_after_seconds
from remote_paths import display_path
from settings import DEFAULT_CHUNK
from upload_errors import (
    IncompleteTransferError,
    RequestError,
    SessionExpiredError,
    TransferCancelled,
    TransferError,
)

log = logging.getLogger(__name__)

COMPLETE_STATUSES = (200, 201)
PARTIAL_STATUSES = (202, 204, 308)
EXPIRED_STATUSES = (404, 410)


def _parse_next_start(resp_json) -> int | None:
    """
    Return the start of the first nextExpectedRanges entry.
    Examples: ["0-"], ["10485760-"], ["10485760-20971519","25165824-"]
    Only the first range is authoritative.
    """
    if not isinstance(resp_json, dict):
        return None
    ranges = resp_json.get("nextExpectedRanges") or []
    if not ranges:
        return None
    start_str = str(ranges[0]).split("-", 1)[0].strip()
    return int(start_str) if start_str.isdigit() else None


def _parse_uploaded_from_headers(range_header: str | None) -> int | None:
    """
    Parse server-reported uploaded position from Range/Content-Range headers.
    Examples:
      Range: "bytes=0-10485759" -> returns 10485760
      Content-Range: "bytes 0-10485759/52428800" -> returns 10485760
    """
    if not range_header:
        return None
    val = range_header.strip()
    if "=" in val:
        val = val.split("=", 1)[1]
    elif " " in val:
        val = val.split(" ", 1)[1]
    start_end = val.split("/", 1)[0].split("-", 1)
    if len(start_end) != 2 or not start_end[1].isdigit():
        return None
    return int(start_end[1]) + 1


def next_expected_offset(resp) -> int | None:
    """Server's idea of the next byte it wants, from the body or a Range header."""
    try:
        nxt = _parse_next_start(resp.json()) if resp.content else None
    except ValueError:
        nxt = None
    if nxt is None:
        nxt = _parse_uploaded_from_headers(resp.headers.get("Range") or resp.headers.get("Content-Range"))
    return nxt


class ChunkUploader:
    """
    Drives the segmented PUT loop for one file at a time.

    Chunks go out strictly in order and are read by absolute offset, so a
    transfer resumed after a restart starts exactly where the server says
    it left off. 429 responses never move the cursor; the same range is
    resent after an escalating pause. An expired upload URL is abandoned
    and replaced by one fresh session per upload() call.
    """

    def __init__(self, client, sessions, chunk_size=DEFAULT_CHUNK, rate_limit_wait=5.0,
                 max_rate_limit_wait=60.0, max_rate_limited=5, sleep=time.sleep, log_fn=None):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.client = client
        self.sessions = sessions
        self.chunk_size = chunk_size
        self.rate_limit_wait = rate_limit_wait
        self.max_rate_limit_wait = max_rate_limit_wait
        self.max_rate_limited = max_rate_limited
        self.sleep = sleep
        self.log_fn = log_fn

    def _log(self, message, level=logging.INFO):
        log.log(level, message)
        if self.log_fn:
            self.log_fn(message)

    def upload(self, target, progress_fn=None, should_stop=None) -> str:
        """Upload one target, resuming a stored session when possible. Returns the remote path."""
        target.check_not_empty()
        session, resumed = self.sessions.resolve(target)
        recreated = False
        offset = 0
        if resumed:
            try:
                offset = self.query_offset(session) or 0
            except SessionExpiredError:
                self.sessions.abandon(target)
                session = self.sessions.create(target)
                recreated = True
            if offset:
                self._log(f"Server has {offset} of {target.size} B for {target.remote_path}")

        while True:
            try:
                return self.transfer(session, target, offset, progress_fn=progress_fn, should_stop=should_stop)
            except SessionExpiredError as ex:
                self.sessions.abandon(target)
                if recreated:
                    raise TransferError(f"Upload session for {target.remote_path} expired again",
                                        status_code=ex.status_code, body=ex.body) from ex
                session = self.sessions.create(target)
                recreated = True
                offset = 0

    def query_offset(self, session) -> int | None:
        """
        GET the upload URL and return the first next-expected offset, or None
        when the server does not say. Raises SessionExpiredError on 404/410.
        """
        try:
            r = self.client.request("GET", session.upload_url, auth=False)
        except RequestError as ex:
            raise TransferError(f"Session status query failed: {ex}", status_code=ex.status_code,
                                body=ex.body, permanent=ex.permanent) from ex
        if r.status_code in EXPIRED_STATUSES:
            raise SessionExpiredError(f"Upload session not found ({r.status_code})",
                                      status_code=r.status_code, body=r.text)
        if r.status_code in COMPLETE_STATUSES + PARTIAL_STATUSES:
            return next_expected_offset(r)
        return None

    def _put_chunk(self, session, chunk, start, total):
        end = start + len(chunk) - 1
        headers = {
            "Content-Length": str(len(chunk)),
            "Content-Range": f"bytes {start}-{end}/{total}",
        }
        try:
            return self.client.request("PUT", session.upload_url, headers=headers, data=chunk,
                                       retry_statuses=SERVER_RETRY_STATUSES, auth=False)
        except RequestError as ex:
            raise TransferError(f"Chunk {start}-{end} failed: {ex}", status_code=ex.status_code,
                                body=ex.body, permanent=ex.permanent) from ex

    def transfer(self, session, target, offset=0, progress_fn=None, should_stop=None) -> str:
        total = target.size
        offset = max(0, min(int(offset), total))
        rate_limited = 0
        if progress_fn:
            progress_fn(offset, total)

        with target.open() as f:
            while offset < total:
                if callable(should_stop) and should_stop():
                    self._log(f"Stop requested; session for {target.remote_path} kept for resume at {offset} B")
                    raise TransferCancelled(f"Stopped at {offset} of {total} B")

                f.seek(offset)
                chunk = f.read(min(self.chunk_size, total - offset))
                if not chunk:
                    raise TransferError(f"{target.local_path} ended at {offset} B, expected {total} B",
                                        permanent=True)
                resp = self._put_chunk(session, chunk, offset, total)
                status = resp.status_code

                if status in COMPLETE_STATUSES:
                    self.sessions.complete(target)
                    if progress_fn:
                        progress_fn(total, total)
                    self._log(f"Uploaded {display_path(target.safe_path)} ({total} B)")
                    return target.safe_path

                if status in PARTIAL_STATUSES:
                    nxt = next_expected_offset(resp)
                    if nxt is not None and nxt > offset:
                        offset = min(nxt, total)
                    else:
                        offset += len(chunk)
                    rate_limited = 0
                    if progress_fn:
                        progress_fn(offset, total)
                    continue

                if status == RATE_LIMITED:
                    rate_limited += 1
                    if rate_limited > self.max_rate_limited:
                        raise TransferError(f"Still rate limited after {self.max_rate_limited} pauses",
                                            status_code=status, body=resp.text)
                    wait = retry_after_seconds(resp)
                    if wait is None:
                        wait = self.rate_limit_wait * rate_limited
                    wait = min(wait, self.max_rate_limit_wait)
                    self._log(f"Rate limited at {offset} B, pausing {wait:.0f}s", logging.WARNING)
                    self.sleep(wait)
                    continue

                if status in EXPIRED_STATUSES:
                    raise SessionExpiredError(f"Upload session vanished mid-transfer ({status})",
                                              status_code=status, body=resp.text)

                raise TransferError(f"Chunk upload failed: {status} {resp.text[:200]}",
                                    status_code=status, body=resp.text)

        # every byte sent but no 200/201 seen
        try:
            confirmed = self.query_offset(session)
        except SessionExpiredError as ex:
            raise IncompleteTransferError(f"{target.remote_path}: session gone before completion was confirmed",
                                          status_code=ex.status_code, body=ex.body) from ex
        if confirmed is not None and confirmed >= total:
            self.sessions.complete(target)
            self._log(f"Uploaded {display_path(target.safe_path)} ({total} B)")
            return target.safe_path
        raise IncompleteTransferError(
            f"{target.remote_path}: all {total} B sent but the server never confirmed completion")
