# graph_client.py
import time
import logging
import threading
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from upload_errors import PermanentError, TransientError

log = logging.getLogger(__name__)

GRAPH_BASE = "https://graph.microsoft.com/v1.0"

UNAUTHORIZED = 401
RATE_LIMITED = 429
SERVER_RETRY_STATUSES = frozenset([500, 502, 503, 504])
RETRY_STATUSES = SERVER_RETRY_STATUSES | {RATE_LIMITED}
# Client errors no amount of retrying will fix; 404/410 are left to the
# caller because on an upload URL they mean "session expired", 401 to
# GraphClient.request which refreshes the token once.
PERMANENT_STATUSES = frozenset([400, 403, 405, 409, 411, 412, 413, 415])


def retry_after_seconds(resp):
    """Parse a Retry-After header given in seconds, if present."""
    if resp is None:
        return None
    val = resp.headers.get("Retry-After")
    if val and val.strip().isdigit():
        return float(val.strip())
    return None


class RetryPolicy:
    """
    Request-level retries for transient failures.

    Network errors and the statuses in ``retry_statuses`` are retried up to
    ``max_retries`` times with a capped exponential wait (a server supplied
    Retry-After wins, still capped at ``max_wait``). Statuses in
    PERMANENT_STATUSES raise PermanentError straight away. When retries run
    out on a status the last response is handed back so the caller can
    interpret it; when they run out on a network error TransientError is
    raised.
    """

    def __init__(self, max_retries=3, wait=2.0, max_wait=10.0, sleep=time.sleep):
        self.max_retries = max_retries
        self.wait = wait
        self.max_wait = max_wait
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings, sleep=time.sleep):
        return cls(settings.max_retries, settings.retry_wait, settings.retry_max_wait, sleep=sleep)

    def delay(self, attempt: int, resp=None) -> float:
        hinted = retry_after_seconds(resp)
        if hinted is not None:
            return min(hinted, self.max_wait)
        return min(self.wait * (2 ** (attempt - 1)), self.max_wait)

    def call(self, send, retry_statuses=RETRY_STATUSES, describe="request"):
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = send()
            except requests.RequestException as ex:
                if attempt > self.max_retries:
                    raise TransientError(f"{describe} failed after {attempt} attempts: {ex}") from ex
                wait = self.delay(attempt)
                log.warning("%s network error (%s), retry %d in %.1fs", describe, ex, attempt, wait)
                self.sleep(wait)
                continue

            status = resp.status_code
            if status in PERMANENT_STATUSES:
                raise PermanentError(f"{describe} rejected: {status} {resp.text[:200]}",
                                     status_code=status, body=resp.text,
                                     method=resp.request.method if resp.request is not None else "",
                                     url=resp.url)
            if status in retry_statuses and attempt <= self.max_retries:
                wait = self.delay(attempt, resp)
                log.warning("%s got %d, retry %d in %.1fs", describe, status, attempt, wait)
                self.sleep(wait)
                continue
            return resp


class GraphClient:
    """
    Thin Microsoft Graph transport shared by all upload workers.

    Holds a per-thread requests.Session (connection pooling, connect-level
    retries in the adapter), the token cache and the retry policy, and
    knows how to address items either through a site's default drive or a
    drive id.
    """

    def __init__(self, tokens, site_id="", drive_id="", addressing="site",
                 retry=None, base_url=GRAPH_BASE, timeout=(10, 120), pool_size=32):
        self.tokens = tokens
        self.site_id = site_id
        self.drive_id = drive_id
        self.addressing = addressing
        self.retry = retry or RetryPolicy()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.pool_size = pool_size
        self._tls = threading.local()

    @classmethod
    def from_settings(cls, settings, tokens, retry=None):
        return cls(tokens, site_id=settings.site_id, drive_id=settings.drive_id,
                   addressing=settings.addressing,
                   retry=retry or RetryPolicy.from_settings(settings),
                   pool_size=max(settings.workers, 10))

    def _get_session(self):
        """Return this thread's requests.Session, creating it on first use."""
        s = getattr(self._tls, "session", None)
        if s is not None:
            return s
        s = requests.Session()
        # Only connection failures are retried here: nothing reached the
        # server yet, so even a PUT is safe to resend.
        retry = Retry(total=3, connect=3, read=0, status=0, other=0,
                      backoff_factor=0.5, allowed_methods=None, raise_on_status=False)
        adapter = HTTPAdapter(max_retries=retry, pool_connections=self.pool_size,
                              pool_maxsize=self.pool_size, pool_block=True)
        s.mount("https://", adapter)
        s.mount("http://", adapter)
        s.headers.update({"Connection": "keep-alive"})
        self._tls.session = s
        return s

    def reset_session(self):
        """Close and clear the current thread's session so a fresh one is created next time."""
        s = getattr(self._tls, "session", None)
        if s is not None:
            s.close()
            self._tls.session = None

    def drive_root(self) -> str:
        if self.addressing == "drive":
            return f"{self.base_url}/drives/{self.drive_id}/root"
        return f"{self.base_url}/sites/{self.site_id}/drive/root"

    def item_url(self, safe_path: str, action: str = "") -> str:
        url = f"{self.drive_root()}:/{safe_path}:"
        return f"{url}/{action}" if action else url

    def request(self, method, url, headers=None, retry_statuses=RETRY_STATUSES, auth=True, **kwargs):
        """
        Send one logical request through the retry policy.

        ``auth=False`` is for pre-authenticated upload URLs, which reject a
        bearer header. A 401 drops the cached token and the request is sent
        once more; a second 401 raises PermanentError.
        """
        def send():
            h = dict(headers or {})
            if auth:
                h["Authorization"] = f"Bearer {self.tokens.get_token()}"
            try:
                return self._get_session().request(method, url, headers=h, timeout=self.timeout, **kwargs)
            except requests.ConnectionError:
                self.reset_session()
                raise

        describe = f"{method} {_short(url)}"
        resp = self.retry.call(send, retry_statuses=retry_statuses, describe=describe)
        if resp.status_code != UNAUTHORIZED:
            return resp
        log.warning("%s got 401, refreshing credentials and retrying once", describe)
        if auth:
            self.tokens.invalidate()
        resp = self.retry.call(send, retry_statuses=retry_statuses, describe=describe)
        if resp.status_code == UNAUTHORIZED:
            raise PermanentError(f"{describe} unauthorized: {resp.text[:200]}",
                                 status_code=UNAUTHORIZED, body=resp.text, method=method, url=url)
        return resp


def _short(url: str) -> str:
    # upload URLs carry a long opaque token
    return url if len(url) <= 120 else url[:117] + "..."
