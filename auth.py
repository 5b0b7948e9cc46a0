# auth.py
import os, threading, time
import logging
from msal import ConfidentialClientApplication, SerializableTokenCache
from pathlib import Path
from upload_errors import AuthError

log = logging.getLogger(__name__)

GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]
AUTHORITY_BASE = "https://login.microsoftonline.com"


class Credential:
    def __init__(self, token, expires_at):
        self.token = token
        self.expires_at = expires_at

    def usable(self, margin, now=None) -> bool:
        now = time.time() if now is None else now
        return now < self.expires_at - margin

    def __repr__(self):
        return f"Credential(expires_at={self.expires_at:.0f})"


def _load_cache(cache_file):
    cache = SerializableTokenCache()
    if cache_file and os.path.exists(cache_file):
        try:
            with open(cache_file, "r", encoding="utf-8") as f:
                cache.deserialize(f.read())
        except (OSError, ValueError) as ex:
            log.warning("Ignoring unreadable token cache %s: %s", cache_file, ex)
    return cache


def _save_cache(cache, cache_file):
    if cache_file and cache.has_state_changed:
        Path(cache_file).parent.mkdir(parents=True, exist_ok=True)
        with open(cache_file, "w", encoding="utf-8") as f:
            f.write(cache.serialize())


class TokenCache:
    """App-only bearer token for Microsoft Graph with expiry-aware refresh.

    One instance per process, shared by every upload worker. Reads of a
    still-valid credential take no lock; a refresh is serialized so that
    concurrent callers wait for a single client-credentials exchange.
    """

    def __init__(self, client_id, client_secret, tenant_id, margin=300,
                 cache_file=None, app_factory=None, clock=time.time):
        self.client_id = client_id
        self.client_secret = client_secret
        self.tenant_id = tenant_id
        self.margin = margin
        self.cache_file = cache_file
        self._app_factory = app_factory or self._create_msal_app
        self._clock = clock
        self._app = None
        self._cache = None
        self._credential = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.client_id, settings.client_secret, settings.tenant_id,
                   margin=settings.token_margin, cache_file=settings.token_cache_file)

    def _create_msal_app(self):
        self._cache = _load_cache(self.cache_file)
        return ConfidentialClientApplication(
            client_id=self.client_id,
            client_credential=self.client_secret,
            authority=f"{AUTHORITY_BASE}/{self.tenant_id}",
            token_cache=self._cache,
        )

    def get_credential(self) -> Credential:
        cred = self._credential
        if cred is not None and cred.usable(self.margin, self._clock()):
            return cred
        with self._lock:
            # another thread may have refreshed while we waited
            cred = self._credential
            if cred is not None and cred.usable(self.margin, self._clock()):
                return cred
            self._credential = self._exchange()
            return self._credential

    def get_token(self) -> str:
        return self.get_credential().token

    def invalidate(self):
        with self._lock:
            self._credential = None

    def _exchange(self) -> Credential:
        missing = [name for name, val in (("client_id", self.client_id),
                                          ("client_secret", self.client_secret),
                                          ("tenant_id", self.tenant_id)) if not val]
        if missing:
            raise AuthError(f"Missing credential configuration: {', '.join(missing)}")
        try:
            if self._app is None:
                self._app = self._app_factory()
            issued_at = self._clock()
            result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPES)
        except AuthError:
            raise
        except Exception as ex:
            raise AuthError(f"Token request failed: {ex}") from ex
        if not result or "access_token" not in result:
            result = result or {}
            raise AuthError(f"Token request rejected: {result.get('error')} {result.get('error_description', '')}".strip())
        if self._cache is not None:
            _save_cache(self._cache, self.cache_file)
        expires_in = int(result.get("expires_in") or 3600)
        log.debug("Acquired Graph token valid for %ss", expires_in)
        return Credential(result["access_token"], issued_at + expires_in)
