# settings.py
import json, os, sys
from pathlib import Path
from dotenv import load_dotenv

# Resolve config.json both in dev and in PyInstaller bundles
if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
    BASE_DIR = Path(sys._MEIPASS)
else:
    BASE_DIR = Path(__file__).parent

CFG_PATH = str((BASE_DIR / "config.json").resolve())

# Graph upload sessions require fragments in 320 KiB multiples, 60 MiB max
CHUNK_ALIGN = 320 * 1024
MAX_CHUNK = 60 * 1024 * 1024
DEFAULT_CHUNK = 16 * CHUNK_ALIGN  # 5 MiB

_DEFAULTS = {
    "remote_root": "Documents/Migration",
    "chunk_size_mb": 5,
    "conflict_behavior": "replace",
    "max_retries": 3,
    "retry_wait": 2.0,
    "retry_max_wait": 10.0,
    "file_retries": 3,
    "token_margin": 300,
    "session_dir": str(Path.home() / ".local/share/sp-migrate/sessions"),
    "log_dir": "logs",
}

# environment variable -> config key
_ENV_KEYS = {
    "MS_CLIENT_ID": "client_id",
    "MS_CLIENT_SECRET": "client_secret",
    "MS_TENANT_ID": "tenant_id",
    "MS_SITE_ID": "site_id",
    "MS_DRIVE_ID": "drive_id",
    "SP_ROOT": "remote_root",
    "WORKER": "workers",
    "CHUNK_SIZE_MB": "chunk_size_mb",
    "SESSION_DIR": "session_dir",
    "LOG_DIR": "log_dir",
}


def load_config(path=None):
    """Read config.json; a missing file just means everything comes from the environment."""
    cfg_path = path or CFG_PATH
    try:
        with open(cfg_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        if path:
            raise RuntimeError(f"Missing config file at {cfg_path}")
        return {}


def load_env(env=None):
    """Load .env.dev / .env.prod / .env into the process environment.

    Returns the file that was loaded, or None when falling back to the
    system environment.
    """
    env_file = {"dev": ".env.dev", "prod": ".env.prod"}.get(env or "", ".env")
    if os.path.exists(env_file):
        load_dotenv(env_file, override=True)
        return env_file
    return None


class Settings:
    def __init__(self, values=None):
        cfg = dict(_DEFAULTS)
        cfg.update(values or {})

        self.client_id = cfg.get("client_id") or ""
        self.client_secret = cfg.get("client_secret") or ""
        self.tenant_id = cfg.get("tenant_id") or ""
        self.site_id = cfg.get("site_id") or ""
        self.drive_id = cfg.get("drive_id") or ""
        self.addressing = cfg.get("addressing") or ("drive" if self.drive_id else "site")
        self.remote_root = str(cfg["remote_root"]).strip("/")
        workers = cfg.get("workers")
        self.workers = int(workers) if workers not in (None, "") else (os.cpu_count() or 1)
        self.chunk_size = int(float(cfg["chunk_size_mb"]) * 1024 * 1024)
        self.conflict_behavior = cfg["conflict_behavior"]
        self.max_retries = int(cfg["max_retries"])
        self.retry_wait = float(cfg["retry_wait"])
        self.retry_max_wait = float(cfg["retry_max_wait"])
        self.file_retries = int(cfg["file_retries"])
        self.token_margin = int(cfg["token_margin"])
        self.session_dir = Path(cfg["session_dir"]).expanduser()
        self.log_dir = Path(cfg["log_dir"]).expanduser()
        self.token_cache_file = cfg.get("token_cache_file")

        self._validate()

    def _validate(self):
        if self.addressing not in ("site", "drive"):
            raise ValueError(f"addressing must be 'site' or 'drive', got {self.addressing!r}")
        if self.addressing == "drive" and not self.drive_id:
            raise ValueError("addressing 'drive' requires a drive_id (MS_DRIVE_ID)")
        if self.chunk_size <= 0 or self.chunk_size % CHUNK_ALIGN:
            raise ValueError(f"chunk size must be a positive multiple of 320 KiB, got {self.chunk_size} B")
        if self.chunk_size > MAX_CHUNK:
            raise ValueError(f"chunk size exceeds the 60 MiB upload fragment limit: {self.chunk_size} B")
        if self.conflict_behavior not in ("replace", "fail", "rename"):
            raise ValueError(f"unknown conflict behavior {self.conflict_behavior!r}")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")

    @classmethod
    def load(cls, path=None, overrides=None):
        """Config file, then environment, then explicit overrides (CLI flags)."""
        values = load_config(path)
        for env_key, key in _ENV_KEYS.items():
            val = os.environ.get(env_key)
            if val:
                values[key] = val
        for key, val in (overrides or {}).items():
            if val is not None:
                values[key] = val
        return cls(values)
