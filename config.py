import os
from pathlib import Path
from urllib.parse import urlparse


BASE_DIR = Path(__file__).resolve().parent


def _load_dotenv(path: Path) -> None:
    if not path.exists():
        return
    try:
        for raw in path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, val = line.split("=", 1)
            key = key.strip()
            if not key or key in os.environ:
                continue
            val = val.strip().strip("'").strip('"')
            os.environ[key] = val
    except (OSError, UnicodeDecodeError):
        # Fail open if .env can't be read.
        return


_load_dotenv(BASE_DIR / ".env")


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def _env_int(key: str, default: int) -> int:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _first_env(*keys: str) -> str:
    for key in keys:
        val = os.getenv(key)
        if val:
            return val
    return ""


APP_NAME = _env("AACFORMS_APP_NAME", "AAC Forms")
APP_VERSION = _env("AACFORMS_APP_VERSION", "1.0.0")
APP_ENV = _env("AACFORMS_ENV", "development").strip().lower()

# Backend (supports AACFORMS_* plus the Expo / Next.js names of the mobile client)
SUPABASE_URL = _first_env(
    "AACFORMS_SUPABASE_URL",
    "SUPABASE_URL",
    "EXPO_PUBLIC_SUPABASE_URL",
    "NEXT_PUBLIC_SUPABASE_URL",
).strip()
SUPABASE_ANON_KEY = _first_env(
    "AACFORMS_SUPABASE_ANON_KEY",
    "SUPABASE_ANON_KEY",
    "EXPO_PUBLIC_SUPABASE_ANON_KEY",
    "NEXT_PUBLIC_SUPABASE_ANON_KEY",
).strip()
# Only diagnostics repairs use this; they write rows on behalf of other employees.
SUPABASE_SERVICE_KEY = _first_env(
    "AACFORMS_SUPABASE_SERVICE_KEY",
    "SUPABASE_SERVICE_ROLE_KEY",
).strip()
REQUEST_TIMEOUT = _env_int("AACFORMS_REQUEST_TIMEOUT", 15)

HOST = _env("AACFORMS_HOST", "127.0.0.1")
PORT = _env_int("AACFORMS_PORT", 5000)
DEBUG = _env_bool(
    "AACFORMS_DEBUG",
    APP_ENV in ("dev", "development", "local"),
)
SECRET_KEY = _env("AACFORMS_SECRET_KEY", "")

# Guards /admin/diagnostics; empty disables those routes entirely.
ADMIN_KEY = _env("AACFORMS_ADMIN_KEY", "").strip()

LOG_LEVEL = _env("AACFORMS_LOG_LEVEL", "DEBUG" if DEBUG else "INFO").strip().upper()

LEAVE_AUTO_APPROVE = _env_bool("AACFORMS_LEAVE_AUTO_APPROVE", True)


def validate_backend_settings(url: str | None = None, key: str | None = None) -> tuple[str, str]:
    """
    Returns the cleaned (url, anon_key) pair or raises ValueError.
    """
    clean_url = (SUPABASE_URL if url is None else url or "").strip().rstrip("/")
    clean_key = (SUPABASE_ANON_KEY if key is None else key or "").strip()
    if not clean_url or not clean_key:
        raise ValueError("Missing backend environment variables (SUPABASE_URL / SUPABASE_ANON_KEY).")
    parsed = urlparse(clean_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid backend URL format: {clean_url}")
    return clean_url, clean_key
