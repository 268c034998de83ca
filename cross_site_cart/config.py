import os
import secrets
import threading
from urllib.parse import urlparse

from .utils.security import decrypt_data, encrypt_data

PLUGIN_VERSION = "1.0.0"
PLATFORM_VERSION = os.getenv("PLATFORM_VERSION", "flask")
API_NAMESPACE = "/cross-site-cart/v1"

TRANSFER_TIMEOUT = 30
RELAY_TIMEOUT = 15
TEST_CONNECTION_TIMEOUT = 15
REPLAY_WINDOW_SEC = 300

DEFAULTS = {
    "enabled": False,
    "target_url": "",
    "api_key": "",
    "api_secret": "",
    "ssl_verify": True,
    "rate_limit": 100,
    "allowed_ips": [],
    "encryption_key": "",
    "ban_duration": 3600,
    "strict_auth": False,
    "trusted_proxies": 0,
    "site_url": "http://localhost:5000",
    "site_name": "Cross-Site Cart",
    "database_url": "sqlite:///cross_site_cart.db",
}

# encrypted at rest
SECRET_OPTIONS = ("api_secret",)


def _bool(v: str | None, default: bool) -> bool:
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _int(v: str | None, default: int) -> int:
    try:
        return int(v) if v not in (None, "") else default
    except ValueError:
        return default


def _list(v: str | None) -> list[str]:
    return [x.strip() for x in (v or "").split(",") if x.strip()]


def settings_from_env() -> dict:
    return {
        "enabled": _bool(os.getenv("CSC_ENABLED"), DEFAULTS["enabled"]),
        "target_url": os.getenv("CSC_TARGET_URL", ""),
        "api_key": os.getenv("CSC_API_KEY", ""),
        "api_secret": os.getenv("CSC_API_SECRET", ""),
        "ssl_verify": _bool(os.getenv("CSC_SSL_VERIFY"), DEFAULTS["ssl_verify"]),
        "rate_limit": _int(os.getenv("CSC_RATE_LIMIT"), DEFAULTS["rate_limit"]),
        "allowed_ips": _list(os.getenv("CSC_ALLOWED_IPS")),
        "encryption_key": os.getenv("CSC_ENCRYPTION_KEY", ""),
        "ban_duration": _int(os.getenv("CSC_BAN_DURATION"), DEFAULTS["ban_duration"]),
        "strict_auth": _bool(os.getenv("CSC_STRICT_AUTH"), DEFAULTS["strict_auth"]),
        "trusted_proxies": _int(os.getenv("CSC_TRUSTED_PROXIES"), DEFAULTS["trusted_proxies"]),
        "site_url": os.getenv("SITE_URL", DEFAULTS["site_url"]),
        "site_name": os.getenv("SITE_NAME", DEFAULTS["site_name"]),
        "database_url": os.getenv("DATABASE_URL", DEFAULTS["database_url"]),
    }


class MemorySettings:
    """Key-value option store with explicit get/set.

    Also carries the counters, security log and ban list, so every write goes
    through one lock. Options in SECRET_OPTIONS are held Fernet-encrypted under
    the shared encryption key and decrypted on read; changing the key
    re-encrypts them.
    """

    def __init__(self, initial: dict | None = None):
        self._lock = threading.RLock()
        self._data = dict(DEFAULTS)
        values = dict(initial or {})
        secret_values = {name: values.pop(name) for name in SECRET_OPTIONS if name in values}
        self._data.update(values)
        for name, value in secret_values.items():
            self.set(name, value)

    def _key(self) -> str:
        if not self._data.get("encryption_key"):
            self._data["encryption_key"] = new_encryption_key()
        return self._data["encryption_key"]

    def _seal(self, value) -> str:
        return encrypt_data(str(value), self._key()) if value else ""

    def _open(self, token) -> str:
        return (decrypt_data(token, self._key()) or "") if token else ""

    def get(self, name: str, default=None):
        with self._lock:
            if name in SECRET_OPTIONS and name in self._data:
                return self._open(self._data[name])
            return self._data.get(name, default)

    def set(self, name: str, value):
        with self._lock:
            if name in SECRET_OPTIONS:
                self._data[name] = self._seal(value)
            elif name == "encryption_key":
                plain = {n: self._open(self._data.get(n)) for n in SECRET_OPTIONS}
                self._data[name] = value
                for n, v in plain.items():
                    self._data[n] = self._seal(v)
            else:
                self._data[name] = value

    def delete(self, name: str):
        with self._lock:
            self._data.pop(name, None)

    def increment(self, name: str, by=1):
        with self._lock:
            value = self._data.get(name, 0) + by
            self._data[name] = value
            return value

    def update(self, name: str, fn, default=None):
        """Atomic read-modify-write of one option."""
        with self._lock:
            value = fn(self.get(name, default))
            self.set(name, value)
            return value


def is_configured(settings) -> bool:
    return bool(validate_url(settings.get("target_url")) and settings.get("api_key") and settings.get("api_secret"))


def is_active(settings) -> bool:
    return bool(settings.get("enabled")) and is_configured(settings)


def validate_url(url: str) -> str | None:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return url


def new_encryption_key() -> str:
    return secrets.token_urlsafe(48)[:64]


def ensure_encryption_key(settings) -> str:
    """Return the shared signing key, generating it once if absent."""
    return settings.update("encryption_key", lambda current: current or new_encryption_key(), "")


def rotate_encryption_key(settings) -> str:
    key = new_encryption_key()
    settings.set("encryption_key", key)
    return key
