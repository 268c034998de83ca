import base64, binascii, hashlib
from cryptography.fernet import Fernet, InvalidToken

from ..errors import AuthError
from .hash import sign_body, signatures_match


def parse_basic_auth(header: str | None) -> tuple[str, str]:
    """Decode `Basic <b64(key:secret)>` into a non-empty (key, secret) pair."""
    if not header:
        raise AuthError("Authorization header required", code="missing_auth")
    if not header.startswith("Basic "):
        raise AuthError("Invalid authorization credentials")
    try:
        credentials = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise AuthError("Invalid authorization format")
    if ":" not in credentials:
        raise AuthError("Invalid authorization format")
    key, secret = credentials.split(":", 1)
    if not key or not secret:
        raise AuthError("Invalid authorization credentials")
    return key, secret


def basic_auth_header(key: str, secret: str) -> str:
    return "Basic " + base64.b64encode(f"{key}:{secret}".encode()).decode()


def request_signature_valid(raw: bytes, timestamp: str | None, signature: str | None, secret: str) -> bool:
    if not signature or not timestamp or not secret:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    return signatures_match(sign_body(raw, ts, secret), signature)


# =========================================================
# At-rest encryption keyed by the shared encryption key
# =========================================================

def _fernet(encryption_key: str) -> Fernet:
    digest = hashlib.sha256(encryption_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_data(plaintext: str, encryption_key: str) -> str:
    return _fernet(encryption_key).encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_data(token: str, encryption_key: str) -> str | None:
    try:
        return _fernet(encryption_key).decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken:
        return None
