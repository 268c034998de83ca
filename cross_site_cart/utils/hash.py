import json, hashlib, hmac

def canonical_json(data) -> str:
    """Stable JSON text used on both sides of a transfer before signing."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)

def hmac_hex(message: str | bytes, secret: str) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

def sign_payload(payload: dict, timestamp: int, secret: str) -> str:
    return hmac_hex(canonical_json(payload) + str(int(timestamp)), secret)

def sign_body(raw: bytes, timestamp: int, secret: str) -> str:
    return hmac_hex(raw + str(int(timestamp)).encode(), secret)

def signatures_match(expected: str, presented: str) -> bool:
    return hmac.compare_digest(expected or "", presented or "")
