# cross_site_cart/services/gate.py
import time
from typing import Mapping, Optional

from ..config import REPLAY_WINDOW_SEC, ensure_encryption_key
from ..errors import GateRejection, IpBlocked, RateLimitExceeded, ReplayError, SignatureError
from ..utils.security import request_signature_valid
from ..utils.logger import info, warn

RATE_WINDOW_SEC = 3600
SUSPICIOUS_WINDOW_SEC = 3600
SUSPICIOUS_THRESHOLD = 10
SUSPICIOUS_EVENTS = ("failed_auth", "rate_limit_exceeded", "invalid_signature")
LOG_RETENTION_SEC = 30 * 24 * 3600
LOG_MAX_ENTRIES = 1000


def timestamp_fresh(timestamp, now: float, window: int = REPLAY_WINDOW_SEC) -> bool:
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    return abs(now - ts) <= window


class SecurityGate:
    """
    Per-request checks for the protocol routes: ban list, IP allow-list,
    per-IP rate limit, then header signature and replay window.
    Every rejection lands in the security log; repeated abuse bans the IP.
    """

    def __init__(self, settings, clock=time.time):
        self.settings = settings
        self.clock = clock

    # =========================================================
    # Evaluation
    # =========================================================

    def evaluate(self, ip: str, user_agent: str = "", route: str = "", raw_body: bytes = b"",
                 headers: Optional[Mapping] = None, signed: bool = True):
        try:
            if self.is_banned(ip):
                raise IpBlocked("Access temporarily blocked for this IP address")
            if not self.ip_allowed(ip):
                raise IpBlocked("Access denied from this IP address")
            if not self.check_rate_limit(ip):
                raise RateLimitExceeded("Rate limit exceeded")
            if signed:
                self.verify_request(raw_body, headers or {})
        except GateRejection as e:
            self.record_rejection(e, ip, user_agent, route)
            raise

    def verify_request(self, raw_body: bytes, headers: Mapping):
        signature = headers.get("X-Signature")
        timestamp = headers.get("X-Timestamp")
        if not signature or not timestamp:
            raise SignatureError("Missing request signature")
        if not timestamp_fresh(timestamp, self.clock()):
            raise ReplayError("Request has expired")
        if not request_signature_valid(raw_body, timestamp, signature, ensure_encryption_key(self.settings)):
            raise SignatureError("Invalid request signature")

    def record_rejection(self, err: GateRejection, ip: str, user_agent: str = "", route: str = ""):
        warn(f"[gate] {err.code} from {ip} on {route}: {err.message}")
        self.log_event(err.event_type, ip, user_agent, {"route": route, "message": err.message})
        if err.event_type in SUSPICIOUS_EVENTS and not self.is_banned(ip) and self.detect_suspicious(ip):
            self.temporary_ban(ip)

    # =========================================================
    # IP allow-list and bans
    # =========================================================

    def ip_allowed(self, ip: str) -> bool:
        allowed = self.settings.get("allowed_ips") or []
        if not allowed:
            return True
        return ip in allowed

    def is_banned(self, ip: str) -> bool:
        expiry = (self.settings.get("banned_ips") or {}).get(ip)
        if expiry is None:
            return False
        if expiry > self.clock():
            return True

        def drop(bans):
            bans = dict(bans or {})
            if bans.get(ip, 0) <= self.clock():
                bans.pop(ip, None)
            return bans

        self.settings.update("banned_ips", drop, {})
        return False

    def temporary_ban(self, ip: str, duration: Optional[int] = None):
        duration = int(duration or self.settings.get("ban_duration", 3600))
        until = self.clock() + duration

        def add(bans):
            bans = dict(bans or {})
            bans[ip] = until
            return bans

        self.settings.update("banned_ips", add, {})
        self.log_event("ip_banned", ip, "", {"ip": ip, "duration": duration})
        info(f"[gate] banned {ip} for {duration}s")

    # =========================================================
    # Rate limiting
    # =========================================================

    def check_rate_limit(self, ip: str) -> bool:
        threshold = int(self.settings.get("rate_limit", 100))
        now = self.clock()
        verdict = {}

        def bump(counters):
            counters = dict(counters or {})
            start, count = counters.get(ip, (now, 0))
            if now - start >= RATE_WINDOW_SEC:
                start, count = now, 0
            if count >= threshold:
                verdict["ok"] = False
            else:
                counters[ip] = (start, count + 1)
                verdict["ok"] = True
            return counters

        self.settings.update("rate_limits", bump, {})
        return verdict["ok"]

    # =========================================================
    # Security log
    # =========================================================

    def log_event(self, event_type: str, ip: str, user_agent: str = "", details=None):
        entry = {
            "timestamp": self.clock(),
            "event_type": event_type,
            "ip_address": ip,
            "user_agent": user_agent or "",
            "details": details or {},
        }
        self.settings.update("security_logs", lambda logs: ([entry] + list(logs or []))[:LOG_MAX_ENTRIES], [])

    def recent_events(self, limit: int = 50) -> list[dict]:
        return list(self.settings.get("security_logs") or [])[:limit]

    def detect_suspicious(self, ip: str) -> bool:
        since = self.clock() - SUSPICIOUS_WINDOW_SEC
        failures = sum(
            1 for e in (self.settings.get("security_logs") or [])
            if e["ip_address"] == ip and e["timestamp"] > since and e["event_type"] in SUSPICIOUS_EVENTS
        )
        return failures >= SUSPICIOUS_THRESHOLD

    def prune(self, now: Optional[float] = None) -> dict:
        now = self.clock() if now is None else now
        cutoff = now - LOG_RETENTION_SEC
        removed = {"security_logs": 0, "banned_ips": 0, "rate_limits": 0}

        def prune_logs(logs):
            logs = list(logs or [])
            kept = [e for e in logs if e["timestamp"] > cutoff][:LOG_MAX_ENTRIES]
            removed["security_logs"] = len(logs) - len(kept)
            return kept

        def prune_bans(bans):
            bans = dict(bans or {})
            kept = {ip: exp for ip, exp in bans.items() if exp > now}
            removed["banned_ips"] = len(bans) - len(kept)
            return kept

        def prune_counters(counters):
            counters = dict(counters or {})
            kept = {ip: c for ip, c in counters.items() if now - c[0] < RATE_WINDOW_SEC}
            removed["rate_limits"] = len(counters) - len(kept)
            return kept

        self.settings.update("security_logs", prune_logs, [])
        self.settings.update("banned_ips", prune_bans, {})
        self.settings.update("rate_limits", prune_counters, {})
        return removed
