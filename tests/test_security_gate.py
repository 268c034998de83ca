"""
Tests for the Security Gate — allow-list, rate limit windows, bans and the security log.
"""

import pytest

from conftest import NOW, TARGET_URL, FrozenClock, signed, site_settings
from cross_site_cart.errors import IpBlocked, RateLimitExceeded, ReplayError, SignatureError
from cross_site_cart.services.gate import LOG_MAX_ENTRIES, RATE_WINDOW_SEC, SecurityGate

IP = "203.0.113.9"


@pytest.fixture
def clock():
    return FrozenClock()


def _gate(clock, **settings):
    return SecurityGate(site_settings(TARGET_URL, **settings), clock=clock)


# ── Rate limit ─────────────────────────────────────────────────────────


class TestRateLimit:
    def test_n_plus_one_rejected_then_next_window_allowed(self, clock):
        gate = _gate(clock, rate_limit=5)
        for _ in range(5):
            gate.evaluate(IP, signed=False)

        with pytest.raises(RateLimitExceeded):
            gate.evaluate(IP, signed=False)

        clock.advance(RATE_WINDOW_SEC)
        gate.evaluate(IP, signed=False)

    def test_counters_are_per_ip(self, clock):
        gate = _gate(clock, rate_limit=1)
        gate.evaluate(IP, signed=False)
        gate.evaluate("198.51.100.1", signed=False)
        with pytest.raises(RateLimitExceeded):
            gate.evaluate(IP, signed=False)

    def test_rejection_is_logged(self, clock):
        gate = _gate(clock, rate_limit=0)
        with pytest.raises(RateLimitExceeded):
            gate.evaluate(IP, user_agent="bot/1.0", route="/x", signed=False)
        event = gate.recent_events()[0]
        assert event["event_type"] == "rate_limit_exceeded"
        assert event["ip_address"] == IP
        assert event["user_agent"] == "bot/1.0"


# ── Allow-list ─────────────────────────────────────────────────────────


class TestAllowList:
    def test_empty_list_allows_everyone(self, clock):
        _gate(clock).evaluate(IP, signed=False)

    def test_unlisted_ip_forbidden(self, clock):
        gate = _gate(clock, allowed_ips=["198.51.100.1"])
        with pytest.raises(IpBlocked):
            gate.evaluate(IP, signed=False)
        gate.evaluate("198.51.100.1", signed=False)


# ── Signatures ─────────────────────────────────────────────────────────


class TestSignedRequests:
    def test_valid_signature(self, clock):
        raw = b'{"a":1}'
        _gate(clock).evaluate(IP, raw_body=raw, headers=signed(raw, NOW))

    def test_missing_headers(self, clock):
        with pytest.raises(SignatureError):
            _gate(clock).evaluate(IP, raw_body=b"{}", headers={})

    def test_stale_timestamp(self, clock):
        raw = b"{}"
        with pytest.raises(ReplayError):
            _gate(clock).evaluate(IP, raw_body=raw, headers=signed(raw, NOW - 301))

    def test_body_mismatch(self, clock):
        with pytest.raises(SignatureError):
            _gate(clock).evaluate(IP, raw_body=b'{"a":2}', headers=signed(b'{"a":1}', NOW))


# ── Bans ───────────────────────────────────────────────────────────────


class TestBans:
    def _fail(self, gate, times):
        for _ in range(times):
            with pytest.raises(SignatureError):
                gate.evaluate(IP, raw_body=b"{}", headers={})

    def test_ten_failures_ban_the_ip(self, clock):
        gate = _gate(clock)
        self._fail(gate, 9)
        assert not gate.is_banned(IP)
        self._fail(gate, 1)
        assert gate.is_banned(IP)

        raw = b"{}"
        with pytest.raises(IpBlocked):
            gate.evaluate(IP, raw_body=raw, headers=signed(raw, NOW))

    def test_ban_expires_lazily(self, clock):
        gate = _gate(clock, ban_duration=60)
        gate.temporary_ban(IP)
        assert gate.is_banned(IP)

        clock.advance(61)
        assert not gate.is_banned(IP)
        assert IP not in gate.settings.get("banned_ips")

    def test_old_failures_do_not_count(self, clock):
        gate = _gate(clock)
        self._fail(gate, 9)
        clock.advance(3601)
        self._fail(gate, 1)
        assert not gate.is_banned(IP)


# ── Security log ───────────────────────────────────────────────────────


class TestSecurityLog:
    def test_newest_first_and_capped(self, clock):
        gate = _gate(clock)
        for i in range(LOG_MAX_ENTRIES + 5):
            gate.log_event("probe", IP, details={"n": i})
        events = gate.settings.get("security_logs")
        assert len(events) == LOG_MAX_ENTRIES
        assert events[0]["details"]["n"] == LOG_MAX_ENTRIES + 4

    def test_prune_drops_old_entries_and_bans(self, clock):
        gate = _gate(clock)
        gate.log_event("probe", IP)
        gate.temporary_ban("198.51.100.7", duration=10)
        clock.advance(31 * 24 * 3600)
        gate.log_event("probe", IP)

        removed = gate.prune()
        assert removed["security_logs"] == 2  # probe + ip_banned
        assert removed["banned_ips"] == 1
        assert len(gate.settings.get("security_logs")) == 1
