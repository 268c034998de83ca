"""
Tests for configuration — env loading, activation checks and the shared encryption key.
"""

import pytest

from cross_site_cart.config import (
    MemorySettings, ensure_encryption_key, is_active, is_configured, rotate_encryption_key,
    settings_from_env, validate_url,
)
from cross_site_cart.utils.security import decrypt_data, encrypt_data


class TestEnv:
    def test_reads_and_coerces(self, monkeypatch):
        monkeypatch.setenv("CSC_ENABLED", "true")
        monkeypatch.setenv("CSC_TARGET_URL", "https://target.example")
        monkeypatch.setenv("CSC_RATE_LIMIT", "25")
        monkeypatch.setenv("CSC_ALLOWED_IPS", "203.0.113.1, 203.0.113.2")
        monkeypatch.setenv("CSC_SSL_VERIFY", "0")
        monkeypatch.setenv("CSC_TRUSTED_PROXIES", "1")

        s = settings_from_env()
        assert s["enabled"] is True
        assert s["target_url"] == "https://target.example"
        assert s["rate_limit"] == 25
        assert s["allowed_ips"] == ["203.0.113.1", "203.0.113.2"]
        assert s["ssl_verify"] is False
        assert s["trusted_proxies"] == 1

    def test_defaults(self, monkeypatch):
        for name in ("CSC_ENABLED", "CSC_RATE_LIMIT", "CSC_BAN_DURATION", "CSC_SSL_VERIFY"):
            monkeypatch.delenv(name, raising=False)
        s = settings_from_env()
        assert s["enabled"] is False
        assert s["rate_limit"] == 100
        assert s["ban_duration"] == 3600
        assert s["ssl_verify"] is True

    def test_bad_integer_falls_back(self, monkeypatch):
        monkeypatch.setenv("CSC_RATE_LIMIT", "lots")
        assert settings_from_env()["rate_limit"] == 100


class TestActivation:
    def test_configured_needs_url_key_and_secret(self):
        s = MemorySettings({"target_url": "https://t", "api_key": "k"})
        assert not is_configured(s)
        s.set("api_secret", "x")
        assert is_configured(s)
        assert not is_active(s)
        s.set("enabled", True)
        assert is_active(s)

    @pytest.mark.parametrize("url,ok", [
        ("https://target.example", True),
        ("http://localhost:8000", True),
        ("ftp://target.example", False),
        ("target.example", False),
        ("", False),
    ])
    def test_validate_url(self, url, ok):
        assert (validate_url(url) is not None) is ok


class TestEncryptionKey:
    def test_generated_once(self):
        s = MemorySettings({"encryption_key": ""})
        key = ensure_encryption_key(s)
        assert len(key) == 64
        assert ensure_encryption_key(s) == key

    def test_existing_key_kept(self):
        assert ensure_encryption_key(MemorySettings({"encryption_key": "abc"})) == "abc"

    def test_rotation(self):
        s = MemorySettings({"encryption_key": "abc"})
        new = rotate_encryption_key(s)
        assert new != "abc"
        assert s.get("encryption_key") == new

    def test_encrypt_round_trip_and_wrong_key(self):
        token = encrypt_data("cs_live_secret", "key-one")
        assert token != "cs_live_secret"
        assert decrypt_data(token, "key-one") == "cs_live_secret"
        assert decrypt_data(token, "key-two") is None


class TestSecretsAtRest:
    def test_api_secret_held_encrypted(self):
        s = MemorySettings({"encryption_key": "abc", "api_secret": "cs_live_secret"})
        token = s._data["api_secret"]
        assert token != "cs_live_secret"
        assert decrypt_data(token, "abc") == "cs_live_secret"
        assert s.get("api_secret") == "cs_live_secret"

    def test_rotation_reencrypts_secret(self):
        s = MemorySettings({"encryption_key": "abc", "api_secret": "cs_live_secret"})
        old_token = s._data["api_secret"]
        new = rotate_encryption_key(s)

        assert s.get("api_secret") == "cs_live_secret"
        assert decrypt_data(s._data["api_secret"], new) == "cs_live_secret"
        assert decrypt_data(old_token, new) is None

    def test_key_generated_when_secret_arrives_first(self):
        s = MemorySettings({"api_secret": "cs_live_secret"})
        assert ensure_encryption_key(s)
        assert s.get("api_secret") == "cs_live_secret"

    def test_update_sees_plain_value(self):
        s = MemorySettings({"encryption_key": "abc", "api_secret": "cs"})
        assert s.update("api_secret", lambda v: v + "_2") == "cs_2"
        assert s.get("api_secret") == "cs_2"


class TestMemorySettings:
    def test_increment_and_update(self):
        s = MemorySettings()
        assert s.increment("completed_orders") == 1
        assert s.increment("completed_orders") == 2
        assert s.update("items", lambda v: v + ["a"], []) == ["a"]
        s.delete("items")
        assert s.get("items") is None
