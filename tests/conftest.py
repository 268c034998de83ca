"""
Test Configuration — fixtures for both ends of a transfer.

Each test gets fresh in-memory stores, an in-memory SQLite ledger, a
controllable clock and an HTTP transport that never touches the network.
"""

from urllib.parse import urlsplit

import pytest

from cross_site_cart import create_app
from cross_site_cart.config import MemorySettings
from cross_site_cart.container import build_services
from cross_site_cart.utils.hash import canonical_json, sign_body
from cross_site_cart.utils.security import basic_auth_header

NOW = 1_700_000_000
SHARED_KEY = "k" * 64
SOURCE_URL = "https://source.example"
TARGET_URL = "https://target.example"


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: float = NOW):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class StubResponse:
    def __init__(self, status_code: int = 200, body=None, text: str | None = None):
        self.status_code = status_code
        self.text = text if text is not None else canonical_json(body if body is not None else {})
        self.content = self.text.encode("utf-8")


class StubHttp:
    """Records every request; answers from a queue of responses or exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0) if len(self.responses) > 1 else (self.responses[0] if self.responses else StubResponse())
        if isinstance(item, BaseException):
            raise item
        return item


class FlaskTransport:
    """Routes `requests`-style calls into Flask apps keyed by site URL."""

    def __init__(self, apps: dict):
        self.clients = {base: app.test_client() for base, app in apps.items()}
        self.calls: list[dict] = []

    def request(self, method, url, data=None, headers=None, auth=None, timeout=None, verify=True, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, "verify": verify})
        parts = urlsplit(url)
        client = self.clients[f"{parts.scheme}://{parts.netloc}"]
        headers = dict(headers or {})
        if auth:
            headers["Authorization"] = basic_auth_header(*auth)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
        r = client.open(path, method=method, data=data, headers=headers)
        return StubResponse(r.status_code, text=r.get_data(as_text=True))


def site_settings(site_url: str, target_url: str = "", **overrides) -> MemorySettings:
    values = {
        "enabled": True,
        "site_url": site_url,
        "site_name": site_url.split("//")[-1],
        "target_url": target_url,
        "api_key": "ck_test",
        "api_secret": "cs_test",
        "encryption_key": SHARED_KEY,
        "database_url": "sqlite:///:memory:",
    }
    values.update(overrides)
    return MemorySettings(values)


def signed(raw: bytes, timestamp: float, key: str = SHARED_KEY) -> dict:
    """Headers the gate expects on signed protocol routes."""
    return {
        "Content-Type": "application/json",
        "X-Timestamp": str(int(timestamp)),
        "X-Signature": sign_body(raw, int(timestamp), key),
    }


def add_product(catalog, **fields) -> int:
    defaults = {"name": "Widget", "sku": "W-1", "price": "10.00", "regular_price": "10.00"}
    defaults.update(fields)
    return catalog.create(**defaults)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def http():
    return StubHttp()


@pytest.fixture
def fetch_image():
    def fetch(url):
        return b"\x89PNG" + url.encode()
    return fetch


@pytest.fixture
def target_services(clock, http, fetch_image):
    return build_services(site_settings(TARGET_URL), http=http, clock=clock, fetch_image=fetch_image)


@pytest.fixture
def source_services(clock, http):
    return build_services(site_settings(SOURCE_URL, TARGET_URL), http=http, clock=clock)


@pytest.fixture
def target_app(target_services):
    app = create_app(target_services)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def target_client(target_app):
    return target_app.test_client()


@pytest.fixture
def source_app(source_services):
    app = create_app(source_services)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def source_client(source_app):
    return source_app.test_client()
