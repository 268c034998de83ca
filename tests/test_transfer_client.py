"""
Tests for the Transfer Client — outbound request, TLS fallback and ledger bookkeeping.
"""

import json
from decimal import Decimal

import pytest
import requests

from conftest import NOW, SHARED_KEY, SOURCE_URL, TARGET_URL, StubHttp, StubResponse, site_settings
from cross_site_cart.clients.transfer import SSL_WARNING, TransferClient
from cross_site_cart.errors import GENERIC_RETRY_MESSAGE, NetworkTimeout, NotConfigured, ProtocolError, TlsError
from cross_site_cart.events import TRANSFER_COMPLETED, TRANSFER_FAILED, TRANSFER_INITIATED, EventBus
from cross_site_cart.models import TransferPayload
from cross_site_cart.services.ledger import COMPLETED, FAILED, TransferLedger
from cross_site_cart.utils.hash import sign_body, sign_payload

OK_BODY = {
    "success": True,
    "data": {"product_id": 42, "redirect_url": f"{TARGET_URL}/cart/", "cart_count": 2, "cart_total": "39.98"},
}


def _payload(**overrides) -> TransferPayload:
    fields = dict(original_product_id=7, sku="ABC123", name="Widget", price=Decimal("19.99"),
                  quantity=2, source_site=SOURCE_URL, timestamp="2023-11-14T22:13:20+00:00")
    fields.update(overrides)
    return TransferPayload(**fields)


def _client(http, **settings):
    ledger = TransferLedger("sqlite:///:memory:")
    bus = EventBus()
    events = []
    for name in (TRANSFER_INITIATED, TRANSFER_COMPLETED, TRANSFER_FAILED):
        bus.subscribe(name, lambda _n=name, **data: events.append(_n))
    client = TransferClient(site_settings(SOURCE_URL, **{"target_url": TARGET_URL, **settings}), ledger, bus,
                            http=http, clock=lambda: NOW)
    return client, ledger, events


class TestSuccessfulTransfer:
    def test_returns_redirect_and_completes_ledger(self):
        http = StubHttp(StubResponse(200, OK_BODY))
        client, ledger, events = _client(http)

        result = client.transfer(_payload())

        assert result.success
        assert result.redirect_url == f"{TARGET_URL}/cart/"
        assert result.ssl_warning is None
        entry = ledger.get(result.ledger_id)
        assert entry["status"] == COMPLETED
        assert entry["target_product_id"] == 42
        assert events == [TRANSFER_INITIATED, TRANSFER_COMPLETED]
        assert client.settings.get("successful_transfers") == 1

    def test_request_is_signed_and_authenticated(self):
        http = StubHttp(StubResponse(200, OK_BODY))
        client, _, _ = _client(http)
        client.transfer(_payload())

        call = http.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == f"{TARGET_URL}/cross-site-cart/v1/receive-product"
        assert call["timeout"] == 30
        assert call["verify"] is True
        assert call["auth"] == ("ck_test", "cs_test")

        envelope = json.loads(call["data"])
        assert envelope["timestamp"] == NOW
        assert envelope["signature"] == sign_payload(envelope["product_data"], NOW, SHARED_KEY)
        assert envelope["product_data"]["price"] == "19.99"
        assert call["headers"]["X-Timestamp"] == str(NOW)
        assert call["headers"]["X-Signature"] == sign_body(call["data"], NOW, SHARED_KEY)
        assert call["headers"]["X-Source-Site"] == SOURCE_URL


class TestFailures:
    def test_not_configured_writes_no_ledger_entry(self):
        client, ledger, _ = _client(StubHttp(), api_secret="")
        result = client.transfer(_payload())

        assert not result.success
        assert isinstance(result.error, NotConfigured)
        assert ledger.stats()["total_transfers"] == 0

    def test_timeout(self):
        http = StubHttp(requests.exceptions.ReadTimeout("read timed out"))
        client, ledger, events = _client(http)
        result = client.transfer(_payload())

        assert not result.success
        assert result.message == GENERIC_RETRY_MESSAGE
        assert isinstance(result.error, NetworkTimeout)
        assert ledger.get(result.ledger_id)["status"] == FAILED
        assert events == [TRANSFER_INITIATED, TRANSFER_FAILED]

    def test_non_2xx_is_protocol_error_with_snippet(self):
        http = StubHttp(StubResponse(500, text="<html>" + "x" * 500))
        client, ledger, _ = _client(http)
        result = client.transfer(_payload())

        assert isinstance(result.error, ProtocolError)
        assert "HTTP 500" in result.error.message
        assert len(result.error.message) < 300
        entry = ledger.get(result.ledger_id)
        assert entry["status"] == FAILED
        assert "HTTP 500" in entry["error_message"]

    def test_malformed_json_is_protocol_error(self):
        client, _, _ = _client(StubHttp(StubResponse(200, text="not json")))
        result = client.transfer(_payload())
        assert isinstance(result.error, ProtocolError)

    def test_target_reported_failure(self):
        client, ledger, _ = _client(StubHttp(StubResponse(200, {"success": False, "message": "Out of stock"})))
        result = client.transfer(_payload())

        assert not result.success
        assert result.message == GENERIC_RETRY_MESSAGE
        assert ledger.get(result.ledger_id)["error_message"] == "Out of stock"


class TestTlsFallback:
    cert_error = requests.exceptions.SSLError("certificate verify failed: certificate has expired")

    def test_fallback_once_when_operator_relaxed_verification(self):
        http = StubHttp(self.cert_error, StubResponse(200, OK_BODY))
        client, ledger, _ = _client(http, ssl_verify=False)

        result = client.transfer(_payload())

        assert result.success
        assert result.ssl_warning == SSL_WARNING
        assert [c["verify"] for c in http.calls] == [True, False]
        assert ledger.get(result.ledger_id)["status"] == COMPLETED

    def test_no_fallback_when_verification_required(self):
        http = StubHttp(self.cert_error, StubResponse(200, OK_BODY))
        client, ledger, _ = _client(http, ssl_verify=True)

        result = client.transfer(_payload())

        assert not result.success
        assert isinstance(result.error, TlsError)
        assert len(http.calls) == 1
        assert ledger.get(result.ledger_id)["status"] == FAILED

    def test_fallback_failure_is_terminal(self):
        http = StubHttp(self.cert_error, self.cert_error)
        client, _, _ = _client(http, ssl_verify=False)
        result = client.transfer(_payload())

        assert not result.success
        assert len(http.calls) == 2


class TestLedgerTerminality:
    @pytest.mark.parametrize("outcome", [
        StubResponse(200, OK_BODY),
        StubResponse(502, text="bad gateway"),
        requests.exceptions.ConnectionError("refused"),
        StubResponse(200, text="[]"),
    ])
    def test_exactly_one_terminal_state(self, outcome):
        client, ledger, _ = _client(StubHttp(outcome))
        result = client.transfer(_payload())

        entry = ledger.get(result.ledger_id)
        assert entry["status"] in (COMPLETED, FAILED)
        assert entry["completed_at"] is not None
        assert ledger.stats()["pending_transfers"] == 0

    def test_unexpected_error_still_terminates_entry(self):
        class Boom(Exception):
            pass

        client, ledger, _ = _client(StubHttp(Boom("kaboom")))
        with pytest.raises(Boom):
            client.transfer(_payload())

        entry = ledger.entries(limit=1)[0]
        assert entry["status"] == FAILED
        assert client.settings.get("failed_transfers") == 1


class TestConnectionCheck:
    def test_reports_target_identity(self):
        http = StubHttp(StubResponse(200, {"success": True, "site_name": "target"}))
        client, _, _ = _client(http)
        assert client.test_connection()["site_name"] == "target"
        assert http.calls[0]["url"].endswith("/cross-site-cart/v1/test-connection")
        assert http.calls[0]["timeout"] == 15

    def test_missing_target(self):
        client, _, _ = _client(StubHttp(), target_url="")
        assert client.test_connection()["success"] is False
