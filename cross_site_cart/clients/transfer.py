# cross_site_cart/clients/transfer.py
import json
import time

import requests

from ..config import (API_NAMESPACE, PLUGIN_VERSION, TEST_CONNECTION_TIMEOUT, TRANSFER_TIMEOUT,
                      ensure_encryption_key, is_configured)
from ..errors import (CrossSiteCartError, GENERIC_RETRY_MESSAGE, NetworkError, NetworkTimeout, NotConfigured,
                      ProtocolError, ReconciliationError, TlsError)
from ..events import TRANSFER_COMPLETED, TRANSFER_FAILED, TRANSFER_INITIATED
from ..models import TransferPayload, TransferResult
from ..utils.hash import canonical_json, sign_body, sign_payload
from ..utils.logger import error, info, warn

SSL_KEYWORDS = ("ssl", "certificate", "peer certificate", "ssl_verify_result")
SSL_WARNING = "Connection successful but SSL verification was disabled"
SNIPPET_LEN = 200


def api_base(site_url: str) -> str:
    return f"{site_url.rstrip('/')}{API_NAMESPACE}"


def signed_headers(raw: bytes, timestamp: int, secret: str, source_site: str) -> dict:
    return {
        "Content-Type": "application/json",
        "X-Source-Site": source_site,
        "X-Transfer-Version": PLUGIN_VERSION,
        "User-Agent": f"CrossSiteCart/{PLUGIN_VERSION}",
        "X-Timestamp": str(timestamp),
        "X-Signature": sign_body(raw, timestamp, secret),
    }


def is_ssl_error(exc: Exception) -> bool:
    if isinstance(exc, requests.exceptions.SSLError):
        return True
    text = str(exc).lower()
    return any(k in text for k in SSL_KEYWORDS)


def parse_response(r) -> dict:
    body = r.text or ""
    if not 200 <= r.status_code < 300:
        raise ProtocolError(f"HTTP {r.status_code}: {body[:SNIPPET_LEN]}", details={"status": r.status_code})
    try:
        data = json.loads(body)
    except ValueError as e:
        raise ProtocolError(f"Invalid response format: {e}: {body[:SNIPPET_LEN]}")
    if not isinstance(data, dict):
        raise ProtocolError(f"Invalid response format: {body[:SNIPPET_LEN]}")
    return data


def send(http, method: str, url: str, timeout: int, verify: bool, **kwargs):
    try:
        return http.request(method, url, timeout=timeout, verify=verify, **kwargs)
    except requests.exceptions.Timeout as e:
        raise NetworkTimeout(f"Request to {url} timed out after {timeout}s: {e}")
    except requests.exceptions.RequestException as e:
        if is_ssl_error(e):
            raise TlsError(f"TLS failure for {url}: {e}")
        raise NetworkError(f"Connection failed: {e}")


def request_with_tls_fallback(http, settings, method: str, url: str, timeout: int, **kwargs):
    """Verified first; one unverified retry only when ssl_verify is off. Returns (response, ssl_warning)."""
    try:
        return send(http, method, url, timeout, verify=True, **kwargs), None
    except TlsError as e:
        if settings.get("ssl_verify", True):
            raise
        warn(f"[http] TLS failure, retrying once without verification: {e.message}")
        return send(http, method, url, timeout, verify=False, **kwargs), SSL_WARNING


class TransferClient:
    """Source side: ships a payload to the target's receive endpoint and records the outcome."""

    def __init__(self, settings, ledger, bus, http=requests, clock=time.time):
        self.settings = settings
        self.ledger = ledger
        self.bus = bus
        self.http = http
        self.clock = clock

    # =========================================================
    # HTTP with one-shot TLS fallback
    # =========================================================

    def _request(self, method: str, url: str, timeout: int, **kwargs):
        return request_with_tls_fallback(self.http, self.settings, method, url, timeout, **kwargs)

    # =========================================================
    # Transfer
    # =========================================================

    def transfer(self, payload: TransferPayload) -> TransferResult:
        if not is_configured(self.settings):
            err = NotConfigured("Cross-site transfer not properly configured")
            error(f"[transfer] {err.message}")
            return TransferResult(success=False, message=GENERIC_RETRY_MESSAGE, error=err)

        target = self.settings.get("target_url")
        source = self.settings.get("site_url", "")
        data = payload.to_dict()

        entry_id = self.ledger.open(data, source, target)
        self.settings.increment("total_transfers")
        self.bus.publish(TRANSFER_INITIATED, payload=data, ledger_id=entry_id)

        finished = False
        try:
            body, ssl_warning = self._send_to_target(data)
            target_product_id = (body.get("data") or {}).get("product_id")
            redirect_url = (body.get("data") or {}).get("redirect_url")
            self.ledger.complete(entry_id, target_product_id)
            finished = True
            self.settings.increment("successful_transfers")
            self.bus.publish(TRANSFER_COMPLETED, payload=data, response=body, ledger_id=entry_id)
            info(f"[transfer] #{entry_id} product {payload.original_product_id} -> {target} "
                 f"(target product {target_product_id})")
            return TransferResult(success=True, redirect_url=redirect_url,
                                  message="Product transferred successfully",
                                  ssl_warning=ssl_warning, ledger_id=entry_id)
        except CrossSiteCartError as e:
            self.ledger.fail(entry_id, e.message)
            finished = True
            self.settings.increment("failed_transfers")
            self.bus.publish(TRANSFER_FAILED, payload=data, error=e.message, ledger_id=entry_id)
            error(f"[transfer] #{entry_id} failed for product {payload.original_product_id}: {e.message}")
            return TransferResult(success=False, message=GENERIC_RETRY_MESSAGE, ledger_id=entry_id, error=e)
        finally:
            if not finished:
                self.ledger.fail(entry_id, "Transfer aborted by unexpected error")
                self.settings.increment("failed_transfers")

    def _send_to_target(self, data: dict) -> tuple[dict, str | None]:
        secret = ensure_encryption_key(self.settings)
        timestamp = int(self.clock())
        envelope = {
            "product_data": data,
            "timestamp": timestamp,
            "signature": sign_payload(data, timestamp, secret),
        }
        raw = canonical_json(envelope).encode("utf-8")
        headers = signed_headers(raw, timestamp, secret, self.settings.get("site_url", ""))
        r, ssl_warning = self._request(
            "POST",
            f"{api_base(self.settings.get('target_url'))}/receive-product",
            TRANSFER_TIMEOUT,
            data=raw,
            headers=headers,
            auth=(self.settings.get("api_key"), self.settings.get("api_secret")),
        )
        body = parse_response(r)
        if not body.get("success"):
            raise ReconciliationError(body.get("message") or "Target rejected the transfer")
        return body, ssl_warning

    # =========================================================
    # Connectivity check
    # =========================================================

    def test_connection(self) -> dict:
        target = self.settings.get("target_url")
        if not target:
            return {"success": False, "message": "Target URL not configured"}
        try:
            r, ssl_warning = self._request(
                "GET", f"{api_base(target)}/test-connection", TEST_CONNECTION_TIMEOUT,
                headers={"User-Agent": f"CrossSiteCart-Test/{PLUGIN_VERSION}"},
            )
            result = parse_response(r)
        except NetworkError as e:
            return {"success": False, "message": e.message}
        if ssl_warning and result.get("success"):
            result["ssl_warning"] = ssl_warning
        return result
