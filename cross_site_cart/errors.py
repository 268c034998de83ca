# cross_site_cart/errors.py

GENERIC_RETRY_MESSAGE = "Transfer failed. Please try again."


class CrossSiteCartError(Exception):
    status = 500
    code = "error"

    def __init__(self, message: str = "", status: int | None = None, code: str | None = None, details=None):
        self.message = message or self.__class__.__name__
        if status is not None:
            self.status = status
        if code is not None:
            self.code = code
        self.details = details
        super().__init__(self.message)

    def to_response(self) -> dict:
        return {"success": False, "code": self.code, "message": self.message}


# ---- collector / shopper input ----

class ValidationError(CrossSiteCartError):
    status = 400
    code = "invalid_data"


class NotConfigured(CrossSiteCartError):
    status = 400
    code = "not_configured"


# ---- client transport ----

class NetworkError(CrossSiteCartError):
    status = 502
    code = "connection_failed"


class NetworkTimeout(NetworkError):
    code = "timeout"


class TlsError(NetworkError):
    code = "tls_error"


class ProtocolError(NetworkError):
    code = "protocol_error"


# ---- gate rejections ----

class GateRejection(CrossSiteCartError):
    status = 401
    # security log event type recorded for this rejection
    event_type = "rejected"


class AuthError(GateRejection):
    code = "invalid_auth"
    event_type = "failed_auth"


class SignatureError(GateRejection):
    code = "invalid_signature"
    event_type = "invalid_signature"


class ReplayError(GateRejection):
    code = "expired_request"
    event_type = "expired_request"


class RateLimitExceeded(GateRejection):
    status = 429
    code = "rate_limit_exceeded"
    event_type = "rate_limit_exceeded"


class IpBlocked(GateRejection):
    status = 403
    code = "forbidden_ip"
    event_type = "forbidden_ip"


# ---- receiver business failures ----

class ReconciliationError(CrossSiteCartError):
    status = 500
    code = "transfer_failed"


class CartRejected(ReconciliationError):
    pass


class ImageDownloadFailed(CrossSiteCartError):
    code = "image_download_failed"


class ServerError(CrossSiteCartError):
    status = 500
    code = "server_error"
