"""Error kinds shared by adapters, services and the gateway"""

from typing import Any, Dict, Optional


class GalleryError(Exception):
    """Base error carrying a surface-level kind and HTTP status"""

    kind = "internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details

    def to_envelope(self) -> Dict[str, Any]:
        """Normalised error envelope"""
        envelope: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            envelope["details"] = self.details
        return envelope

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NotFound(GalleryError):
    kind = "not-found"
    status_code = 404


class RateLimited(GalleryError):
    kind = "rate-limited"
    status_code = 429
    retryable = True


class UpstreamUnavailable(GalleryError):
    kind = "upstream-unavailable"
    status_code = 502
    retryable = True


class UpstreamRejected(UpstreamUnavailable):
    """Provider refused the request for reasons outside the caller's input"""

    retryable = False


class InvalidInput(GalleryError):
    kind = "invalid-input"
    status_code = 400


class InvalidAddress(InvalidInput):
    """Address failed format validation"""


class Unsupported(InvalidInput):
    """Chain/contract pair cannot be enumerated"""


class NoAddresses(GalleryError):
    kind = "no-addresses"
    status_code = 422


class RequestTimeout(GalleryError):
    kind = "timeout"
    status_code = 504


class Unauthorized(GalleryError):
    kind = "unauthorized"
    status_code = 401


class InternalError(GalleryError):
    kind = "internal"
    status_code = 500


def from_http_status(status: int, message: str = "") -> GalleryError:
    """Map an upstream HTTP status to an error kind"""
    if status == 404:
        return NotFound(message or "Resource not found upstream")
    if status == 429:
        return RateLimited(message or "Upstream rate limit exceeded")
    if status >= 500:
        return UpstreamUnavailable(message or f"Upstream returned {status}")
    if status in (400, 422):
        return InvalidInput(message or f"Upstream rejected request ({status})")
    # 401/403 and the rest point at our credentials or integration
    return UpstreamRejected(message or f"Upstream refused request ({status})")
