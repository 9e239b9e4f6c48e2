"""HMAC signing and verification of webhook events.

Both partners use the same scheme::

    signature = base64(HMAC-SHA256(secret, timestamp + raw_body))

where ``timestamp`` is POSIX seconds, sent next to the signature in a pair of
partner-specific headers. Requests older (or newer) than the tolerance
window are rejected before the signature is compared.
"""

import base64
import enum
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Union


class WebhookSource(str, enum.Enum):
    """Partners allowed to post signed events."""

    BABEL = "babel"
    PROLIFIC = "prolific"
    UNKNOWN = "unknown"


SIGNATURE_HEADERS: dict[WebhookSource, tuple[str, str]] = {
    WebhookSource.PROLIFIC: ("x-prolific-request-signature", "x-prolific-request-timestamp"),
    WebhookSource.BABEL: ("x-babel-request-signature", "x-babel-request-timestamp"),
}

DEFAULT_TOLERANCE_SECONDS = 300


class VerificationError(str, enum.Enum):
    MISSING_PARAMETERS = "Missing required parameters for webhook verification"
    INVALID_TIMESTAMP = "Invalid timestamp format"
    TIMESTAMP_EXPIRED = "Timestamp too old - request rejected"
    INVALID_SIGNATURE = "Invalid signature"


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verifying one signed request."""

    is_valid: bool
    error: Optional[VerificationError] = None

    @property
    def is_timestamp_error(self) -> bool:
        return self.error in (VerificationError.INVALID_TIMESTAMP, VerificationError.TIMESTAMP_EXPIRED)


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


class SignedEventCodec:
    """Signs outbound bodies and verifies inbound ones."""

    def __init__(self, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS, clock=time.time):
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    @staticmethod
    def sign(body: Union[str, bytes], timestamp: Union[str, int], secret: str) -> str:
        """Compute the base64 HMAC-SHA256 signature of ``timestamp + body``."""
        message = _to_bytes(str(timestamp)) + _to_bytes(body)
        digest = hmac.new(_to_bytes(secret), message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def timestamp(self) -> str:
        """Current POSIX time in seconds, as sent in the timestamp header."""
        return str(int(self._clock()))

    def verify(
        self,
        body: Union[str, bytes],
        signature: Optional[str],
        timestamp: Optional[str],
        secret: Optional[str],
    ) -> VerificationResult:
        """
        Verify a signed request.

        Args:
            body: Raw request body exactly as received
            signature: Value of the signature header
            timestamp: Value of the timestamp header (POSIX seconds)
            secret: Shared secret for the sending partner

        Returns:
            VerificationResult; a stale timestamp is always reported as a
            timestamp error, never as a signature mismatch
        """
        if not body or not signature or not timestamp or not secret:
            return VerificationResult(False, VerificationError.MISSING_PARAMETERS)

        try:
            sent_at = int(timestamp.strip())
        except ValueError:
            return VerificationResult(False, VerificationError.INVALID_TIMESTAMP)

        if abs(int(self._clock()) - sent_at) > self.tolerance_seconds:
            return VerificationResult(False, VerificationError.TIMESTAMP_EXPIRED)

        expected = self.sign(body, timestamp.strip(), secret)
        if len(expected) != len(signature):
            return VerificationResult(False, VerificationError.INVALID_SIGNATURE)

        if not hmac.compare_digest(expected.encode("ascii"), _to_bytes(signature)):
            return VerificationResult(False, VerificationError.INVALID_SIGNATURE)

        return VerificationResult(True)

    @staticmethod
    def detect_source(headers: Mapping[str, str]) -> WebhookSource:
        """Identify the sending partner from its signature/timestamp header pair."""
        present = {key.lower() for key, value in headers.items() if value}
        for source, (signature_header, timestamp_header) in SIGNATURE_HEADERS.items():
            if signature_header in present and timestamp_header in present:
                return source
        return WebhookSource.UNKNOWN

    @staticmethod
    def extract(headers: Mapping[str, str], source: WebhookSource) -> tuple[Optional[str], Optional[str]]:
        """Return (signature, timestamp) header values for ``source``."""
        if source not in SIGNATURE_HEADERS:
            return None, None
        lowered = {key.lower(): value for key, value in headers.items()}
        signature_header, timestamp_header = SIGNATURE_HEADERS[source]
        return lowered.get(signature_header), lowered.get(timestamp_header)

    def signed_headers(self, body: Union[str, bytes], secret: str, source: WebhookSource = WebhookSource.BABEL) -> dict[str, str]:
        """Headers for an outbound request signed as ``source``."""
        timestamp = self.timestamp()
        signature_header, timestamp_header = SIGNATURE_HEADERS[source]
        return {
            _canonical(signature_header): self.sign(body, timestamp, secret),
            _canonical(timestamp_header): timestamp,
        }


def _canonical(header: str) -> str:
    return "-".join(part.capitalize() for part in header.split("-"))
