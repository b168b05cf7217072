"""Certificate lifecycle exceptions.

Every error raised by autocert carries an ``ErrorKind`` so callers can
branch on the kind of failure instead of parsing messages. Extra details
(the failing step, the domain, the file path, ...) live in ``context``.
"""

from collections.abc import Mapping
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Closed set of failure kinds."""

    BIND = "bind"
    CHALLENGE_FAILED = "challenge_failed"
    REGISTRATION = "registration"
    ALREADY_REGISTERED = "already_registered"
    ISSUANCE = "issuance"
    IO = "io"
    UNSUPPORTED_CHALLENGE = "unsupported_challenge"
    PROTOCOL = "protocol"


class CertError(Exception):
    """Base exception for certificate lifecycle errors."""

    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(self, detail: str, **context: Any):
        self.detail = detail
        self.context = context
        super().__init__(detail)

    @property
    def step(self) -> str | None:
        """Lifecycle step that failed, when known."""
        return self.context.get("step")

    def with_context(self, **context: Any) -> "CertError":
        """Add context fields without overwriting existing ones."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self


class BindError(CertError):
    """The validation port could not be bound."""

    kind = ErrorKind.BIND


class ChallengeFailedError(CertError):
    """The CA rejected the domain-control proof (or never answered)."""

    kind = ErrorKind.CHALLENGE_FAILED


class RegistrationError(CertError):
    """Account registration failed."""

    kind = ErrorKind.REGISTRATION


class AlreadyRegisteredError(RegistrationError):
    """The account key is already registered with the CA.

    Not fatal: callers treat it as a successful registration.
    """

    kind = ErrorKind.ALREADY_REGISTERED


class IssuanceError(CertError):
    """Certificate issuance or renewal failed."""

    kind = ErrorKind.ISSUANCE


class StorageError(CertError):
    """Key or certificate material could not be written."""

    kind = ErrorKind.IO


class UnsupportedChallengeError(CertError):
    """The CA offered no HTTP-01 challenge."""

    kind = ErrorKind.UNSUPPORTED_CHALLENGE


class AcmeError(CertError):
    """Error returned by the ACME server.

    Represents errors returned by the ACME server in the standard
    problem document format (RFC 7807).
    """

    kind = ErrorKind.PROTOCOL

    def __init__(
        self,
        type: str,
        detail: str,
        status_code: int,
        subproblems: list[dict[str, Any]] | None = None,
        retry_after: int | None = None,
    ):
        self.type = type
        self.status_code = status_code
        self.subproblems = subproblems
        self.retry_after = retry_after
        super().__init__(f"{type}: {detail}", status_code=status_code)
        self.detail = detail

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        status_code: int,
        headers: Mapping[str, str] | None = None,
    ) -> "AcmeError":
        """Create an AcmeError from a JSON response.

        Routes to appropriate subclass based on error type.

        Args:
            data: Parsed JSON error response.
            status_code: HTTP status code.
            headers: Response headers (for Retry-After extraction).

        Returns:
            AcmeError instance (or appropriate subclass).
        """
        retry_after = cls._parse_retry_after(headers.get("Retry-After")) if headers else None
        error_type = data.get("type", "unknown")

        kwargs: dict[str, Any] = {
            "type": error_type,
            "detail": data.get("detail", "Unknown error"),
            "status_code": status_code,
            "subproblems": data.get("subproblems"),
            "retry_after": retry_after,
        }

        subclass = _PROBLEM_TYPES.get(error_type, cls)
        return subclass(**kwargs)

    @staticmethod
    def _parse_retry_after(value: str | None) -> int | None:
        """Parse Retry-After header (seconds or HTTP-date)."""
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            from datetime import datetime, timezone
            from email.utils import parsedate_to_datetime

            try:
                dt = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
            return max(0, int((dt - datetime.now(timezone.utc)).total_seconds()))


class RateLimitError(AcmeError):
    """Rate limit exceeded (urn:ietf:params:acme:error:rateLimited)."""


class BadNonceError(AcmeError):
    """Bad nonce error (urn:ietf:params:acme:error:badNonce)."""


class ServerInternalError(AcmeError):
    """ACME server internal error (urn:ietf:params:acme:error:serverInternal)."""


class UnauthorizedError(AcmeError):
    """Request not authorized (urn:ietf:params:acme:error:unauthorized)."""


_PROBLEM_TYPES: dict[str, type[AcmeError]] = {
    "urn:ietf:params:acme:error:rateLimited": RateLimitError,
    "urn:ietf:params:acme:error:badNonce": BadNonceError,
    "urn:ietf:params:acme:error:serverInternal": ServerInternalError,
    "urn:ietf:params:acme:error:unauthorized": UnauthorizedError,
}
