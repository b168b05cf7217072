"""Pydantic models for ACME resources and certificate lifecycle records."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, Field

# =============================================================================
# ACME Protocol Enums (RFC 8555)
# =============================================================================


class ChallengeStatus(StrEnum):
    """Challenge statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(StrEnum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class OrderStatus(StrEnum):
    """Order statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AccountStatus(StrEnum):
    """Account statuses (RFC 8555 Section 7.1.6)."""

    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class ChallengeType(StrEnum):
    """Challenge types (RFC 8555 Section 8)."""

    HTTP_01 = "http-01"
    DNS_01 = "dns-01"
    TLS_ALPN_01 = "tls-alpn-01"


# =============================================================================
# Lifecycle
# =============================================================================


class LifecycleState(StrEnum):
    """States of the certificate lifecycle controller."""

    START = "start"
    ACCOUNT_READY = "account_ready"
    AUTHORIZED = "authorized"
    VALIDATED = "validated"
    ISSUED = "issued"
    ACTIVE = "active"
    FAILED = "failed"


# =============================================================================
# Pydantic Models
# =============================================================================


class Directory(BaseModel):
    """ACME directory resource (RFC 8555 Section 7.1.1)."""

    new_nonce: str = Field(alias="newNonce")
    new_account: str = Field(alias="newAccount")
    new_order: str = Field(alias="newOrder")
    meta: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class Registration(BaseModel):
    """ACME account resource plus the account URL it lives at."""

    status: AccountStatus
    url: str | None = None
    contact: list[str] | None = None
    orders: str | None = None


class Identifier(BaseModel):
    """ACME identifier (RFC 8555 Section 7.1.3)."""

    type: str = "dns"
    value: str


class Challenge(BaseModel):
    """ACME challenge resource (RFC 8555 Section 7.5.1).

    Challenge types this library does not know are kept as plain strings so
    an authorization offering them still parses.
    """

    type: ChallengeType | str
    url: str
    status: ChallengeStatus
    token: str
    validated: datetime | None = None
    error: dict[str, Any] | None = None


class Authorization(BaseModel):
    """ACME authorization resource (RFC 8555 Section 7.1.4)."""

    status: AuthorizationStatus
    identifier: Identifier
    challenges: list[Challenge]
    expires: datetime | None = None
    url: str | None = None

    def find_challenge(self, challenge_type: str) -> Challenge | None:
        """Return the first challenge with the given type tag."""
        for challenge in self.challenges:
            if challenge.type == challenge_type:
                return challenge
        return None


class Order(BaseModel):
    """ACME order resource (RFC 8555 Section 7.1.3)."""

    status: OrderStatus
    identifiers: list[Identifier]
    authorizations: list[str]
    finalize: str
    expires: datetime | None = None
    certificate: str | None = None
    error: dict[str, Any] | None = None
    url: str | None = None


class ChallengeResponse(BaseModel):
    """What the HTTP-01 responder serves: one path, one body."""

    path: str
    body: str


class CertificateRecord(BaseModel):
    """A leaf certificate: raw DER bytes plus the parsed fields we use."""

    der: bytes
    not_valid_after: datetime
    common_name: str | None = None
    serial_number: int
    url: str | None = None

    @classmethod
    def from_certificate(cls, cert: x509.Certificate, url: str | None = None) -> "CertificateRecord":
        """Build a record from a parsed certificate."""
        names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        common_name = str(names[0].value) if names else None
        return cls(
            der=cert.public_bytes(serialization.Encoding.DER),
            not_valid_after=cert.not_valid_after_utc,
            common_name=common_name,
            serial_number=cert.serial_number,
            url=url,
        )

    @classmethod
    def from_pem(cls, pem_data: bytes | str, url: str | None = None) -> "CertificateRecord":
        """Build a record from the first certificate in PEM data.

        Raises:
            ValueError: If the data holds no parseable certificate.
        """
        if isinstance(pem_data, str):
            pem_data = pem_data.encode()
        leaf = x509.load_pem_x509_certificates(pem_data)[0]
        return cls.from_certificate(leaf, url=url)

    @property
    def pem(self) -> bytes:
        """PEM encoding of the certificate (one CERTIFICATE block)."""
        cert = x509.load_der_x509_certificate(self.der)
        return cert.public_bytes(serialization.Encoding.PEM)

    def same_certificate(self, other: "CertificateRecord | None") -> bool:
        """True when both records hold byte-identical certificates."""
        return other is not None and self.der == other.der
