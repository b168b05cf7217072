"""Pytest fixtures for the autocert test suite."""

import logging
import logging.handlers
import os
import socket
import threading
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from autocert.adapter import AcmeAdapter
from autocert.config import ManagerConfig
from autocert.crypto import csr_domain, generate_rsa_key
from autocert.exceptions import IssuanceError
from autocert.models import (
    Authorization,
    CertificateRecord,
    Challenge,
    Identifier,
    Registration,
)
from autocert.responder import ChallengeResponder

# Default settings for a local pebble setup
PEBBLE_DIRECTORY_URL = os.environ.get("PEBBLE_DIRECTORY_URL", "https://localhost:14000/dir")
PEBBLE_HTTP_PORT = int(os.environ.get("PEBBLE_HTTP_PORT", "5002"))


@pytest.fixture(scope="session")
def pebble_ca_cert() -> str | bool:
    """Get SSL verification setting for Pebble.

    Returns the PEBBLE_CA_CERT path when set; otherwise False, since
    Pebble's TLS certificate is intentionally not trusted.
    """
    ca_cert_path = os.environ.get("PEBBLE_CA_CERT")
    if ca_cert_path and Path(ca_cert_path).exists():
        return ca_cert_path
    return False


@pytest.fixture(scope="session")
def pebble_directory_url() -> str:
    """Return the Pebble ACME directory URL."""
    return PEBBLE_DIRECTORY_URL


@pytest.fixture(scope="session")
def pebble_http_port() -> int:
    """Return the port pebble probes for http-01 challenges."""
    return PEBBLE_HTTP_PORT


# =============================================================================
# Key material
# =============================================================================


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """A 2048-bit RSA key shared by tests that only read it."""
    return generate_rsa_key(2048)


@pytest.fixture(scope="session")
def issuer_key() -> rsa.RSAPrivateKey:
    """Key signing the test certificates."""
    return generate_rsa_key(2048)


def build_certificate(
    domain: str,
    signing_key: rsa.RSAPrivateKey,
    public_key: rsa.RSAPublicKey | None = None,
    days: int = 90,
) -> x509.Certificate:
    """Build a certificate for domain signed by signing_key."""
    now = datetime.now(UTC)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "autocert test CA")]))
        .public_key(public_key or signing_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(signing_key, hashes.SHA256())
    )


@pytest.fixture
def certificate_factory(
    issuer_key: rsa.RSAPrivateKey,
) -> Callable[..., CertificateRecord]:
    """Return a function creating fresh CertificateRecords.

    Usage:
        record = certificate_factory("example.com")
    """

    def factory(
        domain: str = "example.com",
        public_key: rsa.RSAPublicKey | None = None,
        url: str | None = None,
    ) -> CertificateRecord:
        cert = build_certificate(domain, issuer_key, public_key)
        return CertificateRecord.from_certificate(cert, url=url)

    return factory


# =============================================================================
# Network
# =============================================================================


@pytest.fixture
def free_port() -> int:
    """A TCP port on 127.0.0.1 that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def occupied_port() -> Generator[int]:
    """A port held by a listening socket for the duration of the test."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


# =============================================================================
# Lifecycle
# =============================================================================


class FakeAdapter(AcmeAdapter):
    """In-memory CA recording the calls made to it.

    Set the *_error attributes to make a call fail, and renew_result to
    control what renew_certificate() returns.
    """

    def __init__(self, make_certificate: Callable[..., CertificateRecord]):
        self.make_certificate = make_certificate
        self.calls: list[str] = []
        self.issued: list[CertificateRecord] = []

        self.register_error: Exception | None = None
        self.authorize_error: Exception | None = None
        self.challenge_error: Exception | None = None
        self.issue_error: Exception | None = None
        self.renew_error: Exception | None = None

        self.authorization_status = "pending"
        self.challenge_types = ["dns-01", "http-01", "tls-alpn-01"]
        self.renew_result: CertificateRecord | None = None

    def register(self, account_key: rsa.RSAPrivateKey) -> Registration:
        self.calls.append("register")
        if self.register_error:
            raise self.register_error
        return Registration(status="valid", url="https://ca.test/acct/1")

    def authorize(self, account_key: rsa.RSAPrivateKey, domain: str) -> Authorization:
        self.calls.append("authorize")
        if self.authorize_error:
            raise self.authorize_error
        return Authorization(
            status=self.authorization_status,
            identifier=Identifier(value=domain),
            challenges=[
                Challenge(
                    type=challenge_type,
                    url=f"https://ca.test/chall/{challenge_type}",
                    status="pending",
                    token=f"token-{challenge_type}",
                )
                for challenge_type in self.challenge_types
            ],
        )

    def notify_challenge_ready(
        self,
        account_key: rsa.RSAPrivateKey,
        challenge: Challenge,
        cancel: threading.Event | None = None,
    ) -> Challenge:
        self.calls.append("notify_challenge_ready")
        if self.challenge_error:
            raise self.challenge_error
        return challenge.model_copy(update={"status": "valid"})

    def issue_certificate(
        self, account_key: rsa.RSAPrivateKey, csr: x509.CertificateSigningRequest
    ) -> CertificateRecord:
        self.calls.append("issue_certificate")
        if self.issue_error:
            raise self.issue_error
        record = self.make_certificate(csr_domain(csr), public_key=csr.public_key())
        self.issued.append(record)
        return record

    def renew_certificate(self, domain: str) -> CertificateRecord:
        self.calls.append("renew_certificate")
        if self.renew_error:
            raise self.renew_error
        if self.renew_result is None:
            raise IssuanceError("No certificate known for renewal", domain=domain)
        return self.renew_result


@pytest.fixture
def fake_adapter(certificate_factory: Callable[..., CertificateRecord]) -> FakeAdapter:
    """An in-memory CA."""
    return FakeAdapter(certificate_factory)


@pytest.fixture
def manager_config(tmp_path: Path) -> ManagerConfig:
    """Config writing into a temp dir and validating on an ephemeral port."""
    return ManagerConfig(
        directory_url="https://ca.test/dir",
        domain="example.com",
        work_dir=tmp_path,
        validation_host="127.0.0.1",
        validation_port=0,
        challenge_timeout=5,
    )


@pytest.fixture
def local_responder() -> ChallengeResponder:
    """Responder bound to an ephemeral loopback port."""
    return ChallengeResponder(host="127.0.0.1", port=0)


# =============================================================================
# Logging
# =============================================================================


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name prefix."""
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name prefix."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def clear(self) -> None:
        """Clear all captured log records."""
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Generator[LogCapture]:
    """Capture logs from the autocert library during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Certificate renewed" in log_capture.get_messages(logging.INFO)
    """
    # Capacity is large enough that the buffer is never flushed mid-test
    handler = logging.handlers.MemoryHandler(capacity=10000, flushLevel=logging.CRITICAL + 1)
    handler.setLevel(logging.DEBUG)

    autocert_logger = logging.getLogger("autocert")
    original_level = autocert_logger.level
    autocert_logger.setLevel(logging.DEBUG)
    autocert_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        autocert_logger.removeHandler(handler)
        autocert_logger.setLevel(original_level)
        handler.close()
