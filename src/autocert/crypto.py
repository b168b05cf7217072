"""Cryptographic utilities for ACME protocol operations."""

import base64
import hashlib
import json

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

MIN_KEY_SIZE = 2048


def generate_rsa_key(key_size: int = MIN_KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Args:
        key_size: Key size in bits (at least 2048).

    Returns:
        RSA private key.

    Raises:
        ValueError: If key_size is below 2048.
    """
    if key_size < MIN_KEY_SIZE:
        raise ValueError(f"Key size must be at least {MIN_KEY_SIZE} bits, got {key_size}")
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def create_csr(key: rsa.RSAPrivateKey, domain: str) -> x509.CertificateSigningRequest:
    """Create a Certificate Signing Request for a single domain.

    The domain is used both as Common Name and as the only SAN entry.

    Raises:
        ValueError: If domain is empty.
    """
    if not domain:
        raise ValueError("A domain is required")

    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    san = x509.SubjectAlternativeName([x509.DNSName(domain)])

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(san, critical=False)
    )
    return builder.sign(key, hashes.SHA256())


def csr_domain(csr: x509.CertificateSigningRequest) -> str:
    """Return the domain a CSR was built for.

    Raises:
        ValueError: If the CSR carries neither a DNS SAN nor a Common Name.
    """
    try:
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        names = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not names:
            raise ValueError("CSR names no domain") from None
        return str(names[0].value)
    return san.value.get_values_for_type(x509.DNSName)[0]


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _uint_to_base64url(n: int) -> str:
    return base64url_encode(n.to_bytes((n.bit_length() + 7) // 8, byteorder="big"))


def get_jwk(key: rsa.RSAPrivateKey) -> dict[str, str]:
    """Get the JWK (JSON Web Key) representation of the public half of a key."""
    public_numbers = key.public_key().public_numbers()
    return {
        "e": _uint_to_base64url(public_numbers.e),
        "kty": "RSA",
        "n": _uint_to_base64url(public_numbers.n),
    }


def key_thumbprint(key: rsa.RSAPrivateKey) -> str:
    """Compute the JWK thumbprint of a key (RFC 7638).

    Returns:
        Base64url-encoded SHA-256 thumbprint.
    """
    # Canonical form: required members only, sorted, no whitespace
    json_bytes = json.dumps(get_jwk(key), sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64url_encode(hashlib.sha256(json_bytes).digest())


def sign_jws(
    key: rsa.RSAPrivateKey,
    payload: dict | str,
    url: str,
    nonce: str,
    kid: str | None = None,
) -> dict[str, str]:
    """Sign a payload as a flattened JWS (RFC 7515) for ACME.

    Args:
        key: Account key to sign with.
        payload: Payload to sign (dict for JSON, empty string for POST-as-GET).
        url: URL of the ACME endpoint.
        nonce: Replay nonce.
        kid: Account URL (if registered). If None, includes JWK.

    Returns:
        Dict with protected, payload and signature members.
    """
    protected: dict[str, str | dict] = {"alg": "RS256", "nonce": nonce, "url": url}
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = get_jwk(key)

    protected_b64 = base64url_encode(json.dumps(protected, separators=(",", ":")).encode("utf-8"))
    if payload == "":
        payload_b64 = ""
    else:
        payload_b64 = base64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))

    signature = key.sign(
        f"{protected_b64}.{payload_b64}".encode(),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )
    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(signature),
    }


def csr_to_base64url(csr: x509.CertificateSigningRequest) -> str:
    """DER-encode a CSR and base64url it for the finalize payload."""
    return base64url_encode(csr.public_bytes(serialization.Encoding.DER))
