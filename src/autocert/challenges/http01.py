"""HTTP-01 challenge implementation."""

from cryptography.hazmat.primitives.asymmetric import rsa

from autocert.crypto import key_thumbprint
from autocert.models import Challenge, ChallengeResponse

WELL_KNOWN_PREFIX = "/.well-known/acme-challenge/"


def compute_key_authorization(token: str, thumbprint: str) -> str:
    """Compute the key authorization string.

    The key authorization is the token concatenated with the account
    key thumbprint, separated by a period.

    Args:
        token: The challenge token from the ACME server.
        thumbprint: The base64url-encoded SHA-256 thumbprint of the account key.

    Returns:
        The key authorization string (token.thumbprint).
    """
    return f"{token}.{thumbprint}"


def challenge_path(token: str) -> str:
    """Return the URL path the CA probes for a token."""
    return f"{WELL_KNOWN_PREFIX}{token}"


def build_challenge_response(challenge: Challenge, account_key: rsa.RSAPrivateKey) -> ChallengeResponse:
    """Derive the path/body pair the responder must serve for a challenge.

    The body of an HTTP-01 response is the bare key authorization,
    not a digest of it.
    """
    return ChallengeResponse(
        path=challenge_path(challenge.token),
        body=compute_key_authorization(challenge.token, key_thumbprint(account_key)),
    )
