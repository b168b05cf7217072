"""ACME challenge helpers."""

from autocert.challenges.http01 import (
    build_challenge_response,
    challenge_path,
    compute_key_authorization,
)

__all__ = ["build_challenge_response", "challenge_path", "compute_key_authorization"]
