"""Abstract interface to an ACME certificate authority."""

import threading
from abc import ABC, abstractmethod

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from autocert.models import Authorization, CertificateRecord, Challenge, Registration


class AcmeAdapter(ABC):
    """Capabilities the lifecycle controller needs from a CA.

    Implementations own the ACME wire protocol; the controller only
    sequences these calls.
    """

    @abstractmethod
    def register(self, account_key: rsa.RSAPrivateKey) -> Registration:
        """Register the account key with the CA.

        Raises:
            AlreadyRegisteredError: If the key already has an account
                (callers treat this as success).
            RegistrationError: If registration fails.
        """
        ...

    @abstractmethod
    def authorize(self, account_key: rsa.RSAPrivateKey, domain: str) -> Authorization:
        """Request authorization over domain.

        Returns:
            The authorization with the challenges the CA offers.
        """
        ...

    @abstractmethod
    def notify_challenge_ready(
        self,
        account_key: rsa.RSAPrivateKey,
        challenge: Challenge,
        cancel: threading.Event | None = None,
    ) -> Challenge:
        """Tell the CA the challenge can be validated and wait for the verdict.

        The wait ends early, with ChallengeFailedError, once cancel is set.

        Returns:
            The validated challenge.

        Raises:
            ChallengeFailedError: If the CA rejects the challenge.
        """
        ...

    @abstractmethod
    def issue_certificate(
        self, account_key: rsa.RSAPrivateKey, csr: x509.CertificateSigningRequest
    ) -> CertificateRecord:
        """Obtain a certificate for csr.

        Raises:
            IssuanceError: If the CA does not issue.
        """
        ...

    @abstractmethod
    def renew_certificate(self, domain: str) -> CertificateRecord:
        """Fetch the current certificate for domain from the CA.

        Raises:
            IssuanceError: If the CA cannot provide one.
        """
        ...
