"""RFC 8555 ACME client implementing the adapter interface for HTTP-01."""

import threading
import time

import httpx
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from autocert._logging import Timer, get_domain_extra, get_logger
from autocert.adapter import AcmeAdapter
from autocert.crypto import csr_domain, csr_to_base64url, sign_jws
from autocert.exceptions import (
    AcmeError,
    AlreadyRegisteredError,
    BadNonceError,
    ChallengeFailedError,
    IssuanceError,
    RegistrationError,
)
from autocert.models import (
    Authorization,
    CertificateRecord,
    Challenge,
    ChallengeStatus,
    Directory,
    Order,
    OrderStatus,
    Registration,
)

logger = get_logger(__name__)

PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"


class AcmeClient(AcmeAdapter):
    """ACME client for single-domain HTTP-01 issuance.

    Args:
        directory_url: URL of the ACME directory endpoint.
        ca_cert: Path to CA certificate file, False to disable verification,
                 or None/True for default verification.
        contact_email: Contact address sent on registration (optional).
        timeout: HTTP timeout in seconds.
    """

    # Polling configuration
    POLL_INTERVAL = 2  # seconds
    MAX_POLL_ATTEMPTS = 30  # 60 seconds total
    MAX_NONCE_RETRIES = 3

    def __init__(
        self,
        directory_url: str,
        ca_cert: str | bool | None = None,
        contact_email: str | None = None,
        timeout: float = 30.0,
    ):
        self.directory_url = directory_url
        self.contact_email = contact_email

        verify = True if ca_cert is None else ca_cert
        self._http = httpx.Client(verify=verify, timeout=timeout)

        # Cached state
        self._directory: Directory | None = None
        self._nonce: str | None = None
        self._account_key: rsa.RSAPrivateKey | None = None
        self._account_url: str | None = None
        self._pending_orders: dict[str, Order] = {}
        self._certificate_urls: dict[str, str] = {}

    def close(self) -> None:
        """Close the HTTP client."""
        self._http.close()

    def __enter__(self) -> "AcmeClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def directory(self) -> Directory:
        """Get the ACME directory (cached after first fetch)."""
        if self._directory is None:
            response = self._http.get(self.directory_url)
            response.raise_for_status()
            self._directory = Directory.model_validate(response.json())
        return self._directory

    @property
    def account_url(self) -> str | None:
        """Get the account URL (set after registration or lookup)."""
        return self._account_url

    def _get_nonce(self) -> str:
        """Get a fresh nonce from the ACME server."""
        if self._nonce:
            nonce = self._nonce
            self._nonce = None
            return nonce

        response = self._http.head(self.directory.new_nonce)
        response.raise_for_status()
        nonce = response.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError(
                type="urn:ietf:params:acme:error:serverInternal",
                detail="Nonce response carried no Replay-Nonce header",
                status_code=response.status_code,
            )
        return nonce

    def _update_nonce(self, response: httpx.Response) -> None:
        """Update the cached nonce from response headers."""
        if "Replay-Nonce" in response.headers:
            self._nonce = response.headers["Replay-Nonce"]

    def _use_key(self, account_key: rsa.RSAPrivateKey) -> None:
        """Switch to account_key, forgetting the account URL of any other key."""
        if account_key is not self._account_key:
            self._account_key = account_key
            self._account_url = None

    def _signed_request(
        self,
        url: str,
        payload: dict | str,
        use_kid: bool = True,
        headers: dict[str, str] | None = None,
        _retry_count: int = 0,
    ) -> httpx.Response:
        """Make a JWS-signed POST request to the ACME server.

        Args:
            url: The endpoint URL.
            payload: The request payload (dict for JSON, "" for POST-as-GET).
            use_kid: If True, use kid (account URL) in JWS header.
                     If False, use jwk (for account registration and lookup).
            headers: Extra request headers.

        Returns:
            The HTTP response.

        Raises:
            AcmeError: If the ACME server returns an error.
        """
        if self._account_key is None:
            raise ValueError("No account key selected")

        kid = self._lookup_account_url() if use_kid else None
        body = sign_jws(
            key=self._account_key,
            payload=payload,
            url=url,
            nonce=self._get_nonce(),
            kid=kid,
        )

        response = self._http.post(
            url,
            json=body,
            headers={"Content-Type": "application/jose+json", **(headers or {})},
        )

        # Always update nonce from response
        self._update_nonce(response)

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                raise AcmeError(
                    type="unknown",
                    detail=response.text,
                    status_code=response.status_code,
                ) from None

            error = AcmeError.from_response(error_data, response.status_code, headers=response.headers)
            if isinstance(error, BadNonceError) and _retry_count < self.MAX_NONCE_RETRIES:
                logger.debug("Retrying after bad nonce", extra={"url": url, "attempt": _retry_count + 1})
                return self._signed_request(url, payload, use_kid, headers, _retry_count + 1)
            raise error

        return response

    def _lookup_account_url(self) -> str:
        """Return the account URL, asking the CA for it when the key was loaded from disk."""
        if self._account_url is None:
            response = self._signed_request(
                self.directory.new_account,
                {"onlyReturnExisting": True},
                use_kid=False,
            )
            self._account_url = response.headers.get("Location")
            if not self._account_url:
                raise AcmeError(
                    type="urn:ietf:params:acme:error:malformed",
                    detail="Account lookup returned no Location header",
                    status_code=response.status_code,
                )
        return self._account_url

    def register(self, account_key: rsa.RSAPrivateKey) -> Registration:
        """Register a new account for account_key.

        The CA answers 201 for a new account and 200 when the key already
        has one; the latter raises AlreadyRegisteredError after the account
        URL has been recorded, so later requests can use it.

        Raises:
            AlreadyRegisteredError: If the key is already registered.
            RegistrationError: If the CA rejects the registration.
        """
        self._use_key(account_key)
        payload: dict = {"termsOfServiceAgreed": True}
        if self.contact_email:
            payload["contact"] = [f"mailto:{self.contact_email}"]

        try:
            response = self._signed_request(self.directory.new_account, payload, use_kid=False)
        except AcmeError as e:
            raise RegistrationError(
                f"Account registration failed: {e.detail}",
                problem_type=e.type,
                status_code=e.status_code,
            ) from e

        self._account_url = response.headers.get("Location")
        if response.status_code == 200:
            raise AlreadyRegisteredError("Account key is already registered", url=self._account_url)

        registration = Registration.model_validate(response.json())
        registration.url = self._account_url
        logger.info("Account registered", extra={"account_url": self._account_url})
        return registration

    def authorize(self, account_key: rsa.RSAPrivateKey, domain: str) -> Authorization:
        """Create an order for domain and return its authorization.

        The order is kept so the next issue_certificate() call for the same
        domain finalizes it.
        """
        self._use_key(account_key)
        order = self._create_order(domain)

        authz_url = order.authorizations[0]
        response = self._signed_request(authz_url, "")
        authorization = Authorization.model_validate(response.json())
        authorization.url = authz_url
        self._pending_orders[domain] = order

        logger.debug(
            "Authorization fetched",
            extra={
                "authorization_url": authz_url,
                "status": authorization.status,
                "challenge_types": [c.type for c in authorization.challenges],
                **get_domain_extra(),
            },
        )
        return authorization

    def _create_order(self, domain: str) -> Order:
        """Create a new certificate order for a single domain."""
        payload = {"identifiers": [{"type": "dns", "value": domain}]}
        response = self._signed_request(self.directory.new_order, payload)

        order = Order.model_validate(response.json())
        order.url = response.headers.get("Location")
        if not order.authorizations:
            raise AcmeError(
                type="urn:ietf:params:acme:error:malformed",
                detail=f"Order for {domain} lists no authorizations",
                status_code=response.status_code,
            )
        logger.info("Order created", extra={"order_url": order.url, **get_domain_extra()})
        return order

    def notify_challenge_ready(
        self,
        account_key: rsa.RSAPrivateKey,
        challenge: Challenge,
        cancel: threading.Event | None = None,
    ) -> Challenge:
        """Respond to the challenge and poll until the CA reaches a verdict.

        Setting cancel stops the polling before the next request to the CA.

        Raises:
            ChallengeFailedError: If the challenge becomes invalid, polling
                runs out of attempts or cancel is set.
        """
        self._use_key(account_key)
        with Timer() as timer:
            # Respond to challenge (empty object)
            self._signed_request(challenge.url, {})
            validated = self._poll_challenge(challenge.url, cancel)

        logger.info(
            "Challenge validated",
            extra={"challenge_url": challenge.url, "elapsed_ms": timer.elapsed_ms, **get_domain_extra()},
        )
        return validated

    def _poll_challenge(self, challenge_url: str, cancel: threading.Event | None = None) -> Challenge:
        """Poll a challenge until it's valid or invalid."""
        cancel = cancel or threading.Event()
        for _ in range(self.MAX_POLL_ATTEMPTS):
            if cancel.is_set():
                break
            response = self._signed_request(challenge_url, "")
            challenge = Challenge.model_validate(response.json())

            if challenge.status == ChallengeStatus.VALID:
                return challenge
            elif challenge.status == ChallengeStatus.INVALID:
                error_detail = "Challenge validation failed"
                if challenge.error:
                    error_detail = challenge.error.get("detail", error_detail)
                raise ChallengeFailedError(
                    error_detail,
                    challenge_url=challenge_url,
                    problem=challenge.error,
                )
            cancel.wait(self.POLL_INTERVAL)

        if cancel.is_set():
            logger.info("Challenge polling cancelled", extra={"challenge_url": challenge_url, **get_domain_extra()})
            raise ChallengeFailedError(
                "Challenge polling cancelled",
                challenge_url=challenge_url,
                timed_out=True,
            )
        raise ChallengeFailedError(
            "Challenge polling timed out",
            challenge_url=challenge_url,
            timed_out=True,
        )

    def _poll_order(self, order_url: str, until: tuple[OrderStatus, ...]) -> Order:
        """Poll an order until it reaches one of the until statuses.

        Raises:
            IssuanceError: If the order becomes invalid or polling runs out.
        """
        for _ in range(self.MAX_POLL_ATTEMPTS):
            response = self._signed_request(order_url, "")
            order = Order.model_validate(response.json())
            order.url = order_url

            if order.status in until:
                return order
            elif order.status == OrderStatus.INVALID:
                error_detail = "Order is invalid"
                if order.error:
                    error_detail = order.error.get("detail", error_detail)
                raise IssuanceError(error_detail, order_url=order_url)
            time.sleep(self.POLL_INTERVAL)

        raise IssuanceError("Order polling timed out", order_url=order_url)

    def issue_certificate(
        self, account_key: rsa.RSAPrivateKey, csr: x509.CertificateSigningRequest
    ) -> CertificateRecord:
        """Finalize the order for the CSR's domain and download the certificate.

        Uses the order left by authorize(); without one a new order is
        created, which only becomes ready when the CA still holds a valid
        authorization for the domain.

        Raises:
            IssuanceError: If the CA does not issue.
        """
        self._use_key(account_key)
        domain = csr_domain(csr)
        try:
            with Timer() as timer:
                order = self._pending_orders.pop(domain, None) or self._create_order(domain)
                if not order.url:
                    raise IssuanceError("Order has no URL", domain=domain)

                order = self._poll_order(order.url, until=(OrderStatus.READY, OrderStatus.VALID))
                if order.status == OrderStatus.READY:
                    self._signed_request(order.finalize, {"csr": csr_to_base64url(csr)})
                    order = self._poll_order(order.url, until=(OrderStatus.VALID,))
                if not order.certificate:
                    raise IssuanceError("Order has no certificate URL", order_url=order.url)

                record = self._download_certificate(order.certificate)
        except AcmeError as e:
            raise IssuanceError(
                f"Certificate issuance failed: {e.detail}",
                problem_type=e.type,
                status_code=e.status_code,
            ) from e

        self._certificate_urls[domain] = order.certificate
        logger.info(
            "Certificate issued",
            extra={
                "certificate_url": order.certificate,
                "expires_at": record.not_valid_after.isoformat(),
                "elapsed_ms": timer.elapsed_ms,
                **get_domain_extra(),
            },
        )
        return record

    def _download_certificate(self, certificate_url: str) -> CertificateRecord:
        """Download a certificate chain and return its leaf."""
        response = self._signed_request(
            certificate_url,
            "",
            headers={"Accept": PEM_CHAIN_CONTENT_TYPE},
        )
        try:
            return CertificateRecord.from_pem(response.text, url=certificate_url)
        except ValueError as e:
            raise IssuanceError(
                f"CA returned an unreadable certificate: {e}",
                certificate_url=certificate_url,
            ) from e

    def renew_certificate(self, domain: str) -> CertificateRecord:
        """Fetch the certificate the CA currently serves for domain.

        Raises:
            IssuanceError: If no certificate URL is known for domain or the
                download fails.
        """
        certificate_url = self._certificate_urls.get(domain)
        if certificate_url is None or self._account_key is None:
            raise IssuanceError("No certificate known for renewal", domain=domain)

        try:
            return self._download_certificate(certificate_url)
        except AcmeError as e:
            raise IssuanceError(
                f"Certificate renewal failed: {e.detail}",
                problem_type=e.type,
                status_code=e.status_code,
            ) from e
