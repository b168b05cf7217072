"""Certificate lifecycle controller: bootstrap and renewal of one domain."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import rsa

from autocert._logging import Timer, get_domain_extra, get_logger, reset_domain, set_domain
from autocert.adapter import AcmeAdapter
from autocert.challenges.http01 import build_challenge_response
from autocert.config import ManagerConfig
from autocert.crypto import create_csr
from autocert.exceptions import (
    AlreadyRegisteredError,
    CertError,
    ChallengeFailedError,
    IssuanceError,
    RegistrationError,
    StorageError,
    UnsupportedChallengeError,
)
from autocert.models import (
    AuthorizationStatus,
    CertificateRecord,
    Challenge,
    ChallengeType,
    LifecycleState,
)
from autocert.responder import ChallengeResponder
from autocert.scheduler import RenewalScheduler
from autocert.store import KeyStore

logger = get_logger(__name__)

_STEP_ERRORS: dict[str, type[CertError]] = {
    "register": RegistrationError,
    "validate": ChallengeFailedError,
    "issue": IssuanceError,
    "renew": IssuanceError,
}


class CertificateManager:
    """Acquires, persists and renews the certificate for one domain.

    The manager is the single owner of the domain's lifecycle state: the
    account key, the challenge in flight, the active certificate and the
    current LifecycleState. Only one flow runs at a time.

    Args:
        config: Domain settings.
        adapter: CA capability (usually an AcmeClient).
        store: Key material store (defaults to one using config.key_size).
        responder: HTTP-01 responder (defaults to one on the configured port).
    """

    def __init__(
        self,
        config: ManagerConfig,
        adapter: AcmeAdapter,
        store: KeyStore | None = None,
        responder: ChallengeResponder | None = None,
    ):
        self.config = config
        self.adapter = adapter
        self.store = store or KeyStore(key_size=config.key_size)
        self.responder = responder or ChallengeResponder(
            host=config.validation_host, port=config.validation_port
        )

        self.state = LifecycleState.START
        self.account_key: rsa.RSAPrivateKey | None = None
        self.challenge: Challenge | None = None
        self.active_certificate: CertificateRecord | None = None
        self.last_error: CertError | None = None

        self._step = "start"
        self._account_key_unsaved = False
        self._lock = threading.Lock()
        self._scheduler: RenewalScheduler | None = None

    @property
    def domain(self) -> str:
        return self.config.domain

    @property
    def certificate_path(self) -> Path:
        return self.config.certificate_file

    @property
    def key_path(self) -> Path:
        return self.config.key_file

    @contextmanager
    def _flow(self) -> Iterator[None]:
        with self._lock:
            token = set_domain(self.domain)
            try:
                yield
            finally:
                reset_domain(token)

    def _transition(self, state: LifecycleState) -> None:
        logger.debug(
            "Lifecycle transition",
            extra={"from_state": self.state, "to_state": state, **get_domain_extra()},
        )
        self.state = state

    def _as_cert_error(self, error: Exception) -> CertError:
        """Convert a step error into a CertError carrying the step and domain."""
        if isinstance(error, CertError):
            return error.with_context(step=self._step, domain=self.domain)
        error_class = StorageError if isinstance(error, OSError) else _STEP_ERRORS.get(self._step, CertError)
        return error_class(f"{self._step} failed: {error}", step=self._step, domain=self.domain)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def bootstrap(self) -> CertificateRecord:
        """Make sure a valid certificate exists, issuing one if needed.

        Returns:
            The active certificate.

        Raises:
            CertError: The failure of the step that stopped the flow; its
                ``kind`` and ``context["step"]`` identify what went wrong.
        """
        with self._flow():
            return self._run_bootstrap()

    def _run_bootstrap(self) -> CertificateRecord:
        logger.info("Bootstrap started", extra=get_domain_extra())
        try:
            with Timer() as timer:
                record = self._bootstrap()
        except Exception as e:
            error = self._as_cert_error(e)
            self.last_error = error
            self._transition(LifecycleState.FAILED)
            logger.error(
                "Bootstrap failed",
                extra={"step": self._step, "kind": error.kind, "error": error.detail, **get_domain_extra()},
            )
            if error is e:
                raise
            raise error from e

        self.last_error = None
        logger.info(
            "Bootstrap finished",
            extra={
                "expires_at": record.not_valid_after.isoformat(),
                "elapsed_ms": timer.elapsed_ms,
                **get_domain_extra(),
            },
        )
        return record

    def _bootstrap(self) -> CertificateRecord:
        self._transition(LifecycleState.START)
        self._step = "register"
        account_key, created = self.store.load_account_key(self.config.account_key_file)
        self.account_key = account_key
        if created:
            self._register(account_key)
        self._transition(LifecycleState.ACCOUNT_READY)

        if not created and self._adopt_existing_certificate():
            return self.active_certificate

        self._prove_control(account_key)
        if created:
            self._account_key_unsaved = True
            self._save_account_key()
        self._transition(LifecycleState.VALIDATED)

        return self._issue()

    def _prove_control(self, account_key: rsa.RSAPrivateKey) -> None:
        """Authorize the domain, answering the http-01 challenge unless already valid."""
        self._step = "authorize"
        authorization = self.adapter.authorize(account_key, self.domain)
        challenge = authorization.find_challenge(ChallengeType.HTTP_01)
        if challenge is None:
            raise UnsupportedChallengeError(
                "CA offered no http-01 challenge",
                offered=[c.type for c in authorization.challenges],
            )
        self._transition(LifecycleState.AUTHORIZED)

        self._step = "validate"
        if authorization.status == AuthorizationStatus.VALID:
            logger.info("Authorization already valid, skipping challenge", extra=get_domain_extra())
        else:
            self._validate(account_key, challenge)

    def _register(self, account_key: rsa.RSAPrivateKey) -> None:
        try:
            registration = self.adapter.register(account_key)
        except AlreadyRegisteredError:
            logger.info("Account key already registered", extra=get_domain_extra())
            return
        logger.info(
            "Account key registered",
            extra={"account_url": registration.url, **get_domain_extra()},
        )

    def _adopt_existing_certificate(self) -> bool:
        """Try to continue from the certificate on disk.

        The certificate is adopted as active and refreshed once. Returns
        True when the refresh succeeded; otherwise the caller requests a
        new certificate (the adopted one stays active meanwhile).
        """
        existing = self.store.load_certificate(self.certificate_path)
        if existing is None:
            return False

        self.active_certificate = existing
        logger.info(
            "Found certificate on disk, refreshing it",
            extra={"expires_at": existing.not_valid_after.isoformat(), **get_domain_extra()},
        )
        try:
            self._refresh()
        except Exception as e:
            error = self._as_cert_error(e)
            logger.warning(
                "Refresh of certificate on disk failed, requesting a new one",
                extra={"step": self._step, "kind": error.kind, "error": error.detail, **get_domain_extra()},
            )
            return False
        return True

    def _validate(self, account_key: rsa.RSAPrivateKey, challenge: Challenge) -> None:
        """Serve the challenge while the CA validates it."""
        self.challenge = challenge
        try:
            response = build_challenge_response(challenge, account_key)
            self.responder.answer(
                response,
                lambda cancel: self.adapter.notify_challenge_ready(account_key, challenge, cancel=cancel),
                timeout=self.config.challenge_timeout,
            )
        finally:
            self.challenge = None
        logger.info("Domain control proven", extra=get_domain_extra())

    def _save_account_key(self) -> None:
        """Persist a freshly registered account key; failures are retried on the next flow."""
        if not self._account_key_unsaved or self.account_key is None:
            return
        try:
            self.store.persist_key(self.account_key, self.config.account_key_file)
        except StorageError as e:
            logger.warning(
                "Could not save account key, will retry",
                extra={"path": str(self.config.account_key_file), "error": e.detail, **get_domain_extra()},
            )
            return
        self._account_key_unsaved = False
        logger.info("Account key saved", extra={"path": str(self.config.account_key_file)})

    def _issue(self) -> CertificateRecord:
        """Issue a certificate under a fresh key and make it active."""
        self._step = "issue"
        certificate_key = self.store.generate_key()
        csr = create_csr(certificate_key, self.domain)
        record = self.adapter.issue_certificate(self.account_key, csr)
        self._transition(LifecycleState.ISSUED)

        self.store.persist_certificate_pair(record, certificate_key, self.certificate_path, self.key_path)
        self.active_certificate = record
        self._transition(LifecycleState.ACTIVE)
        return record

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def renew(self) -> bool:
        """Run one renewal attempt. Never raises.

        Without an active certificate this runs the full bootstrap. On any
        failure the previously active certificate, in memory and on disk,
        stays in use.

        Returns:
            True if the attempt succeeded.
        """
        with self._flow():
            if self.active_certificate is None:
                logger.info("No active certificate, bootstrapping", extra=get_domain_extra())
                try:
                    self._run_bootstrap()
                except CertError:
                    return False
                return True

            self._save_account_key()
            try:
                with Timer() as timer:
                    self._refresh()
            except Exception as e:
                error = self._as_cert_error(e)
                self.last_error = error
                self._transition(LifecycleState.ACTIVE)
                logger.error(
                    "Renewal failed, keeping current certificate",
                    extra={"step": self._step, "kind": error.kind, "error": error.detail, **get_domain_extra()},
                )
                return False

            self.last_error = None
            logger.info("Renewal finished", extra={"elapsed_ms": timer.elapsed_ms, **get_domain_extra()})
            return True

    def _refresh(self) -> None:
        """Ask the CA for the current certificate and adopt it if it changed.

        A renewed certificate keeps the existing certificate key, so only
        the certificate file is rewritten. An unchanged answer leads to a
        fresh authorization and issuance unless reissue_on_identical is off.
        """
        self._step = "renew"
        renewed = self.adapter.renew_certificate(self.domain)

        if renewed.same_certificate(self.active_certificate):
            if not self.config.reissue_on_identical:
                logger.info("CA returned the active certificate unchanged", extra=get_domain_extra())
                self._transition(LifecycleState.ACTIVE)
                return
            logger.info(
                "CA returned the active certificate unchanged, requesting a new one",
                extra=get_domain_extra(),
            )
            self._prove_control(self.account_key)
            self._transition(LifecycleState.VALIDATED)
            self._issue()
            return

        self.store.persist_certificate(renewed, self.certificate_path)
        self.active_certificate = renewed
        self._transition(LifecycleState.ACTIVE)
        logger.info(
            "Certificate renewed",
            extra={"expires_at": renewed.not_valid_after.isoformat(), **get_domain_extra()},
        )

    def start_renewal_loop(self) -> RenewalScheduler:
        """Start the periodic renewal thread (once; later calls return it)."""
        if self._scheduler is None or not self._scheduler.is_running:
            self._scheduler = RenewalScheduler(
                self.renew,
                self.config.renewal_interval,
                name=f"autocert-renewal-{self.domain}",
            )
            self._scheduler.start()
        return self._scheduler

    def stop_renewal_loop(self, timeout: float | None = 5.0) -> bool:
        """Stop the renewal thread if it runs."""
        if self._scheduler is None:
            return True
        return self._scheduler.stop(timeout=timeout)
