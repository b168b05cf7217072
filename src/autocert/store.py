"""PEM persistence for account keys, certificate keys and certificates.

Files written here are replaced atomically: the content goes to a temp file
in the target directory which is then renamed over the destination, so an
external reader sees either the old file or the new one.
"""

import os
import stat
import tempfile
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from autocert._logging import get_domain_extra, get_logger
from autocert.crypto import MIN_KEY_SIZE, generate_rsa_key
from autocert.exceptions import StorageError
from autocert.models import CertificateRecord

logger = get_logger(__name__)

# Label written by earlier deployments for the account key (PKCS#1 body)
LEGACY_ACCOUNT_KEY_LABEL = b"RSA AUTH KEY"
RSA_KEY_LABEL = b"RSA PRIVATE KEY"

KEY_FILE_MODE = 0o600
CERT_FILE_MODE = 0o644


def encode_private_key(key: rsa.RSAPrivateKey) -> bytes:
    """PEM-encode a private key as an unencrypted PKCS#1 ``RSA PRIVATE KEY``."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def decode_private_key(pem_data: bytes) -> rsa.RSAPrivateKey:
    """Decode a PEM private key.

    Accepts the standard labels understood by cryptography and the legacy
    ``RSA AUTH KEY`` label.

    Raises:
        ValueError: If the data is not an unencrypted RSA private key.
    """
    pem_data = pem_data.replace(LEGACY_ACCOUNT_KEY_LABEL, RSA_KEY_LABEL)
    try:
        key = serialization.load_pem_private_key(pem_data, password=None)
    except TypeError as e:
        # Raised for encrypted keys loaded without a password
        raise ValueError("Encrypted keys are not supported") from e
    except (ValueError, UnsupportedAlgorithm) as e:
        raise ValueError(f"Invalid PEM data: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Unsupported key type: {type(key).__name__}")
    return key


def _write_atomic(path: Path, data: bytes, mode: int) -> None:
    """Write data to path through a temp file and rename.

    Raises:
        StorageError: On any filesystem failure.
    """
    staged = _stage(path, data, mode)
    _commit(staged, path)


def _stage(path: Path, data: bytes, mode: int) -> Path:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as e:
        raise StorageError(f"Could not write {path}: {e}", path=str(path)) from e

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise StorageError(f"Could not write {path}: {e}", path=str(path)) from e
    return tmp_path


def _commit(staged: Path, path: Path) -> None:
    try:
        os.replace(staged, path)
    except OSError as e:
        staged.unlink(missing_ok=True)
        raise StorageError(f"Could not replace {path}: {e}", path=str(path)) from e


def _backup(path: Path) -> Path | None:
    """Copy path to a temp file beside it; None when path does not exist."""
    try:
        data = path.read_bytes()
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageError(f"Could not back up {path}: {e}", path=str(path)) from e
    return _stage(path, data, mode)


def _restore(backup: Path | None, path: Path) -> None:
    """Put backup back over path, or remove path when there was no backup."""
    try:
        if backup is None:
            path.unlink(missing_ok=True)
        else:
            _commit(backup, path)
    except (OSError, StorageError) as e:
        logger.error("Could not restore previous certificate", extra={"path": str(path), "error": str(e)})


class KeyStore:
    """Loads, generates and persists PEM key material.

    Args:
        key_size: RSA key size for generated keys (at least 2048).
    """

    def __init__(self, key_size: int = MIN_KEY_SIZE):
        if key_size < MIN_KEY_SIZE:
            raise ValueError(f"Key size must be at least {MIN_KEY_SIZE} bits, got {key_size}")
        self.key_size = key_size

    def generate_key(self) -> rsa.RSAPrivateKey:
        """Generate a fresh RSA key of the configured size."""
        return generate_rsa_key(self.key_size)

    def load_account_key(self, path: str | Path) -> tuple[rsa.RSAPrivateKey, bool]:
        """Load the account key at path, or generate one.

        A generated key is not written to disk: the caller persists it once
        the CA has accepted it.

        Returns:
            The key and whether it was freshly generated.
        """
        path = Path(path)
        try:
            pem_data = path.read_bytes()
        except FileNotFoundError:
            logger.info("No account key on disk, generating one", extra={"path": str(path)})
            return self.generate_key(), True
        except OSError as e:
            logger.warning(
                "Could not read account key, generating one",
                extra={"path": str(path), "error": str(e)},
            )
            return self.generate_key(), True

        try:
            key = decode_private_key(pem_data)
        except ValueError as e:
            logger.warning(
                "Account key on disk is unusable, generating one",
                extra={"path": str(path), "error": str(e)},
            )
            return self.generate_key(), True

        logger.debug("Account key loaded", extra={"path": str(path)})
        return key, False

    def load_or_create_account_key(self, path: str | Path) -> rsa.RSAPrivateKey:
        """Load the account key at path; generate (without persisting) if absent or corrupt."""
        key, _ = self.load_account_key(path)
        return key

    def persist_key(self, key: rsa.RSAPrivateKey, path: str | Path) -> None:
        """Write a private key as PEM with owner-only permissions.

        Raises:
            StorageError: If the file cannot be written.
        """
        _write_atomic(Path(path), encode_private_key(key), KEY_FILE_MODE)
        logger.debug("Key written", extra={"path": str(path), **get_domain_extra()})

    def persist_certificate(self, record: CertificateRecord, path: str | Path) -> None:
        """Write a certificate as a single PEM ``CERTIFICATE`` block.

        Raises:
            StorageError: If the file cannot be written.
        """
        _write_atomic(Path(path), record.pem, CERT_FILE_MODE)
        logger.debug("Certificate written", extra={"path": str(path), **get_domain_extra()})

    def persist_certificate_pair(
        self,
        record: CertificateRecord,
        key: rsa.RSAPrivateKey,
        cert_path: str | Path,
        key_path: str | Path,
    ) -> None:
        """Write a certificate and its private key as one unit.

        Both files are staged before either destination is touched, so a
        staging failure leaves the previous pair in place. The certificate
        is renamed into place first, then the key; if the key rename fails
        the previous certificate is put back (or the new one removed when
        there was none), so the pair on disk always matches.

        Raises:
            StorageError: If either file cannot be written.
        """
        cert_path, key_path = Path(cert_path), Path(key_path)
        staged_cert = _stage(cert_path, record.pem, CERT_FILE_MODE)
        try:
            staged_key = _stage(key_path, encode_private_key(key), KEY_FILE_MODE)
        except StorageError:
            staged_cert.unlink(missing_ok=True)
            raise
        try:
            backup = _backup(cert_path)
        except StorageError:
            staged_cert.unlink(missing_ok=True)
            staged_key.unlink(missing_ok=True)
            raise

        try:
            _commit(staged_cert, cert_path)
        except StorageError:
            staged_key.unlink(missing_ok=True)
            if backup is not None:
                backup.unlink(missing_ok=True)
            raise

        try:
            _commit(staged_key, key_path)
        except StorageError:
            _restore(backup, cert_path)
            raise

        if backup is not None:
            backup.unlink(missing_ok=True)
        logger.info(
            "Certificate and key written",
            extra={"cert_path": str(cert_path), "key_path": str(key_path), **get_domain_extra()},
        )

    def load_certificate(self, path: str | Path) -> CertificateRecord | None:
        """Load a certificate from path; None if missing or undecodable."""
        path = Path(path)
        try:
            pem_data = path.read_bytes()
        except OSError:
            return None

        try:
            return CertificateRecord.from_pem(pem_data)
        except ValueError as e:
            logger.warning(
                "Certificate on disk is unusable",
                extra={"path": str(path), "error": str(e)},
            )
            return None
