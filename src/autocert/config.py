"""Configuration for the certificate lifecycle manager."""

import os
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from autocert.crypto import MIN_KEY_SIZE

DEFAULT_RENEWAL_INTERVAL = timedelta(days=30)
DEFAULT_CHALLENGE_TIMEOUT = 120.0


class ManagerConfig(BaseModel):
    """Settings for one managed domain.

    Relative file paths are resolved against work_dir.
    """

    directory_url: str
    domain: str
    work_dir: Path = Path(".")
    account_key_path: Path = Path("auth.key")
    validation_host: str = ""
    validation_port: int = Field(default=80, ge=0, le=65535)
    renewal_interval: timedelta = DEFAULT_RENEWAL_INTERVAL
    challenge_timeout: float = Field(default=DEFAULT_CHALLENGE_TIMEOUT, gt=0)
    key_size: int = Field(default=MIN_KEY_SIZE, ge=MIN_KEY_SIZE)
    ca_cert: str | bool | None = None
    contact_email: str | None = None
    reissue_on_identical: bool = True

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        domain = value.strip().rstrip(".").lower()
        if not domain:
            raise ValueError("domain must not be empty")
        if "*" in domain:
            raise ValueError("wildcard domains are not supported")
        return domain

    @field_validator("renewal_interval")
    @classmethod
    def _positive_interval(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("renewal_interval must be positive")
        return value

    @property
    def account_key_file(self) -> Path:
        """Absolute or work_dir-relative path of the account key."""
        return self.work_dir / self.account_key_path

    @property
    def certificate_file(self) -> Path:
        """Path of <domain>.crt."""
        return self.work_dir / f"{self.domain}.crt"

    @property
    def key_file(self) -> Path:
        """Path of <domain>.key."""
        return self.work_dir / f"{self.domain}.key"

    @classmethod
    def from_env(cls, prefix: str = "AUTOCERT_", environ: Mapping[str, str] | None = None) -> "ManagerConfig":
        """Build a config from environment variables.

        Each field maps to ``<prefix><FIELD_NAME>`` (e.g. AUTOCERT_DOMAIN).
        renewal_interval is read in seconds; ca_cert accepts "false"/"true"
        or a file path.

        Raises:
            ValueError: If required values are missing or invalid
                (pydantic.ValidationError is a ValueError).
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{prefix}{name.upper()}")
            if raw is not None:
                values[name] = raw

        if "renewal_interval" in values:
            values["renewal_interval"] = timedelta(seconds=float(values["renewal_interval"]))
        ca_cert = values.get("ca_cert")
        if isinstance(ca_cert, str) and ca_cert.lower() in ("true", "false"):
            values["ca_cert"] = ca_cert.lower() == "true"
        return cls.model_validate(values)
