"""Autocert - unattended ACME HTTP-01 certificate issuance and renewal."""

from autocert.client import AcmeClient
from autocert.config import ManagerConfig
from autocert.manager import CertificateManager
from autocert.scheduler import RenewalScheduler

__all__ = ["AcmeClient", "CertificateManager", "ManagerConfig", "RenewalScheduler"]
__version__ = "0.1.0"
