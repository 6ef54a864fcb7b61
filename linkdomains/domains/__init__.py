"""Custom domain lifecycle for linkdomains."""

from .errors import DomainError, ErrorCode
from .models import Domain, DomainPurposeBinding, Purpose
from .registry import DomainRegistry
from .service import DomainService
from .ssl import CertbotIssuer, CertificateIssuer
from .verification import DomainVerifier

__all__ = [
    "CertbotIssuer",
    "CertificateIssuer",
    "Domain",
    "DomainError",
    "DomainPurposeBinding",
    "DomainRegistry",
    "DomainService",
    "DomainVerifier",
    "ErrorCode",
    "Purpose",
]
