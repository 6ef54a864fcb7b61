"""Authentication module for linkdomains."""

from .tokens import AccountTokenVerifier, verify_provisioning_secret

__all__ = ["AccountTokenVerifier", "verify_provisioning_secret"]
