"""
Bearer token and shared-secret checks for linkdomains.

Account tokens are HS256 JWTs whose `sub` claim is the account id.
"""

import hmac
import logging
import time
from typing import Any, Dict, Optional

from jose import JWTError, jwt

logger = logging.getLogger("linkdomains.auth.tokens")


class AccountTokenVerifier:
    """Verifies account JWTs signed with the shared application secret."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def verify(self, token: str) -> Dict[str, Any]:
        """
        Verify a JWT and return its claims.

        Raises:
            ValueError: If the signature, expiry or subject is invalid
        """
        if not self.secret:
            raise ValueError("Token verification is not configured")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            raise ValueError(str(e))

        if not claims.get("sub"):
            raise ValueError("Token missing sub claim")
        return claims

    def issue(self, account_id: str, expires_in: Optional[int] = 3600) -> str:
        """Sign a token for account_id."""
        claims: Dict[str, Any] = {"sub": account_id, "iat": int(time.time())}
        if expires_in:
            claims["exp"] = claims["iat"] + expires_in
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)


def verify_provisioning_secret(provided: Optional[str], expected: str) -> bool:
    """Constant-time check of the X-VPS-Secret header."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())
