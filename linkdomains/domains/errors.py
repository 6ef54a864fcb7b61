"""
Error codes for the custom domain lifecycle.

Every failure carries a stable code; callers branch on the code, never on
the message text.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    INVALID_DOMAIN = "INVALID_DOMAIN"
    DOMAIN_ALREADY_EXISTS = "DOMAIN_ALREADY_EXISTS"
    DOMAIN_LIMIT_REACHED = "DOMAIN_LIMIT_REACHED"
    DOMAIN_NOT_FOUND = "DOMAIN_NOT_FOUND"
    NOT_DOMAIN_OWNER = "NOT_DOMAIN_OWNER"
    DOMAIN_NOT_AVAILABLE = "DOMAIN_NOT_AVAILABLE"
    DNS_VERIFICATION_FAILED = "DNS_VERIFICATION_FAILED"
    DNS_QUERY_ERROR = "DNS_QUERY_ERROR"
    SSL_GENERATION_FAILED = "SSL_GENERATION_FAILED"
    SSL_TIMEOUT = "SSL_TIMEOUT"
    SSL_RATE_LIMIT = "SSL_RATE_LIMIT"
    SSL_VALIDATION_FAILED = "SSL_VALIDATION_FAILED"
    SSL_EXPIRED = "SSL_EXPIRED"
    VPS_CONNECTION_FAILED = "VPS_CONNECTION_FAILED"
    SSL_PROCESS_BUSY = "SSL_PROCESS_BUSY"
    CHECK_IN_PROGRESS = "CHECK_IN_PROGRESS"
    INVALID_RETRY_STATE = "INVALID_RETRY_STATE"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    OWNER_ACTION = "owner_action"
    CONCURRENCY = "concurrency"
    RATE_LIMIT = "rate_limit"


ERROR_CATEGORIES: Dict[ErrorCode, ErrorCategory] = {
    ErrorCode.INVALID_DOMAIN: ErrorCategory.VALIDATION,
    ErrorCode.DOMAIN_ALREADY_EXISTS: ErrorCategory.VALIDATION,
    ErrorCode.DOMAIN_LIMIT_REACHED: ErrorCategory.VALIDATION,
    ErrorCode.DOMAIN_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.NOT_DOMAIN_OWNER: ErrorCategory.NOT_FOUND,
    ErrorCode.DOMAIN_NOT_AVAILABLE: ErrorCategory.VALIDATION,
    ErrorCode.DNS_VERIFICATION_FAILED: ErrorCategory.OWNER_ACTION,
    ErrorCode.DNS_QUERY_ERROR: ErrorCategory.TRANSIENT,
    ErrorCode.SSL_GENERATION_FAILED: ErrorCategory.TRANSIENT,
    ErrorCode.SSL_TIMEOUT: ErrorCategory.TRANSIENT,
    ErrorCode.SSL_RATE_LIMIT: ErrorCategory.RATE_LIMIT,
    ErrorCode.SSL_VALIDATION_FAILED: ErrorCategory.OWNER_ACTION,
    ErrorCode.SSL_EXPIRED: ErrorCategory.OWNER_ACTION,
    ErrorCode.VPS_CONNECTION_FAILED: ErrorCategory.TRANSIENT,
    ErrorCode.SSL_PROCESS_BUSY: ErrorCategory.CONCURRENCY,
    ErrorCode.CHECK_IN_PROGRESS: ErrorCategory.CONCURRENCY,
    ErrorCode.INVALID_RETRY_STATE: ErrorCategory.CONCURRENCY,
}


class DomainError(Exception):
    """A lifecycle failure scoped to a single domain."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def category(self) -> ErrorCategory:
        return ERROR_CATEGORIES[self.code]

    def __repr__(self) -> str:
        return f"DomainError({self.code.value}, {self.message!r})"
