"""
Custom domain data model for linkdomains.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from .errors import ErrorCode


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Purpose(str, Enum):
    LANDING = "landing"
    URL_SHORTENER = "url_shortener"


class RecordType(str, Enum):
    TXT = "TXT"
    CNAME = "CNAME"


class DnsStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


class SslStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ISSUED = "issued"
    FAILED = "failed"
    EXPIRED = "expired"


class BindingStatus(str, Enum):
    PENDING = "pending"
    DNS_CONFIGURED = "dns_configured"
    SSL_PENDING = "ssl_pending"
    SSL_ISSUED = "ssl_issued"
    ACTIVE = "active"
    FAILED = "failed"
    REMOVED = "removed"


# Allowed certificate transitions outside of an explicit retry.
SSL_TRANSITIONS: Dict[SslStatus, frozenset] = {
    SslStatus.NONE: frozenset({SslStatus.PENDING}),
    SslStatus.PENDING: frozenset({SslStatus.ISSUED, SslStatus.FAILED}),
    SslStatus.ISSUED: frozenset({SslStatus.EXPIRED}),
    SslStatus.FAILED: frozenset(),
    SslStatus.EXPIRED: frozenset(),
}

# Statuses a retry may restart issuance from.
SSL_RETRYABLE = frozenset({SslStatus.NONE, SslStatus.FAILED, SslStatus.EXPIRED})

STATUS_RANK: Dict[BindingStatus, int] = {
    BindingStatus.PENDING: 0,
    BindingStatus.DNS_CONFIGURED: 1,
    BindingStatus.SSL_PENDING: 2,
    BindingStatus.SSL_ISSUED: 3,
    BindingStatus.ACTIVE: 4,
    BindingStatus.FAILED: 5,
    BindingStatus.REMOVED: 6,
}

# Bindings the reconciliation poller keeps watching.
PROCESSING_STATUSES = frozenset({
    BindingStatus.PENDING,
    BindingStatus.DNS_CONFIGURED,
    BindingStatus.SSL_PENDING,
    BindingStatus.SSL_ISSUED,
})

# Bindings with no passive signal; these get an explicit status check.
CHECK_STATUSES = frozenset({BindingStatus.SSL_PENDING, BindingStatus.SSL_ISSUED})


def can_advance(current: BindingStatus, new: BindingStatus) -> bool:
    """True when moving from current to new does not regress."""
    return STATUS_RANK[new] >= STATUS_RANK[current]


@dataclass
class ErrorDetail:
    """The most recent failure recorded on a domain or binding."""

    code: ErrorCode
    message: str
    occurred_at: datetime = field(default_factory=_now)
    retry_after: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "occurred_at": self.occurred_at.isoformat(),
            "retry_after": _iso(self.retry_after),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ErrorDetail"]:
        if not data:
            return None
        return cls(
            code=ErrorCode(data["code"]),
            message=data.get("message", ""),
            occurred_at=_parse(data.get("occurred_at")) or _now(),
            retry_after=_parse(data.get("retry_after")),
        )


@dataclass
class Domain:
    """A customer-owned domain name and its DNS/TLS readiness."""

    fqdn: str
    account_id: str
    verification_host: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    record_type: RecordType = RecordType.TXT
    verification_token: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    dns_status: DnsStatus = DnsStatus.UNVERIFIED
    ssl_status: SslStatus = SslStatus.NONE
    created_at: datetime = field(default_factory=_now)
    verified_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    ssl_requested_at: Optional[datetime] = None
    ssl_expires_at: Optional[datetime] = None
    status_observed_at: Optional[datetime] = None
    ssl_job_id: Optional[str] = None
    error: Optional[ErrorDetail] = None

    @property
    def is_ready(self) -> bool:
        """DNS verified and certificate issued."""
        return (
            self.dns_status == DnsStatus.VERIFIED
            and self.ssl_status == SslStatus.ISSUED
        )

    def is_stale(self, observed_at: datetime) -> bool:
        """True when an issuer observation predates the newest one already applied."""
        return (
            self.status_observed_at is not None
            and observed_at < self.status_observed_at
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "fqdn": self.fqdn,
            "account_id": self.account_id,
            "verification_host": self.verification_host,
            "record_type": self.record_type.value,
            "verification_token": self.verification_token,
            "dns_status": self.dns_status.value,
            "ssl_status": self.ssl_status.value,
            "created_at": self.created_at.isoformat(),
            "verified_at": _iso(self.verified_at),
            "last_checked_at": _iso(self.last_checked_at),
            "ssl_requested_at": _iso(self.ssl_requested_at),
            "ssl_expires_at": _iso(self.ssl_expires_at),
            "status_observed_at": _iso(self.status_observed_at),
            "ssl_job_id": self.ssl_job_id,
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Domain":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            fqdn=data["fqdn"],
            account_id=data["account_id"],
            verification_host=data["verification_host"],
            record_type=RecordType(data.get("record_type", RecordType.TXT.value)),
            verification_token=data["verification_token"],
            dns_status=DnsStatus(data.get("dns_status", DnsStatus.UNVERIFIED.value)),
            ssl_status=SslStatus(data.get("ssl_status", SslStatus.NONE.value)),
            created_at=_parse(data.get("created_at")) or _now(),
            verified_at=_parse(data.get("verified_at")),
            last_checked_at=_parse(data.get("last_checked_at")),
            ssl_requested_at=_parse(data.get("ssl_requested_at")),
            ssl_expires_at=_parse(data.get("ssl_expires_at")),
            status_observed_at=_parse(data.get("status_observed_at")),
            ssl_job_id=data.get("ssl_job_id"),
            error=ErrorDetail.from_dict(data.get("error")),
        )

    def to_api_response(self) -> dict:
        """Convert to API response, hiding the token once verified."""
        resp = self.to_dict()
        resp.pop("status_observed_at")
        resp.pop("ssl_job_id")
        if self.dns_status == DnsStatus.VERIFIED:
            resp.pop("verification_token")
        return resp


@dataclass
class DomainPurposeBinding:
    """Attachment of a domain to one purpose for its owning account."""

    domain_id: str
    account_id: str
    purpose: Purpose
    target_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    active: bool = False
    status: BindingStatus = BindingStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    activated_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None
    error: Optional[ErrorDetail] = None

    @property
    def is_live(self) -> bool:
        return self.status != BindingStatus.REMOVED

    def advance(self, status: BindingStatus) -> bool:
        """Move to status if that does not regress. Returns True on change."""
        if status == self.status or not can_advance(self.status, status):
            return False
        self.status = status
        self.updated_at = _now()
        return True

    def reset(self, status: BindingStatus) -> None:
        """Explicit retry-triggered reset; bypasses monotonic ordering."""
        self.status = status
        self.active = False
        self.error = None
        self.updated_at = _now()

    def activate(self) -> None:
        now = _now()
        self.status = BindingStatus.ACTIVE
        self.active = True
        self.activated_at = now
        self.removed_at = None
        self.error = None
        self.updated_at = now

    def deactivate(self) -> None:
        now = _now()
        self.status = BindingStatus.REMOVED
        self.active = False
        self.removed_at = now
        self.updated_at = now

    def fail(self, error: ErrorDetail) -> None:
        self.status = BindingStatus.FAILED
        self.active = False
        self.error = error
        self.updated_at = _now()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "domain_id": self.domain_id,
            "account_id": self.account_id,
            "purpose": self.purpose.value,
            "target_id": self.target_id,
            "active": self.active,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "activated_at": _iso(self.activated_at),
            "removed_at": _iso(self.removed_at),
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DomainPurposeBinding":
        return cls(
            id=data["id"],
            domain_id=data["domain_id"],
            account_id=data["account_id"],
            purpose=Purpose(data["purpose"]),
            target_id=data.get("target_id"),
            active=data.get("active", False),
            status=BindingStatus(data.get("status", BindingStatus.PENDING.value)),
            created_at=_parse(data.get("created_at")) or _now(),
            updated_at=_parse(data.get("updated_at")) or _now(),
            activated_at=_parse(data.get("activated_at")),
            removed_at=_parse(data.get("removed_at")),
            error=ErrorDetail.from_dict(data.get("error")),
        )


class DependentKind(str, Enum):
    SHORT_URL = "short_url"
    LANDING_PAGE = "landing_page"


@dataclass
class Dependent:
    """A resource served under a domain that breaks if the domain goes away."""

    kind: DependentKind
    ref: str
    label: str = ""

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "ref": self.ref, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict) -> "Dependent":
        return cls(
            kind=DependentKind(data["kind"]),
            ref=data["ref"],
            label=data.get("label", ""),
        )
