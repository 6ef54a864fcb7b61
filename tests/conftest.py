"""
Pytest configuration for linkdomains tests.
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set

import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment variables
os.environ["LINKDOMAINS_DEBUG"] = "true"
os.environ["LINKDOMAINS_USE_REDIS"] = "false"
os.environ["LINKDOMAINS_JWT_SECRET"] = "test-jwt-secret"
os.environ["LINKDOMAINS_PROVISIONING_SECRET"] = "test-vps-secret"

from linkdomains.config import Settings  # noqa: E402
from linkdomains.domains.errors import DomainError, ErrorCode  # noqa: E402
from linkdomains.domains.models import Domain, Purpose, SslStatus  # noqa: E402
from linkdomains.domains.registry import DomainRegistry  # noqa: E402
from linkdomains.domains.service import DomainService  # noqa: E402
from linkdomains.domains.ssl import (  # noqa: E402
    CertificateIssuer,
    CertificateState,
    IssuanceResult,
)
from linkdomains.domains.verification import (  # noqa: E402
    DomainVerifier,
    RecordCheck,
)

ACCOUNT = "acct-1"
OTHER_ACCOUNT = "acct-2"


class FakeIssuer(CertificateIssuer):
    """Issuer whose jobs complete when the test says so."""

    def __init__(self):
        self.calls: List[str] = []
        self.revoked: List[str] = []
        self.job_ids: List[Optional[str]] = []
        self.hold = False
        self.gate = asyncio.Event()
        self.result: Optional[IssuanceResult] = None
        self.state_status = SslStatus.NONE
        self.state_expires_at: Optional[datetime] = None
        self.status_error: Optional[Exception] = None

    async def issue(self, fqdn: str, job_id: Optional[str] = None) -> IssuanceResult:
        self.calls.append(fqdn)
        self.job_ids.append(job_id)
        if self.hold:
            await self.gate.wait()
        if self.result is not None:
            return self.result
        return IssuanceResult(
            success=True,
            message=f"Certificate provisioned for {fqdn}",
            expires_at=datetime.now(timezone.utc) + timedelta(days=90),
        )

    async def status(self, fqdn: str) -> CertificateState:
        if self.status_error is not None:
            raise self.status_error
        return CertificateState(
            status=self.state_status,
            expires_at=self.state_expires_at,
        )

    async def revoke(self, fqdn: str) -> tuple:
        self.revoked.append(fqdn)
        return True, f"Certificate deleted for {fqdn}"


class FakeVerifier(DomainVerifier):
    """Verifier that passes for names the test has 'published'."""

    def __init__(self):
        super().__init__(service_ip="203.0.113.10", service_hostname="vps.linkdomains.test")
        self.published: Set[str] = set()
        self.error: Optional[DomainError] = None
        self.calls = 0

    def publish(self, fqdn: str) -> None:
        self.published.add(fqdn)

    async def verify(self, domain: Domain) -> List[RecordCheck]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        ok = domain.fqdn in self.published
        return [
            RecordCheck(
                record_type="TXT",
                record_name=domain.verification_host,
                expected=domain.verification_token,
                found=[domain.verification_token] if ok else [],
                ok=ok,
            ),
            RecordCheck(
                record_type="A",
                record_name="@",
                expected=self.service_ip,
                found=[self.service_ip] if ok else [],
                ok=ok,
            ),
        ]


def make_settings(**overrides) -> Settings:
    values = dict(
        use_redis=False,
        debug=True,
        base_domain="linkdomains.test",
        service_ip="203.0.113.10",
        service_hostname="vps.linkdomains.test",
        jwt_secret="test-jwt-secret",
        provisioning_secret="test-vps-secret",
        poll_interval=3600,
        retry_cooldown=0,
        max_domains_per_account=5,
    )
    values.update(overrides)
    return Settings(**values)


def build_service(settings: Settings, verifier, issuer) -> DomainService:
    registry = DomainRegistry(
        use_redis=False,
        base_domain=settings.base_domain,
        max_domains_per_account=settings.max_domains_per_account,
    )
    return DomainService(settings, registry, verifier, issuer)


async def settle() -> None:
    """Let fire-and-forget tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


async def make_ready(
    service: DomainService,
    fqdn: str,
    purpose: Purpose = Purpose.LANDING,
    account_id: str = ACCOUNT,
    target_id: Optional[str] = None,
) -> dict:
    """Drive a domain from add to an active binding."""
    view = await service.add(account_id, fqdn, purpose, target_id=target_id)
    service.verifier.publish(view["fqdn"])
    await service.verify(account_id, view["id"])
    await service.retry(account_id, view["id"])
    await service.orchestrator.wait(view["id"])
    service.issuer.state_status = SslStatus.ISSUED
    result = await service.check_status(account_id, view["id"])
    return result["domain"]


@pytest.fixture
def test_settings():
    """Provide test settings."""
    return make_settings()


@pytest.fixture
def fake_issuer():
    return FakeIssuer()


@pytest.fixture
def fake_verifier():
    return FakeVerifier()


@pytest.fixture
def domain_registry():
    """In-memory domain registry (no Redis)."""
    return DomainRegistry(
        use_redis=False,
        base_domain="linkdomains.test",
        max_domains_per_account=5,
    )


@pytest_asyncio.fixture
async def service(test_settings, fake_verifier, fake_issuer):
    svc = build_service(test_settings, fake_verifier, fake_issuer)
    yield svc
    fake_issuer.gate.set()
    await svc.close()


def assert_code(exc_info, code: ErrorCode) -> None:
    assert exc_info.value.code == code, exc_info.value.message
