"""
Tests for the domain data model and error taxonomy.
"""

from datetime import datetime, timedelta, timezone

from linkdomains.domains.errors import (
    ERROR_CATEGORIES,
    DomainError,
    ErrorCategory,
    ErrorCode,
)
from linkdomains.domains.models import (
    SSL_TRANSITIONS,
    STATUS_RANK,
    BindingStatus,
    Dependent,
    DependentKind,
    DnsStatus,
    Domain,
    DomainPurposeBinding,
    ErrorDetail,
    Purpose,
    SslStatus,
    can_advance,
)


class TestTables:
    def test_status_rank_covers_every_binding_status(self):
        assert set(STATUS_RANK) == set(BindingStatus)

    def test_status_rank_follows_lifecycle_order(self):
        order = [
            BindingStatus.PENDING,
            BindingStatus.DNS_CONFIGURED,
            BindingStatus.SSL_PENDING,
            BindingStatus.SSL_ISSUED,
            BindingStatus.ACTIVE,
        ]
        ranks = [STATUS_RANK[s] for s in order]
        assert ranks == sorted(ranks)

    def test_ssl_transitions_cover_every_ssl_status(self):
        assert set(SSL_TRANSITIONS) == set(SslStatus)

    def test_every_error_code_has_a_category(self):
        assert set(ERROR_CATEGORIES) == set(ErrorCode)

    def test_domain_error_category(self):
        err = DomainError(ErrorCode.SSL_RATE_LIMIT, "slow down")
        assert err.category == ErrorCategory.RATE_LIMIT
        assert err.details == {}
        assert str(err) == "slow down"


class TestDomainModel:
    def test_creation_defaults(self):
        domain = Domain(
            fqdn="shop.example.com",
            account_id="acct-1",
            verification_host="_linkdomains-verification",
        )
        assert domain.dns_status == DnsStatus.UNVERIFIED
        assert domain.ssl_status == SslStatus.NONE
        assert len(domain.verification_token) > 0
        assert domain.error is None
        assert not domain.is_ready
        assert isinstance(domain.created_at, datetime)

    def test_unique_tokens_and_ids(self):
        d1 = Domain(fqdn="a.example.com", account_id="a", verification_host="_v")
        d2 = Domain(fqdn="b.example.com", account_id="a", verification_host="_v")
        assert d1.verification_token != d2.verification_token
        assert d1.id != d2.id

    def test_serialization_with_dates_and_error(self):
        now = datetime.now(timezone.utc)
        domain = Domain(
            fqdn="shop.example.com",
            account_id="acct-1",
            verification_host="_linkdomains-verification",
            dns_status=DnsStatus.VERIFIED,
            ssl_status=SslStatus.FAILED,
            verified_at=now,
            ssl_expires_at=now + timedelta(days=90),
            status_observed_at=now,
            error=ErrorDetail(
                ErrorCode.SSL_RATE_LIMIT,
                "rate limited",
                retry_after=now + timedelta(hours=1),
            ),
        )
        restored = Domain.from_dict(domain.to_dict())

        assert restored.id == domain.id
        assert restored.verification_token == domain.verification_token
        assert restored.dns_status == DnsStatus.VERIFIED
        assert restored.ssl_status == SslStatus.FAILED
        assert restored.verified_at == now
        assert restored.status_observed_at == now
        assert restored.error.code == ErrorCode.SSL_RATE_LIMIT
        assert restored.error.retry_after == now + timedelta(hours=1)

    def test_api_response_hides_token_when_verified(self):
        domain = Domain(
            fqdn="shop.example.com",
            account_id="acct-1",
            verification_host="_v",
            dns_status=DnsStatus.VERIFIED,
        )
        resp = domain.to_api_response()
        assert "verification_token" not in resp
        assert "status_observed_at" not in resp
        assert "ssl_job_id" not in resp
        assert resp["dns_status"] == "verified"

    def test_api_response_shows_token_when_unverified(self):
        domain = Domain(fqdn="shop.example.com", account_id="a", verification_host="_v")
        assert domain.to_api_response()["verification_token"] == domain.verification_token

    def test_is_stale(self):
        now = datetime.now(timezone.utc)
        domain = Domain(fqdn="a.example.com", account_id="a", verification_host="_v")
        assert not domain.is_stale(now - timedelta(days=1))

        domain.status_observed_at = now
        assert domain.is_stale(now - timedelta(seconds=1))
        assert not domain.is_stale(now)
        assert not domain.is_stale(now + timedelta(seconds=1))


class TestBinding:
    def _binding(self):
        return DomainPurposeBinding(
            domain_id="d1", account_id="acct-1", purpose=Purpose.LANDING
        )

    def test_advance_never_regresses(self):
        binding = self._binding()
        assert binding.advance(BindingStatus.SSL_PENDING)
        assert not binding.advance(BindingStatus.DNS_CONFIGURED)
        assert binding.status == BindingStatus.SSL_PENDING
        assert not binding.advance(BindingStatus.SSL_PENDING)

    def test_can_advance(self):
        assert can_advance(BindingStatus.PENDING, BindingStatus.ACTIVE)
        assert not can_advance(BindingStatus.ACTIVE, BindingStatus.SSL_ISSUED)

    def test_reset_bypasses_ordering(self):
        binding = self._binding()
        binding.fail(ErrorDetail(ErrorCode.SSL_TIMEOUT, "timeout"))
        binding.reset(BindingStatus.SSL_PENDING)
        assert binding.status == BindingStatus.SSL_PENDING
        assert binding.error is None
        assert not binding.active

    def test_activate_and_deactivate(self):
        binding = self._binding()
        binding.activate()
        assert binding.active
        assert binding.status == BindingStatus.ACTIVE
        assert binding.activated_at is not None
        assert binding.is_live

        binding.deactivate()
        assert not binding.active
        assert binding.status == BindingStatus.REMOVED
        assert binding.removed_at is not None
        assert not binding.is_live

    def test_serialization_roundtrip(self):
        binding = self._binding()
        binding.target_id = "landing-42"
        binding.activate()
        restored = DomainPurposeBinding.from_dict(binding.to_dict())
        assert restored.id == binding.id
        assert restored.purpose == Purpose.LANDING
        assert restored.target_id == "landing-42"
        assert restored.active
        assert restored.status == BindingStatus.ACTIVE


class TestDependent:
    def test_roundtrip(self):
        dep = Dependent(DependentKind.SHORT_URL, "abc123", "Spring sale")
        assert Dependent.from_dict(dep.to_dict()) == dep
