"""
Tests for the certificate provisioning orchestrator.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from linkdomains.domains.errors import DomainError, ErrorCode
from linkdomains.domains.models import BindingStatus, DnsStatus, Purpose, SslStatus
from linkdomains.domains.ssl import IssuanceResult

from conftest import ACCOUNT, assert_code, make_ready, settle


async def _verified(service, fqdn="shop.example.com", purpose=Purpose.LANDING):
    view = await service.add(ACCOUNT, fqdn, purpose)
    service.verifier.publish(fqdn)
    await service.verify(ACCOUNT, view["id"])
    return view["id"]


class TestStart:
    @pytest.mark.asyncio
    async def test_retry_before_dns_verified(self, service):
        view = await service.add(ACCOUNT, "shop.example.com", Purpose.LANDING)
        with pytest.raises(DomainError) as exc_info:
            await service.retry(ACCOUNT, view["id"])
        assert_code(exc_info, ErrorCode.INVALID_RETRY_STATE)
        assert service.issuer.calls == []

    @pytest.mark.asyncio
    async def test_retry_starts_job(self, service):
        domain_id = await _verified(service)
        service.issuer.hold = True

        view = await service.retry(ACCOUNT, domain_id)
        assert view["ssl_status"] == "pending"
        assert view["ssl_requested_at"] is not None
        assert view["bindings"][0]["status"] == "ssl_pending"
        assert service.orchestrator.is_issuing(domain_id)

        await settle()
        assert service.issuer.calls == ["shop.example.com"]

        service.issuer.gate.set()
        await service.orchestrator.wait(domain_id)
        domain = await service.registry.get_domain(domain_id)
        assert domain.ssl_status == SslStatus.ISSUED
        assert domain.ssl_expires_at is not None
        bindings = await service.registry.list_bindings(domain_id)
        assert bindings[0].status == BindingStatus.SSL_ISSUED
        assert not bindings[0].active
        assert not service.orchestrator.is_issuing(domain_id)

    @pytest.mark.asyncio
    async def test_concurrent_retries_accept_exactly_one(self, service):
        domain_id = await _verified(service)
        service.issuer.hold = True

        results = await asyncio.gather(
            service.retry(ACCOUNT, domain_id),
            service.retry(ACCOUNT, domain_id),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, DomainError)]
        accepted = [r for r in results if isinstance(r, dict)]
        assert len(accepted) == 1
        assert len(errors) == 1
        assert errors[0].code == ErrorCode.SSL_PROCESS_BUSY

        await settle()
        assert len(service.issuer.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_while_running_leaves_state_unchanged(self, service):
        domain_id = await _verified(service)
        service.issuer.hold = True
        await service.retry(ACCOUNT, domain_id)

        before = (await service.registry.get_domain(domain_id)).to_dict()
        with pytest.raises(DomainError) as exc_info:
            await service.retry(ACCOUNT, domain_id)
        assert_code(exc_info, ErrorCode.SSL_PROCESS_BUSY)
        assert (await service.registry.get_domain(domain_id)).to_dict() == before

    @pytest.mark.asyncio
    async def test_busy_during_cooldown(self, service):
        domain_id = await _verified(service)
        service.guard.cooldown = 10
        service.issuer.result = IssuanceResult.failure(ErrorCode.SSL_TIMEOUT, "timed out")

        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)
        assert (await service.registry.get_domain(domain_id)).ssl_status == SslStatus.FAILED

        with pytest.raises(DomainError) as exc_info:
            await service.retry(ACCOUNT, domain_id)
        assert_code(exc_info, ErrorCode.SSL_PROCESS_BUSY)

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, service):
        domain_id = await _verified(service)
        service.issuer.result = IssuanceResult.failure(
            ErrorCode.SSL_VALIDATION_FAILED, "challenge failed"
        )
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)

        domain = await service.registry.get_domain(domain_id)
        assert domain.ssl_status == SslStatus.FAILED
        assert domain.error.code == ErrorCode.SSL_VALIDATION_FAILED
        binding = (await service.registry.list_bindings(domain_id))[0]
        assert binding.status == BindingStatus.FAILED
        assert binding.error.code == ErrorCode.SSL_VALIDATION_FAILED

        service.issuer.result = None
        await service.retry(ACCOUNT, domain_id)
        binding = (await service.registry.list_bindings(domain_id))[0]
        assert binding.status == BindingStatus.SSL_PENDING
        assert binding.error is None
        await service.orchestrator.wait(domain_id)
        assert (await service.registry.get_domain(domain_id)).ssl_status == SslStatus.ISSUED

    @pytest.mark.asyncio
    async def test_rate_limit_blocks_retry_until_retry_after(self, service):
        domain_id = await _verified(service)
        retry_after = datetime.now(timezone.utc) + timedelta(hours=2)
        service.issuer.result = IssuanceResult.failure(
            ErrorCode.SSL_RATE_LIMIT, "rate limited", retry_after=retry_after
        )
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)

        with pytest.raises(DomainError) as exc_info:
            await service.retry(ACCOUNT, domain_id)
        assert_code(exc_info, ErrorCode.SSL_RATE_LIMIT)
        assert exc_info.value.details["retry_after"] == retry_after.isoformat()

        domain = await service.registry.get_domain(domain_id)
        domain.error.retry_after = datetime.now(timezone.utc) - timedelta(seconds=1)
        await service.registry.save_domain(domain)
        service.issuer.result = None
        view = await service.retry(ACCOUNT, domain_id)
        assert view["ssl_status"] == "pending"

    @pytest.mark.asyncio
    async def test_rate_limit_without_date_uses_cooldown(self, service):
        domain_id = await _verified(service)
        service.issuer.result = IssuanceResult.failure(ErrorCode.SSL_RATE_LIMIT, "rate limited")
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)

        with pytest.raises(DomainError) as exc_info:
            await service.retry(ACCOUNT, domain_id)
        assert_code(exc_info, ErrorCode.SSL_RATE_LIMIT)

    @pytest.mark.asyncio
    async def test_retry_when_already_issued(self, service):
        view = await make_ready(service, "shop.example.com")
        with pytest.raises(DomainError) as exc_info:
            await service.retry(ACCOUNT, view["id"])
        assert_code(exc_info, ErrorCode.INVALID_RETRY_STATE)

    @pytest.mark.asyncio
    async def test_issuer_crash_becomes_failure(self, service):
        domain_id = await _verified(service)

        async def boom(fqdn, job_id=None):
            raise RuntimeError("certbot exploded")

        service.issuer.issue = boom
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)

        domain = await service.registry.get_domain(domain_id)
        assert domain.ssl_status == SslStatus.FAILED
        assert domain.error.code == ErrorCode.SSL_GENERATION_FAILED
        assert "certbot exploded" in domain.error.message


class TestRecordResult:
    @pytest.mark.asyncio
    async def test_job_id_reaches_issuer(self, service):
        domain_id = await _verified(service)
        service.issuer.hold = True
        await service.retry(ACCOUNT, domain_id)
        await settle()

        domain = await service.registry.get_domain(domain_id)
        assert domain.ssl_job_id
        assert service.issuer.job_ids == [domain.ssl_job_id]

    @pytest.mark.asyncio
    async def test_superseded_job_result_ignored(self, service):
        domain_id = await _verified(service)
        service.issuer.result = IssuanceResult.failure(ErrorCode.SSL_TIMEOUT, "timed out")
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)
        first_job = service.issuer.job_ids[0]

        service.issuer.result = None
        service.issuer.hold = True
        await service.retry(ACCOUNT, domain_id)
        await settle()
        second_job = service.issuer.job_ids[1]
        assert second_job != first_job

        late = IssuanceResult(success=True, message="old job", job_id=first_job)
        assert not await service.orchestrator.record_result(domain_id, late)
        assert (await service.registry.get_domain(domain_id)).ssl_status == SslStatus.PENDING

        current = IssuanceResult(success=True, message="current job", job_id=second_job)
        assert await service.orchestrator.record_result(domain_id, current)
        assert (await service.registry.get_domain(domain_id)).ssl_status == SslStatus.ISSUED

    @pytest.mark.asyncio
    async def test_issuer_clock_behind_ours(self, service):
        domain_id = await _verified(service)
        service.issuer.result = IssuanceResult.failure(ErrorCode.SSL_TIMEOUT, "timed out")
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)

        # The issuer's clock lags ours by an hour
        service.issuer.result = IssuanceResult(
            success=True,
            message="issued",
            observed_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)

        domain = await service.registry.get_domain(domain_id)
        assert domain.ssl_status == SslStatus.ISSUED
        binding = (await service.registry.list_bindings(domain_id))[0]
        assert binding.status == BindingStatus.SSL_ISSUED

    @pytest.mark.asyncio
    async def test_issuer_busy_keeps_domain_pending(self, service):
        domain_id = await _verified(service)
        service.issuer.result = IssuanceResult.failure(
            ErrorCode.SSL_PROCESS_BUSY, "Certificate job already running for shop.example.com"
        )
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)

        domain = await service.registry.get_domain(domain_id)
        assert domain.ssl_status == SslStatus.PENDING
        assert domain.error.code == ErrorCode.SSL_PROCESS_BUSY
        assert domain.ssl_job_id is None
        binding = (await service.registry.list_bindings(domain_id))[0]
        assert binding.status == BindingStatus.SSL_PENDING
        assert binding.error is None
        assert domain_id in service.poller.watched

        # The issuer's own job finishes and pushes its result
        applied = await service.record_completion(
            "shop.example.com",
            IssuanceResult(success=True, message="pushed", job_id="host-side-job"),
        )
        assert applied
        domain = await service.registry.get_domain(domain_id)
        assert domain.ssl_status == SslStatus.ISSUED
        assert domain.error is None
        binding = (await service.registry.list_bindings(domain_id))[0]
        assert binding.status == BindingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_issuer_busy_then_status_check_applies(self, service):
        domain_id = await _verified(service)
        service.issuer.result = IssuanceResult.failure(ErrorCode.SSL_PROCESS_BUSY, "busy")
        await service.retry(ACCOUNT, domain_id)
        await service.orchestrator.wait(domain_id)

        service.issuer.state_status = SslStatus.ISSUED
        await service.poller.tick()
        binding = (await service.registry.list_bindings(domain_id))[0]
        assert binding.status == BindingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_result_for_idle_domain_ignored(self, service):
        domain_id = await _verified(service)
        result = IssuanceResult(success=True, message="unexpected")
        assert not await service.orchestrator.record_result(domain_id, result)
        domain = await service.registry.get_domain(domain_id)
        assert domain.ssl_status == SslStatus.NONE
        assert domain.dns_status == DnsStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_result_by_fqdn(self, service):
        domain_id = await _verified(service)
        service.issuer.hold = True
        await service.retry(ACCOUNT, domain_id)

        applied = await service.orchestrator.record_result_for_fqdn(
            "shop.example.com", IssuanceResult(success=True, message="pushed")
        )
        assert applied
        assert (await service.registry.get_domain(domain_id)).ssl_status == SslStatus.ISSUED
        assert not await service.orchestrator.record_result_for_fqdn(
            "unknown.example.com", IssuanceResult(success=True, message="pushed")
        )
