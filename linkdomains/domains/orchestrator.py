"""
Certificate provisioning orchestrator.

At most one issuance job is in flight per domain; a concurrent request
is rejected rather than queued.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

from .errors import DomainError, ErrorCode
from .guard import DomainLocks, InFlightGuard
from .models import (
    BindingStatus,
    DnsStatus,
    Domain,
    DomainPurposeBinding,
    ErrorDetail,
    Purpose,
    SslStatus,
)
from .registry import DomainRegistry
from .ssl import CertificateIssuer, IssuanceResult

logger = logging.getLogger("linkdomains.domains.orchestrator")

# Binding statuses a (re)started job moves to ssl_pending.
_RESETTABLE = frozenset({
    BindingStatus.DNS_CONFIGURED,
    BindingStatus.SSL_PENDING,
    BindingStatus.FAILED,
})


class CertificateOrchestrator:
    """Starts issuance jobs and applies their results."""

    OPERATION = "issue"

    def __init__(
        self,
        registry: DomainRegistry,
        issuer: CertificateIssuer,
        guard: InFlightGuard,
        locks: DomainLocks,
        rate_limit_cooldown: int = 3600,
    ):
        self.registry = registry
        self.issuer = issuer
        self.guard = guard
        self.locks = locks
        self.rate_limit_cooldown = rate_limit_cooldown
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cleanup_tasks: Set[asyncio.Task] = set()

    def _key(self, domain_id: str) -> str:
        return self.guard.key(self.OPERATION, domain_id)

    def is_issuing(self, domain_id: str) -> bool:
        return self.guard.is_running(self._key(domain_id))

    def _check_rate_limit(self, domain: Domain) -> None:
        error = domain.error
        if not error or error.code != ErrorCode.SSL_RATE_LIMIT:
            return
        until = error.retry_after or (
            error.occurred_at + timedelta(seconds=self.rate_limit_cooldown)
        )
        if datetime.now(timezone.utc) < until:
            raise DomainError(
                ErrorCode.SSL_RATE_LIMIT,
                f"Certificate authority rate limit for {domain.fqdn}; "
                f"retry after {until.isoformat()}",
                {"retry_after": until.isoformat()},
            )

    def _check_retry_state(
        self,
        domain: Domain,
        bindings: List[DomainPurposeBinding],
        purpose: Optional[Purpose],
    ) -> None:
        if domain.dns_status != DnsStatus.VERIFIED:
            raise DomainError(
                ErrorCode.INVALID_RETRY_STATE,
                f"DNS for {domain.fqdn} must be verified before a certificate "
                f"can be issued",
            )

        live = [b for b in bindings if b.is_live]
        targets = [b for b in live if purpose is None or b.purpose == purpose]
        if targets and all(b.active for b in targets):
            raise DomainError(
                ErrorCode.INVALID_RETRY_STATE,
                f"{domain.fqdn} is already active",
            )

        if domain.ssl_status == SslStatus.ISSUED:
            raise DomainError(
                ErrorCode.INVALID_RETRY_STATE,
                f"Certificate for {domain.fqdn} is already issued; "
                f"check status to activate",
            )

        self._check_rate_limit(domain)

    async def start(
        self, domain_id: str, purpose: Optional[Purpose] = None
    ) -> Domain:
        """
        Start or restart certificate issuance for a domain.

        Returns once the job is accepted; completion is observed later
        through record_result or a status check.
        """
        async with self.locks(domain_id):
            domain = await self.registry.get_domain(domain_id)
            if not domain:
                raise DomainError(ErrorCode.DOMAIN_NOT_FOUND, "Domain not found")

            bindings = await self.registry.list_bindings(domain_id)
            self._check_retry_state(domain, bindings, purpose)

            key = self._key(domain_id)
            if not self.guard.acquire(key):
                raise DomainError(
                    ErrorCode.SSL_PROCESS_BUSY,
                    f"A certificate job for {domain.fqdn} is already running",
                )

            try:
                now = datetime.now(timezone.utc)
                domain.ssl_status = SslStatus.PENDING
                domain.ssl_requested_at = now
                domain.ssl_job_id = uuid.uuid4().hex
                domain.error = None
                await self.registry.save_domain(domain)

                for binding in bindings:
                    if binding.is_live and binding.status in _RESETTABLE:
                        binding.reset(BindingStatus.SSL_PENDING)
                        await self.registry.save_binding(binding)
            except Exception:
                self.guard.release(key, cooldown=0)
                raise

            self._tasks[domain_id] = asyncio.create_task(
                self._run_job(domain_id, domain.fqdn, key, domain.ssl_job_id)
            )

        logger.info(f"Certificate job accepted for {domain.fqdn}")
        return domain

    async def _run_job(self, domain_id: str, fqdn: str, key: str, job_id: str) -> None:
        try:
            try:
                result = await self.issuer.issue(fqdn, job_id=job_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Issuer crashed for {fqdn}")
                result = IssuanceResult.failure(
                    ErrorCode.SSL_GENERATION_FAILED, f"SSL provisioning error: {e}"
                )
            result.job_id = job_id
            await self.record_result(domain_id, result)
        except asyncio.CancelledError:
            logger.info(f"Stopped waiting on certificate job for {fqdn}")
            raise
        except Exception:
            logger.exception(f"Failed to record certificate result for {fqdn}")
        finally:
            self._tasks.pop(domain_id, None)
            self.guard.release(key)

    async def record_result(self, domain_id: str, result: IssuanceResult) -> bool:
        """
        Apply a finished job. Returns False when the result answers a
        superseded job or the domain is no longer waiting on a certificate.

        Results are matched to jobs by id, never by timestamp: the issuer's
        clock is not ours.
        """
        async with self.locks(domain_id):
            domain = await self.registry.get_domain(domain_id)
            if not domain:
                return False

            if domain.ssl_status != SslStatus.PENDING:
                logger.debug(
                    f"Ignoring certificate result for {domain.fqdn} "
                    f"in state {domain.ssl_status.value}"
                )
                return False
            if result.job_id and domain.ssl_job_id and result.job_id != domain.ssl_job_id:
                logger.info(
                    f"Ignoring result of superseded job {result.job_id} for {domain.fqdn}"
                )
                return False

            domain.last_checked_at = datetime.now(timezone.utc)

            if not result.success and result.code == ErrorCode.SSL_PROCESS_BUSY:
                # The issuer is already working on this name; wait for that job
                domain.error = ErrorDetail(ErrorCode.SSL_PROCESS_BUSY, result.message)
                domain.ssl_job_id = None
                await self.registry.save_domain(domain)
                logger.info(f"Issuer busy for {domain.fqdn}; waiting on its running job")
                return True

            bindings = await self.registry.list_bindings(domain_id)

            if result.success:
                domain.ssl_status = SslStatus.ISSUED
                domain.ssl_expires_at = result.expires_at
                domain.error = None
                for binding in bindings:
                    if binding.is_live and binding.advance(BindingStatus.SSL_ISSUED):
                        await self.registry.save_binding(binding)
                logger.info(f"Certificate issued for {domain.fqdn}")
            else:
                error = ErrorDetail(
                    code=result.code or ErrorCode.SSL_GENERATION_FAILED,
                    message=result.message,
                    retry_after=result.retry_after,
                )
                domain.ssl_status = SslStatus.FAILED
                domain.error = error
                for binding in bindings:
                    if binding.is_live and not binding.active:
                        binding.fail(error)
                        await self.registry.save_binding(binding)
                logger.warning(
                    f"Certificate failed for {domain.fqdn}: "
                    f"{error.code.value}: {error.message}"
                )

            await self.registry.save_domain(domain)
        return True

    async def record_result_for_fqdn(self, fqdn: str, result: IssuanceResult) -> bool:
        """Apply a result pushed by the provisioning host, keyed by name."""
        domain = await self.registry.get_verified_by_fqdn(fqdn)
        if not domain:
            logger.warning(f"Certificate result for unknown domain {fqdn}")
            return False
        return await self.record_result(domain.id, result)

    async def wait(self, domain_id: str) -> None:
        """Wait for the local job of domain_id to finish, if one is running."""
        task = self._tasks.get(domain_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def schedule_revoke(self, fqdn: str) -> None:
        """Fire-and-forget certificate cleanup after a hard delete."""
        async def _cleanup_cert():
            ok, msg = await self.issuer.revoke(fqdn)
            if not ok:
                logger.warning(f"Cert cleanup failed for {fqdn}: {msg}")

        task = asyncio.create_task(_cleanup_cert())
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def close(self) -> None:
        """
        Stop waiting on local job tasks. Jobs on an external provisioning
        host keep running and are picked up by a later status check.
        """
        tasks = list(self._tasks.values()) + list(self._cleanup_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.issuer.close()
