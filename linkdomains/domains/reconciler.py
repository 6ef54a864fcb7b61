"""
Status reconciliation: bridges asynchronous external completion (DNS
propagation, certificate issuance) into observable binding status.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from .activation import account_lock_key
from .errors import DomainError, ErrorCode
from .guard import DomainLocks, InFlightGuard
from .models import (
    CHECK_STATUSES,
    PROCESSING_STATUSES,
    BindingStatus,
    DnsStatus,
    Domain,
    DomainPurposeBinding,
    ErrorDetail,
    SslStatus,
)
from .orchestrator import CertificateOrchestrator
from .registry import DomainRegistry
from .ssl import CertificateIssuer, CertificateState
from .verification import VerificationEngine

logger = logging.getLogger("linkdomains.domains.reconciler")


def _snapshot(domain: Domain, bindings: List[DomainPurposeBinding]) -> tuple:
    return (
        domain.dns_status,
        domain.ssl_status,
        tuple((b.id, b.status, b.active) for b in bindings),
    )


class StatusReconciler:
    """Forces an authoritative re-evaluation of one domain."""

    OPERATION = "check"

    def __init__(
        self,
        registry: DomainRegistry,
        verification: VerificationEngine,
        orchestrator: CertificateOrchestrator,
        issuer: CertificateIssuer,
        guard: InFlightGuard,
        locks: DomainLocks,
    ):
        self.registry = registry
        self.verification = verification
        self.orchestrator = orchestrator
        self.issuer = issuer
        self.guard = guard
        self.locks = locks
        self._apply: Dict[SslStatus, Callable] = {
            SslStatus.NONE: self._apply_none,
            SslStatus.PENDING: self._apply_none,
            SslStatus.ISSUED: self._apply_issued,
            SslStatus.FAILED: self._apply_failed,
            SslStatus.EXPIRED: self._apply_expired,
        }

    def is_checking(self, domain_id: str) -> bool:
        """A check is running or cooling down for domain_id."""
        return self.guard.is_held(self.guard.key(self.OPERATION, domain_id))

    async def check_status(self, domain_id: str, cooldown: Optional[float] = None) -> dict:
        """
        Re-check DNS and certificate state and promote bindings.

        The check stays marked for the guard's cool-down afterwards unless
        cooldown overrides it. Returns {"status": "updated"|"unchanged",
        "message": ...}.
        """
        busy = DomainError(
            ErrorCode.CHECK_IN_PROGRESS,
            "A status check for this domain is already running",
        )
        key = self.guard.key(self.OPERATION, domain_id)
        async with self.guard.hold(key, busy, cooldown=cooldown):
            domain = await self.registry.get_domain(domain_id)
            if not domain:
                raise DomainError(ErrorCode.DOMAIN_NOT_FOUND, "Domain not found")
            before = _snapshot(domain, await self.registry.list_bindings(domain_id))

            if domain.dns_status == DnsStatus.UNVERIFIED:
                try:
                    domain, _ = await self.verification.verify(domain_id)
                except DomainError as e:
                    if e.code != ErrorCode.DNS_VERIFICATION_FAILED:
                        raise
                    return {"status": "unchanged", "message": e.message}

            if domain.ssl_status in (SslStatus.PENDING, SslStatus.ISSUED):
                state = await self.issuer.status(domain.fqdn)
                await self.apply_state(domain_id, state)

            await self.promote(domain_id)

            domain = await self.registry.get_domain(domain_id)
            bindings = await self.registry.list_bindings(domain_id)
            if _snapshot(domain, bindings) == before:
                return {"status": "unchanged", "message": "No changes detected"}
            return {"status": "updated", "message": self._describe(domain, bindings)}

    @staticmethod
    def _describe(domain: Domain, bindings: List[DomainPurposeBinding]) -> str:
        statuses = ", ".join(f"{b.purpose.value}={b.status.value}" for b in bindings)
        return f"{domain.fqdn} updated: {statuses}"

    async def apply_state(self, domain_id: str, state: CertificateState) -> bool:
        """
        Apply an authoritative certificate observation.

        Observations older than the newest one already applied are dropped.
        """
        async with self.locks(domain_id):
            domain = await self.registry.get_domain(domain_id)
            if not domain:
                return False
            if domain.is_stale(state.observed_at):
                logger.info(f"Dropping stale certificate observation for {domain.fqdn}")
                return False

            now = datetime.now(timezone.utc)
            domain.last_checked_at = now
            status = state.status
            if status == SslStatus.ISSUED and state.expires_at and state.expires_at <= now:
                status = SslStatus.EXPIRED

            bindings = await self.registry.list_bindings(domain_id)
            changed = await self._apply[status](domain, bindings, state)
            domain.status_observed_at = state.observed_at
            await self.registry.save_domain(domain)
            return changed

    async def _apply_none(self, domain, bindings, state) -> bool:
        return False

    async def _apply_issued(self, domain, bindings, state) -> bool:
        if domain.ssl_status == SslStatus.ISSUED:
            domain.ssl_expires_at = state.expires_at or domain.ssl_expires_at
            return False
        if domain.ssl_status != SslStatus.PENDING:
            return False

        domain.ssl_status = SslStatus.ISSUED
        domain.ssl_expires_at = state.expires_at
        domain.error = None
        for binding in bindings:
            if binding.is_live and binding.advance(BindingStatus.SSL_ISSUED):
                await self.registry.save_binding(binding)
        logger.info(f"Certificate for {domain.fqdn} observed as issued")
        return True

    async def _apply_failed(self, domain, bindings, state) -> bool:
        if domain.ssl_status != SslStatus.PENDING or self.orchestrator.is_issuing(domain.id):
            return False

        error = ErrorDetail(ErrorCode.SSL_GENERATION_FAILED, state.message or "Issuance failed")
        domain.ssl_status = SslStatus.FAILED
        domain.error = error
        for binding in bindings:
            if binding.is_live and not binding.active:
                binding.fail(error)
                await self.registry.save_binding(binding)
        return True

    async def _apply_expired(self, domain, bindings, state) -> bool:
        if domain.ssl_status != SslStatus.ISSUED:
            return False

        error = ErrorDetail(
            ErrorCode.SSL_EXPIRED,
            f"Certificate for {domain.fqdn} expired; retry to reissue",
        )
        domain.ssl_status = SslStatus.EXPIRED
        domain.ssl_expires_at = state.expires_at or domain.ssl_expires_at
        domain.error = error
        for binding in bindings:
            if binding.is_live:
                binding.fail(error)
                await self.registry.save_binding(binding)
        logger.warning(error.message)
        return True

    async def promote(self, domain_id: str) -> bool:
        """Activate bindings whose domain is DNS-verified and certificate-issued."""
        changed = False
        async with self.locks(domain_id):
            domain = await self.registry.get_domain(domain_id)
            if not domain or not domain.is_ready:
                return False

            for binding in await self.registry.list_bindings(domain_id):
                if binding.status != BindingStatus.SSL_ISSUED:
                    continue
                async with self.locks(account_lock_key(binding.account_id)):
                    other = await self.registry.find_active_binding(
                        binding.account_id, binding.purpose
                    )
                    if other and other.id != binding.id:
                        binding.fail(ErrorDetail(
                            ErrorCode.DOMAIN_ALREADY_EXISTS,
                            f"Account already has an active {binding.purpose.value} domain",
                        ))
                    else:
                        binding.activate()
                        logger.info(f"{domain.fqdn} active for {binding.purpose.value}")
                    await self.registry.save_binding(binding)
                changed = True
        return changed


class ReconciliationPoller:
    """
    Re-evaluates domains that are still being processed.

    The poll task exists only while there is something to watch: it is
    started by watch() and exits once the processing set empties.
    """

    def __init__(
        self,
        registry: DomainRegistry,
        reconciler: StatusReconciler,
        orchestrator: CertificateOrchestrator,
        interval: float = 5.0,
    ):
        self.registry = registry
        self.reconciler = reconciler
        self.orchestrator = orchestrator
        self.interval = interval
        self._watched: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def watched(self) -> Set[str]:
        return set(self._watched)

    def watch(self, domain_id: str) -> None:
        if self._closed:
            return
        self._watched.add(domain_id)
        if not self.running:
            self._task = asyncio.create_task(self._run())
            logger.info("Reconciliation poller started")

    def unwatch(self, domain_id: str) -> None:
        self._watched.discard(domain_id)

    async def resume(self) -> None:
        """Pick up domains left mid-flight by a previous process."""
        for domain_id in await self.registry.list_processing():
            self.watch(domain_id)

    async def _run(self) -> None:
        while self._watched:
            await asyncio.sleep(self.interval)
            await self.tick()
        logger.info("Reconciliation poller stopped, nothing left to watch")

    async def tick(self) -> None:
        for domain_id in sorted(self._watched):
            try:
                await self._reconcile(domain_id)
            except DomainError as e:
                logger.warning(
                    f"Reconciliation of {domain_id} failed: {e.code.value}: {e.message}"
                )
            except Exception:
                logger.exception(f"Unexpected error reconciling {domain_id}")

    async def _reconcile(self, domain_id: str) -> None:
        domain = await self.registry.get_domain(domain_id)
        if not domain:
            self.unwatch(domain_id)
            return

        bindings = await self.registry.list_bindings(domain_id)
        statuses = {b.status for b in bindings if b.is_live}
        if not statuses & PROCESSING_STATUSES:
            self.unwatch(domain_id)
            return

        if statuses & CHECK_STATUSES:
            if self.reconciler.is_checking(domain_id):
                # An owner-triggered check just ran
                return
            await self.reconciler.check_status(domain_id, cooldown=0)
        elif (
            BindingStatus.DNS_CONFIGURED in statuses
            and domain.ssl_status == SslStatus.NONE
        ):
            await self.orchestrator.start(domain_id)

    async def close(self) -> None:
        """Stop polling; running provisioning jobs are left alone."""
        self._closed = True
        self._watched.clear()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
