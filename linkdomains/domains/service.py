"""
Lifecycle facade: the control-plane operations exposed over HTTP.

Owner operations are scoped to the calling account and check ownership
before touching the domain; `resolve` and `record_completion` serve the
edge and the provisioning host.
"""

import logging
from typing import List, Optional

from ..config import Settings
from .activation import ActivationMultiplexer, account_lock_key
from .errors import DomainError, ErrorCode
from .guard import DomainLocks, InFlightGuard
from .models import Dependent, DependentKind, Domain, Purpose, RecordType
from .orchestrator import CertificateOrchestrator
from .provisioning_host import ProvisioningHostIssuer
from .reconciler import ReconciliationPoller, StatusReconciler
from .registry import DomainRegistry, normalize_fqdn
from .removal import DomainRemover, Impact, RemovalResult
from .ssl import CertbotIssuer, CertificateIssuer, IssuanceResult
from .verification import DomainVerifier, VerificationEngine

logger = logging.getLogger("linkdomains.domains.service")


def build_issuer(settings: Settings) -> CertificateIssuer:
    """Select the certificate issuer configured for this instance."""
    if settings.issuer == "remote":
        return ProvisioningHostIssuer(
            base_url=settings.provisioning_host_url,
            secret=settings.provisioning_secret,
            timeout=settings.ssl_timeout,
        )
    if settings.issuer == "certbot":
        return CertbotIssuer(
            webroot=settings.acme_webroot,
            certbot_bin=settings.certbot_bin,
            email=settings.acme_email or None,
            dry_run=settings.certbot_dry_run,
            timeout=settings.ssl_timeout,
        )
    raise ValueError(f"Unknown issuer {settings.issuer!r}; expected 'certbot' or 'remote'")


class DomainService:
    """Wires the lifecycle components together around one registry."""

    def __init__(
        self,
        settings: Settings,
        registry: DomainRegistry,
        verifier: DomainVerifier,
        issuer: CertificateIssuer,
    ):
        self.settings = settings
        self.registry = registry
        self.verifier = verifier
        self.issuer = issuer

        self.locks = DomainLocks()
        self.guard = InFlightGuard(cooldown=settings.retry_cooldown)
        self.verification = VerificationEngine(registry, verifier, self.locks)
        self.orchestrator = CertificateOrchestrator(
            registry,
            issuer,
            self.guard,
            self.locks,
            rate_limit_cooldown=settings.rate_limit_cooldown,
        )
        self.reconciler = StatusReconciler(
            registry,
            self.verification,
            self.orchestrator,
            issuer,
            self.guard,
            self.locks,
        )
        self.poller = ReconciliationPoller(
            registry,
            self.reconciler,
            self.orchestrator,
            interval=settings.poll_interval,
        )
        self.activation = ActivationMultiplexer(registry, self.locks)
        self.remover = DomainRemover(registry, self.orchestrator, self.locks)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DomainService":
        registry = DomainRegistry(
            redis_url=settings.redis_url,
            key_prefix=settings.key_prefix,
            max_domains_per_account=settings.max_domains_per_account,
            base_domain=settings.base_domain,
            use_redis=settings.use_redis,
        )
        verifier = DomainVerifier(
            service_ip=settings.service_ip,
            service_hostname=settings.service_hostname,
            timeout=settings.dns_timeout,
        )
        return cls(settings, registry, verifier, build_issuer(settings))

    # ── Helpers ──────────────────────────────────────────────────────

    async def _owned(self, account_id: str, domain_id: str) -> Domain:
        domain = await self.registry.get_domain(domain_id)
        if not domain:
            raise DomainError(ErrorCode.DOMAIN_NOT_FOUND, "Domain not found")
        if domain.account_id != account_id:
            raise DomainError(ErrorCode.NOT_DOMAIN_OWNER, "Not your domain")
        return domain

    async def _track(self, domain_id: str) -> None:
        """Hand the domain to the poller while it is still being processed."""
        if domain_id in await self.registry.list_processing():
            self.poller.watch(domain_id)

    async def describe(self, domain: Domain) -> dict:
        """API view of a domain with its bindings and DNS instructions."""
        bindings = await self.registry.list_bindings(domain.id)
        return {
            **domain.to_api_response(),
            "bindings": [b.to_dict() for b in bindings],
            "instructions": self.verifier.get_verification_instructions(domain),
        }

    # ── Operations ───────────────────────────────────────────────────

    async def add(
        self,
        account_id: str,
        fqdn: str,
        purpose: Purpose,
        target_id: Optional[str] = None,
        record_type: RecordType = RecordType.TXT,
    ) -> dict:
        async with self.locks(account_lock_key(account_id)):
            domain, _ = await self.registry.create_domain(
                fqdn,
                account_id,
                purpose,
                verification_host=self.settings.verification_host_for(purpose.value),
                target_id=target_id,
                record_type=record_type,
            )
        await self._track(domain.id)
        return await self.describe(domain)

    async def list_domains(
        self, account_id: str, purpose: Optional[Purpose] = None
    ) -> List[dict]:
        views = []
        for domain in await self.registry.list_by_account(account_id):
            view = await self.describe(domain)
            if purpose is None or any(
                b["purpose"] == purpose.value and b["status"] != "removed"
                for b in view["bindings"]
            ):
                views.append(view)
        return views

    async def get(self, account_id: str, domain_id: str) -> dict:
        return await self.describe(await self._owned(account_id, domain_id))

    async def verify(self, account_id: str, domain_id: str) -> dict:
        await self._owned(account_id, domain_id)
        domain, _ = await self.verification.verify(domain_id)
        await self._track(domain_id)
        return await self.describe(domain)

    async def retry(
        self, account_id: str, domain_id: str, purpose: Optional[Purpose] = None
    ) -> dict:
        await self._owned(account_id, domain_id)
        domain = await self.orchestrator.start(domain_id, purpose)
        await self._track(domain_id)
        return await self.describe(domain)

    async def check_status(self, account_id: str, domain_id: str) -> dict:
        await self._owned(account_id, domain_id)
        result = await self.reconciler.check_status(domain_id)
        await self._track(domain_id)
        domain = await self.registry.get_domain(domain_id)
        return {**result, "domain": await self.describe(domain)}

    async def list_available(self, account_id: str, purpose: Purpose) -> List[dict]:
        return [
            await self.describe(domain)
            for domain in await self.activation.list_available(account_id, purpose)
        ]

    async def activate(
        self,
        account_id: str,
        domain_id: str,
        purpose: Purpose,
        target_id: Optional[str] = None,
    ) -> dict:
        await self._owned(account_id, domain_id)
        domain, _ = await self.activation.activate(domain_id, purpose, target_id)
        return await self.describe(domain)

    async def check_impact(
        self, account_id: str, domain_id: str, purpose: Optional[Purpose] = None
    ) -> Impact:
        await self._owned(account_id, domain_id)
        return await self.remover.check_impact(domain_id, purpose)

    async def remove(
        self,
        account_id: str,
        domain_id: str,
        purpose: Optional[Purpose] = None,
        force: bool = False,
    ) -> RemovalResult:
        await self._owned(account_id, domain_id)
        result = await self.remover.remove(domain_id, purpose, force)
        if result.mode == "deleted":
            self.poller.unwatch(domain_id)
        logger.info(f"Remove {domain_id} for {account_id}: {result.mode}")
        return result

    async def add_dependent(
        self,
        account_id: str,
        domain_id: str,
        purpose: Purpose,
        kind: DependentKind,
        ref: str,
        label: str = "",
    ) -> Dependent:
        """Record a resource served under the domain for purpose."""
        await self._owned(account_id, domain_id)
        binding = await self.registry.get_binding(domain_id, purpose)
        if not binding or not binding.is_live:
            raise DomainError(
                ErrorCode.DOMAIN_NOT_AVAILABLE,
                f"Domain is not bound to {purpose.value}",
            )
        dependent = Dependent(kind=kind, ref=ref, label=label)
        await self.registry.add_dependent(domain_id, purpose, dependent)
        return dependent

    async def remove_dependent(
        self, account_id: str, domain_id: str, purpose: Purpose, ref: str
    ) -> bool:
        await self._owned(account_id, domain_id)
        return await self.registry.remove_dependent(domain_id, purpose, ref)

    async def resolve(self, hostname: str, purpose: Optional[Purpose] = None) -> dict:
        """
        What a custom hostname serves: its active bindings, optionally only
        the one for purpose. `www.` falls back to the apex.
        """
        fqdn = normalize_fqdn(hostname)
        candidates = [fqdn]
        if fqdn.startswith("www."):
            candidates.append(fqdn[len("www."):])

        for name in candidates:
            domain = await self.registry.get_verified_by_fqdn(name)
            if not domain:
                continue
            bindings = [
                b for b in await self.registry.list_bindings(domain.id)
                if b.active and (purpose is None or b.purpose == purpose)
            ]
            if bindings:
                return {
                    "domain": domain.fqdn,
                    "domain_id": domain.id,
                    "bindings": [
                        {"purpose": b.purpose.value, "target_id": b.target_id}
                        for b in bindings
                    ],
                }

        raise DomainError(
            ErrorCode.DOMAIN_NOT_FOUND,
            f"No active custom domain for {fqdn}",
        )

    async def record_completion(self, fqdn: str, result: IssuanceResult) -> bool:
        """Apply a job result pushed by the provisioning host."""
        applied = await self.orchestrator.record_result_for_fqdn(fqdn, result)
        if applied:
            domain = await self.registry.get_verified_by_fqdn(fqdn)
            await self.reconciler.promote(domain.id)
            await self._track(domain.id)
        return applied

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Resume polling for domains left mid-flight and prune stale ones."""
        await self.registry.cleanup_expired_pending(
            self.settings.domain_verification_expiry
        )
        await self.poller.resume()

    async def close(self) -> None:
        await self.poller.close()
        await self.orchestrator.close()
        self.guard.release_all()
        await self.registry.close()
        logger.info("Domain service stopped")
