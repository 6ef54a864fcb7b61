"""
Deletion impact analysis and safe removal.

Removal is two-phase: without force, a domain that still serves dependents
is reported back with its impact and left untouched.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import DomainError, ErrorCode
from .guard import DomainLocks
from .models import (
    Dependent,
    DependentKind,
    Domain,
    DomainPurposeBinding,
    Purpose,
    SslStatus,
)
from .orchestrator import CertificateOrchestrator
from .registry import DomainRegistry

logger = logging.getLogger("linkdomains.domains.removal")


@dataclass
class Impact:
    """What would stop resolving if the targeted bindings went away."""

    domain: Domain
    affected_bindings: List[DomainPurposeBinding]
    affected_dependents: List[Dependent]
    can_deactivate_only: bool

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.affected_dependents)

    def to_dict(self) -> dict:
        return {
            "domain": self.domain.to_api_response(),
            "affectedBindings": [b.to_dict() for b in self.affected_bindings],
            "affectedDependents": [d.to_dict() for d in self.affected_dependents],
            "affectedDependentsCount": len(self.affected_dependents),
            "canDeactivateOnly": self.can_deactivate_only,
            "requiresConfirmation": self.requires_confirmation,
        }


@dataclass
class RemovalResult:
    mode: str  # "deleted", "deactivated" or "confirmation_required"
    message: str
    impact: Impact

    @property
    def removed(self) -> bool:
        return self.mode != "confirmation_required"

    @property
    def requires_confirmation(self) -> bool:
        return not self.removed


class DomainRemover:
    """Computes removal impact and performs partial or full removal."""

    def __init__(
        self,
        registry: DomainRegistry,
        orchestrator: CertificateOrchestrator,
        locks: DomainLocks,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.locks = locks

    async def _impact(self, domain: Domain, purpose: Optional[Purpose]) -> Impact:
        live = [b for b in await self.registry.list_bindings(domain.id) if b.is_live]
        targets = [b for b in live if purpose is None or b.purpose == purpose]
        if purpose is not None and not targets:
            raise DomainError(
                ErrorCode.DOMAIN_NOT_FOUND,
                f"{domain.fqdn} is not bound to {purpose.value}",
            )

        dependents: List[Dependent] = []
        for binding in targets:
            found = await self.registry.list_dependents(domain.id, binding.purpose)
            if (
                binding.purpose == Purpose.LANDING
                and binding.target_id
                and all(d.ref != binding.target_id for d in found)
            ):
                found.insert(0, Dependent(DependentKind.LANDING_PAGE, binding.target_id))
            dependents.extend(found)

        target_ids = {b.id for b in targets}
        siblings = [b for b in live if b.id not in target_ids and b.active]
        return Impact(
            domain=domain,
            affected_bindings=targets,
            affected_dependents=dependents,
            can_deactivate_only=bool(siblings),
        )

    async def check_impact(
        self, domain_id: str, purpose: Optional[Purpose] = None
    ) -> Impact:
        domain = await self.registry.get_domain(domain_id)
        if not domain:
            raise DomainError(ErrorCode.DOMAIN_NOT_FOUND, "Domain not found")
        return await self._impact(domain, purpose)

    async def remove(
        self,
        domain_id: str,
        purpose: Optional[Purpose] = None,
        force: bool = False,
    ) -> RemovalResult:
        """
        Remove the binding for purpose (every binding when purpose is None).

        Deactivates only the targeted binding while another purpose is still
        active on the domain; otherwise deletes the domain outright.
        """
        async with self.locks(domain_id):
            domain = await self.registry.get_domain(domain_id)
            if not domain:
                raise DomainError(ErrorCode.DOMAIN_NOT_FOUND, "Domain not found")

            impact = await self._impact(domain, purpose)
            if impact.requires_confirmation and not force:
                count = len(impact.affected_dependents)
                return RemovalResult(
                    mode="confirmation_required",
                    message=(
                        f"Removing {domain.fqdn} affects {count} dependent "
                        f"resource{'s' if count != 1 else ''} and requires confirmation"
                    ),
                    impact=impact,
                )

            if impact.can_deactivate_only:
                for binding in impact.affected_bindings:
                    binding.deactivate()
                    await self.registry.save_binding(binding)
                    await self.registry.clear_dependents(domain_id, binding.purpose)
                purposes = ", ".join(b.purpose.value for b in impact.affected_bindings)
                logger.info(f"Deactivated {domain.fqdn} for {purposes}")
                return RemovalResult(
                    mode="deactivated",
                    message=f"{domain.fqdn} removed from {purposes}; other uses are unaffected",
                    impact=impact,
                )

            await self.registry.delete_domain(domain_id)
            if domain.ssl_status != SslStatus.NONE:
                self.orchestrator.schedule_revoke(domain.fqdn)

        return RemovalResult(
            mode="deleted",
            message=f"{domain.fqdn} deleted",
            impact=impact,
        )
