"""
Purpose activation: reuse a domain that is already live for one purpose
for the other one, without repeating DNS verification or issuance.
"""

import logging
from typing import List, Optional, Tuple

from .errors import DomainError, ErrorCode
from .guard import DomainLocks
from .models import Domain, DomainPurposeBinding, Purpose
from .registry import DomainRegistry

logger = logging.getLogger("linkdomains.domains.activation")


def account_lock_key(account_id: str) -> str:
    return f"account:{account_id}"


class ActivationMultiplexer:
    """Lists and activates domains eligible for a second purpose."""

    def __init__(self, registry: DomainRegistry, locks: DomainLocks):
        self.registry = registry
        self.locks = locks

    @staticmethod
    def _is_available(
        domain: Domain, bindings: List[DomainPurposeBinding], purpose: Purpose
    ) -> bool:
        if not domain.is_ready:
            return False
        if any(b.purpose == purpose and b.is_live for b in bindings):
            return False
        return any(b.purpose != purpose and b.active for b in bindings)

    async def list_available(self, account_id: str, purpose: Purpose) -> List[Domain]:
        """Domains already live under a different purpose for this account."""
        available = []
        for domain in await self.registry.list_by_account(account_id):
            bindings = await self.registry.list_bindings(domain.id)
            if self._is_available(domain, bindings, purpose):
                available.append(domain)
        return available

    async def activate(
        self,
        domain_id: str,
        purpose: Purpose,
        target_id: Optional[str] = None,
    ) -> Tuple[Domain, DomainPurposeBinding]:
        """
        Bind the domain to purpose directly in active status.

        The only operation that goes from no binding to active synchronously.
        """
        async with self.locks(domain_id):
            domain = await self.registry.get_domain(domain_id)
            if not domain:
                raise DomainError(ErrorCode.DOMAIN_NOT_FOUND, "Domain not found")

            async with self.locks(account_lock_key(domain.account_id)):
                bindings = await self.registry.list_bindings(domain_id)
                existing = next((b for b in bindings if b.purpose == purpose), None)
                if existing and existing.is_live:
                    raise DomainError(
                        ErrorCode.DOMAIN_ALREADY_EXISTS,
                        f"{domain.fqdn} is already bound to {purpose.value}",
                    )
                if not self._is_available(domain, bindings, purpose):
                    raise DomainError(
                        ErrorCode.DOMAIN_NOT_AVAILABLE,
                        f"{domain.fqdn} is not active under another purpose",
                    )

                other = await self.registry.find_active_binding(domain.account_id, purpose)
                if other:
                    raise DomainError(
                        ErrorCode.DOMAIN_ALREADY_EXISTS,
                        f"Account already has an active {purpose.value} domain",
                        {"binding_id": other.id},
                    )

                binding = existing or DomainPurposeBinding(
                    domain_id=domain.id,
                    account_id=domain.account_id,
                    purpose=purpose,
                )
                binding.target_id = target_id
                binding.activate()
                await self.registry.save_binding(binding)

        logger.info(f"{domain.fqdn} activated for {purpose.value} without reprovisioning")
        return domain, binding
