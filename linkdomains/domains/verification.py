"""
DNS verification for custom domains.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Set, Tuple

import dns.asyncresolver
import dns.exception
import dns.resolver

from .errors import DomainError, ErrorCode
from .guard import DomainLocks
from .models import (
    BindingStatus,
    DnsStatus,
    Domain,
    DomainPurposeBinding,
    ErrorDetail,
    RecordType,
)
from .registry import DomainRegistry

logger = logging.getLogger("linkdomains.domains.verification")


@dataclass
class RecordCheck:
    """Outcome of checking one required DNS record."""

    record_type: str
    record_name: str
    expected: str
    found: List[str] = field(default_factory=list)
    ok: bool = False

    def to_dict(self) -> dict:
        return {
            "record_type": self.record_type,
            "record_name": self.record_name,
            "expected": self.expected,
            "found": self.found,
            "ok": self.ok,
        }


class DomainVerifier:
    """Verifies domain ownership and routing via DNS records."""

    def __init__(
        self,
        service_ip: str = "159.89.50.89",
        service_hostname: str = "vps.linkdomains.app",
        timeout: float = 10.0,
    ):
        self.service_ip = service_ip
        self.service_hostname = service_hostname.lower().rstrip(".")
        self.timeout = timeout

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver()
        resolver.timeout = self.timeout
        resolver.lifetime = self.timeout
        return resolver

    async def _lookup(
        self,
        resolver: dns.asyncresolver.Resolver,
        name: str,
        rdtype: str,
    ) -> List[str]:
        """
        Resolve name/rdtype to a list of string values.

        A missing name or record yields an empty list; resolver failures
        raise DNS_QUERY_ERROR.
        """
        try:
            answers = await resolver.resolve(name, rdtype)
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            return []
        except dns.exception.DNSException as e:
            logger.warning(f"{rdtype} lookup error for {name}: {e}")
            raise DomainError(
                ErrorCode.DNS_QUERY_ERROR,
                f"DNS query for {rdtype} {name} failed: {e}",
                {"record_type": rdtype, "record_name": name},
            )

        values = []
        for rdata in answers:
            if rdtype == "TXT":
                # TXT records may be split into multiple strings
                values.append("".join(
                    s.decode() if isinstance(s, bytes) else s
                    for s in rdata.strings
                ))
            elif rdtype == "CNAME":
                values.append(str(rdata.target).rstrip(".").lower())
            else:
                values.append(str(rdata))
        logger.debug(f"{rdtype} {name} -> {values}")
        return values

    async def check_txt(
        self, resolver: dns.asyncresolver.Resolver, domain: Domain
    ) -> RecordCheck:
        """TXT at {verification_host}.{fqdn} must equal the token exactly."""
        name = f"{domain.verification_host}.{domain.fqdn}"
        found = await self._lookup(resolver, name, "TXT")
        return RecordCheck(
            record_type="TXT",
            record_name=domain.verification_host,
            expected=domain.verification_token,
            found=found,
            ok=domain.verification_token in found,
        )

    async def check_a(
        self, resolver: dns.asyncresolver.Resolver, name: str, label: str
    ) -> RecordCheck:
        found = await self._lookup(resolver, name, "A")
        return RecordCheck(
            record_type="A",
            record_name=label,
            expected=self.service_ip,
            found=found,
            ok=self.service_ip in found,
        )

    async def check_cname(
        self, resolver: dns.asyncresolver.Resolver, domain: Domain
    ) -> RecordCheck:
        """
        The apex must CNAME to the service hostname.

        Falls back to A record IP comparison if no CNAME is found.
        """
        found = await self._lookup(resolver, domain.fqdn, "CNAME")
        check = RecordCheck(
            record_type="CNAME",
            record_name="@",
            expected=self.service_hostname,
            found=found,
            ok=self.service_hostname in found,
        )
        if found:
            return check

        domain_ips: Set[str] = set(await self._lookup(resolver, domain.fqdn, "A"))
        service_ips: Set[str] = set(
            await self._lookup(resolver, self.service_hostname, "A")
        )
        check.ok = bool(domain_ips & service_ips)
        return check

    async def verify(self, domain: Domain) -> List[RecordCheck]:
        """
        Check every record the owner must publish.

        Returns the individual checks; the domain is verified only when all
        of them pass. Never mutates the domain.
        """
        resolver = self._get_resolver()
        checks = []
        if domain.record_type == RecordType.CNAME:
            checks.append(await self.check_cname(resolver, domain))
        else:
            checks.append(await self.check_txt(resolver, domain))
        checks.append(await self.check_a(resolver, domain.fqdn, "@"))
        checks.append(await self.check_a(resolver, f"www.{domain.fqdn}", "www"))
        return checks

    def get_verification_instructions(self, domain: Domain) -> dict:
        """Return the DNS records the owner has to publish."""
        if domain.record_type == RecordType.CNAME:
            ownership = {
                "record_type": "CNAME",
                "record_name": "@",
                "record_value": self.service_hostname,
            }
        else:
            ownership = {
                "record_type": "TXT",
                "record_name": domain.verification_host,
                "record_value": domain.verification_token,
            }

        records = [
            {"record_type": "A", "record_name": "@", "record_value": self.service_ip},
            {"record_type": "A", "record_name": "www", "record_value": self.service_ip},
            ownership,
        ]
        return {
            "method": domain.record_type.value.lower(),
            "instructions": (
                f"Point {domain.fqdn} and www.{domain.fqdn} at {self.service_ip} "
                f"and add a {ownership['record_type']} record at "
                f"{ownership['record_name']} with value: {ownership['record_value']}"
            ),
            "records": records,
        }


def describe_failures(checks: List[RecordCheck]) -> str:
    """Human-readable summary naming each missing record."""
    missing = [c for c in checks if not c.ok]
    parts = []
    for check in missing:
        if check.found:
            parts.append(
                f"{check.record_type} {check.record_name} found "
                f"{', '.join(check.found)}, expected {check.expected}"
            )
        else:
            parts.append(f"{check.record_type} {check.record_name} not found")
    return "; ".join(parts)


class VerificationEngine:
    """Applies DNS verification results to the registry."""

    def __init__(
        self,
        registry: DomainRegistry,
        verifier: DomainVerifier,
        locks: DomainLocks,
    ):
        self.registry = registry
        self.verifier = verifier
        self.locks = locks

    async def verify(
        self, domain_id: str
    ) -> Tuple[Domain, List[DomainPurposeBinding]]:
        """
        Check the domain's DNS records and flip readiness when all pass.

        Idempotent: an already verified domain is returned untouched, and
        the verification token is never changed.
        """
        async with self.locks(domain_id):
            domain = await self.registry.get_domain(domain_id)
            if not domain:
                raise DomainError(ErrorCode.DOMAIN_NOT_FOUND, "Domain not found")

            bindings = await self.registry.list_bindings(domain_id)
            if domain.dns_status == DnsStatus.VERIFIED:
                return domain, bindings

            now = datetime.now(timezone.utc)
            domain.last_checked_at = now
            try:
                checks = await self.verifier.verify(domain)
            except DomainError as e:
                domain.error = ErrorDetail(e.code, e.message)
                await self.registry.save_domain(domain)
                raise

            missing = [c for c in checks if not c.ok]
            if missing:
                message = f"DNS verification failed for {domain.fqdn}: {describe_failures(checks)}"
                domain.error = ErrorDetail(ErrorCode.DNS_VERIFICATION_FAILED, message)
                await self.registry.save_domain(domain)
                logger.info(message)
                raise DomainError(
                    ErrorCode.DNS_VERIFICATION_FAILED,
                    message,
                    {
                        "record_type": missing[0].record_type,
                        "missing": [c.to_dict() for c in missing],
                    },
                )

            owner = await self.registry.get_verified_by_fqdn(domain.fqdn)
            if owner and owner.id != domain.id:
                raise DomainError(
                    ErrorCode.DOMAIN_ALREADY_EXISTS,
                    f"Domain {domain.fqdn} is already verified by another account",
                )

            domain.dns_status = DnsStatus.VERIFIED
            domain.verified_at = now
            domain.error = None
            await self.registry.save_domain(domain)

            for binding in bindings:
                if binding.is_live and binding.advance(BindingStatus.DNS_CONFIGURED):
                    await self.registry.save_binding(binding)

        logger.info(f"DNS verified for {domain.fqdn}")
        return domain, bindings
