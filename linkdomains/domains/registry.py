"""
Domain registry: persistent store of domains, purpose bindings and
their dependents.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

import redis.asyncio as redis

from .errors import DomainError, ErrorCode
from .models import (
    PROCESSING_STATUSES,
    Dependent,
    DnsStatus,
    Domain,
    DomainPurposeBinding,
    Purpose,
    RecordType,
)

logger = logging.getLogger("linkdomains.domains.registry")

# Valid domain pattern: allows subdomains of any depth
_DOMAIN_RE = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z]{2,63}$"
)


def normalize_fqdn(fqdn: str) -> str:
    """Lowercase, strip whitespace and the trailing dot, then validate."""
    domain = (fqdn or "").strip().lower().rstrip(".")
    if len(domain) > 253 or not _DOMAIN_RE.match(domain):
        raise DomainError(
            ErrorCode.INVALID_DOMAIN, f"Invalid domain format: {fqdn!r}"
        )
    return domain


class DomainRegistry:
    """
    Registry for custom domains and their purpose bindings.

    Uses Redis for persistence with in-memory fallback.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "linkdomains:",
        max_domains_per_account: int = 5,
        base_domain: str = "",
        use_redis: bool = True,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.max_domains_per_account = max_domains_per_account
        self.base_domain = base_domain.lower().rstrip(".")
        self._redis: Optional[redis.Redis] = None
        self._use_redis = use_redis
        # In-memory fallback
        self._memory_store: Dict[str, str] = {}
        self._memory_sets: Dict[str, Set[str]] = {}
        self._memory_hashes: Dict[str, Dict[str, str]] = {}

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get Redis connection."""
        if not self._use_redis:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._redis.ping()
                logger.info("Domain registry connected to Redis")
            except Exception as e:
                logger.warning(
                    f"Redis unavailable for domain registry, using in-memory: {e}"
                )
                self._redis = None
                self._use_redis = False
                return None

        return self._redis

    # ── Keys ─────────────────────────────────────────────────────────

    def _domain_key(self, domain_id: str) -> str:
        return f"{self.key_prefix}domain:{domain_id}"

    def _binding_key(self, binding_id: str) -> str:
        return f"{self.key_prefix}binding:{binding_id}"

    def _account_key(self, account_id: str) -> str:
        return f"{self.key_prefix}account:{account_id}"

    def _fqdn_key(self, fqdn: str) -> str:
        return f"{self.key_prefix}fqdn:{fqdn}"

    def _bindings_key(self, domain_id: str) -> str:
        return f"{self.key_prefix}bindings:{domain_id}"

    def _dependents_key(self, domain_id: str, purpose: Purpose) -> str:
        return f"{self.key_prefix}dependents:{domain_id}:{purpose.value}"

    def _processing_key(self) -> str:
        return f"{self.key_prefix}processing"

    # ── Storage primitives ───────────────────────────────────────────

    async def _put(self, key: str, data: dict) -> None:
        r = await self._get_redis()
        if r:
            await r.set(key, json.dumps(data))
        else:
            self._memory_store[key] = json.dumps(data)

    async def _load(self, key: str) -> Optional[dict]:
        r = await self._get_redis()
        if r:
            data = await r.get(key)
        else:
            data = self._memory_store.get(key)
        return json.loads(data) if data else None

    async def _drop(self, *keys: str) -> None:
        r = await self._get_redis()
        if r:
            await r.delete(*keys)
        else:
            for key in keys:
                self._memory_store.pop(key, None)
                self._memory_sets.pop(key, None)
                self._memory_hashes.pop(key, None)

    async def _sadd(self, key: str, member: str) -> None:
        r = await self._get_redis()
        if r:
            await r.sadd(key, member)
        else:
            self._memory_sets.setdefault(key, set()).add(member)

    async def _srem(self, key: str, member: str) -> None:
        r = await self._get_redis()
        if r:
            await r.srem(key, member)
        else:
            members = self._memory_sets.get(key)
            if members:
                members.discard(member)

    async def _smembers(self, key: str) -> Set[str]:
        r = await self._get_redis()
        if r:
            return set(await r.smembers(key))
        return set(self._memory_sets.get(key, set()))

    # ── Domains ──────────────────────────────────────────────────────

    async def create_domain(
        self,
        fqdn: str,
        account_id: str,
        purpose: Purpose,
        verification_host: str,
        target_id: Optional[str] = None,
        record_type: RecordType = RecordType.TXT,
    ) -> Tuple[Domain, DomainPurposeBinding]:
        """
        Create a domain together with its initial pending binding.

        Raises DomainError if the name is invalid or already taken, the
        account is at its limit, or the account already has an active
        binding for this purpose.
        """
        domain = normalize_fqdn(fqdn)

        if self.base_domain and (
            domain == self.base_domain or domain.endswith(f".{self.base_domain}")
        ):
            raise DomainError(
                ErrorCode.INVALID_DOMAIN,
                f"Cannot register subdomains of {self.base_domain}",
            )

        for existing in await self.find_by_fqdn(domain):
            if existing.account_id == account_id:
                raise DomainError(
                    ErrorCode.DOMAIN_ALREADY_EXISTS,
                    f"Domain {domain} is already registered",
                )
            if existing.dns_status == DnsStatus.VERIFIED:
                raise DomainError(
                    ErrorCode.DOMAIN_ALREADY_EXISTS,
                    f"Domain {domain} is already verified by another account",
                )

        owned = await self.list_by_account(account_id)
        if len(owned) >= self.max_domains_per_account:
            raise DomainError(
                ErrorCode.DOMAIN_LIMIT_REACHED,
                f"Maximum of {self.max_domains_per_account} domains per account reached",
            )

        active = await self.find_active_binding(account_id, purpose)
        if active:
            raise DomainError(
                ErrorCode.DOMAIN_ALREADY_EXISTS,
                f"Account already has an active {purpose.value} domain",
                {"binding_id": active.id},
            )

        entry = Domain(
            fqdn=domain,
            account_id=account_id,
            verification_host=verification_host,
            record_type=record_type,
        )
        binding = DomainPurposeBinding(
            domain_id=entry.id,
            account_id=account_id,
            purpose=purpose,
            target_id=target_id,
        )

        await self._put(self._domain_key(entry.id), entry.to_dict())
        await self._sadd(self._account_key(account_id), entry.id)
        await self._sadd(self._fqdn_key(domain), entry.id)
        await self.save_binding(binding)

        logger.info(f"Registered domain: {domain} -> {account_id} ({purpose.value})")
        return entry, binding

    async def get_domain(self, domain_id: str) -> Optional[Domain]:
        """Get domain entry by id."""
        data = await self._load(self._domain_key(domain_id))
        return Domain.from_dict(data) if data else None

    async def save_domain(self, entry: Domain) -> Domain:
        """Persist an existing domain entry."""
        await self._put(self._domain_key(entry.id), entry.to_dict())
        logger.debug(f"Updated domain: {entry.fqdn}")
        return entry

    async def find_by_fqdn(self, fqdn: str) -> List[Domain]:
        """All domain rows (across accounts) claiming this name."""
        domains: List[Domain] = []
        for domain_id in await self._smembers(self._fqdn_key(fqdn.lower())):
            entry = await self.get_domain(domain_id)
            if entry:
                domains.append(entry)
        return domains

    async def get_verified_by_fqdn(self, fqdn: str) -> Optional[Domain]:
        """The verified owner of a name, if any."""
        for entry in await self.find_by_fqdn(fqdn):
            if entry.dns_status == DnsStatus.VERIFIED:
                return entry
        return None

    async def list_by_account(self, account_id: str) -> List[Domain]:
        """List all domains for an account, oldest first."""
        domains: List[Domain] = []
        for domain_id in await self._smembers(self._account_key(account_id)):
            entry = await self.get_domain(domain_id)
            if entry:
                domains.append(entry)
        domains.sort(key=lambda d: d.created_at)
        return domains

    async def delete_domain(self, domain_id: str) -> bool:
        """Delete a domain and everything hanging off it."""
        entry = await self.get_domain(domain_id)
        if not entry:
            return False

        binding_ids = await self._smembers(self._bindings_key(domain_id))
        await self._drop(
            self._domain_key(domain_id),
            self._bindings_key(domain_id),
            *(self._binding_key(b) for b in binding_ids),
            *(self._dependents_key(domain_id, p) for p in Purpose),
        )
        await self._srem(self._account_key(entry.account_id), domain_id)
        await self._srem(self._fqdn_key(entry.fqdn), domain_id)
        await self._srem(self._processing_key(), domain_id)

        logger.info(f"Deleted domain: {entry.fqdn}")
        return True

    # ── Bindings ─────────────────────────────────────────────────────

    async def save_binding(self, binding: DomainPurposeBinding) -> DomainPurposeBinding:
        """Persist a binding and keep the processing index in step."""
        await self._put(self._binding_key(binding.id), binding.to_dict())
        await self._sadd(self._bindings_key(binding.domain_id), binding.id)

        bindings = await self.list_bindings(binding.domain_id)
        if any(b.status in PROCESSING_STATUSES for b in bindings):
            await self._sadd(self._processing_key(), binding.domain_id)
        else:
            await self._srem(self._processing_key(), binding.domain_id)
        return binding

    async def list_bindings(self, domain_id: str) -> List[DomainPurposeBinding]:
        bindings: List[DomainPurposeBinding] = []
        for binding_id in await self._smembers(self._bindings_key(domain_id)):
            data = await self._load(self._binding_key(binding_id))
            if data:
                bindings.append(DomainPurposeBinding.from_dict(data))
        bindings.sort(key=lambda b: b.created_at)
        return bindings

    async def get_binding(
        self, domain_id: str, purpose: Purpose
    ) -> Optional[DomainPurposeBinding]:
        """The binding of a domain for one purpose (there is at most one)."""
        for binding in await self.list_bindings(domain_id):
            if binding.purpose == purpose:
                return binding
        return None

    async def find_active_binding(
        self, account_id: str, purpose: Purpose
    ) -> Optional[DomainPurposeBinding]:
        """The account's active binding for a purpose, if any."""
        for entry in await self.list_by_account(account_id):
            for binding in await self.list_bindings(entry.id):
                if binding.purpose == purpose and binding.active:
                    return binding
        return None

    async def list_processing(self) -> Set[str]:
        """Domain ids with at least one binding still being processed."""
        return await self._smembers(self._processing_key())

    # ── Dependents ───────────────────────────────────────────────────

    async def add_dependent(
        self, domain_id: str, purpose: Purpose, dependent: Dependent
    ) -> None:
        key = self._dependents_key(domain_id, purpose)
        payload = json.dumps(dependent.to_dict())
        r = await self._get_redis()
        if r:
            await r.hset(key, dependent.ref, payload)
        else:
            self._memory_hashes.setdefault(key, {})[dependent.ref] = payload

    async def remove_dependent(
        self, domain_id: str, purpose: Purpose, ref: str
    ) -> bool:
        key = self._dependents_key(domain_id, purpose)
        r = await self._get_redis()
        if r:
            return bool(await r.hdel(key, ref))
        return self._memory_hashes.get(key, {}).pop(ref, None) is not None

    async def clear_dependents(self, domain_id: str, purpose: Purpose) -> None:
        """Forget every dependent recorded for one purpose of a domain."""
        await self._drop(self._dependents_key(domain_id, purpose))

    async def list_dependents(
        self, domain_id: str, purpose: Purpose
    ) -> List[Dependent]:
        key = self._dependents_key(domain_id, purpose)
        r = await self._get_redis()
        if r:
            values = (await r.hgetall(key)).values()
        else:
            values = self._memory_hashes.get(key, {}).values()
        dependents = [Dependent.from_dict(json.loads(v)) for v in values]
        dependents.sort(key=lambda d: d.ref)
        return dependents

    # ── Maintenance ──────────────────────────────────────────────────

    async def _all_domain_ids(self) -> List[str]:
        r = await self._get_redis()
        prefix = self._domain_key("")
        if not r:
            return [k[len(prefix):] for k in self._memory_store if k.startswith(prefix)]

        ids = []
        cursor = 0
        while True:
            cursor, keys = await r.scan(cursor, match=f"{prefix}*", count=100)
            ids.extend(k[len(prefix):] for k in keys)
            if cursor == 0:
                break
        return ids

    async def cleanup_expired_pending(self, expiry_hours: int = 72) -> int:
        """Remove unverified domains older than expiry_hours."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=expiry_hours)
        removed = 0

        for domain_id in await self._all_domain_ids():
            entry = await self.get_domain(domain_id)
            if (
                entry
                and entry.dns_status == DnsStatus.UNVERIFIED
                and entry.created_at < cutoff
            ):
                await self.delete_domain(domain_id)
                removed += 1

        if removed:
            logger.info(f"Cleaned up {removed} expired pending domains")
        return removed

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Domain registry Redis connection closed")
