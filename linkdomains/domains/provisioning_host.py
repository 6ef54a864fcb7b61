"""
Certificate issuance delegated to a remote provisioning host.

The host runs the agent routes in `linkdomains.api.provisioning` and is
authenticated with a shared X-VPS-Secret header.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from .errors import DomainError, ErrorCode
from .ssl import CertificateIssuer, CertificateState, IssuanceResult

logger = logging.getLogger("linkdomains.domains.provisioning_host")


class ProvisioningHostIssuer(CertificateIssuer):
    """Talks to the provisioning host's /api/ssl endpoints."""

    def __init__(
        self,
        base_url: str,
        secret: str,
        timeout: int = 120,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        # Issuance runs inline on the host; leave headroom over certbot's own timeout
        self.timeout = timeout + 30
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"X-VPS-Secret": self.secret},
            )
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        **kwargs,
    ) -> tuple[int, dict]:
        session = self._get_session()
        async with session.request(
            method,
            f"{self.base_url}{path}",
            timeout=aiohttp.ClientTimeout(total=timeout),
            **kwargs,
        ) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = {"message": await resp.text()}
            return resp.status, body or {}

    async def issue(self, fqdn: str, job_id: Optional[str] = None) -> IssuanceResult:
        logger.info(f"Requesting SSL cert for {fqdn} from {self.base_url}")
        payload = {"domain": fqdn}
        if job_id:
            # Echoed back in the host's completion callback
            payload["job_id"] = job_id
        try:
            status, body = await self._request(
                "POST", "/api/ssl/create", self.timeout, json=payload
            )
        except asyncio.TimeoutError:
            logger.error(f"Provisioning host timed out for {fqdn}")
            return IssuanceResult.failure(
                ErrorCode.SSL_TIMEOUT,
                f"Provisioning host did not answer within {self.timeout}s",
            )
        except aiohttp.ClientError as e:
            logger.error(f"Provisioning host unreachable for {fqdn}: {e}")
            return IssuanceResult.failure(
                ErrorCode.VPS_CONNECTION_FAILED, f"Provisioning host unreachable: {e}"
            )

        if "success" in body:
            return IssuanceResult.from_dict(body)

        logger.error(f"Provisioning host returned {status} for {fqdn}: {body}")
        return IssuanceResult.failure(
            ErrorCode.SSL_GENERATION_FAILED,
            f"Provisioning host returned {status}: {body.get('message', '')}",
        )

    async def status(self, fqdn: str) -> CertificateState:
        try:
            status, body = await self._request(
                "GET", "/api/ssl/status", 15, params={"domain": fqdn}
            )
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise DomainError(
                ErrorCode.VPS_CONNECTION_FAILED,
                f"Provisioning host unreachable: {e or 'timeout'}",
            )
        if status != 200:
            raise DomainError(
                ErrorCode.VPS_CONNECTION_FAILED,
                f"Provisioning host returned {status} for status of {fqdn}",
            )
        return CertificateState.from_dict(body)

    async def revoke(self, fqdn: str) -> tuple[bool, str]:
        try:
            status, body = await self._request(
                "POST", "/api/ssl/remove", self.timeout, json={"domain": fqdn}
            )
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            return False, f"Provisioning host unreachable: {e or 'timeout'}"
        return status == 200 and bool(body.get("success")), body.get("message", "")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
