"""
Provisioning host endpoints.

`callback_router` receives finished-job reports on the control plane.
`router` is the agent exposed on the provisioning host itself; it runs
certbot and reports back to the control plane's callback.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set

import aiohttp
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from ..auth.tokens import verify_provisioning_secret
from ..domains.errors import ErrorCode
from ..domains.registry import normalize_fqdn
from ..domains.ssl import CertificateIssuer, IssuanceResult
from .domains import envelope

logger = logging.getLogger("linkdomains.api.provisioning")

callback_router = APIRouter(prefix="/api/domains", tags=["provisioning"])
router = APIRouter(prefix="/api/ssl", tags=["ssl"])


class ProvisioningAgent:
    """Runs issuance on this host, one job per domain at a time."""

    def __init__(
        self,
        issuer: CertificateIssuer,
        secret: str,
        callback_url: str = "",
    ):
        self.issuer = issuer
        self.secret = secret
        self.callback_url = callback_url
        self._running: Set[str] = set()

    async def create(self, fqdn: str, job_id: Optional[str] = None) -> IssuanceResult:
        if fqdn in self._running:
            result = IssuanceResult.failure(
                ErrorCode.SSL_PROCESS_BUSY,
                f"A certificate job for {fqdn} is already running",
            )
            result.job_id = job_id
            return result

        self._running.add(fqdn)
        try:
            result = await self.issuer.issue(fqdn, job_id=job_id)
        finally:
            self._running.discard(fqdn)

        result.job_id = job_id
        await self.notify(fqdn, result)
        return result

    async def notify(self, fqdn: str, result: IssuanceResult) -> bool:
        """Best-effort report to the control plane; failures are only logged."""
        if not self.callback_url:
            return False

        payload = {"domain": fqdn, **result.to_dict()}
        try:
            async with aiohttp.ClientSession(
                headers={"X-VPS-Secret": self.secret}
            ) as session:
                async with session.post(
                    self.callback_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=15),
                ) as resp:
                    if resp.status >= 400:
                        logger.error(
                            f"Control plane rejected result for {fqdn}: {resp.status}"
                        )
                        return False
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.error(f"Failed to notify control plane for {fqdn}: {e}")
            return False

        logger.info(f"Control plane notified for {fqdn}")
        return True

    async def close(self) -> None:
        await self.issuer.close()


# ── Shared-secret dependency ─────────────────────────────────────────

async def require_provisioning_secret(
    request: Request,
    x_vps_secret: Optional[str] = Header(None),
) -> None:
    expected = request.app.state.settings.provisioning_secret
    if not verify_provisioning_secret(x_vps_secret, expected):
        logger.warning(f"Rejected provisioning request to {request.url.path}")
        raise HTTPException(status_code=403, detail="Forbidden")


def get_agent(request: Request) -> ProvisioningAgent:
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(status_code=404, detail="Not found")
    return agent


# ── Request models ───────────────────────────────────────────────────

class SslCompleteRequest(BaseModel):
    domain: str
    success: bool
    message: str = ""
    code: Optional[ErrorCode] = None
    expires_at: Optional[datetime] = None
    retry_after: Optional[datetime] = None
    observed_at: Optional[datetime] = None
    job_id: Optional[str] = None

    @field_validator("expires_at", "retry_after", "observed_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class SslDomainRequest(BaseModel):
    domain: str
    job_id: Optional[str] = None


# ── Control plane callback ───────────────────────────────────────────

@callback_router.post(
    "/ssl-complete", dependencies=[Depends(require_provisioning_secret)]
)
async def ssl_complete(body: SslCompleteRequest, request: Request):
    """Apply a finished job reported by the provisioning host."""
    fqdn = normalize_fqdn(body.domain)
    result = IssuanceResult.from_dict(body.model_dump(mode="json"))
    applied = await request.app.state.service.record_completion(fqdn, result)
    message = "Result recorded" if applied else "Result ignored"
    return envelope(True, {"domain": fqdn, "applied": applied}, message)


# ── Agent ────────────────────────────────────────────────────────────

@router.post("/create", dependencies=[Depends(require_provisioning_secret)])
async def create_certificate(
    body: SslDomainRequest,
    agent: ProvisioningAgent = Depends(get_agent),
):
    """Issue a certificate inline and return the job result."""
    fqdn = normalize_fqdn(body.domain)
    logger.info(f"Creating SSL certificate for {fqdn}")
    result = await agent.create(fqdn, body.job_id)
    if result.code == ErrorCode.SSL_PROCESS_BUSY:
        return JSONResponse(status_code=409, content=result.to_dict())
    return result.to_dict()


@router.get("/status", dependencies=[Depends(require_provisioning_secret)])
async def certificate_status(
    domain: str = Query(...),
    agent: ProvisioningAgent = Depends(get_agent),
):
    state = await agent.issuer.status(normalize_fqdn(domain))
    return state.to_dict()


@router.post("/remove", dependencies=[Depends(require_provisioning_secret)])
async def remove_certificate(
    body: SslDomainRequest,
    agent: ProvisioningAgent = Depends(get_agent),
):
    ok, message = await agent.issuer.revoke(normalize_fqdn(body.domain))
    return JSONResponse(
        status_code=200 if ok else 500,
        content={"success": ok, "message": message},
    )


@router.get("/health")
async def health(request: Request):
    """Health check for the provisioning agent."""
    return {
        "status": "ok",
        "service": "ssl-agent",
        "available": getattr(request.app.state, "agent", None) is not None,
    }
