"""
REST API for custom domain management.

Every response is an envelope: {success, data, message, code?}.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..domains.errors import DomainError, ErrorCategory, ErrorCode
from ..domains.models import DependentKind, DnsStatus, Purpose, RecordType
from ..domains.service import DomainService

logger = logging.getLogger("linkdomains.api.domains")

router = APIRouter(prefix="/api/domains", tags=["domains"])

security = HTTPBearer()


# ── Envelopes ────────────────────────────────────────────────────────

_CATEGORY_STATUS = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.TRANSIENT: 502,
    ErrorCategory.OWNER_ACTION: 422,
    ErrorCategory.CONCURRENCY: 409,
    ErrorCategory.RATE_LIMIT: 429,
}

_CODE_STATUS = {
    ErrorCode.DOMAIN_ALREADY_EXISTS: 409,
    ErrorCode.NOT_DOMAIN_OWNER: 403,
    ErrorCode.SSL_TIMEOUT: 504,
}


def status_for(error: DomainError) -> int:
    return _CODE_STATUS.get(error.code, _CATEGORY_STATUS[error.category])


def envelope(
    success: bool,
    data: Any = None,
    message: str = "",
    code: Optional[str] = None,
    **extra: Any,
) -> dict:
    body = {"success": success, "data": data, "message": message}
    if code:
        body["code"] = code
    body.update(extra)
    return body


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info(
        f"{request.method} {request.url.path} -> {exc.code.value}: {exc.message}"
    )
    return JSONResponse(
        status_code=status_for(exc),
        content=envelope(False, exc.details or None, exc.message, exc.code.value),
    )


async def http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(False, None, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', '')}"
        for e in errors
    )
    return JSONResponse(
        status_code=422,
        content=envelope(False, None, message or "Invalid request"),
    )


# ── Auth dependency ──────────────────────────────────────────────────

async def get_current_account(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Extract and verify the account id from the JWT Bearer token."""
    token_verifier = request.app.state.token_verifier
    try:
        claims = token_verifier.verify(credentials.credentials)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")
    return claims["sub"]


def get_service(request: Request) -> DomainService:
    return request.app.state.service


# ── Request / Response models ────────────────────────────────────────

class DomainAddRequest(BaseModel):
    domain: str
    purpose: Purpose
    target_id: Optional[str] = None
    method: RecordType = RecordType.TXT

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value):
        return value.upper() if isinstance(value, str) else value


class RetryRequest(BaseModel):
    purpose: Optional[Purpose] = None


class ActivateRequest(BaseModel):
    purpose: Purpose
    target_id: Optional[str] = None


class DependentRequest(BaseModel):
    purpose: Purpose
    kind: DependentKind
    ref: str
    label: str = ""


# ── Routes ───────────────────────────────────────────────────────────

@router.post("")
async def add_domain(
    body: DomainAddRequest,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """Register a custom domain for one purpose."""
    data = await service.add(
        account_id,
        body.domain,
        body.purpose,
        target_id=body.target_id,
        record_type=body.method,
    )
    return envelope(True, data, f"Domain {data['fqdn']} added; publish the DNS records to verify")


@router.get("")
async def list_domains(
    purpose: Optional[Purpose] = None,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """List the account's domains, optionally only those bound to purpose."""
    domains = await service.list_domains(account_id, purpose)
    return envelope(True, {"count": len(domains), "domains": domains})


@router.get("/available")
async def list_available(
    purpose: Purpose = Query(...),
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """Domains already live for another purpose that can be activated for purpose."""
    domains = await service.list_available(account_id, purpose)
    return envelope(True, {"count": len(domains), "domains": domains})


@router.get("/resolve/{hostname}")
async def resolve_hostname(
    hostname: str,
    purpose: Optional[Purpose] = None,
    service: DomainService = Depends(get_service),
):
    """
    Public lookup used by the edge to route a custom hostname to its
    landing page or short-link space.
    """
    return envelope(True, await service.resolve(hostname, purpose))


@router.get("/{domain_id}")
async def get_domain(
    domain_id: str,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    return envelope(True, await service.get(account_id, domain_id))


@router.post("/{domain_id}/verify")
async def verify_domain(
    domain_id: str,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """Trigger DNS verification for a domain."""
    data = await service.verify(account_id, domain_id)
    message = (
        "Domain verified"
        if data["dns_status"] == DnsStatus.VERIFIED.value
        else "Domain not verified yet"
    )
    return envelope(True, data, message)


@router.post("/{domain_id}/retry")
async def retry_certificate(
    domain_id: str,
    body: Optional[RetryRequest] = None,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """(Re)start certificate issuance; returns once the job is accepted."""
    purpose = body.purpose if body else None
    data = await service.retry(account_id, domain_id, purpose)
    return envelope(True, data, "Certificate issuance started")


@router.post("/{domain_id}/check-status")
async def check_status(
    domain_id: str,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """Force an authoritative re-check of DNS and certificate state."""
    data = await service.check_status(account_id, domain_id)
    return envelope(True, data, data["message"])


@router.post("/{domain_id}/activate")
async def activate_domain(
    domain_id: str,
    body: ActivateRequest,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """Reuse a live domain for another purpose."""
    data = await service.activate(account_id, domain_id, body.purpose, body.target_id)
    return envelope(True, data, f"Domain activated for {body.purpose.value}")


@router.get("/{domain_id}/impact")
async def check_impact(
    domain_id: str,
    purpose: Optional[Purpose] = None,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """What would break if the domain (or one purpose of it) were removed."""
    impact = await service.check_impact(account_id, domain_id, purpose)
    return envelope(True, impact.to_dict())


@router.delete("/{domain_id}")
async def remove_domain(
    domain_id: str,
    purpose: Optional[Purpose] = None,
    force: bool = False,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """Remove a domain or one of its purposes."""
    result = await service.remove(account_id, domain_id, purpose, force)
    if result.requires_confirmation:
        return JSONResponse(
            status_code=409,
            content=envelope(
                False,
                result.impact.to_dict(),
                result.message,
                requiresConfirmation=True,
            ),
        )
    return envelope(
        True,
        {"mode": result.mode, "message": result.message, "domain_id": domain_id},
        result.message,
        requiresConfirmation=False,
    )


@router.post("/{domain_id}/dependents")
async def add_dependent(
    domain_id: str,
    body: DependentRequest,
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    """Record a short link or landing page served under the domain."""
    dependent = await service.add_dependent(
        account_id, domain_id, body.purpose, body.kind, body.ref, body.label
    )
    return envelope(True, dependent.to_dict())


@router.delete("/{domain_id}/dependents/{ref}")
async def remove_dependent(
    domain_id: str,
    ref: str,
    purpose: Purpose = Query(...),
    account_id: str = Depends(get_current_account),
    service: DomainService = Depends(get_service),
):
    removed = await service.remove_dependent(account_id, domain_id, purpose, ref)
    return envelope(True, {"removed": removed, "ref": ref})
