"""
linkdomains application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import domains, provisioning
from .auth.tokens import AccountTokenVerifier
from .config import Settings, get_settings
from .domains.errors import DomainError
from .domains.service import DomainService
from .domains.ssl import CertbotIssuer

logger = logging.getLogger("linkdomains")


def build_agent(settings: Settings) -> provisioning.ProvisioningAgent:
    issuer = CertbotIssuer(
        webroot=settings.acme_webroot,
        certbot_bin=settings.certbot_bin,
        email=settings.acme_email or None,
        dry_run=settings.certbot_dry_run,
        timeout=settings.ssl_timeout,
    )
    return provisioning.ProvisioningAgent(
        issuer=issuer,
        secret=settings.provisioning_secret,
        callback_url=settings.callback_url,
    )


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[DomainService] = None,
    agent: Optional[provisioning.ProvisioningAgent] = None,
) -> FastAPI:
    """Build the FastAPI app; tests pass their own service and agent."""
    settings = settings or get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if service is None:
        service = DomainService.from_settings(settings)
    if agent is None and settings.provisioning_agent:
        agent = build_agent(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        logger.info(
            f"linkdomains started (issuer={settings.issuer}, "
            f"agent={'on' if agent else 'off'})"
        )
        yield
        await service.close()
        if agent is not None:
            await agent.close()
        logger.info("linkdomains stopped")

    app = FastAPI(
        title="linkdomains",
        description="Custom domain lifecycle for landing pages and short links",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.service = service
    app.state.agent = agent
    app.state.token_verifier = AccountTokenVerifier(
        settings.jwt_secret, settings.jwt_algorithm
    )

    app.add_exception_handler(DomainError, domains.domain_error_handler)
    app.add_exception_handler(StarletteHTTPException, domains.http_error_handler)
    app.add_exception_handler(RequestValidationError, domains.validation_error_handler)

    app.include_router(domains.router)
    app.include_router(provisioning.callback_router)
    app.include_router(provisioning.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "ok"}

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
