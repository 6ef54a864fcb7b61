"""
Configuration management for linkdomains.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8000

    # Hosted endpoints that custom domains point at
    base_domain: str = "linkdomains.app"
    service_ip: str = "159.89.50.89"
    service_hostname: str = "vps.linkdomains.app"
    landing_verification_host: str = "_linkdomains-verification"
    url_verification_host: str = "_linkdomains-url-verify"

    # Redis
    redis_url: str = "redis://localhost:6379"
    use_redis: bool = True
    key_prefix: str = "linkdomains:"

    # Authentication
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    provisioning_secret: str = ""  # shared X-VPS-Secret with the provisioning host

    # Certificate issuance
    issuer: str = "certbot"  # "certbot" runs locally, "remote" calls the provisioning host
    provisioning_host_url: str = ""
    provisioning_agent: bool = False  # expose /api/ssl on this instance
    callback_url: str = ""  # where the agent reports finished jobs
    acme_webroot: str = "/var/www/acme"
    acme_email: str = ""
    certbot_bin: str = "certbot"
    certbot_dry_run: bool = False
    ssl_timeout: int = 120  # seconds

    # Verification and reconciliation
    dns_timeout: float = 10.0
    poll_interval: float = 5.0
    retry_cooldown: float = 2.0
    rate_limit_cooldown: int = 3600  # seconds, when the CA gives no retry-after
    max_domains_per_account: int = 5
    domain_verification_expiry: int = 72  # hours

    # Logging
    log_level: str = "INFO"

    # Debug mode
    debug: bool = False

    model_config = {
        "env_prefix": "LINKDOMAINS_",
        "env_file": ".env",
        "extra": "ignore"
    }

    def verification_host_for(self, purpose: str) -> str:
        if purpose == "url_shortener":
            return self.url_verification_host
        return self.landing_verification_host

    def validate_required(self) -> bool:
        """Validate that required settings are configured."""
        if not self.jwt_secret:
            raise ValueError(
                "LINKDOMAINS_JWT_SECRET is required. "
                "Generate with: python -c \"import secrets; "
                "print(secrets.token_urlsafe(48))\""
            )
        if not self.provisioning_secret:
            raise ValueError(
                "LINKDOMAINS_PROVISIONING_SECRET is required to accept "
                "completion callbacks from the provisioning host"
            )
        if self.issuer == "remote" and not self.provisioning_host_url:
            raise ValueError(
                "LINKDOMAINS_PROVISIONING_HOST_URL is required when "
                "LINKDOMAINS_ISSUER=remote"
            )
        return True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    # In production, validate required fields
    if not settings.debug:
        try:
            settings.validate_required()
        except ValueError as e:
            import logging
            logging.warning(f"Configuration warning: {e}")
    return settings
