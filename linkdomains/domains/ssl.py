"""
SSL certificate issuance for custom domains.

`CertificateIssuer` is what the orchestrator drives; `CertbotIssuer` runs
certbot on this host.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Set

from .errors import ErrorCode
from .models import SslStatus

logger = logging.getLogger("linkdomains.domains.ssl")

_RETRY_AFTER_RE = re.compile(
    r"retry after (\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) UTC", re.IGNORECASE
)

_VALIDATION_MARKERS = (
    "challenge failed",
    "some challenges have failed",
    "unauthorized",
    "invalid response",
    "dns problem",
    "connection refused",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IssuanceResult:
    """Outcome of one issuance job."""

    success: bool
    message: str
    code: Optional[ErrorCode] = None
    expires_at: Optional[datetime] = None
    retry_after: Optional[datetime] = None
    observed_at: datetime = field(default_factory=_now)
    job_id: Optional[str] = None

    @classmethod
    def failure(
        cls,
        code: ErrorCode,
        message: str,
        retry_after: Optional[datetime] = None,
    ) -> "IssuanceResult":
        return cls(success=False, message=message, code=code, retry_after=retry_after)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "code": self.code.value if self.code else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "retry_after": self.retry_after.isoformat() if self.retry_after else None,
            "observed_at": self.observed_at.isoformat(),
            "job_id": self.job_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IssuanceResult":
        def _dt(key):
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            success=bool(data.get("success")),
            message=data.get("message", ""),
            code=ErrorCode(data["code"]) if data.get("code") else None,
            expires_at=_dt("expires_at"),
            retry_after=_dt("retry_after"),
            observed_at=_dt("observed_at") or _now(),
            job_id=data.get("job_id"),
        )


@dataclass
class CertificateState:
    """Authoritative certificate state as seen by the issuing host."""

    status: SslStatus
    observed_at: datetime = field(default_factory=_now)
    expires_at: Optional[datetime] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "observed_at": self.observed_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CertificateState":
        return cls(
            status=SslStatus(data["status"]),
            observed_at=(
                datetime.fromisoformat(data["observed_at"])
                if data.get("observed_at") else _now()
            ),
            expires_at=(
                datetime.fromisoformat(data["expires_at"])
                if data.get("expires_at") else None
            ),
            message=data.get("message", ""),
        )


class CertificateIssuer:
    """Interface the provisioning orchestrator drives."""

    async def issue(self, fqdn: str, job_id: Optional[str] = None) -> IssuanceResult:
        raise NotImplementedError

    async def status(self, fqdn: str) -> CertificateState:
        raise NotImplementedError

    async def revoke(self, fqdn: str) -> tuple[bool, str]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


def classify_certbot_error(output: str) -> IssuanceResult:
    """Map certbot's error output onto a stable error code."""
    lowered = output.lower()

    if "too many certificates" in lowered or "rate limit" in lowered:
        retry_after = None
        match = _RETRY_AFTER_RE.search(output)
        if match:
            retry_after = datetime.strptime(
                match.group(1), "%Y-%m-%d %H:%M:%S"
            ).replace(tzinfo=timezone.utc)
        return IssuanceResult.failure(
            ErrorCode.SSL_RATE_LIMIT,
            "Certificate authority rate limit reached",
            retry_after=retry_after,
        )

    if "another instance of certbot is already running" in lowered:
        return IssuanceResult.failure(
            ErrorCode.SSL_PROCESS_BUSY, "Another certbot instance is already running"
        )

    if any(marker in lowered for marker in _VALIDATION_MARKERS):
        return IssuanceResult.failure(
            ErrorCode.SSL_VALIDATION_FAILED, f"Domain validation failed: {output}"
        )

    return IssuanceResult.failure(
        ErrorCode.SSL_GENERATION_FAILED, f"Certbot failed: {output}"
    )


class CertbotIssuer(CertificateIssuer):
    """Provisions and manages SSL certificates via certbot."""

    def __init__(
        self,
        webroot: str = "/var/www/acme",
        certbot_bin: str = "certbot",
        email: Optional[str] = None,
        dry_run: bool = False,
        timeout: int = 120,
        live_dir: str = "/etc/letsencrypt/live",
    ):
        self.webroot = webroot
        self.certbot_bin = certbot_bin
        self.email = email
        self.dry_run = dry_run
        self.timeout = timeout
        self.live_dir = live_dir
        self._running: Set[str] = set()

    async def _run(self, *cmd: str, timeout: Optional[int] = None) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout or self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout.decode().strip(), stderr.decode().strip()

    async def issue(self, fqdn: str, job_id: Optional[str] = None) -> IssuanceResult:
        """
        Provision a certificate for the apex and www via certbot HTTP-01.
        """
        domain = fqdn.lower().rstrip(".")
        cmd = [
            self.certbot_bin,
            "certonly",
            "--webroot",
            "-w", self.webroot,
            "-d", domain,
            "-d", f"www.{domain}",
            "--cert-name", domain,
            "--non-interactive",
            "--agree-tos",
        ]

        if self.email:
            cmd.extend(["--email", self.email])
        else:
            cmd.append("--register-unsafely-without-email")

        if self.dry_run:
            cmd.append("--dry-run")

        logger.info(f"Provisioning SSL cert for {domain}")
        self._running.add(domain)

        try:
            returncode, stdout, stderr = await self._run(*cmd)

            if returncode == 0:
                logger.info(f"SSL cert provisioned for {domain}")
                return IssuanceResult(
                    success=True,
                    message=f"Certificate provisioned for {domain}",
                    expires_at=await self.cert_expiry(domain),
                )

            result = classify_certbot_error(stderr or stdout)
            logger.error(f"Certbot failed for {domain}: {result.code.value}: {stderr or stdout}")
            return result

        except asyncio.TimeoutError:
            logger.error(f"Certbot timed out for {domain}")
            return IssuanceResult.failure(
                ErrorCode.SSL_TIMEOUT, f"Certbot timed out after {self.timeout}s"
            )
        except FileNotFoundError:
            logger.error(f"Certbot binary not found: {self.certbot_bin}")
            return IssuanceResult.failure(
                ErrorCode.SSL_GENERATION_FAILED,
                f"Certbot not found at {self.certbot_bin}",
            )
        except OSError as e:
            logger.error(f"SSL provisioning error for {domain}: {e}")
            return IssuanceResult.failure(
                ErrorCode.SSL_GENERATION_FAILED, f"SSL provisioning error: {e}"
            )
        finally:
            self._running.discard(domain)

    async def status(self, fqdn: str) -> CertificateState:
        domain = fqdn.lower().rstrip(".")
        if domain in self._running:
            return CertificateState(SslStatus.PENDING, message="Issuance in progress")

        if not self.cert_exists(domain):
            return CertificateState(SslStatus.NONE, message="No certificate on host")

        expires_at = await self.cert_expiry(domain)
        if expires_at and expires_at <= _now():
            return CertificateState(
                SslStatus.EXPIRED,
                expires_at=expires_at,
                message=f"Certificate expired at {expires_at.isoformat()}",
            )
        return CertificateState(
            SslStatus.ISSUED, expires_at=expires_at, message="Certificate installed"
        )

    async def revoke(self, fqdn: str) -> tuple[bool, str]:
        """
        Delete certificate for a domain.

        Returns (success, message).
        """
        domain = fqdn.lower().rstrip(".")
        try:
            returncode, stdout, stderr = await self._run(
                self.certbot_bin,
                "delete",
                "--cert-name", domain,
                "--non-interactive",
            )
        except asyncio.TimeoutError:
            return False, "Certbot timed out"
        except FileNotFoundError:
            return False, f"Certbot not found at {self.certbot_bin}"
        except OSError as e:
            return False, f"Cert deletion error: {e}"

        if returncode == 0:
            logger.info(f"SSL cert deleted for {domain}")
            return True, f"Certificate deleted for {domain}"

        error_msg = stderr or stdout
        logger.warning(f"Certbot delete failed for {domain}: {error_msg}")
        return False, f"Certbot delete failed: {error_msg}"

    def _cert_path(self, domain: str) -> str:
        return os.path.join(self.live_dir, domain, "fullchain.pem")

    def cert_exists(self, domain: str) -> bool:
        """Check if a certificate exists for the domain."""
        return os.path.exists(self._cert_path(domain.lower().rstrip(".")))

    async def cert_expiry(self, domain: str) -> Optional[datetime]:
        """Get certificate expiry date via openssl."""
        cert_path = self._cert_path(domain.lower().rstrip("."))

        if not os.path.exists(cert_path):
            return None

        try:
            returncode, stdout, _ = await self._run(
                "openssl", "x509", "-enddate", "-noout", "-in", cert_path,
                timeout=30,
            )
            if returncode != 0:
                return None

            # Output format: notAfter=Mon DD HH:MM:SS YYYY GMT
            date_str = stdout.split("=", 1)[1]
            return parsedate_to_datetime(date_str).replace(tzinfo=timezone.utc)

        except (asyncio.TimeoutError, OSError, IndexError, ValueError, TypeError) as e:
            logger.debug(f"Failed to read cert expiry for {domain}: {e}")
            return None
