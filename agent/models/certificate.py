"""
Certificate models for deployment orchestration.

Provides Pydantic models for configured certificates, the issuing
service's view of an order, on-disk order metadata, binding targets
and per-domain deployment results.
"""

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_HTTPS_PORT = 443
EXPIRY_DATE_FORMAT = "%Y-%m-%d"


class ValidationMethod(str, Enum):
    """Domain validation method requested from the issuing service."""
    FILE = "file"               # HTTP file under /.well-known/
    DELEGATION = "delegation"   # DNS CNAME delegation


class RemoteCertStatus(str, Enum):
    """Order status reported by the issuing service."""
    ACTIVE = "active"
    PROCESSING = "processing"   # CSR submitted, validation in progress
    PENDING = "pending"
    UNPAID = "unpaid"


def parse_expiry_date(value: Optional[str]) -> Optional[date]:
    """Parse a YYYY-MM-DD expiry string, returning None when absent or malformed."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip()[:10], EXPIRY_DATE_FORMAT).date()
    except ValueError:
        return None


def days_until_expiry(expires_on: date, now: Optional[datetime] = None) -> int:
    """
    Whole days from now until 00:00 UTC of the expiry date.

    Truncates toward zero, so a certificate expiring in 14.9 days
    reports 14 and one that expired half a day ago reports 0.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    expires_at = datetime.combine(expires_on, time.min, tzinfo=timezone.utc)
    return int((expires_at - now).total_seconds() / 86400)


class BindRule(BaseModel):
    """A domain/port pair the certificate should be bound to."""
    domain: str = Field(..., description="Host name to bind (SNI host header)")
    port: int = Field(default=DEFAULT_HTTPS_PORT, ge=0, le=65535, description="Listener port, 0 means 443")
    site_name: Optional[str] = Field(None, description="IIS site the rule belongs to (informational)")

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("port")
    @classmethod
    def default_port(cls, v: int) -> int:
        return v or DEFAULT_HTTPS_PORT


class CertificateConfig(BaseModel):
    """
    One configured certificate.

    Either ``auto_bind_mode`` is set and targets are discovered from the
    existing HTTPS bindings, or ``bind_rules`` lists them explicitly.
    """
    order_id: int = Field(default=0, ge=0, description="Issuing-service order id, 0 until first request succeeds")
    domain: str = Field(..., description="Primary domain (CN)")
    domains: List[str] = Field(default_factory=list, description="All domains on the certificate (SANs)")
    expires_at: Optional[str] = Field(None, description="Cached expiry date, YYYY-MM-DD")
    serial_number: Optional[str] = Field(None, description="Cached certificate serial number")
    enabled: bool = Field(default=True)
    bind_rules: List[BindRule] = Field(default_factory=list)
    use_local_key: bool = Field(
        default=False, description="Generate the key and CSR locally instead of fetching the issued key"
    )
    validation_method: Optional[ValidationMethod] = Field(
        None, description="file, delegation, or unset to let the issuing service choose"
    )
    auto_bind_mode: bool = Field(default=False, description="Rebind existing HTTPS bindings that match the domains")

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("Domain cannot be empty")
        return v

    @field_validator("domains")
    @classmethod
    def normalize_domains(cls, v: List[str]) -> List[str]:
        return [d.strip().lower() for d in v if d and d.strip()]

    @field_validator("validation_method", mode="before")
    @classmethod
    def empty_validation_method(cls, v):
        return v or None

    def all_domains(self) -> List[str]:
        """Primary domain followed by the SANs, without duplicates."""
        seen = []
        for d in [self.domain, *self.domains]:
            if d not in seen:
                seen.append(d)
        return seen

    def expiry_date(self) -> Optional[date]:
        return parse_expiry_date(self.expires_at)


class FileValidation(BaseModel):
    """File-based domain validation challenge issued by the remote service."""
    path: str = ""
    content: str = ""


class CertData(BaseModel):
    """Certificate order as returned by the issuing service."""
    order_id: int = 0
    domain: str = ""
    domains: str = Field(default="", description="Comma-separated domain list")
    status: str = ""
    certificate: str = ""
    private_key: str = ""
    ca_certificate: str = ""
    expires_at: str = ""
    created_at: str = ""
    file: Optional[FileValidation] = None

    def domain_list(self) -> List[str]:
        return [d.strip() for d in self.domains.split(",") if d.strip()]

    def expiry_date(self) -> Optional[date]:
        return parse_expiry_date(self.expires_at)

    @property
    def is_active(self) -> bool:
        return self.status == RemoteCertStatus.ACTIVE.value

    @property
    def wants_file_validation(self) -> bool:
        return self.file is not None and bool(self.file.path)


class OrderMeta(BaseModel):
    """Metadata persisted next to an order's key and certificate."""
    order_id: int
    domain: str
    domains: List[str] = Field(default_factory=list)
    status: str = ""
    expires_at: Optional[str] = None
    created_at: Optional[datetime] = None
    last_deployed: Optional[datetime] = None
    thumbprint: Optional[str] = None


class BindingTarget(BaseModel):
    """
    A listener the certificate should be bound to.

    IP bindings (``ipport=``) and host-name bindings (``hostnameport=``, SNI)
    use different binding primitives and are never conflated.
    """
    domain: str = Field(..., description="Domain reported in the deployment result")
    host: str = Field(..., description="Host name for SNI bindings or IP address for IP bindings")
    port: int = Field(default=DEFAULT_HTTPS_PORT, ge=1, le=65535)
    is_ip_binding: bool = False
    site_name: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


class DeploymentResult(BaseModel):
    """Outcome of acting on one domain during a pass."""
    domain: str
    success: bool
    message: str
    thumbprint: str = ""
    order_id: int = 0


class CallbackRequest(BaseModel):
    """Deployment outcome reported back to the issuing service."""
    order_id: int
    domain: str
    status: str = Field(..., description="success or failure")
    deployed_at: str
    server_type: str = "IIS"
    message: str = ""
