"""
Deployment configuration models.

The persisted config.json: issuing-service endpoint, encrypted API token,
configured certificates and the renewal thresholds.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from models.certificate import CertificateConfig

DEFAULT_RENEW_DAYS_LOCAL = 15
DEFAULT_RENEW_DAYS_FETCH = 13
DEFAULT_CHECK_INTERVAL_HOURS = 6


class AgentConfig(BaseModel):
    """Persisted deployment configuration."""
    api_base_url: str = Field(default="", description="Issuing-service deployment API endpoint")
    encrypted_token: str = Field(default="", description="Bearer token, encrypted at rest")
    certificates: List[CertificateConfig] = Field(default_factory=list)
    renew_days_local: int = Field(
        default=DEFAULT_RENEW_DAYS_LOCAL, ge=1, description="Local-key mode: request a new certificate this many days out"
    )
    renew_days_fetch: int = Field(
        default=DEFAULT_RENEW_DAYS_FETCH, ge=1, description="Fetch mode: pick up the renewed certificate this many days out"
    )
    last_check: Optional[datetime] = None
    auto_check_enabled: bool = False
    check_interval: int = Field(default=DEFAULT_CHECK_INTERVAL_HOURS, ge=1, description="Hours between passes")
    legacy_binding_mode: Optional[bool] = Field(
        None, description="IIS 7 compatibility (IP bindings, no SNI); detected when unset"
    )

    @model_validator(mode="after")
    def check_renewal_order(self) -> "AgentConfig":
        if self.renew_days_local <= self.renew_days_fetch:
            raise ValueError(
                f"renew_days_local ({self.renew_days_local}) must be greater than "
                f"renew_days_fetch ({self.renew_days_fetch})"
            )
        return self

    def enabled_certificates(self) -> List[CertificateConfig]:
        return [c for c in self.certificates if c.enabled]


class CredentialsUpdate(BaseModel):
    """Request body for updating the issuing-service endpoint and token."""
    api_base_url: str = Field(..., description="HTTPS deployment API endpoint")
    token: str = Field(..., min_length=1, description="Bearer token; stored encrypted")


class CertificateSummary(BaseModel):
    """A configured certificate as shown by the HTTP surface, without secrets."""
    domain: str
    order_id: int
    enabled: bool
    mode: str = Field(..., description="local_key or fetch")
    auto_bind_mode: bool
    bind_targets: List[str] = Field(default_factory=list)
    expires_at: Optional[str] = None
    days_until_expiry: Optional[int] = None
    last_deployed: Optional[datetime] = None
