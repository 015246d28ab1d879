"""
Renewal decisions.

Pure functions of certificate state and time: nothing here touches the
network, the filesystem or the clock.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

from models.certificate import RemoteCertStatus, days_until_expiry

logger = logging.getLogger(__name__)


class RenewalConfigError(Exception):
    """Renewal thresholds that would race the issuer or each other."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class RenewalStrategy(str, Enum):
    LOCAL_KEY = "local_key"   # key and CSR generated here, issuer signs
    FETCH = "fetch"           # issuer renews on its own, agent downloads


class RenewalAction(str, Enum):
    SKIP = "skip"
    REQUEST_NEW = "request_new"
    DEPLOY = "deploy"


@dataclass
class CertState:
    """
    What is known about a configured certificate at decision time.

    ``local_key_matches`` is None when no usable local key exists,
    otherwise whether it verifies against the live certificate.
    """
    status: str
    expires_on: Optional[date] = None
    local_key_matches: Optional[bool] = None
    remote_key_available: bool = False
    file_challenge_pending: bool = False


@dataclass
class RenewalDecision:
    action: RenewalAction
    reason: str = ""
    use_local_key: bool = False
    discard_stored_key: bool = False
    run_file_challenge: bool = False
    days_left: Optional[int] = None


class RenewalPolicy:
    """
    Decides Skip, RequestNew or Deploy for one certificate.

    Thresholds are ordered so local-key renewal happens before the issuer
    renews on its own, and fetch happens after: ``renew_days_local`` must
    exceed both ``renew_days_fetch`` and the issuer's auto-renew window.
    """

    def __init__(self, renew_days_local: int, renew_days_fetch: int, remote_auto_renew_days: int = 14):
        if min(renew_days_local, renew_days_fetch, remote_auto_renew_days) < 1:
            raise RenewalConfigError("Renewal thresholds must be at least 1 day")
        if renew_days_local <= renew_days_fetch:
            raise RenewalConfigError(
                f"renew_days_local ({renew_days_local}) must be greater than renew_days_fetch ({renew_days_fetch})"
            )
        if renew_days_local <= remote_auto_renew_days:
            raise RenewalConfigError(
                f"renew_days_local ({renew_days_local}) must be greater than the issuer's "
                f"auto-renew threshold ({remote_auto_renew_days})",
                suggestion="Raise renew_days_local so local renewal never races the issuer",
            )
        if renew_days_fetch >= remote_auto_renew_days:
            logger.warning(
                f"renew_days_fetch ({renew_days_fetch}) is not below the issuer's auto-renew threshold "
                f"({remote_auto_renew_days}); fetch may pick up the certificate before it is renewed"
            )
        self.renew_days_local = renew_days_local
        self.renew_days_fetch = renew_days_fetch
        self.remote_auto_renew_days = remote_auto_renew_days

    def decide(self, state: Optional[CertState], strategy: RenewalStrategy, now: datetime) -> RenewalDecision:
        """
        Args:
            state: Current certificate state, or None when no order exists yet
            strategy: Local-key or fetch mode
            now: Decision time

        Returns:
            RenewalDecision
        """
        if strategy == RenewalStrategy.FETCH:
            return self._decide_fetch(state, now)
        return self._decide_local_key(state, now)

    def _decide_local_key(self, state: Optional[CertState], now: datetime) -> RenewalDecision:
        if state is None:
            return RenewalDecision(RenewalAction.REQUEST_NEW, reason="no existing order")

        if state.status == RemoteCertStatus.PROCESSING.value:
            return RenewalDecision(
                RenewalAction.SKIP,
                reason="CSR submitted, awaiting issuance",
                run_file_challenge=state.file_challenge_pending,
            )

        if state.status != RemoteCertStatus.ACTIVE.value:
            return RenewalDecision(RenewalAction.REQUEST_NEW, reason=f"order status is {state.status or 'unknown'}")

        days_left = None
        if state.expires_on is not None:
            days_left = days_until_expiry(state.expires_on, now)
            if days_left > self.renew_days_local:
                return RenewalDecision(
                    RenewalAction.SKIP, reason=f"not yet due ({days_left} days left)", days_left=days_left
                )

        if state.local_key_matches is True:
            return RenewalDecision(
                RenewalAction.DEPLOY, reason="local key matches certificate", use_local_key=True, days_left=days_left
            )
        if state.local_key_matches is False:
            return RenewalDecision(
                RenewalAction.REQUEST_NEW,
                reason="stored private key does not match the issued certificate",
                discard_stored_key=True,
                days_left=days_left,
            )
        if state.remote_key_available:
            return RenewalDecision(RenewalAction.DEPLOY, reason="using issuer-provided key", days_left=days_left)
        return RenewalDecision(RenewalAction.REQUEST_NEW, reason="no private key available", days_left=days_left)

    def _decide_fetch(self, state: Optional[CertState], now: datetime) -> RenewalDecision:
        if state is None:
            return RenewalDecision(RenewalAction.SKIP, reason="no certificate available")
        if state.expires_on is None:
            return RenewalDecision(RenewalAction.SKIP, reason="unparseable expiry date")

        days_left = days_until_expiry(state.expires_on, now)
        if days_left > self.renew_days_fetch:
            return RenewalDecision(
                RenewalAction.SKIP, reason=f"not yet due ({days_left} days left)", days_left=days_left
            )
        return RenewalDecision(RenewalAction.DEPLOY, reason=f"{days_left} days left", days_left=days_left)
