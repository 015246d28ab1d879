"""
Certificate installation and binding.

Converts PEM material once per certificate, installs it into the
machine store, then binds it to every target independently. Each target
produces its own result; one failing binding never blocks the others.
"""

import asyncio
import logging
from typing import List, Optional, Protocol

from core.cert_store import CertInstallError, InstallVerificationError
from core.cert_utils import CertificateFormatError, PfxBundle, compute_thumbprint
from core.command_runner import CommandError
from core.ssl_bindings import BindingError, BindingVerificationError, SSLBinding
from core.validation import ConfigurationError
from models.certificate import BindingTarget, DeploymentResult

logger = logging.getLogger(__name__)

DEPLOY_SUCCESS_MESSAGE = "deployment succeeded"


class CertConverter(Protocol):
    def convert(self, cert_pem: str, key_pem: str, chain_pem: str = "") -> PfxBundle: ...


class CertInstaller(Protocol):
    async def install_pfx(self, bundle: PfxBundle, expected_thumbprint: Optional[str] = None) -> str: ...

    async def set_friendly_name(self, thumbprint: str, name: str) -> None: ...


class Binder(Protocol):
    async def bind(self, target: BindingTarget, thumbprint: str) -> SSLBinding: ...


def _fail_all(targets: List[BindingTarget], message: str, order_id: int) -> List[DeploymentResult]:
    return [DeploymentResult(domain=t.domain, success=False, message=message, order_id=order_id) for t in targets]


class CertificateDeployer:
    """Install once, bind many, verify each binding."""

    def __init__(self, converter: CertConverter, installer: CertInstaller, binder: Binder):
        self.converter = converter
        self.installer = installer
        self.binder = binder

    async def deploy(
        self,
        cert_pem: str,
        key_pem: str,
        chain_pem: str,
        targets: List[BindingTarget],
        order_id: int = 0,
        friendly_name: Optional[str] = None,
    ) -> List[DeploymentResult]:
        """
        Install a certificate and bind it to each target.

        Args:
            cert_pem: Leaf certificate
            key_pem: Matching private key
            chain_pem: CA chain, may be empty
            targets: Listeners to bind
            order_id: Reported in every result
            friendly_name: Store label to set after install (legacy IP bindings)

        Returns:
            One DeploymentResult per target
        """
        if not targets:
            return []

        try:
            expected_thumbprint = compute_thumbprint(cert_pem)
            bundle = await asyncio.to_thread(self.converter.convert, cert_pem, key_pem, chain_pem)
        except CertificateFormatError as e:
            logger.error(f"PFX conversion failed for order {order_id}: {e.message}")
            return _fail_all(targets, f"PFX conversion failed: {e.message}", order_id)

        try:
            thumbprint = await self.installer.install_pfx(bundle, expected_thumbprint)
        except InstallVerificationError as e:
            logger.warning(f"Install of order {order_id} reported success but unverified: {e.message}")
            return _fail_all(targets, f"install reported success but unverified: {e.message}", order_id)
        except (CertInstallError, CommandError) as e:
            logger.error(f"Certificate install failed for order {order_id}: {e.message}")
            return _fail_all(targets, f"certificate install failed: {e.message}", order_id)
        finally:
            await asyncio.to_thread(bundle.cleanup)

        if friendly_name:
            await self._set_friendly_name(thumbprint, friendly_name)

        results = []
        for target in targets:
            results.append(await self._bind_target(target, thumbprint, order_id))
        return results

    async def _set_friendly_name(self, thumbprint: str, name: str) -> None:
        try:
            await self.installer.set_friendly_name(thumbprint, name)
        except (CertInstallError, ConfigurationError, CommandError) as e:
            logger.warning(f"Failed to set friendly name {name} on {thumbprint}: {e.message}")

    async def _bind_target(self, target: BindingTarget, thumbprint: str, order_id: int) -> DeploymentResult:
        kind = "IP" if target.is_ip_binding else "SNI"
        try:
            await self.binder.bind(target, thumbprint)
        except BindingVerificationError as e:
            return DeploymentResult(
                domain=target.domain, success=False, message=e.message, thumbprint=thumbprint, order_id=order_id
            )
        except (BindingError, ConfigurationError, CommandError) as e:
            logger.error(f"{kind} binding {target.address} for {target.domain} failed: {e.message}")
            return DeploymentResult(
                domain=target.domain,
                success=False,
                message=f"binding failed: {e.message}",
                thumbprint=thumbprint,
                order_id=order_id,
            )

        logger.info(f"{kind} binding {target.address} now serves {target.domain} with {thumbprint}")
        return DeploymentResult(
            domain=target.domain, success=True, message=DEPLOY_SUCCESS_MESSAGE, thumbprint=thumbprint, order_id=order_id
        )
