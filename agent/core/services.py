"""
Service wiring.

Builds the stores, host-tool wrappers, API client, notifier and
orchestrator once at startup and hands them around explicitly.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from config import get_config_path, get_data_dir, get_orders_dir, settings
from core.api_client import DeploymentAPIClient
from core.callback_notifier import CallbackNotifier
from core.cert_store import CertStoreService
from core.cert_utils import PfxConverter
from core.challenge_responder import ChallengeResponder
from core.command_runner import CommandRunner
from core.config_store import ConfigStore
from core.encryption_service import EncryptionService
from core.iis_sites import IISSiteService
from core.installer import CertificateDeployer
from core.key_store import OrderStore
from core.orchestrator import DeploymentOrchestrator
from core.ssl_bindings import SSLBindingService
from models.certificate import DeploymentResult
from models.config import AgentConfig

logger = logging.getLogger(__name__)


@dataclass
class AgentServices:
    config_store: ConfigStore
    orders: OrderStore
    api: DeploymentAPIClient
    sites: IISSiteService
    notifier: CallbackNotifier
    orchestrator: DeploymentOrchestrator
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    async def resolve_legacy_mode(self, config: AgentConfig) -> bool:
        """Config overrides settings, settings override IIS version detection."""
        if config.legacy_binding_mode is not None:
            return config.legacy_binding_mode
        if settings.legacy_binding_mode is not None:
            return settings.legacy_binding_mode
        return await self.sites.is_legacy()

    async def run_pass(self) -> List[DeploymentResult]:
        """
        Load the current configuration and run one deployment pass.

        Raises:
            ConfigStoreError: if config.json is unreadable or the token cannot be decrypted
        """
        config = await asyncio.to_thread(self.config_store.load)
        self.api.configure(config.api_base_url, self.config_store.get_token(config))
        legacy_mode = await self.resolve_legacy_mode(config)
        if legacy_mode:
            logger.info("Legacy binding mode: certificates are bound to 0.0.0.0:port")
        return await self.orchestrator.run_pass(config, legacy_mode=legacy_mode, cancel_event=self.cancel_event)

    async def shutdown(self) -> None:
        self.cancel_event.set()
        await self.notifier.shutdown()


def build_services(cancel_event: Optional[asyncio.Event] = None) -> AgentServices:
    """Construct the service graph from settings."""
    cancel_event = cancel_event or asyncio.Event()
    lock = threading.RLock()
    encryption = EncryptionService(
        passphrase=settings.private_key_encryption_key, key_file=get_data_dir() / "secret.key"
    )

    config_store = ConfigStore(
        get_config_path(), encryption, lock=lock, remote_auto_renew_days=settings.remote_auto_renew_days
    )
    orders = OrderStore(get_orders_dir(), encryption, lock=lock)
    runner = CommandRunner()
    sites = IISSiteService(runner, settings.appcmd_path)
    bindings = SSLBindingService(runner)
    api = DeploymentAPIClient()
    notifier = CallbackNotifier(
        api,
        max_attempts=settings.callback_max_attempts,
        backoff_seconds=settings.callback_backoff_seconds,
        server_type=settings.server_type,
        cancel_event=cancel_event,
    )
    deployer = CertificateDeployer(PfxConverter(), CertStoreService(runner), bindings)

    orchestrator = DeploymentOrchestrator(
        api=api,
        orders=orders,
        deployer=deployer,
        bindings=bindings,
        challenges=ChallengeResponder(sites),
        notifier=notifier,
        config_store=config_store,
        remote_auto_renew_days=settings.remote_auto_renew_days,
    )
    return AgentServices(
        config_store=config_store,
        orders=orders,
        api=api,
        sites=sites,
        notifier=notifier,
        orchestrator=orchestrator,
        cancel_event=cancel_event,
    )
