"""
Deployment pass orchestration.

Walks the configured certificates in order, asks the renewal policy what
to do with each, obtains key material (locally generated or fetched from
the issuer), resolves contested domains, installs and binds, and hands
every outcome to the callback notifier.

One configuration failing never stops the pass; it becomes a failed
DeploymentResult and the walk continues.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from core.api_client import APIError, SubmitResult
from core.cert_utils import CertificateFormatError, generate_key_and_csr, parse_certificate, verify_key_matches
from core.challenge_responder import ChallengeError
from core.config_store import ConfigStoreError
from core.conflict_resolver import ConflictResolver
from core.iis_sites import SiteLookupError
from core.key_store import KeyStoreError
from core.renewal_policy import CertState, RenewalAction, RenewalConfigError, RenewalPolicy, RenewalStrategy
from core.ssl_bindings import BindingError, SSLBinding
from core.validation import ConfigurationError, is_ip_address, normalize_domain, validate_certificate_config, wildcard_name
from models.certificate import (
    BindingTarget,
    CertData,
    CertificateConfig,
    DeploymentResult,
    OrderMeta,
    RemoteCertStatus,
    ValidationMethod,
)
from models.config import AgentConfig

logger = logging.getLogger(__name__)


class OrderNotReadyError(Exception):
    """The issuer has no deployable certificate for the order."""

    def __init__(self, message: str, order_id: int = 0):
        self.message = message
        self.order_id = order_id
        super().__init__(message)


class RemoteAPI(Protocol):
    async def get_certificate(self, order_id: int) -> CertData: ...

    async def submit_csr(
        self, domain: str, csr_pem: str, order_id: int = 0, validation_method: Optional[ValidationMethod] = None
    ) -> SubmitResult: ...


class OrderRepository(Protocol):
    def has_private_key(self, order_id: int) -> bool: ...

    def load_private_key(self, order_id: int) -> str: ...

    def save_private_key(self, order_id: int, key_pem: str) -> None: ...

    def save_certificate(self, order_id: int, cert_pem: str, chain_pem: str = "") -> None: ...

    def load_meta(self, order_id: int) -> Optional[OrderMeta]: ...

    def save_meta(self, meta: OrderMeta) -> None: ...

    def delete_order(self, order_id: int) -> None: ...


class BindingDiscovery(Protocol):
    async def find_bindings_for_domains(self, domains: List[str]) -> Dict[str, SSLBinding]: ...


class Deployer(Protocol):
    async def deploy(
        self,
        cert_pem: str,
        key_pem: str,
        chain_pem: str,
        targets: List[BindingTarget],
        order_id: int = 0,
        friendly_name: Optional[str] = None,
    ) -> List[DeploymentResult]: ...


class FileChallengeResponder(Protocol):
    async def respond_to_file_challenge(self, domain: str, path: str, content: str): ...


class Notifier(Protocol):
    def notify(self, order_id: int, domain: str, success: bool, message: str): ...


class ConfigSaver(Protocol):
    def save(self, config: AgentConfig) -> None: ...


@dataclass
class KeyMaterial:
    """Everything needed to install one certificate."""
    order_id: int
    cert_data: CertData
    key_pem: str

    @property
    def cert_pem(self) -> str:
        return self.cert_data.certificate

    @property
    def chain_pem(self) -> str:
        return self.cert_data.ca_certificate


def summarize(results: List[DeploymentResult]) -> Tuple[int, int]:
    """Returns (succeeded, failed) counts."""
    succeeded = sum(1 for r in results if r.success)
    return succeeded, len(results) - succeeded


class DeploymentOrchestrator:
    """Runs deployment passes over an AgentConfig."""

    def __init__(
        self,
        api: RemoteAPI,
        orders: OrderRepository,
        deployer: Deployer,
        bindings: BindingDiscovery,
        challenges: FileChallengeResponder,
        notifier: Notifier,
        config_store: ConfigSaver,
        remote_auto_renew_days: int = 14,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.api = api
        self.orders = orders
        self.deployer = deployer
        self.bindings = bindings
        self.challenges = challenges
        self.notifier = notifier
        self.config_store = config_store
        self.remote_auto_renew_days = remote_auto_renew_days
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_pass(
        self,
        config: AgentConfig,
        legacy_mode: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[DeploymentResult]:
        """
        Process every enabled certificate once.

        Args:
            config: Loaded configuration; order ids and expiry caches are updated in place
            legacy_mode: Bind to 0.0.0.0:port instead of SNI host names (IIS 7)
            cancel_event: Checked before each certificate; a certificate in progress finishes

        Returns:
            Results for every domain acted on, in processing order
        """
        results: List[DeploymentResult] = []
        try:
            policy = RenewalPolicy(config.renew_days_local, config.renew_days_fetch, self.remote_auto_renew_days)
        except RenewalConfigError as e:
            logger.error(f"Renewal thresholds rejected: {e.message}")
            return [
                DeploymentResult(domain=c.domain, success=False, message=e.message, order_id=c.order_id)
                for c in config.enabled_certificates()
            ]

        resolver = ConflictResolver(config.certificates)
        for domain, indexes in resolver.conflicts.items():
            owner = resolver.owner_of(domain)
            owner_desc = f"config #{owner} (order {config.certificates[owner].order_id})" if owner is not None else "none"
            logger.warning(f"Domain {domain} is claimed by configs {indexes}; binding owner: {owner_desc}")

        enabled = config.enabled_certificates()
        logger.info(f"Starting deployment pass over {len(enabled)} enabled certificates")

        for index, cfg in enumerate(config.certificates):
            if not cfg.enabled:
                continue
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Deployment pass cancelled")
                break
            results.extend(await self._process(index, cfg, config, policy, resolver, legacy_mode))

        config.last_check = self.clock()
        try:
            await asyncio.to_thread(self.config_store.save, config)
        except (ConfigStoreError, OSError) as e:
            logger.error(f"Failed to save configuration after the pass: {e}")

        succeeded, failed = summarize(results)
        logger.info(f"Deployment pass complete: {succeeded} succeeded, {failed} failed")
        return results

    async def _process(
        self,
        index: int,
        cfg: CertificateConfig,
        config: AgentConfig,
        policy: RenewalPolicy,
        resolver: ConflictResolver,
        legacy_mode: bool,
    ) -> List[DeploymentResult]:
        logger.info(f"Checking {cfg.domain} (order {cfg.order_id}, {'local key' if cfg.use_local_key else 'fetch'})")
        try:
            validate_certificate_config(cfg)
            if cfg.use_local_key:
                material = await self._local_key_material(cfg, config, policy)
            else:
                material = await self._fetch_material(cfg, policy)
            if material is None:
                return []
            targets = await self._targets(index, cfg, resolver, legacy_mode)
        except ConfigurationError as e:
            logger.error(f"Configuration error for {cfg.domain}: {e.message}")
            return [self._failure(cfg, e.message)]
        except OrderNotReadyError as e:
            logger.warning(f"{cfg.domain}: {e.message}")
            return [self._failure(cfg, e.message)]
        except APIError as e:
            logger.error(f"Deployment API error for {cfg.domain}: {e.message}")
            return [self._failure(cfg, e.message)]
        except (KeyStoreError, ConfigStoreError, CertificateFormatError, BindingError) as e:
            logger.error(f"Failed to prepare {cfg.domain}: {e.message}")
            return [self._failure(cfg, e.message)]

        if not targets:
            logger.info(f"No bind targets for {cfg.domain}, nothing to deploy")
            return []

        friendly_name = wildcard_name(cfg.domain) if legacy_mode and not cfg.auto_bind_mode else None
        results = await self.deployer.deploy(
            material.cert_pem, material.key_pem, material.chain_pem, targets, material.order_id, friendly_name
        )

        if any(r.success for r in results):
            try:
                await asyncio.to_thread(self._record_deployment, cfg, material, results)
            except (KeyStoreError, OSError) as e:
                logger.error(f"Deployed {cfg.domain} but failed to record order {material.order_id}: {e}")

        for result in results:
            self.notifier.notify(material.order_id, result.domain, result.success, result.message)
        return results

    def _failure(self, cfg: CertificateConfig, message: str) -> DeploymentResult:
        return DeploymentResult(domain=cfg.domain, success=False, message=message, order_id=cfg.order_id)

    async def _local_key_material(
        self, cfg: CertificateConfig, config: AgentConfig, policy: RenewalPolicy
    ) -> Optional[KeyMaterial]:
        cert_data: Optional[CertData] = None
        state: Optional[CertState] = None
        local_key: Optional[str] = None

        if cfg.order_id > 0:
            cert_data = await self.api.get_certificate(cfg.order_id)
            state = CertState(
                status=cert_data.status,
                expires_on=cert_data.expiry_date(),
                remote_key_available=bool(cert_data.private_key),
                file_challenge_pending=cert_data.wants_file_validation,
            )
            if cert_data.is_active and self.orders.has_private_key(cfg.order_id):
                local_key, state.local_key_matches = self._check_local_key(cfg.order_id, cert_data)

        decision = policy.decide(state, RenewalStrategy.LOCAL_KEY, self.clock())

        if decision.action == RenewalAction.SKIP:
            logger.info(f"Skipping {cfg.domain}: {decision.reason}")
            if decision.run_file_challenge:
                await self._respond_to_challenge(cfg.domain, cert_data)
            return None

        if decision.action == RenewalAction.DEPLOY:
            key_pem = local_key if decision.use_local_key else cert_data.private_key
            logger.info(f"Deploying {cfg.domain}: {decision.reason}")
            return KeyMaterial(order_id=cfg.order_id, cert_data=cert_data, key_pem=key_pem)

        if decision.discard_stored_key:
            logger.warning(
                f"Stored private key for order {cfg.order_id} ({cfg.domain}) does not match the issued "
                f"certificate; discarding it and requesting a new certificate"
            )
            await asyncio.to_thread(self.orders.delete_order, cfg.order_id)

        logger.info(f"Requesting new certificate for {cfg.domain}: {decision.reason}")
        return await self._request_new(cfg, config)

    def _check_local_key(self, order_id: int, cert_data: CertData) -> Tuple[Optional[str], Optional[bool]]:
        """Load the stored key and compare it with the live certificate; (None, None) if unusable."""
        try:
            key_pem = self.orders.load_private_key(order_id)
            return key_pem, verify_key_matches(cert_data.certificate, key_pem)
        except (KeyStoreError, CertificateFormatError) as e:
            logger.warning(f"Cannot verify stored key for order {order_id}: {e.message}")
            return None, None

    async def _request_new(self, cfg: CertificateConfig, config: AgentConfig) -> Optional[KeyMaterial]:
        key_pem, csr_pem = await asyncio.to_thread(generate_key_and_csr, cfg.domain)
        submitted = await self.api.submit_csr(normalize_domain(cfg.domain), csr_pem, cfg.order_id, cfg.validation_method)
        await asyncio.to_thread(self.orders.save_private_key, submitted.order_id, key_pem)

        if submitted.order_id != cfg.order_id:
            logger.info(f"{cfg.domain}: order id {cfg.order_id} -> {submitted.order_id}")
            cfg.order_id = submitted.order_id
            try:
                await asyncio.to_thread(self.config_store.save, config)
            except (ConfigStoreError, OSError) as e:
                raise ConfigStoreError(
                    f"order {submitted.order_id} was assigned but the configuration could not be saved: {e}"
                )

        if submitted.status != RemoteCertStatus.ACTIVE.value:
            logger.info(f"CSR for {cfg.domain} submitted (order {submitted.order_id}), awaiting issuance")
            return None

        cert_data = await self.api.get_certificate(submitted.order_id)
        if not cert_data.is_active:
            logger.info(f"Order {submitted.order_id} not yet active ({cert_data.status}), awaiting issuance")
            return None

        if not verify_key_matches(cert_data.certificate, key_pem):
            await asyncio.to_thread(self.orders.delete_order, submitted.order_id)
            raise OrderNotReadyError(
                f"issued certificate for order {submitted.order_id} does not match the submitted key",
                order_id=submitted.order_id,
            )
        logger.info(f"Certificate for {cfg.domain} issued immediately (order {submitted.order_id})")
        return KeyMaterial(order_id=submitted.order_id, cert_data=cert_data, key_pem=key_pem)

    async def _fetch_material(self, cfg: CertificateConfig, policy: RenewalPolicy) -> Optional[KeyMaterial]:
        if cfg.order_id <= 0:
            raise ConfigurationError(f"{cfg.domain}: fetch mode requires an order id", domain=cfg.domain)

        cert_data = await self.api.get_certificate(cfg.order_id)
        if not cert_data.is_active:
            raise OrderNotReadyError(f"certificate status: {cert_data.status}", order_id=cfg.order_id)

        state = CertState(status=cert_data.status, expires_on=cert_data.expiry_date())
        decision = policy.decide(state, RenewalStrategy.FETCH, self.clock())
        if decision.action == RenewalAction.SKIP:
            logger.info(f"Skipping {cfg.domain}: {decision.reason}")
            return None
        if not cert_data.private_key:
            raise OrderNotReadyError("issuer returned no private key", order_id=cfg.order_id)
        return KeyMaterial(order_id=cfg.order_id, cert_data=cert_data, key_pem=cert_data.private_key)

    async def _respond_to_challenge(self, domain: str, cert_data: Optional[CertData]) -> None:
        if cert_data is None or cert_data.file is None:
            return
        try:
            await self.challenges.respond_to_file_challenge(domain, cert_data.file.path, cert_data.file.content)
        except (ChallengeError, SiteLookupError) as e:
            logger.error(f"File validation for {domain} failed: {e.message}")

    async def _targets(
        self, index: int, cfg: CertificateConfig, resolver: ConflictResolver, legacy_mode: bool
    ) -> List[BindingTarget]:
        targets: List[BindingTarget] = []

        if cfg.auto_bind_mode:
            found = await self.bindings.find_bindings_for_domains(cfg.all_domains())
            for host, binding in found.items():
                if not resolver.owns(index, host):
                    logger.info(f"Skipping {host}: bound by another configuration")
                    continue
                targets.append(self._target(host, binding.port, legacy_mode))
            return targets

        for rule in cfg.bind_rules:
            if not resolver.owns(index, rule.domain):
                logger.info(f"Skipping bind rule {rule.domain}:{rule.port}: owned by another configuration")
                continue
            targets.append(self._target(rule.domain, rule.port, legacy_mode, rule.site_name))
        return targets

    @staticmethod
    def _target(domain: str, port: int, legacy_mode: bool, site_name: Optional[str] = None) -> BindingTarget:
        if is_ip_address(domain):
            return BindingTarget(domain=domain, host=domain, port=port, is_ip_binding=True, site_name=site_name)
        if legacy_mode:
            return BindingTarget(domain=domain, host="0.0.0.0", port=port, is_ip_binding=True, site_name=site_name)
        return BindingTarget(domain=domain, host=domain, port=port, site_name=site_name)

    def _record_deployment(self, cfg: CertificateConfig, material: KeyMaterial, results: List[DeploymentResult]) -> None:
        """Persist the deployed certificate and refresh the cached expiry on the config."""
        cert_data = material.cert_data
        thumbprint = next((r.thumbprint for r in results if r.success and r.thumbprint), None)

        self.orders.save_certificate(material.order_id, material.cert_pem, material.chain_pem)
        meta = self.orders.load_meta(material.order_id) or OrderMeta(order_id=material.order_id, domain=cfg.domain)
        meta.domains = cert_data.domain_list() or cfg.all_domains()
        meta.status = cert_data.status
        meta.expires_at = cert_data.expires_at or None
        meta.last_deployed = self.clock()
        meta.thumbprint = thumbprint
        if meta.created_at is None:
            meta.created_at = self.clock()
        self.orders.save_meta(meta)

        if cert_data.expires_at:
            cfg.expires_at = cert_data.expires_at[:10]
        try:
            cfg.serial_number = parse_certificate(material.cert_pem)["serial_number"]
        except CertificateFormatError as e:
            logger.debug(f"Could not read serial number for {cfg.domain}: {e.message}")
