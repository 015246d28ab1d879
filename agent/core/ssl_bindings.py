"""
HTTP.sys SSL certificate bindings via netsh.

Binding is delete-then-add followed by a re-read of the live binding
table; a binding only counts as done once the table shows the expected
certificate hash on the expected address.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from core.command_runner import CommandError, CommandRunner
from core.validation import (
    ConfigurationError,
    is_ip_address,
    matches_any,
    validate_binding_host,
    validate_port,
    validate_thumbprint,
)
from models.certificate import DEFAULT_HTTPS_PORT, BindingTarget

logger = logging.getLogger(__name__)

DEFAULT_APP_ID = "{00000000-0000-0000-0000-000000000000}"
CERT_STORE_NAME = "MY"

# netsh output labels differ by system language; colons may be full-width
_SNI_BINDING_RE = re.compile(r"(?:Hostname:port|主机名[:：]端口)\s*[:：]\s*(.+)", re.IGNORECASE)
_IP_BINDING_RE = re.compile(r"(?:IP:port|IP[:：]端口)\s*[:：]\s*(.+)", re.IGNORECASE)
_CERT_HASH_RE = re.compile(r"(?:Certificate Hash|证书哈希)\s*[:：]\s*([a-fA-F0-9]+)", re.IGNORECASE)
_APP_ID_RE = re.compile(r"(?:Application ID|应用程序\s*ID)\s*[:：]\s*(\{[^}]+\})", re.IGNORECASE)
_STORE_RE = re.compile(r"(?:Certificate Store Name|证书存储名称)\s*[:：]\s*(.+)", re.IGNORECASE)


class BindingError(Exception):
    """A binding could not be created or removed."""

    def __init__(self, message: str, address: Optional[str] = None, suggestion: Optional[str] = None):
        self.message = message
        self.address = address
        self.suggestion = suggestion
        super().__init__(message)


class BindingVerificationError(BindingError):
    """netsh reported success but the live binding table disagrees."""

    pass


@dataclass
class SSLBinding:
    """One entry of ``netsh http show sslcert``."""
    address: str
    cert_hash: str = ""
    app_id: str = ""
    cert_store_name: str = ""
    is_ip_binding: bool = False

    @property
    def host(self) -> str:
        idx = self.address.rfind(":")
        return self.address[:idx] if idx > 0 else self.address

    @property
    def port(self) -> int:
        idx = self.address.rfind(":")
        if 0 < idx < len(self.address) - 1:
            try:
                port = int(self.address[idx + 1:])
            except ValueError:
                return DEFAULT_HTTPS_PORT
            if port > 0:
                return port
        return DEFAULT_HTTPS_PORT


def parse_ssl_bindings(output: str) -> List[SSLBinding]:
    """Parse ``netsh http show sslcert`` output into binding entries."""
    bindings: List[SSLBinding] = []
    current: Optional[SSLBinding] = None

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        match = _SNI_BINDING_RE.search(line)
        if match:
            current = SSLBinding(address=match.group(1).strip(), is_ip_binding=False)
            bindings.append(current)
            continue
        match = _IP_BINDING_RE.search(line)
        if match:
            current = SSLBinding(address=match.group(1).strip(), is_ip_binding=True)
            bindings.append(current)
            continue

        if current is None:
            continue

        if match := _CERT_HASH_RE.search(line):
            current.cert_hash = match.group(1).strip().lower()
        elif match := _APP_ID_RE.search(line):
            current.app_id = match.group(1).strip()
        elif match := _STORE_RE.search(line):
            current.cert_store_name = match.group(1).strip()

    return bindings


def find_bindings_in_list(bindings: Iterable[SSLBinding], domains: List[str]) -> Dict[str, SSLBinding]:
    """
    Host-name (SNI) bindings whose host is covered by any of the domains.

    IP bindings are left alone; they serve catch-all or IP certificates
    and are managed by hand.
    """
    result: Dict[str, SSLBinding] = {}
    for binding in bindings:
        if binding.is_ip_binding:
            continue
        host = binding.host
        if host and matches_any(host, domains):
            result[host] = binding
    return result


class SSLBindingService:
    """Create, remove and verify HTTP.sys SSL bindings."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    async def list_bindings(self) -> List[SSLBinding]:
        try:
            result = await self.runner.run("netsh", "http", "show", "sslcert")
        except CommandError as e:
            raise BindingError(f"Failed to list SSL bindings: {e.message}")
        if not result.ok:
            raise BindingError(f"Failed to list SSL bindings: {result.output}")
        return parse_ssl_bindings(result.stdout)

    async def get_binding(self, host: str, port: int) -> Optional[SSLBinding]:
        address = f"{host}:{port}".lower()
        for binding in await self.list_bindings():
            if binding.address.lower() == address:
                return binding
        return None

    async def find_bindings_for_domains(self, domains: List[str]) -> Dict[str, SSLBinding]:
        return find_bindings_in_list(await self.list_bindings(), domains)

    async def unbind(self, host: str, port: int, is_ip_binding: bool) -> None:
        key = "ipport" if is_ip_binding else "hostnameport"
        result = await self.runner.run("netsh", "http", "delete", "sslcert", f"{key}={host}:{port}")
        if not result.ok:
            raise BindingError(f"Failed to remove binding {host}:{port}: {result.output}", address=f"{host}:{port}")

    async def bind(self, target: BindingTarget, thumbprint: str) -> SSLBinding:
        """
        Bind a certificate to a target and verify it against the live table.

        Args:
            target: Address to bind; ``is_ip_binding`` selects ipport= over hostnameport=
            thumbprint: Certificate hash in the LocalMachine\\My store

        Returns:
            The verified binding entry

        Raises:
            ConfigurationError: on an invalid host, port or thumbprint
            BindingError: if netsh rejected the binding
            BindingVerificationError: if netsh reported success but the table does not match
        """
        port = validate_port(target.port)
        cert_hash = validate_thumbprint(thumbprint)
        if target.is_ip_binding:
            host = target.host or "0.0.0.0"
            if not is_ip_address(host):
                raise ConfigurationError(f"Invalid IP address for IP binding: {host!r}", domain=target.domain)
            key = "ipport"
        else:
            host = validate_binding_host(target.host)
            key = "hostnameport"
        address = f"{host}:{port}"

        try:
            await self.unbind(host, port, target.is_ip_binding)
        except BindingError as e:
            # Nothing to delete is the common case on first deployment
            logger.debug(f"Pre-bind delete of {address}: {e.message}")

        try:
            result = await self.runner.run(
                "netsh",
                "http",
                "add",
                "sslcert",
                f"{key}={address}",
                f"certhash={cert_hash}",
                f"appid={DEFAULT_APP_ID}",
                f"certstorename={CERT_STORE_NAME}",
            )
        except CommandError as e:
            raise BindingError(f"Failed to bind {address}: {e.message}", address=address)

        # Zero exit or a success message counts as reported success
        output = result.output
        reported_success = result.ok or "success" in output.lower() or "成功" in output
        if not reported_success:
            raise BindingError(
                f"Failed to bind {address}: {output}",
                address=address,
                suggestion="Check that the certificate is installed in LocalMachine\\My",
            )

        try:
            binding = await self.get_binding(host, port)
        except BindingError as e:
            raise BindingVerificationError(
                f"Binding {address} reported success but unverified: {e.message}", address=address
            )

        if binding is None:
            logger.warning(f"Binding {address} reported success but was not found in the binding table")
            raise BindingVerificationError(
                f"Binding {address} reported success but unverified: binding not found", address=address
            )

        if binding.cert_hash.lower() != cert_hash:
            logger.warning(f"Binding {address} reported success but the live table disagrees")
            raise BindingVerificationError(
                f"Reported success but unverified: binding mismatch on {address}: "
                f"expected {cert_hash}, actual {binding.cert_hash or 'none'}",
                address=address,
            )

        logger.info(f"Bound certificate {cert_hash} to {address} ({key})")
        return binding
