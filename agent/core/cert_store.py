"""
Windows certificate store (LocalMachine\\My) operations via PowerShell.
"""

import logging
from typing import Optional

from core.cert_utils import PfxBundle
from core.command_runner import CommandError, CommandRunner, ps_quote
from core.validation import validate_friendly_name, validate_thumbprint

logger = logging.getLogger(__name__)

STORE_PATH = r"Cert:\LocalMachine\My"


class CertInstallError(Exception):
    """Importing a certificate into the store failed."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class InstallVerificationError(CertInstallError):
    """Import reported success but the store does not hold the expected certificate."""

    pass


def simplify_import_error(output: str) -> CertInstallError:
    """Map Import-PfxCertificate noise onto an actionable error."""
    lowered = output.lower()
    if "password" in lowered:
        return CertInstallError("Wrong PFX password or corrupt certificate file")
    if "access" in lowered or "denied" in lowered:
        return CertInstallError("Access denied importing certificate", suggestion="Run the agent as Administrator")
    if "not found" in lowered:
        return CertInstallError("PFX file not found")
    if "invalid" in lowered:
        return CertInstallError("Invalid certificate file format")
    if len(output) > 100:
        output = output[:100] + "..."
    return CertInstallError(f"Import failed: {output}")


def _item_path(thumbprint: str) -> str:
    return STORE_PATH + "\\" + thumbprint


def parse_thumbprint(output: str) -> str:
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Thumbprint: "):
            return line[len("Thumbprint: "):].strip().upper()
    return ""


class CertStoreService:
    """Install certificates and manage their store properties."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    async def install_pfx(self, bundle: PfxBundle, expected_thumbprint: Optional[str] = None) -> str:
        """
        Import a PFX into LocalMachine\\My.

        Re-importing a certificate already in the store replaces it in
        place, so installation is idempotent by thumbprint.

        Args:
            bundle: PFX file and its password
            expected_thumbprint: Locally computed thumbprint to verify against

        Returns:
            Uppercase thumbprint of the installed certificate

        Raises:
            CertInstallError: if the import failed
            InstallVerificationError: if the store disagrees with what was imported
        """
        script = (
            f"$password = ConvertTo-SecureString -String {ps_quote(bundle.password)} -Force -AsPlainText\n"
            f"$cert = Import-PfxCertificate -FilePath {ps_quote(str(bundle.path.absolute()))} "
            f"-CertStoreLocation {STORE_PATH} -Password $password -Exportable\n"
            'if ($cert) { Write-Output "Thumbprint: $($cert.Thumbprint)" } else { Write-Error "Import failed" }'
        )
        try:
            result = await self.runner.run_powershell(script)
        except CommandError as e:
            raise CertInstallError(f"Import failed: {e.message}")
        if not result.ok:
            raise simplify_import_error(result.output)

        thumbprint = parse_thumbprint(result.stdout)
        if not thumbprint:
            raise InstallVerificationError("Import reported success but returned no thumbprint")
        if expected_thumbprint and thumbprint != expected_thumbprint.upper():
            raise InstallVerificationError(
                f"Installed thumbprint {thumbprint} does not match certificate {expected_thumbprint.upper()}"
            )
        if not await self.has_certificate(thumbprint):
            raise InstallVerificationError(f"Import reported success but {thumbprint} is not in the store")

        logger.info(f"Installed certificate {thumbprint} into {STORE_PATH}")
        return thumbprint

    async def has_certificate(self, thumbprint: str) -> bool:
        thumbprint = validate_thumbprint(thumbprint).upper()
        result = await self.runner.run_powershell(f"Test-Path {ps_quote(_item_path(thumbprint))}")
        return result.ok and result.stdout.strip().lower() == "true"

    async def set_friendly_name(self, thumbprint: str, name: str) -> None:
        thumbprint = validate_thumbprint(thumbprint).upper()
        name = validate_friendly_name(name)
        script = (
            f"$cert = Get-Item {ps_quote(_item_path(thumbprint))}\n"
            f"$cert.FriendlyName = {ps_quote(name)}"
        )
        result = await self.runner.run_powershell(script)
        if not result.ok:
            raise CertInstallError(f"Failed to set friendly name on {thumbprint}: {result.output}")
        logger.info(f"Set friendly name {name} on {thumbprint}")
