"""
Global test fixtures.

Provides throwaway certificates, stores backed by tmp_path, and fakes
for the host tooling so unit tests never touch netsh, PowerShell or the
issuing service.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

sys.path.insert(0, str(Path(__file__).parent.parent / "agent"))

from core.command_runner import CommandResult  # noqa: E402
from core.encryption_service import EncryptionService  # noqa: E402
from core.key_store import OrderStore  # noqa: E402


def _key_pem(key) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode("ascii")


def make_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_cert(
    common_name: str = "example.com",
    key=None,
    days_valid: int = 90,
    sans: Optional[List[str]] = None,
    issuer_key=None,
) -> tuple[str, str]:
    """Create a certificate; self-signed unless ``issuer_key`` is given. Returns (cert PEM, key PEM)."""
    key = key or make_key()
    now = datetime.now(timezone.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in (sans or [common_name])]), critical=False)
    )
    cert = builder.sign(issuer_key or key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii"), _key_pem(key)


@pytest.fixture
def cert_factory():
    return make_cert


@pytest.fixture(scope="session")
def cert_pair():
    """A certificate and its matching key."""
    return make_cert("example.com", sans=["example.com", "www.example.com"])


@pytest.fixture(scope="session")
def other_key_pem():
    """A key that matches no certificate."""
    return _key_pem(make_key())


@pytest.fixture
def encryption(tmp_path):
    """Encryption service with a generated key file (no slow KDF)."""
    return EncryptionService(key_file=tmp_path / "secret.key")


@pytest.fixture
def order_store(tmp_path, encryption):
    return OrderStore(tmp_path / "orders", encryption)


class FakeNetsh:
    """
    In-memory HTTP.sys binding table driven through netsh command lines.

    ``override_hash`` makes the live table report a different certificate
    than the one just added, simulating a binding that silently did not take.
    """

    def __init__(self):
        self.table = {}
        self.commands = []
        self.override_hash: Optional[str] = None
        self.add_output = "SSL Certificate successfully added"

    async def run(self, *cmd, timeout=None) -> CommandResult:
        self.commands.append(cmd)
        verb = cmd[2] if len(cmd) > 2 else ""
        if verb == "show":
            return CommandResult(0, self.render(), "")
        args = dict(a.split("=", 1) for a in cmd[4:] if "=" in a)
        kind, address = ("ip", args["ipport"]) if "ipport" in args else ("host", args["hostnameport"])
        if verb == "delete":
            if (kind, address) in self.table:
                del self.table[(kind, address)]
                return CommandResult(0, "SSL Certificate successfully deleted", "")
            return CommandResult(1, "SSL Certificate deletion failed, Error: 2", "")
        if verb == "add":
            if (kind, address) in self.table:
                return CommandResult(1, "SSL Certificate add failed, Error: 183", "")
            self.table[(kind, address)] = self.override_hash or args["certhash"]
            return CommandResult(0, self.add_output, "")
        return CommandResult(1, "", "unknown command")

    async def run_powershell(self, script, timeout=None) -> CommandResult:
        return CommandResult(1, "", "powershell not available")

    def render(self) -> str:
        lines = ["", "SSL Certificate bindings:", "-------------------------", ""]
        for (kind, address), cert_hash in self.table.items():
            label = "IP:port" if kind == "ip" else "Hostname:port"
            lines += [
                f"    {label}                 : {address}",
                f"    Certificate Hash             : {cert_hash}",
                "    Application ID               : {00000000-0000-0000-0000-000000000000}",
                "    Certificate Store Name       : MY",
                "",
            ]
        return "\n".join(lines)


@pytest.fixture
def fake_netsh():
    return FakeNetsh()
