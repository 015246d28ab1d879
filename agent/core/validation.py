"""
Input validation helpers for domains, bindings and file paths.

Everything passed to netsh, appcmd or PowerShell goes through these
checks first, so command arguments never carry shell metacharacters.
"""

import ipaddress
import re
from pathlib import Path
from typing import Iterable, List, Optional

from models.certificate import BindRule, CertificateConfig, ValidationMethod

_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_THUMBPRINT_RE = re.compile(r"^[0-9a-f]{40}$")
_SITE_NAME_RE = re.compile(r"^[\w .\-]{1,255}$")
_FRIENDLY_NAME_FORBIDDEN = set("'\"`$;&|<>\r\n")


class ConfigurationError(Exception):
    """A certificate configuration that cannot be acted on."""

    def __init__(self, message: str, domain: Optional[str] = None, suggestion: Optional[str] = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class PathSecurityError(Exception):
    """A path that escapes its base directory or is otherwise unsafe."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.message = message
        self.path = path
        super().__init__(message)


def normalize_domain(domain: str) -> str:
    """Lowercase a domain and convert internationalized labels to punycode."""
    domain = domain.strip().lower().rstrip(".")
    wildcard = domain.startswith("*.")
    if wildcard:
        domain = domain[2:]
    try:
        ascii_domain = domain.encode("idna").decode("ascii")
    except UnicodeError:
        ascii_domain = domain
    return f"*.{ascii_domain}" if wildcard else ascii_domain


def is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value.strip("[]"))
        return True
    except ValueError:
        return False


def is_wildcard(domain: str) -> bool:
    return domain.startswith("*.")


def is_valid_domain(domain: str) -> bool:
    """Check DNS syntax; a leading ``*.`` wildcard label is allowed."""
    domain = normalize_domain(domain)
    if not domain or len(domain) > 253:
        return False
    if is_wildcard(domain):
        domain = domain[2:]
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(_LABEL_RE.match(label) for label in labels)


def matches_domain(host: str, cert_domain: str) -> bool:
    """
    Check whether a binding host is covered by a certificate domain.

    A wildcard covers exactly one extra label: ``*.example.com`` matches
    ``www.example.com`` but neither ``example.com`` nor ``a.b.example.com``.
    """
    host = host.lower()
    cert_domain = cert_domain.lower()
    if host == cert_domain:
        return True
    if is_wildcard(cert_domain):
        suffix = cert_domain[1:]
        if host.endswith(suffix):
            prefix = host[: -len(suffix)]
            return bool(prefix) and "." not in prefix
    return False


def matches_any(host: str, cert_domains: Iterable[str]) -> bool:
    return any(matches_domain(host, d) for d in cert_domains)


def normalize_thumbprint(thumbprint: str) -> str:
    """Strip separators and lowercase a certificate hash."""
    return thumbprint.replace(" ", "").replace("-", "").replace(":", "").lower()


def validate_thumbprint(thumbprint: str) -> str:
    normalized = normalize_thumbprint(thumbprint)
    if not _THUMBPRINT_RE.match(normalized):
        raise ConfigurationError(f"Invalid certificate thumbprint: {thumbprint!r}")
    return normalized


def validate_port(port: int) -> int:
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"Invalid port: {port}")
    return port


def validate_binding_host(host: str) -> str:
    """Accept an IPv4/IPv6 literal, ``0.0.0.0`` or a syntactically valid host name."""
    if is_ip_address(host) or is_valid_domain(host):
        return host
    raise ConfigurationError(f"Invalid binding host: {host!r}", domain=host)


def validate_site_name(name: str) -> str:
    if not _SITE_NAME_RE.match(name):
        raise ConfigurationError(f"Invalid site name: {name!r}")
    return name


def validate_friendly_name(name: str) -> str:
    if not name or len(name) > 256 or _FRIENDLY_NAME_FORBIDDEN.intersection(name) or "\\" in name:
        raise ConfigurationError(f"Invalid friendly name: {name!r}")
    return name


def validate_validation_method(domain: str, method: Optional[ValidationMethod]) -> None:
    """
    Reject validation methods the domain cannot use.

    Wildcards cannot be proven with an HTTP file and IP addresses
    cannot be delegated through DNS.

    Raises:
        ConfigurationError: if the combination is unsupported
    """
    if method is None:
        return
    if method == ValidationMethod.DELEGATION and is_ip_address(domain):
        raise ConfigurationError(
            f"{domain}: IP addresses do not support delegation validation",
            domain=domain,
            suggestion="Use file validation for IP certificates",
        )
    if method == ValidationMethod.FILE and is_wildcard(domain):
        raise ConfigurationError(
            f"{domain}: wildcard domains do not support file validation",
            domain=domain,
            suggestion="Use delegation validation for wildcard certificates",
        )


def validate_bind_rule(rule: BindRule) -> None:
    if not (is_valid_domain(rule.domain) or is_ip_address(rule.domain)):
        raise ConfigurationError(f"Invalid bind rule domain: {rule.domain!r}", domain=rule.domain)
    validate_port(rule.port)


def validate_certificate_config(cfg: CertificateConfig) -> None:
    """
    Check a certificate configuration before any remote call is made.

    Raises:
        ConfigurationError: on the first problem found
    """
    for domain in cfg.all_domains():
        validate_validation_method(domain, cfg.validation_method)
    for rule in cfg.bind_rules:
        validate_bind_rule(rule)
    if not cfg.auto_bind_mode and not cfg.bind_rules:
        raise ConfigurationError(
            f"{cfg.domain}: no bind rules configured",
            domain=cfg.domain,
            suggestion="Add bind rules or enable auto-bind mode",
        )


def wildcard_name(domain: str) -> str:
    """
    Wildcard label used as the certificate friendly name in legacy mode.

    ``www.example.com`` and ``example.com`` both map to ``*.example.com``;
    ``a.b.example.com`` maps to ``*.b.example.com``.
    """
    if is_wildcard(domain):
        return domain
    labels = domain.split(".")
    if len(labels) <= 2:
        return f"*.{domain}"
    return "*." + ".".join(labels[1:])


def _is_within(path: Path, base: Path) -> bool:
    try:
        path.relative_to(base)
        return True
    except ValueError:
        return False


def resolve_within(base: Path, relative_path: str) -> Path:
    """
    Join a relative path onto a base directory and prove it stays inside.

    Containment is checked on the logical path and again after resolving
    symlinks on whatever part of the path already exists.

    Returns:
        The logical (unresolved) target path

    Raises:
        PathSecurityError: on parent-directory segments, absolute paths or escapes
    """
    if ".." in relative_path:
        raise PathSecurityError("Path must not contain '..'", path=relative_path)
    parts: List[str] = [p for p in relative_path.replace("\\", "/").split("/") if p and p != "."]
    if not parts:
        raise PathSecurityError("Path is empty", path=relative_path)
    if Path(relative_path).is_absolute() or ":" in parts[0]:
        raise PathSecurityError("Path must be relative", path=relative_path)

    base_abs = Path(base).absolute()
    target = base_abs.joinpath(*parts)
    if not _is_within(target, base_abs):
        raise PathSecurityError("Path escapes the site root", path=relative_path)

    # resolve() follows symlinks for the existing prefix and keeps the rest
    real_base = base_abs.resolve()
    if not _is_within(target.resolve(), real_base):
        raise PathSecurityError("Path escapes the site root through a symlink", path=relative_path)
    return target


def ensure_resolved_within(path: Path, base: Path) -> None:
    """Check an existing file's real path is still under the base's real path."""
    real = path.resolve(strict=True)
    if not _is_within(real, Path(base).resolve(strict=True)):
        raise PathSecurityError("File resolved outside the site root", path=str(path))
