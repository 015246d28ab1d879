"""
IIS site discovery via appcmd and the WebAdministration module.

Used to locate the web root that serves a domain (for file validation)
and to detect IIS 7, which has no SNI support.
"""

import logging
import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from core.command_runner import CommandError, CommandRunner, ps_quote
from core.validation import validate_site_name

logger = logging.getLogger(__name__)

_ENV_VAR_RE = re.compile(r"%([^%]+)%")


class SiteLookupError(Exception):
    """No site, or more than one candidate site, serves a domain."""

    def __init__(self, message: str, domain: Optional[str] = None, suggestion: Optional[str] = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


@dataclass
class SiteBinding:
    protocol: str
    ip: str
    port: int
    host: str = ""

    @property
    def is_https(self) -> bool:
        return self.protocol.lower() == "https"


@dataclass
class SiteInfo:
    id: int
    name: str
    state: str = ""
    bindings: List[SiteBinding] = field(default_factory=list)


def parse_site_bindings(value: str) -> List[SiteBinding]:
    """Parse appcmd's ``http/*:80:,https/*:443:www.example.com`` binding list."""
    bindings = []
    for part in value.split(","):
        part = part.strip()
        protocol, sep, rest = part.partition("/")
        if not sep:
            continue
        pieces = rest.split(":", 2)
        if len(pieces) < 2:
            continue
        ip = "0.0.0.0" if pieces[0] == "*" else pieces[0]
        try:
            port = int(pieces[1])
        except ValueError:
            port = 0
        host = pieces[2] if len(pieces) > 2 else ""
        bindings.append(SiteBinding(protocol=protocol, ip=ip, port=port, host=host))
    return bindings


def parse_site_list(xml_output: str) -> List[SiteInfo]:
    """Parse ``appcmd list site /xml``."""
    try:
        root = ET.fromstring(xml_output)
    except ET.ParseError as e:
        raise SiteLookupError(f"Failed to parse appcmd output: {e}")

    sites = []
    for element in root.iter("SITE"):
        try:
            site_id = int(element.get("SITE.ID", "0"))
        except ValueError:
            site_id = 0
        sites.append(
            SiteInfo(
                id=site_id,
                name=element.get("SITE.NAME", ""),
                state=element.get("state", ""),
                bindings=parse_site_bindings(element.get("bindings", "")),
            )
        )
    return sites


def expand_physical_path(path: str) -> str:
    """Expand ``%SystemDrive%``-style variables IIS stores in physical paths; unknown ones are kept."""
    return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), m.group(0)), os.path.expandvars(path))


def select_site_for_domain(sites: List[SiteInfo], domain: str) -> str:
    """
    Pick the site that serves a domain over HTTP.

    An exact host-header match wins. Otherwise the single site with a
    host-less ``http`` binding on port 80 is used.

    Raises:
        SiteLookupError: if no site qualifies or the fallback is ambiguous
    """
    domain = domain.strip().lower()
    for site in sites:
        if any(b.host.lower() == domain for b in site.bindings):
            return site.name

    candidates = []
    for site in sites:
        for b in site.bindings:
            if not b.host and b.protocol.lower() == "http" and b.port == 80 and site.name not in candidates:
                candidates.append(site.name)

    if len(candidates) == 1:
        return candidates[0]
    if len(candidates) > 1:
        raise SiteLookupError(
            f"No site is bound to {domain} and several sites have host-less HTTP bindings: {', '.join(candidates)}",
            domain=domain,
            suggestion=f"Add a host-header binding for {domain} to the site that should answer validation requests",
        )
    raise SiteLookupError(f"No site found for {domain}", domain=domain)


class IISSiteService:
    """Read-only access to the IIS site configuration."""

    def __init__(self, runner: CommandRunner, appcmd_path: str):
        self.runner = runner
        self.appcmd_path = appcmd_path

    async def scan_sites(self) -> List[SiteInfo]:
        try:
            result = await self.runner.run(self.appcmd_path, "list", "site", "/xml")
        except CommandError as e:
            raise SiteLookupError(f"Failed to run appcmd: {e.message}", suggestion="Check that IIS is installed")
        if not result.ok:
            raise SiteLookupError(f"appcmd failed: {result.output}")
        return parse_site_list(result.stdout)

    async def get_physical_path(self, site_name: str) -> Path:
        site_name = validate_site_name(site_name)
        quoted = ps_quote(site_name)
        script = (
            "Import-Module WebAdministration -ErrorAction SilentlyContinue\n"
            f"$site = Get-Item ('IIS:\\Sites\\' + {quoted}) -ErrorAction SilentlyContinue\n"
            "if ($site) {\n"
            f"    $app = Get-WebApplication -Site {quoted} -ErrorAction SilentlyContinue | Where-Object {{ $_.path -eq '/' }}\n"
            "    if ($app) { $app.PhysicalPath } else { $site.physicalPath }\n"
            "}"
        )
        try:
            result = await self.runner.run_powershell(script)
        except CommandError as e:
            raise SiteLookupError(f"Failed to read physical path of {site_name}: {e.message}")
        path = result.stdout.strip()
        if not result.ok or not path:
            raise SiteLookupError(f"Site {site_name} has no physical path")
        return Path(expand_physical_path(path))

    async def find_site_root(self, domain: str) -> Tuple[str, Path]:
        """
        Returns:
            (site name, expanded physical path) of the site serving the domain
        """
        site_name = select_site_for_domain(await self.scan_sites(), domain)
        return site_name, await self.get_physical_path(site_name)

    async def get_major_version(self) -> Optional[int]:
        result = await self.runner.run_powershell(
            "(Get-ItemProperty 'HKLM:\\SOFTWARE\\Microsoft\\InetStp' -ErrorAction SilentlyContinue).MajorVersion"
        )
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    async def is_legacy(self) -> bool:
        """True on IIS 7.x, which cannot do SNI bindings."""
        try:
            version = await self.get_major_version()
        except CommandError as e:
            logger.warning(f"Could not detect IIS version: {e.message}")
            return False
        return version is not None and version < 8
