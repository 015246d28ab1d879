"""
File-based domain validation.

Places the token file the issuing service asks for under the web root
of the site that serves the domain, without ever writing outside it.
"""

import asyncio
import logging
from pathlib import Path
from typing import Protocol, Tuple

from core.validation import PathSecurityError, ensure_resolved_within, resolve_within

logger = logging.getLogger(__name__)

WELL_KNOWN_DIR = ".well-known"
DANGEROUS_EXTENSIONS = {".exe", ".dll", ".bat", ".cmd", ".ps1", ".vbs", ".js", ".asp", ".aspx", ".php"}

# Lets IIS serve extension-less token files as text/plain
WEB_CONFIG = """<?xml version="1.0" encoding="UTF-8"?>
<configuration>
    <system.webServer>
        <staticContent>
            <mimeMap fileExtension="." mimeType="text/plain" />
        </staticContent>
    </system.webServer>
</configuration>
"""


class ChallengeError(Exception):
    """The validation file could not be placed."""

    def __init__(self, message: str, domain: str | None = None, suggestion: str | None = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class ChallengeSecurityError(ChallengeError):
    """The requested path is unsafe; nothing was written or the write was undone."""

    pass


class SiteLocator(Protocol):
    async def find_site_root(self, domain: str) -> Tuple[str, Path]: ...


def check_challenge_path(relative_path: str) -> str:
    """
    Validate a challenge path before it touches the filesystem.

    Returns:
        The path without its leading slash

    Raises:
        ChallengeSecurityError: on traversal, executable extensions or paths outside .well-known
    """
    relative_path = relative_path.lstrip("/")
    if ".." in relative_path:
        raise ChallengeSecurityError(f"Validation path contains '..': {relative_path}")

    suffix = Path(relative_path).suffix.lower()
    if suffix in DANGEROUS_EXTENSIONS:
        raise ChallengeSecurityError(f"Validation file extension not allowed: {suffix}")

    first_segment = relative_path.replace("\\", "/").split("/", 1)[0]
    if first_segment.lower() != WELL_KNOWN_DIR:
        raise ChallengeSecurityError(f"Validation path must start with /{WELL_KNOWN_DIR}/: /{relative_path}")
    return relative_path


class ChallengeResponder:
    """Writes file-validation tokens into IIS site roots."""

    def __init__(self, sites: SiteLocator):
        self.sites = sites

    async def respond_to_file_challenge(self, domain: str, path: str, content: str) -> Path:
        """
        Write a validation file under the site root serving the domain.

        Args:
            domain: Domain being validated
            path: URL path requested by the issuer, e.g. /.well-known/pki-validation/abc.txt
            content: Exact file content

        Returns:
            Path of the written file

        Raises:
            ChallengeError: if no site or content is available
            ChallengeSecurityError: if the path is unsafe
        """
        if not path or not content:
            raise ChallengeError("Validation path and content are required", domain=domain)

        try:
            relative_path = check_challenge_path(path)
        except ChallengeSecurityError as e:
            e.domain = domain
            raise

        site_name, site_root = await self.sites.find_site_root(domain)
        logger.info(f"Placing validation file for {domain} in site {site_name} ({site_root})")

        return await asyncio.to_thread(self._write_file, domain, site_root, relative_path, content)

    def _write_file(self, domain: str, site_root: Path, relative_path: str, content: str) -> Path:
        try:
            target = resolve_within(site_root, relative_path)
        except PathSecurityError as e:
            raise ChallengeSecurityError(f"Unsafe validation path: {e.message}", domain=domain)

        try:
            target.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            target.chmod(0o644)
        except OSError as e:
            raise ChallengeError(f"Failed to write validation file {target}: {e}", domain=domain)

        try:
            ensure_resolved_within(target, site_root)
        except (PathSecurityError, OSError) as e:
            target.unlink(missing_ok=True)
            raise ChallengeSecurityError(f"Validation file escaped the site root and was removed: {e}", domain=domain)

        self._ensure_web_config(target.parent)
        logger.info(f"Validation file written: {target}")
        return target

    @staticmethod
    def _ensure_web_config(directory: Path) -> None:
        web_config = directory / "web.config"
        if web_config.exists():
            return
        try:
            web_config.write_text(WEB_CONFIG, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write {web_config}: {e}")
