"""
Async wrapper for the host tools (netsh, appcmd, PowerShell).

Commands are executed directly, never through a shell; arguments
are validated by the callers before they get here.
"""

import asyncio
import locale
import logging
from dataclasses import dataclass

from config import settings

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """A command could not be started or did not finish in time."""

    def __init__(self, message: str, command: str, output: str = ""):
        self.message = message
        self.command = command
        self.output = output
        super().__init__(message)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, as the tools interleave them on the console."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part).strip()


def decode_output(data: bytes) -> str:
    """Decode console output, falling back to the OEM/ANSI code page on non-UTF-8 systems."""
    if not data:
        return ""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode(locale.getpreferredencoding(False), errors="replace")


class CommandRunner:
    """Runs external commands without blocking the event loop."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout if timeout is not None else settings.command_timeout

    async def run(self, *cmd: str, timeout: float | None = None) -> CommandResult:
        """
        Run a command and capture its output.

        Args:
            cmd: Program and arguments
            timeout: Seconds before the process is killed (default from settings)

        Returns:
            CommandResult, including non-zero exit codes

        Raises:
            CommandError: if the program is missing or times out
        """
        timeout = timeout if timeout is not None else self.timeout
        command = " ".join(cmd)
        logger.debug(f"Running: {command}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise CommandError(f"Failed to start {cmd[0]}: {e}", command=command)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise CommandError(f"{cmd[0]} timed out after {timeout:.0f}s", command=command)

        result = CommandResult(process.returncode, decode_output(stdout).strip(), decode_output(stderr).strip())
        if not result.ok:
            logger.debug(f"{cmd[0]} exited with {result.returncode}: {result.output}")
        return result

    async def run_powershell(self, script: str, timeout: float | None = None) -> CommandResult:
        return await self.run(
            "powershell.exe",
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            script,
            timeout=timeout,
        )


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"
