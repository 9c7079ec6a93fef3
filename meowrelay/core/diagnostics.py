"""
Diagnostic subprocesses for the operator-only ``!status`` / ``!speedtest``
self-commands.

The captured standard output becomes the whole body of the reply.  No
timeout is applied: a hung diagnostic blocks only the task running it.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from meowrelay.core.keywords import Intent
from meowrelay.core.types import DiagnosticError

logger = logging.getLogger(__name__)


@dataclass
class DiagnosticsConfig:
    status_command: list[str] = field(default_factory=lambda: ["neofetch", "--stdout"])
    speedtest_command: list[str] = field(default_factory=lambda: ["speedtest", "--progress=no"])


class DiagnosticsRunner:
    def __init__(self, config: DiagnosticsConfig) -> None:
        self._cfg = config

    def command_for(self, intent: Intent) -> list[str]:
        if intent is Intent.STATUS_COMMAND:
            return list(self._cfg.status_command)
        if intent is Intent.SPEEDTEST_COMMAND:
            return list(self._cfg.speedtest_command)
        raise ValueError(f"{intent!r} is not a diagnostic command")

    async def run(self, intent: Intent) -> str:
        """Run the diagnostic for *intent* and return its standard output.

        Raises :class:`DiagnosticError` if the program is missing, exits
        non-zero, or prints nothing.
        """
        argv = self.command_for(intent)
        if not argv:
            raise DiagnosticError(f"no command configured for {intent.value}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DiagnosticError(f"could not run {argv[0]}: {exc}") from exc

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise DiagnosticError(
                f"{' '.join(argv)} exited with {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        output = stdout.decode(errors="replace")
        if not output.strip():
            raise DiagnosticError(f"{' '.join(argv)} produced no output")
        logger.debug("Diagnostic %s produced %d bytes", argv[0], len(stdout))
        return output
