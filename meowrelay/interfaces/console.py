"""
Operator console.

Reads commands from standard input, one per line, and hands each to the
command dispatcher without waiting for it to finish.  Blank lines are
ignored.  End of input terminates the process through the supervisor.
"""

import asyncio
import logging
import sys
from typing import Awaitable, Callable, Optional

from meowrelay.interfaces.commands import CommandDispatcher, parse_command_line

logger = logging.getLogger(__name__)


async def open_stdin_reader() -> asyncio.StreamReader:
    """Wrap ``sys.stdin`` in an asyncio stream so reads never block the loop."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


async def _threaded_stdin_readline() -> bytes:
    # Regular files cannot be registered with the event loop.
    return await asyncio.to_thread(sys.stdin.buffer.readline)


class OperatorConsole:
    def __init__(self, dispatcher: CommandDispatcher, supervisor,
                 reader: Optional[asyncio.StreamReader] = None) -> None:
        self._dispatcher = dispatcher
        self._supervisor = supervisor
        self._reader = reader

    async def run(self) -> None:
        readline = await self._open()
        if readline is None:
            return
        while not self._supervisor.terminating:
            raw = await readline()
            if not raw:
                self._supervisor.terminate("Stdin closed")
                return
            command = parse_command_line(raw.decode("utf-8", errors="replace"))
            if command is None:
                continue
            logger.debug("Operator command: %s %s", command.verb, " ".join(command.args))
            self._dispatcher.submit(command)

    async def _open(self) -> Optional[Callable[[], Awaitable[bytes]]]:
        if self._reader is not None:
            return self._reader.readline
        if sys.stdin is None:
            logger.warning("No stdin attached, running without the operator console")
            return None
        try:
            self._reader = await open_stdin_reader()
        except (OSError, ValueError) as exc:
            logger.debug("stdin is not a pipe or terminal (%s), reading it on a worker thread", exc)
            return _threaded_stdin_readline
        return self._reader.readline
