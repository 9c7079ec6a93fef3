"""
History-sync persistence.

Each history-sync blob the transport delivers is dumped to its own JSON
file named ``history-<startup ts>-<seq>.json``.  The sequence number is
per-process and only serves to keep file names unique.  A failed write is
logged and the blob is lost; nothing is retried.
"""

import asyncio
import itertools
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Optional

from meowrelay.infra.paths import HISTORY_DIR

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> Any:
    # mautrix types expose serialize(); fall back to repr for anything else.
    serialize = getattr(obj, "serialize", None)
    if callable(serialize):
        return serialize()
    return str(obj)


class HistorySyncWriter:
    def __init__(self, directory: Path = HISTORY_DIR,
                 startup_time: Optional[int] = None) -> None:
        self._dir = Path(directory)
        self._startup = int(startup_time if startup_time is not None else time.time())
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def next_path(self) -> Path:
        with self._lock:
            seq = next(self._seq)
        return self._dir / f"history-{self._startup}-{seq}.json"

    def _write_sync(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False, default=_json_default)
            fh.write("\n")

    async def write(self, data: Any) -> Optional[Path]:
        """Persist *data*; returns the file written, or ``None`` on failure."""
        path = self.next_path()
        try:
            await asyncio.to_thread(self._write_sync, path, data)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write history sync to %s: %s", path, exc)
            return None
        logger.info("Wrote history sync to %s", path)
        return path
