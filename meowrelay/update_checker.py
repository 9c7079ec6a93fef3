"""
Update Checker

Compares the local checkout with its upstream git remote.  Used by the
``checkupdate`` operator command, which reports whether the running bot is
up to date, outdated, or ahead of the latest upstream revision.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Repo root: one level up from this file's directory (meowrelay/).
_REPO_DIR = str(Path(__file__).resolve().parents[1])

_GIT_TIMEOUT = 60  # seconds
_UPSTREAM_REMOTE = "meowrelay-upstream"


class UpdateStatus(str, Enum):
    UP_TO_DATE = "up_to_date"
    OUTDATED = "outdated"
    NEWER = "newer"


@dataclass
class UpdateCheckerConfig:
    remote_url: str = ""  # empty → use 'origin'


@dataclass(frozen=True)
class UpdateReport:
    status: UpdateStatus
    local_head: str
    remote_head: str
    behind: int = 0
    ahead: int = 0


class UpdateChecker:
    def __init__(self, config: UpdateCheckerConfig, repo_dir: str = _REPO_DIR) -> None:
        self._config = config
        self._repo_dir = repo_dir
        self._last_report: Optional[UpdateReport] = None

    @property
    def last_report(self) -> Optional[UpdateReport]:
        return self._last_report

    async def check(self) -> Optional[UpdateReport]:
        """Fetch the upstream branch and compare it with HEAD.

        Returns ``None`` when the comparison is impossible (no remote,
        detached HEAD, git failure).
        """
        remote = await self._resolve_remote()
        if not remote:
            return None

        branch = await self._current_branch()
        if not branch or branch == "HEAD":
            logger.warning("Detached HEAD, update check skipped")
            return None

        if not await self._git("fetch", remote):
            return None

        local_head = await self._git_output("rev-parse", "HEAD")
        remote_head = await self._git_output("rev-parse", f"{remote}/{branch}")
        if not local_head or not remote_head:
            return None

        if local_head == remote_head:
            report = UpdateReport(UpdateStatus.UP_TO_DATE, local_head, remote_head)
        else:
            behind = _as_int(await self._git_output(
                "rev-list", "--count", f"HEAD..{remote}/{branch}"))
            ahead = _as_int(await self._git_output(
                "rev-list", "--count", f"{remote}/{branch}..HEAD"))
            status = UpdateStatus.OUTDATED if behind else UpdateStatus.NEWER
            report = UpdateReport(status, local_head, remote_head, behind=behind, ahead=ahead)
        self._last_report = report
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _resolve_remote(self) -> Optional[str]:
        if self._config.remote_url:
            url = self._config.remote_url
            existing = await self._git_output("remote", "get-url", _UPSTREAM_REMOTE)
            if existing and existing.strip() == url:
                return _UPSTREAM_REMOTE
            if existing:
                logger.info("Update checker: changing %s URL to %s", _UPSTREAM_REMOTE, url)
                await self._git("remote", "set-url", _UPSTREAM_REMOTE, url)
            else:
                await self._git("remote", "add", _UPSTREAM_REMOTE, url)
            return _UPSTREAM_REMOTE
        url = await self._git_output("remote", "get-url", "origin")
        return "origin" if url else None

    async def _current_branch(self) -> Optional[str]:
        return await self._git_output("rev-parse", "--abbrev-ref", "HEAD")

    async def _git(self, *args: str) -> bool:
        return await self._git_output(*args) is not None

    async def _git_output(self, *args: str) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._repo_dir,
            )
        except OSError as exc:
            logger.warning("git unavailable: %s", exc)
            return None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_GIT_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            logger.warning("git %s timed out after %ds", " ".join(args), _GIT_TIMEOUT)
            return None
        if proc.returncode != 0:
            logger.debug("git %s failed: %s", " ".join(args), stderr.decode().strip())
            return None
        return stdout.decode().strip()


def _as_int(value: Optional[str]) -> int:
    return int(value) if value and value.isdigit() else 0
