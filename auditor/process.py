from __future__ import annotations

import asyncio
import logging
import os
from contextlib import suppress
from typing import List, Optional, Protocol

import psutil

from .config import Config
from .utils import AuditLaunchError, AuditProcessError

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2000


class AuditProcess(Protocol):
    """One isolated auditing child process, owned by exactly one attempt."""

    pid: Optional[int]

    async def start(self) -> None: ...

    async def collect(self) -> bytes: ...

    async def terminate(self, grace_s: float) -> None: ...

    def is_running(self) -> bool: ...


def lighthouse_argv(url: str, cfg: Config) -> List[str]:
    return [
        cfg.lighthouse_bin,
        url,
        "--output=json",
        "--output-path=stdout",
        "--quiet",
        f"--only-categories={','.join(cfg.categories)}",
        f"--chrome-flags={' '.join(cfg.chrome_flags)}",
        f"--max-wait-for-load={int(cfg.audit_timeout_s * 1000)}",
    ]


class LighthouseProcess:
    """
    Lighthouse CLI in its own session. Lighthouse starts Chrome as a detached
    grandchild, so termination walks the psutil process tree plus every
    process still in the session instead of relying on the process group.
    Chrome outlives a Lighthouse that exits on its own; it is only found
    through the session after the parent is gone.
    """

    def __init__(self, url: str, cfg: Config) -> None:
        self.url = url
        self.cfg = cfg
        self.pid: Optional[int] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._descendants: List[psutil.Process] = []

    async def start(self) -> None:
        argv = lighthouse_argv(self.url, self.cfg)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise AuditLaunchError(f"Failed to launch {argv[0]}: {e}") from e
        self.pid = self._proc.pid
        self._snapshot_descendants()
        logger.debug("lighthouse started pid=%s url=%s", self.pid, self.url)

    async def collect(self) -> bytes:
        if self._proc is None:
            raise AuditLaunchError("Lighthouse process was never started")
        stdout, stderr = await self._proc.communicate()
        self._snapshot_descendants()
        if self._proc.returncode != 0:
            tail = (stderr or b"").decode("utf-8", errors="replace").strip()[-_STDERR_TAIL_CHARS:]
            raise AuditProcessError(
                tail or f"Lighthouse exited with code {self._proc.returncode}",
                returncode=self._proc.returncode,
            )
        return stdout or b""

    def _session_members(self) -> List[psutil.Process]:
        # start_new_session makes the lighthouse pid the session id; orphans keep it
        if self.pid is None or not hasattr(os, "getsid"):
            return []
        members: List[psutil.Process] = []
        for p in psutil.process_iter():
            if p.pid == self.pid:
                continue
            try:
                if os.getsid(p.pid) == self.pid and p.status() != psutil.STATUS_ZOMBIE:
                    members.append(p)
            except (OSError, psutil.Error):
                continue
        return members

    def _snapshot_descendants(self) -> List[psutil.Process]:
        if self.pid is None:
            return []
        try:
            children = psutil.Process(self.pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied, ProcessLookupError):
            children = []
        known = {p.pid for p in self._descendants}
        for p in children + self._session_members():
            if p.pid not in known:
                known.add(p.pid)
                self._descendants.append(p)
        return list(self._descendants)

    def _live_descendants(self) -> List[psutil.Process]:
        live: List[psutil.Process] = []
        for p in self._snapshot_descendants():
            try:
                if p.is_running() and p.status() != psutil.STATUS_ZOMBIE:
                    live.append(p)
            except psutil.Error:
                continue
        return live

    async def terminate(self, grace_s: float) -> None:
        """SIGTERM the whole tree, wait ``grace_s``, then SIGKILL survivors."""
        proc = self._proc
        if proc is None:
            return
        descendants = self._live_descendants()

        if proc.returncode is None:
            with suppress(ProcessLookupError):
                proc.terminate()
        for p in descendants:
            with suppress(psutil.Error):
                p.terminate()

        if proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace_s)
            except asyncio.TimeoutError:
                logger.warning("lighthouse pid=%s ignored SIGTERM for %.1fs; killing", self.pid, grace_s)
                with suppress(ProcessLookupError):
                    proc.kill()
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(proc.wait(), timeout=grace_s)

        if descendants:
            alive = await self._wait_gone(descendants, grace_s)
            for p in alive:
                logger.warning("killing leftover child pid=%s of lighthouse pid=%s", p.pid, self.pid)
                with suppress(psutil.Error):
                    p.kill()

    @staticmethod
    async def _wait_gone(procs: List[psutil.Process], timeout: float) -> List[psutil.Process]:
        # orphans are reparented away from us; a zombie left for init counts as gone
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        alive = list(procs)
        while alive:
            still: List[psutil.Process] = []
            for p in alive:
                with suppress(psutil.Error):
                    if p.is_running() and p.status() != psutil.STATUS_ZOMBIE:
                        still.append(p)
            alive = still
            if not alive or loop.time() >= deadline:
                break
            await asyncio.sleep(0.05)
        return alive

    def is_running(self) -> bool:
        if self._proc is not None and self._proc.returncode is None:
            return True
        return bool(self._live_descendants())
