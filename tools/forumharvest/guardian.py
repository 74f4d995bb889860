"""Resource guardian – browser recycling and the host memory watchdog."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

import psutil

from .config import GuardianConfig
from .errors import MemoryExhaustion
from .interfaces import HostControl
from .retry import Sleep

logger = logging.getLogger("forumharvest.guardian")

MB = 1024 * 1024


def available_memory_mb() -> float:
    return psutil.virtual_memory().available / MB


class ResourceGuardian:
    """Decides when the browser is recycled and when the host must go down.

    Recycling is driven by a page counter the orchestrator bumps through
    :meth:`on_checkpoint` between pages.  The memory watch runs as a
    background task and, once available memory drops below the floor, asks
    the host control for a restart and flags the guardian as exhausted.
    """

    def __init__(
        self,
        cfg: GuardianConfig,
        host: HostControl,
        *,
        pages_before_recycle: int = 20,
        memory_sampler: Callable[[], float] = available_memory_mb,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.cfg = cfg
        self.host = host
        self.pages_before_recycle = pages_before_recycle
        self._sample_memory = memory_sampler
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.pages_since_recycle = 0
        self.exhausted = False
        self.last_sample_mb: float | None = None
        self.stats = {"recycles": 0, "samples": 0, "host_restarts": 0}

    # ── recycling ────────────────────────────────────────────────

    def on_checkpoint(self) -> None:
        self.pages_since_recycle += 1

    def should_recycle(self) -> bool:
        return 0 < self.pages_before_recycle <= self.pages_since_recycle

    async def recycle(self, reason: str) -> None:
        logger.info("Recycling browser (%s, %d page(s) since last recycle)", reason, self.pages_since_recycle)
        await self.host.restart_browser_process()
        self.pages_since_recycle = 0
        self.stats["recycles"] += 1

    # ── memory watch ─────────────────────────────────────────────

    def available_memory_mb(self) -> float:
        return self._sample_memory()

    async def check_memory(self) -> bool:
        """Sample host memory once.  Returns False when the floor was crossed."""
        available = self.available_memory_mb()
        self.last_sample_mb = available
        self.stats["samples"] += 1
        logger.debug("Available memory: %.0f MB", available)
        if available >= self.cfg.min_available_mb:
            return True
        logger.critical(
            "Available memory %.0f MB is below the %d MB floor; requesting host restart",
            available, self.cfg.min_available_mb,
        )
        self.exhausted = True
        self.stats["host_restarts"] += 1
        await self.host.restart_host()
        return False

    async def watch(self) -> None:
        while await self.check_memory():
            await self._sleep(self.cfg.check_interval)

    def start(self) -> None:
        if not self.cfg.watch_memory or self._task is not None:
            return
        logger.info(
            "Watching host memory every %.0fs (floor %d MB)",
            self.cfg.check_interval, self.cfg.min_available_mb,
        )
        self._task = asyncio.create_task(self.watch(), name="memory-watch")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        elif not task.cancelled():
            task.result()

    def raise_if_exhausted(self) -> None:
        if self.exhausted:
            raise MemoryExhaustion(
                f"available memory fell to {self.last_sample_mb:.0f} MB "
                f"(floor {self.cfg.min_available_mb} MB)"
            )


class ProcessHostControl:
    """Host control backed by the live browser session and a reboot command."""

    def __init__(self, browser: object, cfg: GuardianConfig, *, sleep: Sleep = asyncio.sleep) -> None:
        self.browser = browser
        self.cfg = cfg
        self._sleep = sleep

    async def restart_browser_process(self) -> None:
        await self.browser.restart()  # type: ignore[attr-defined]

    async def restart_host(self) -> None:
        cmd = list(self.cfg.reboot_command)
        logger.critical("Restarting host in %.0fs: %s", self.cfg.reboot_grace, " ".join(cmd))
        await self._sleep(self.cfg.reboot_grace)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Could not run %s: %s", cmd[0], exc)
            return
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            logger.error("Host restart command exited %d: %s", proc.returncode, stderr.decode().strip())
