"""Connectivity observer feeding the sync engine's offline flag."""
from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from core.logging_setup import get_logger
from core.settings import DRIVE_SYNC


Listener = Callable[[bool], None]


class NetworkMonitor:
    """Probes TCP reachability of the Drive API host and reports transitions.

    Listeners are called with the new online flag only when it changes.
    """

    def __init__(
        self,
        *,
        host: str = DRIVE_SYNC.network_probe_host,
        port: int = DRIVE_SYNC.network_probe_port,
        interval_sec: float = DRIVE_SYNC.network_probe_interval_sec,
        timeout_sec: float = 5.0,
        initial: bool = True,
    ):
        self.host = host
        self.port = port
        self.interval_sec = interval_sec
        self.timeout_sec = timeout_sec
        self._online = initial
        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None
        self.logger = get_logger("sparetime.network")

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self.logger.info("Network is %s", "online" if online else "offline")
        for listener in list(self._listeners):
            listener(online)

    async def probe(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout_sec,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
        self._task = None

    async def _loop(self) -> None:
        while True:
            self.set_online(await self.probe())
            await asyncio.sleep(self.interval_sec)


__all__ = ["NetworkMonitor"]
