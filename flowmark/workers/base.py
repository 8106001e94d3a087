"""Base class for background polling loops."""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import socket
from typing import Optional

from ..engine import WorkflowEngine

logger = logging.getLogger(__name__)


class PollingWorker(metaclass=abc.ABCMeta):
    """Polls for due work at a fixed interval until stopped.

    Failures while processing a single item are logged inside
    ``poll_once``; a failing poll is logged here. Neither stops the loop.
    """

    name = "worker"

    def __init__(
        self,
        engine: WorkflowEngine,
        interval: float,
        batch_size: int = 50,
        lock_ttl: float = 60.0,
    ) -> None:
        self.engine = engine
        self.interval = interval
        self.batch_size = batch_size
        self.lock_ttl = lock_ttl
        self.holder = f"{self.name}:{socket.gethostname()}:{os.getpid()}"

    @abc.abstractmethod
    async def poll_once(self) -> int:
        """Process one batch of due items and return how many were handled."""
        raise NotImplementedError

    async def run(
        self,
        stop_event: Optional[asyncio.Event] = None,
        lifespan: Optional[float] = None,
    ) -> None:
        """Run the polling loop.

        Args:
            stop_event: Set to stop the loop after the current poll.
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        stop_event = stop_event or asyncio.Event()
        start_time = loop.time()
        logger.info(f"[{self.name}] started, polling every {self.interval}s")

        while not stop_event.is_set():
            elapsed = loop.time() - start_time
            if lifespan is not None and elapsed >= lifespan:
                break
            try:
                handled = await self.poll_once()
                if handled:
                    logger.debug(f"[{self.name}] handled {handled} item(s)")
            except Exception:
                logger.exception(f"[{self.name}] poll failed")

            timeout = self.interval
            if lifespan is not None:
                timeout = min(timeout, max(0.0, lifespan - (loop.time() - start_time)))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

        logger.info(f"[{self.name}] stopped")
