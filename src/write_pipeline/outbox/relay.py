"""
Background relay that drives the outbox dispatcher on a polling interval.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from write_pipeline.logging_utils import create_service_logger

if TYPE_CHECKING:
    from write_pipeline.config import Settings
    from write_pipeline.outbox.dispatcher import OutboxDispatcher

logger = create_service_logger("write_pipeline.outbox.relay")


class OutboxRelayWorker:
    """
    Polls the outbox through the dispatcher until stopped.

    Each cycle releases stale claims, publishes a pending batch and requeues
    failed events that still have retries left.
    """

    def __init__(self, dispatcher: OutboxDispatcher, settings: Settings) -> None:
        self.dispatcher = dispatcher
        self.settings = settings
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the relay background task."""
        if self._running:
            logger.warning("Outbox relay worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Outbox relay worker started")

    async def stop(self) -> None:
        """Stop the relay gracefully."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Outbox relay worker stopped")

    async def run_once(self) -> int:
        """Run a single relay cycle; returns the number of events completed."""
        await self.dispatcher.release_stale_claims()
        completed = await self.dispatcher.process_pending(self.settings.OUTBOX_BATCH_SIZE)
        await self.dispatcher.retry_failed(self.settings.OUTBOX_RETRY_BATCH_SIZE)
        return completed

    async def _run(self) -> None:
        logger.info(
            "Outbox relay worker starting",
            extra={
                "poll_interval": self.settings.OUTBOX_POLL_INTERVAL_SECONDS,
                "batch_size": self.settings.OUTBOX_BATCH_SIZE,
                "max_retries": self.settings.OUTBOX_MAX_RETRIES,
            },
        )

        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.settings.OUTBOX_POLL_INTERVAL_SECONDS)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Error in outbox relay main loop",
                    extra={"error": str(e)},
                    exc_info=True,
                )
                await asyncio.sleep(self.settings.OUTBOX_ERROR_RETRY_INTERVAL_SECONDS)
