from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable

from app.core.minting.orchestrator import BatchMintOrchestrator, MintResult

logger = logging.getLogger(__name__)


class MintDispatcher:
    """Hands approved batches to the orchestrator as tracked background tasks.

    The HTTP request that approved the batch returns as soon as the task is
    scheduled; the task's outcome is only observable through logs and the
    persisted batch state.
    """

    def __init__(
        self,
        orchestrator: BatchMintOrchestrator,
        *,
        start_delay_ms: int = 0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.start_delay_ms = max(0, int(start_delay_ms))
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, batch_id: uuid.UUID | str) -> asyncio.Task:
        task = asyncio.create_task(self._run(batch_id), name=f"mint:{batch_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("mint.dispatched batch_id=%s delay_ms=%s", batch_id, self.start_delay_ms)
        return task

    async def _run(self, batch_id: uuid.UUID | str) -> MintResult | None:
        try:
            if self.start_delay_ms:
                await self._sleep(self.start_delay_ms / 1000.0)
            result = await self.orchestrator.trigger_mint(batch_id)
        except asyncio.CancelledError:
            logger.warning("mint.dispatch_cancelled batch_id=%s", batch_id)
            raise
        except Exception:
            logger.exception("mint.dispatch_failed batch_id=%s", batch_id)
            return None

        if result.success:
            logger.info("mint.dispatch_done batch_id=%s tx_hash=%s", batch_id, result.transaction_hash)
        else:
            logger.warning(
                "mint.dispatch_done batch_id=%s success=false code=%s error=%s",
                batch_id,
                result.error_code,
                result.error,
            )
        return result

    async def drain(self) -> None:
        """Wait for every outstanding task (used by tests and graceful shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("mint.dispatcher_shutdown cancelled=%s", len(tasks))
