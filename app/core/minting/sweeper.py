from __future__ import annotations

import asyncio
import logging

from app.core.minting.orchestrator import BatchMintOrchestrator
from app.utils.metrics import RECOVERY_EVENTS_TOTAL

logger = logging.getLogger(__name__)


async def run_mint_sweep_once(orchestrator: BatchMintOrchestrator) -> dict[str, int]:
    try:
        RECOVERY_EVENTS_TOTAL.labels(event="mint_retry_sweep", result="start").inc()
    except Exception:
        pass

    # Interrupted sequences first, so they become retry candidates in this pass.
    recovered = 0
    try:
        recovered = len(await orchestrator.recover_stale_attempts())
    except Exception:
        logger.exception("mint.stale_recovery_failed")

    stats = await orchestrator.retry_failed_batches()
    stats["recovered"] = recovered

    try:
        result = "noop" if not (stats["retried"] or recovered) else "success"
        RECOVERY_EVENTS_TOTAL.labels(event="mint_retry_sweep", result=result).inc()
    except Exception:
        pass
    return stats


async def mint_retry_sweep_loop(
    *, orchestrator: BatchMintOrchestrator, stop_event: asyncio.Event, interval_seconds: int
) -> None:
    interval = max(1, int(interval_seconds))

    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

        try:
            await run_mint_sweep_once(orchestrator)
        except Exception:
            logger.exception("mint.sweep_failed")
