from __future__ import annotations

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from app.core.batches import states
from app.core.batches.gateway import PersistenceGateway, utc_now
from app.core.minting.chain_client import ChainSubmission, MintRequest, ReceiptStatus
from app.core.minting.errors import ChainError, ChainTransactionError
from app.utils.metrics import MINT_ATTEMPT_DURATION_SECONDS, MINT_EVENTS_TOTAL
from app.utils.observability import log_duration

logger = logging.getLogger(__name__)

NOT_ELIGIBLE = "NOT_ELIGIBLE"
SERVICE_NOT_CONFIGURED = "SERVICE_NOT_CONFIGURED"
MISSING_WALLET_ADDRESS = "MISSING_WALLET_ADDRESS"


class MintChainClient(Protocol):
    @property
    def is_configured(self) -> bool: ...

    @property
    def contract_address(self) -> str | None: ...

    async def submit_mint(
        self,
        request: MintRequest,
        *,
        on_broadcast: Callable[[str], Awaitable[Any]] | None = None,
    ) -> ChainSubmission: ...

    async def confirm_mint(self, tx_hash: str) -> ChainSubmission: ...

    async def get_receipt(self, tx_hash: str) -> ReceiptStatus: ...

    async def get_chain_id(self) -> int: ...

    async def get_total_minted(self) -> int: ...


@dataclass(frozen=True)
class MintResult:
    success: bool
    transaction_hash: str | None = None
    block_number: int | None = None
    gas_used: int | None = None
    retry_count: int = 0
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "retry_count": self.retry_count,
            "error": self.error,
            "error_code": self.error_code,
        }


def _inc(event: str, result: str) -> None:
    try:
        MINT_EVENTS_TOTAL.labels(event=event, result=result).inc()
    except Exception:
        pass


def _observe_attempt(result: str, seconds: float) -> None:
    try:
        MINT_ATTEMPT_DURATION_SECONDS.labels(result=result).observe(seconds)
    except Exception:
        pass


class BatchMintOrchestrator:
    """Drives a verified batch through submission, retries and final mint state.

    ``trigger_mint`` never raises for chain failures; the outcome is persisted on
    the batch and returned as a ``MintResult``.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        chain_client: MintChainClient,
        *,
        max_retries: int = 3,
        retry_delay_ms: int = 5000,
        sweep_limit: int = 10,
        retry_cooldown_seconds: int = 3600,
        stale_attempt_seconds: int = 3600,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.chain_client = chain_client
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_ms = int(retry_delay_ms)
        self.sweep_limit = int(sweep_limit)
        self.retry_cooldown_seconds = int(retry_cooldown_seconds)
        self.stale_attempt_seconds = int(stale_attempt_seconds)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        gateway: PersistenceGateway,
        chain_client: MintChainClient,
        settings: Any,
        **kwargs: Any,
    ) -> "BatchMintOrchestrator":
        return cls(
            gateway,
            chain_client,
            max_retries=settings.MINT_MAX_RETRIES,
            retry_delay_ms=settings.MINT_RETRY_DELAY_MS,
            sweep_limit=settings.MINT_RETRY_SWEEP_LIMIT,
            retry_cooldown_seconds=settings.MINT_RETRY_COOLDOWN_SECONDS,
            stale_attempt_seconds=settings.MINT_STALE_ATTEMPT_SECONDS,
            **kwargs,
        )

    def backoff_seconds(self, retry_count: int) -> float:
        return self.retry_delay_ms * (2 ** (retry_count - 1)) / 1000.0

    async def trigger_mint(self, batch_id: uuid.UUID | str) -> MintResult:
        if not self.chain_client.is_configured:
            _inc("trigger", "not_configured")
            return MintResult(
                success=False,
                error="Blockchain service not configured",
                error_code=SERVICE_NOT_CONFIGURED,
            )

        batch = await self.gateway.get_batch(batch_id)
        if (
            batch is None
            or batch.verification_status != states.VERIFICATION_VERIFIED
            or batch.mint_status not in states.MINT_CLAIMABLE
        ):
            _inc("trigger", "not_eligible")
            return MintResult(success=False, error="Batch not eligible for minting", error_code=NOT_ELIGIBLE)

        collector_wallet, recycler_wallet = await self.gateway.get_user_wallet_addresses(
            batch.collector_id, batch.recycler_id
        )
        if not collector_wallet or not recycler_wallet:
            _inc("trigger", "missing_wallet")
            logger.warning(
                "mint.missing_wallet batch_id=%s collector_wallet=%s recycler_wallet=%s",
                batch.id,
                bool(collector_wallet),
                bool(recycler_wallet),
            )
            return MintResult(
                success=False,
                error="Missing wallet addresses for collector or recycler",
                error_code=MISSING_WALLET_ADDRESS,
            )

        if not await self.gateway.claim_batch_for_mint(batch.id):
            _inc("trigger", "claim_lost")
            return MintResult(success=False, error="Batch not eligible for minting", error_code=NOT_ELIGIBLE)

        _inc("trigger", "claimed")
        logger.info("mint.started batch_id=%s weight_grams=%s", batch.id, batch.total_weight_grams)

        request = MintRequest(
            batch_id=str(batch.id),
            collector_address=collector_wallet,
            recycler_address=recycler_wallet,
            weight_grams=int(batch.total_weight_grams),
            ipfs_hash=batch.ipfs_proof_hash or "",
        )

        pending_tx_hash: str | None = None
        if batch.tx_hash:
            # A previous sequence broadcast a mint. Resolve it before sending another.
            try:
                receipt = await self.chain_client.get_receipt(batch.tx_hash)
            except ChainError as exc:
                logger.warning(
                    "mint.previous_tx_lookup_failed batch_id=%s tx_hash=%s code=%s",
                    batch.id,
                    batch.tx_hash,
                    exc.code,
                )
                pending_tx_hash = batch.tx_hash
            else:
                if receipt.found and receipt.succeeded:
                    _inc("trigger", "reconciled")
                    submission = ChainSubmission(
                        transaction_hash=batch.tx_hash,
                        block_number=int(receipt.block_number or 0),
                        gas_used=int(receipt.gas_used or 0),
                    )
                    return await self._record_minted(batch.id, submission, retry_count=0)
                logger.info(
                    "mint.previous_tx_unusable batch_id=%s tx_hash=%s found=%s",
                    batch.id,
                    batch.tx_hash,
                    receipt.found,
                )

        return await self._run_attempts(batch.id, request, pending_tx_hash=pending_tx_hash)

    async def _record_minted(self, batch_id: uuid.UUID, submission: ChainSubmission, *, retry_count: int) -> MintResult:
        await self.gateway.update_batch_mint_status(
            batch_id,
            states.MINT_MINTED,
            retry_count=retry_count,
            tx_hash=submission.transaction_hash,
            block_number=submission.block_number,
            gas_used=submission.gas_used,
            last_attempt=utc_now(),
        )
        _inc("attempt", "minted")
        logger.info(
            "mint.succeeded batch_id=%s tx_hash=%s block=%s gas_used=%s retry_count=%s",
            batch_id,
            submission.transaction_hash,
            submission.block_number,
            submission.gas_used,
            retry_count,
        )
        return MintResult(
            success=True,
            transaction_hash=submission.transaction_hash,
            block_number=submission.block_number,
            gas_used=submission.gas_used,
            retry_count=retry_count,
        )

    async def _run_attempts(
        self,
        batch_id: uuid.UUID,
        request: MintRequest,
        *,
        pending_tx_hash: str | None = None,
    ) -> MintResult:
        """Submit once, then only re-poll: after a broadcast, retries wait on the same hash."""
        retry_count = 0
        last_error: ChainError | None = None
        on_broadcast = functools.partial(self.gateway.record_mint_broadcast, batch_id)

        while retry_count < self.max_retries:
            started = time.perf_counter()
            try:
                with log_duration(
                    logger, "mint.attempt", batch_id=batch_id, retry_count=retry_count, tx_hash=pending_tx_hash
                ) as fields:
                    try:
                        if pending_tx_hash:
                            submission = await self.chain_client.confirm_mint(pending_tx_hash)
                        else:
                            submission = await self.chain_client.submit_mint(request, on_broadcast=on_broadcast)
                        fields["result"] = "success"
                    except Exception:
                        fields["result"] = "failure"
                        raise
            except ChainError as exc:
                last_error = exc
                if exc.tx_hash:
                    pending_tx_hash = exc.tx_hash
            except Exception as exc:
                # Anything outside the taxonomy is treated as a transient failure.
                logger.exception("mint.unexpected_error batch_id=%s", batch_id)
                last_error = ChainTransactionError(f"Transaction failed: {exc}")
            else:
                _observe_attempt("success", time.perf_counter() - started)
                return await self._record_minted(batch_id, submission, retry_count=retry_count)

            _observe_attempt("failure", time.perf_counter() - started)

            if not last_error.retryable:
                _inc("attempt", "non_retryable")
                logger.warning(
                    "mint.non_retryable batch_id=%s code=%s tx_hash=%s error=%s",
                    batch_id,
                    last_error.code,
                    last_error.tx_hash,
                    last_error.message,
                )
                break

            retry_count += 1
            _inc("attempt", "retrying")
            await self.gateway.update_batch_mint_status(
                batch_id,
                states.MINT_RETRYING,
                retry_count=retry_count,
                tx_hash=last_error.tx_hash,
                error=last_error.message,
                last_attempt=utc_now(),
            )
            logger.warning(
                "mint.attempt_failed batch_id=%s retry_count=%s max_retries=%s code=%s tx_hash=%s error=%s",
                batch_id,
                retry_count,
                self.max_retries,
                last_error.code,
                pending_tx_hash,
                last_error.message,
            )
            if retry_count < self.max_retries:
                await self._sleep(self.backoff_seconds(retry_count))

        error_message = last_error.message if last_error else "Max retries exceeded"
        await self.gateway.update_batch_mint_status(
            batch_id,
            states.MINT_FAILED,
            retry_count=retry_count,
            tx_hash=last_error.tx_hash if last_error else None,
            error=error_message,
            last_attempt=utc_now(),
        )
        _inc("attempt", "failed")
        logger.error(
            "mint.failed batch_id=%s retry_count=%s code=%s tx_hash=%s error=%s",
            batch_id,
            retry_count,
            last_error.code if last_error else None,
            pending_tx_hash,
            error_message,
        )
        return MintResult(
            success=False,
            transaction_hash=pending_tx_hash,
            retry_count=retry_count,
            error=error_message,
            error_code=last_error.code if last_error else None,
        )

    async def recover_stale_attempts(self) -> list[uuid.UUID]:
        """Fail mint sequences that stopped without reaching a final state.

        A cancelled or crashed attempt leaves PENDING_MINT/RETRYING behind, which
        neither the sweep nor a manual retry can claim.
        """
        recovered = await self.gateway.fail_stale_mint_attempts(
            stale_after_seconds=self.stale_attempt_seconds,
            error="Mint attempt interrupted before completion",
        )
        for batch_id in recovered:
            _inc("recovery", "stale_failed")
            logger.warning("mint.stale_attempt_failed batch_id=%s", batch_id)
        return recovered

    async def retry_failed_batches(self) -> dict[str, int]:
        """Re-trigger FAILED_ON_CHAIN batches whose cooldown has elapsed, one at a time."""
        stats = {"retried": 0, "successful": 0, "failed": 0}
        candidates = await self.gateway.select_retry_candidates(
            max_retries=self.max_retries,
            cooldown_seconds=self.retry_cooldown_seconds,
            limit=self.sweep_limit,
        )
        for batch_id in candidates:
            stats["retried"] += 1
            try:
                result = await self.trigger_mint(batch_id)
            except Exception:
                logger.exception("mint.sweep_trigger_failed batch_id=%s", batch_id)
                stats["failed"] += 1
                continue
            if result.success:
                stats["successful"] += 1
            else:
                stats["failed"] += 1

        if candidates:
            logger.info(
                "mint.sweep_done retried=%s successful=%s failed=%s",
                stats["retried"],
                stats["successful"],
                stats["failed"],
            )
        return stats

    async def get_transaction_status(self, tx_hash: str) -> dict[str, Any]:
        if not self.chain_client.is_configured:
            return {"confirmed": False, "error": "Blockchain service not configured"}
        try:
            receipt = await self.chain_client.get_receipt(tx_hash)
        except ChainError as exc:
            return {"confirmed": False, "error": exc.message}
        if not receipt.found:
            return {"confirmed": False}
        return {
            "confirmed": receipt.succeeded,
            "block_number": receipt.block_number,
            "gas_used": receipt.gas_used,
        }

    async def get_contract_info(self) -> dict[str, Any]:
        if not self.chain_client.is_configured:
            return {"configured": False, "address": None, "chain_id": None, "total_minted": None}
        info: dict[str, Any] = {"configured": True, "address": self.chain_client.contract_address}
        try:
            info["chain_id"] = await self.chain_client.get_chain_id()
            info["total_minted"] = str(await self.chain_client.get_total_minted())
        except ChainError as exc:
            logger.warning("mint.contract_info_failed code=%s error=%s", exc.code, exc.message)
            info.setdefault("chain_id", None)
            info["total_minted"] = None
            info["error"] = exc.message
        return info
