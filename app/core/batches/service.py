import logging
import time
import uuid
from dataclasses import asdict
from typing import Any, Optional

from app.core.batches import states
from app.core.batches.gateway import PersistenceGateway
from app.core.minting.dispatcher import MintDispatcher
from app.core.minting.orchestrator import BatchMintOrchestrator
from app.core.verification.engine import APPROVED, FLAGGED, REJECTED, WeightVerificationEngine
from app.core.verification.fraud import FraudPatternDetector
from app.core.verification.rewards import RewardPolicy, calculate_eiu_rewards
from app.db.models.batch import Batch
from app.db.models.user import User
from app.schemas.batch import BatchCreateRequest, BatchVerifyRequest
from app.utils.exceptions import (
    BadRequestException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
)

logger = logging.getLogger(__name__)

_STATUS_BY_RESULT = {
    APPROVED: states.VERIFICATION_VERIFIED,
    FLAGGED: states.VERIFICATION_PENDING,
    REJECTED: states.VERIFICATION_REJECTED,
}


def generate_blockchain_batch_id() -> str:
    return f"BATCH_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class BatchService:
    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        engine: WeightVerificationEngine,
        orchestrator: BatchMintOrchestrator,
        dispatcher: Optional[MintDispatcher] = None,
        reward_policy: Optional[RewardPolicy] = None,
    ):
        self.gateway = gateway
        self.engine = engine
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        self.reward_policy = reward_policy or RewardPolicy()
        self.fraud_detector = FraudPatternDetector(gateway)

    async def _get_batch_or_404(self, batch_id: uuid.UUID) -> Batch:
        batch = await self.gateway.get_batch(batch_id)
        if batch is None:
            raise NotFoundException("Batch not found.")
        return batch

    async def create_batch(self, collector: User, data: BatchCreateRequest) -> Batch:
        return await self.gateway.create_batch(
            collector_id=collector.id,
            batch_name=data.batch_name,
            transaction_ids=data.transaction_ids,
        )

    async def verify_batch(self, recycler: User, data: BatchVerifyRequest) -> dict[str, Any]:
        batch = await self._get_batch_or_404(data.batch_id)
        if batch.verification_status != states.VERIFICATION_PENDING:
            raise ConflictException(
                f"Batch cannot be verified. Current status: {batch.verification_status}",
                details={"verification_status": batch.verification_status},
            )

        result = await self.engine.verify_batch_weight(batch.id, data.verified_weight_total, recycler.id)

        updated = await self.gateway.update_batch_verification(
            batch.id,
            recycler_id=recycler.id,
            verification_status=_STATUS_BY_RESULT[result.status],
            verified_weight_grams=data.verified_weight_total,
            weight_difference_percentage=result.weight_difference_percentage,
            ipfs_proof_hash=data.ipfs_proof_hash,
            proof_type=data.proof_type or "photo",
            verification_notes=data.verification_notes,
            rejection_reason=result.message if result.status == REJECTED else None,
            blockchain_batch_id=generate_blockchain_batch_id() if result.status == APPROVED else None,
        )
        if updated is None:
            # Another recycler finished verification between our read and write.
            raise ConflictException("Batch cannot be verified. It is no longer pending.")

        await self.gateway.append_audit_log(
            f"BATCH_{result.status}",
            object_id=batch.id,
            actor_id=recycler.id,
            actor_role=recycler.role,
            after_state={
                "verified_weight_total": data.verified_weight_total,
                "original_weight": result.original_weight,
                "weight_difference_percentage": result.weight_difference_percentage,
                "ipfs_proof_hash": data.ipfs_proof_hash,
                "verification_notes": data.verification_notes,
            },
        )

        response: dict[str, Any] = {
            "batch": updated,
            "verification_result": result.to_dict(),
            "mint_result": None,
            "reward_allocation": None,
        }
        if result.status != APPROVED:
            return response

        summary = await self.gateway.get_batch_transaction_summary(batch.id)
        allocation = calculate_eiu_rewards(
            data.verified_weight_total,
            summary.count if summary else 0,
            self.reward_policy,
        )
        response["reward_allocation"] = asdict(allocation)

        if self.dispatcher is None:
            response["mint_result"] = {"status": "FAILED", "error": "Failed to initiate minting process."}
            return response
        try:
            self.dispatcher.dispatch(batch.id)
            response["mint_result"] = {
                "status": "INITIATED",
                "message": "Minting process initiated. Check batch status for updates.",
            }
        except Exception:
            logger.exception("batch.mint_dispatch_failed batch_id=%s", batch.id)
            response["mint_result"] = {"status": "FAILED", "error": "Failed to initiate minting process."}
        return response

    async def get_mint_status(self, user: User, batch_id: uuid.UUID) -> dict[str, Any]:
        batch = await self._get_batch_or_404(batch_id)
        if user.id not in (batch.collector_id, batch.recycler_id):
            raise ForbiddenException("Access denied. You can only view mint status for your own batches.")

        blockchain_status = None
        if batch.tx_hash:
            blockchain_status = await self.orchestrator.get_transaction_status(batch.tx_hash)

        return {
            "batch_id": batch.id,
            "mint_status": batch.mint_status,
            "tx_hash": batch.tx_hash,
            "block_number": batch.block_number,
            "retry_count": batch.retry_count,
            "last_attempt": batch.last_attempt,
            "mint_error": batch.mint_error,
            "blockchain_status": blockchain_status,
        }

    async def retry_mint(self, recycler: User, batch_id: uuid.UUID) -> dict[str, Any]:
        batch = await self._get_batch_or_404(batch_id)
        if batch.recycler_id != recycler.id:
            raise ForbiddenException("Access denied. You can only retry mint for batches you verified.")
        if batch.mint_status != states.MINT_FAILED:
            raise BadRequestException(
                "Only failed batches can be retried.", details={"mint_status": batch.mint_status}
            )

        logger.info("batch.retry_mint batch_id=%s recycler_id=%s", batch.id, recycler.id)
        result = await self.orchestrator.trigger_mint(batch.id)
        return {"batch_id": batch.id, "mint_result": result.to_dict()}

    async def fraud_report(self, recycler: User, batch_id: uuid.UUID) -> dict[str, Any]:
        """Unclaimed batches are open to every recycler deciding whether to take them;
        once a recycler has verified a batch, only that recycler can read its report."""
        batch = await self._get_batch_or_404(batch_id)
        if batch.recycler_id is not None and batch.recycler_id != recycler.id:
            raise ForbiddenException("Access denied. You can only view fraud reports for batches you verified.")
        report = await self.fraud_detector.analyze(batch.id)
        return {"batch_id": batch_id, **report.to_dict()}

    async def recycler_stats(self, recycler: User) -> dict[str, Any]:
        return await self.engine.get_recycler_stats(recycler.id)

    async def contract_info(self) -> dict[str, Any]:
        return await self.orchestrator.get_contract_info()
