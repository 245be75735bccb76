from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

MAX_BATCH_TRANSACTIONS = 500
# A full batch of maximum-weight collections.
MAX_VERIFIED_WEIGHT_GRAMS = MAX_BATCH_TRANSACTIONS * 50_000


class BatchCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_name: str = Field(..., min_length=1, max_length=100)
    transaction_ids: List[UUID] = Field(..., min_length=1, max_length=MAX_BATCH_TRANSACTIONS)


class BatchVerifyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_id: UUID
    verified_weight_total: int = Field(
        ..., gt=0, le=MAX_VERIFIED_WEIGHT_GRAMS, description="Measured weight in grams"
    )
    ipfs_proof_hash: str = Field(..., min_length=46, max_length=64)
    proof_type: Optional[Literal["photo", "video", "document"]] = None
    verification_notes: Optional[str] = Field(default=None, max_length=1000)


class Batch(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    collector_id: UUID
    recycler_id: Optional[UUID] = None
    batch_name: str
    total_weight_grams: int
    verified_weight_grams: Optional[int] = None
    verification_status: str
    weight_difference_percentage: Optional[Decimal] = None
    ipfs_proof_hash: Optional[str] = None
    proof_type: Optional[str] = None
    verification_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    verified_at: Optional[datetime] = None
    blockchain_batch_id: Optional[str] = None
    mint_status: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    retry_count: int = 0
    last_attempt: Optional[datetime] = None
    mint_error: Optional[str] = None
    created_at: Optional[datetime] = None


class VerificationResult(BaseModel):
    is_within_tolerance: bool
    weight_difference_percentage: Decimal
    original_weight: int
    verified_weight: int
    status: Literal["APPROVED", "FLAGGED", "REJECTED"]
    message: str


class MintInitiation(BaseModel):
    status: Literal["INITIATED", "FAILED"]
    message: Optional[str] = None
    error: Optional[str] = None


class RewardAllocation(BaseModel):
    citizen_rewards: Decimal
    collector_bonus: Decimal
    recycler_reward: Decimal
    total_eiu: Decimal
    volume_bonus: Decimal


class BatchVerifyResponse(BaseModel):
    batch: Batch
    verification_result: VerificationResult
    mint_result: Optional[MintInitiation] = None
    reward_allocation: Optional[RewardAllocation] = None


class MintResult(BaseModel):
    success: bool
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    retry_count: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None


class MintStatusResponse(BaseModel):
    batch_id: UUID
    mint_status: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    retry_count: int = 0
    last_attempt: Optional[datetime] = None
    mint_error: Optional[str] = None
    blockchain_status: Optional[Dict[str, Any]] = None


class RetryMintResponse(BaseModel):
    batch_id: UUID
    mint_result: MintResult


class FraudReport(BaseModel):
    batch_id: UUID
    is_suspicious: bool
    risk_score: int
    reasons: List[str]


class ContractInfo(BaseModel):
    configured: bool
    address: Optional[str] = None
    chain_id: Optional[int] = None
    total_minted: Optional[str] = None
    error: Optional[str] = None


class RecyclerStats(BaseModel):
    total_verifications: int
    approved_batches: int
    flagged_batches: int
    rejected_batches: int
    average_weight_difference: Decimal
    total_weight_verified: int
