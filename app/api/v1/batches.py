from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.api import deps
from app.core.batches.service import BatchService
from app.db.models.user import User
from app.schemas.batch import (
    Batch,
    BatchCreateRequest,
    BatchVerifyRequest,
    BatchVerifyResponse,
    ContractInfo,
    FraudReport,
    MintStatusResponse,
    RecyclerStats,
    RetryMintResponse,
)

router = APIRouter()


@router.post("", response_model=Batch, status_code=status.HTTP_201_CREATED)
async def create_batch(
    data: BatchCreateRequest,
    current_user: User = Depends(deps.require_collector),
    service: BatchService = Depends(deps.get_batch_service),
):
    batch = await service.create_batch(current_user, data)
    return Batch.model_validate(batch)


@router.post("/verify", response_model=BatchVerifyResponse)
async def verify_batch(
    data: BatchVerifyRequest,
    current_user: User = Depends(deps.require_recycler),
    service: BatchService = Depends(deps.get_batch_service),
):
    result = await service.verify_batch(current_user, data)
    return BatchVerifyResponse(
        batch=Batch.model_validate(result["batch"]),
        verification_result=result["verification_result"],
        mint_result=result["mint_result"],
        reward_allocation=result["reward_allocation"],
    )


@router.get("/contract-info", response_model=ContractInfo)
async def get_contract_info(
    current_user: User = Depends(deps.get_current_user),
    service: BatchService = Depends(deps.get_batch_service),
):
    return await service.contract_info()


@router.get("/stats/recycler", response_model=RecyclerStats)
async def get_recycler_stats(
    current_user: User = Depends(deps.require_recycler),
    service: BatchService = Depends(deps.get_batch_service),
):
    return await service.recycler_stats(current_user)


@router.get("/{batch_id}/mint-status", response_model=MintStatusResponse)
async def get_mint_status(
    batch_id: UUID,
    current_user: User = Depends(deps.require_collector_or_recycler),
    service: BatchService = Depends(deps.get_batch_service),
):
    return await service.get_mint_status(current_user, batch_id)


@router.post("/{batch_id}/retry-mint", response_model=RetryMintResponse)
async def retry_mint(
    batch_id: UUID,
    current_user: User = Depends(deps.require_recycler),
    service: BatchService = Depends(deps.get_batch_service),
):
    return await service.retry_mint(current_user, batch_id)


@router.get("/{batch_id}/fraud-report", response_model=FraudReport)
async def get_fraud_report(
    batch_id: UUID,
    current_user: User = Depends(deps.require_recycler),
    service: BatchService = Depends(deps.get_batch_service),
):
    return await service.fraud_report(current_user, batch_id)
