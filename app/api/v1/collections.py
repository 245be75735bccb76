from fastapi import APIRouter, Depends, status

from app.api import deps
from app.core.collections.service import CollectionService
from app.db.models.user import User
from app.schemas.collection import CollectionRecordRequest, CollectionRecordResponse, CollectionTransaction

router = APIRouter()


@router.post("/record", response_model=CollectionRecordResponse, status_code=status.HTTP_201_CREATED)
async def record_collection(
    data: CollectionRecordRequest,
    current_user: User = Depends(deps.require_collector),
    service: CollectionService = Depends(deps.get_collection_service),
):
    result = await service.record_collection(current_user, data)
    return CollectionRecordResponse(
        transaction=CollectionTransaction.model_validate(result["transaction"]),
        eiu_earned=result["eiu_earned"],
        message=result["message"],
    )
