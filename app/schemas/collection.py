from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CollectionRecordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    citizen_id: UUID
    weight_grams: int = Field(..., gt=0, description="Collected weight in grams")
    notes: Optional[str] = Field(default=None, max_length=1000)


class CollectionTransaction(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    citizen_id: UUID
    collector_id: UUID
    weight_grams: int
    eiu_earned: Decimal
    eiu_fee: Decimal
    status: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class CollectionRecordResponse(BaseModel):
    transaction: CollectionTransaction
    eiu_earned: Decimal
    message: str
