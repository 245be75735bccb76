import logging
from decimal import Decimal
from typing import Any

from app.core.batches.gateway import PersistenceGateway
from app.db.models.user import User
from app.schemas.collection import CollectionRecordRequest
from app.utils.exceptions import WeightOutOfRangeException

logger = logging.getLogger(__name__)


class CollectionService:
    """Records single collection events and credits the citizen's pending EIU."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        min_weight_grams: int = 10,
        max_weight_grams: int = 50000,
        eiu_per_gram: Decimal = Decimal("0.1"),
        collector_fee_rate: Decimal = Decimal("0.05"),
    ):
        self.gateway = gateway
        self.min_weight_grams = int(min_weight_grams)
        self.max_weight_grams = int(max_weight_grams)
        self.eiu_per_gram = Decimal(eiu_per_gram)
        self.collector_fee_rate = Decimal(collector_fee_rate)

    @classmethod
    def from_settings(cls, gateway: PersistenceGateway, settings: Any) -> "CollectionService":
        return cls(
            gateway,
            min_weight_grams=settings.COLLECTION_MIN_WEIGHT_GRAMS,
            max_weight_grams=settings.COLLECTION_MAX_WEIGHT_GRAMS,
            eiu_per_gram=settings.REWARD_EIU_PER_GRAM,
            collector_fee_rate=settings.COLLECTION_COLLECTOR_FEE_RATE,
        )

    async def record_collection(self, collector: User, data: CollectionRecordRequest) -> dict[str, Any]:
        weight = int(data.weight_grams)
        if weight < self.min_weight_grams or weight > self.max_weight_grams:
            raise WeightOutOfRangeException(
                f"Weight must be between {self.min_weight_grams}g and {self.max_weight_grams}g.",
                details={"weight_grams": weight},
            )

        eiu_earned = Decimal(weight) * self.eiu_per_gram
        eiu_fee = eiu_earned * self.collector_fee_rate

        tx = await self.gateway.record_collection(
            collector_id=collector.id,
            citizen_id=data.citizen_id,
            weight_grams=weight,
            eiu_earned=eiu_earned,
            eiu_fee=eiu_fee,
            notes=data.notes,
        )
        logger.info(
            "collection.recorded tx_id=%s collector_id=%s citizen_id=%s weight_grams=%s",
            tx.id,
            collector.id,
            data.citizen_id,
            weight,
        )
        return {
            "transaction": tx,
            "eiu_earned": eiu_earned,
            "message": (
                f"Successfully recorded {weight}g collection. "
                f"{eiu_earned:f} EIU earned (pending verification)."
            ),
        }
