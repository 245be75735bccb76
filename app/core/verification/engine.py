from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from app.core.batches.gateway import PersistenceGateway
from app.utils.metrics import VERIFICATION_EVENTS_TOTAL

logger = logging.getLogger(__name__)

APPROVED = "APPROVED"
FLAGGED = "FLAGGED"
REJECTED = "REJECTED"

AUDIT_ACTION_VERIFICATION = "BATCH_VERIFICATION"

_HUNDRED = Decimal(100)
_SYSTEM_ERROR_MESSAGE = "System error during verification. Please try again."
_EMPTY_BATCH_MESSAGE = "Batch has no transactions or batch not found."


@dataclass(frozen=True)
class WeightComparisonResult:
    is_within_tolerance: bool
    weight_difference_percentage: Decimal
    original_weight: int
    verified_weight: int
    status: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_within_tolerance": self.is_within_tolerance,
            "weight_difference_percentage": str(self.weight_difference_percentage),
            "original_weight": self.original_weight,
            "verified_weight": self.verified_weight,
            "status": self.status,
            "message": self.message,
        }


def _fmt(value: Decimal) -> str:
    return f"{value:.2f}"


def classify_weight_difference(
    original_weight: int,
    verified_weight: int,
    *,
    tolerance: Decimal,
    reject_threshold: Decimal,
) -> WeightComparisonResult:
    """Decide APPROVED / FLAGGED / REJECTED from declared vs. verified weight.

    The comparison uses the unrounded percentage; rounding is for display only.
    Both threshold boundaries are inclusive on the lenient side.
    """
    original = Decimal(int(original_weight))
    verified = Decimal(int(verified_weight))
    if original > 0:
        percent = abs(original - verified) / original * _HUNDRED
    else:
        percent = _HUNDRED

    tolerance = Decimal(tolerance)
    reject_threshold = Decimal(reject_threshold)
    within = percent <= tolerance

    if within:
        status = APPROVED
        message = (
            f"Batch verification PASSED. Weight difference: {_fmt(percent)}% "
            f"(within {tolerance:f}% tolerance)."
        )
    elif percent > reject_threshold:
        status = REJECTED
        message = (
            f"Batch verification REJECTED. Weight difference: {_fmt(percent)}% "
            f"exceeds maximum allowable threshold ({reject_threshold:f}%)."
        )
    else:
        status = FLAGGED
        message = (
            f"Batch verification FLAGGED for review. Weight difference: {_fmt(percent)}% "
            f"exceeds {tolerance:f}% tolerance but is within review threshold "
            f"({reject_threshold:f}%)."
        )

    return WeightComparisonResult(
        is_within_tolerance=within,
        weight_difference_percentage=percent,
        original_weight=int(original_weight),
        verified_weight=int(verified_weight),
        status=status,
        message=message,
    )


def _rejected(original_weight: int, verified_weight: int, message: str) -> WeightComparisonResult:
    return WeightComparisonResult(
        is_within_tolerance=False,
        weight_difference_percentage=_HUNDRED,
        original_weight=original_weight,
        verified_weight=int(verified_weight),
        status=REJECTED,
        message=message,
    )


class WeightVerificationEngine:
    """Double-weight check of a batch: declared sum vs. recycler-measured total.

    Never raises; any internal failure is reported as a REJECTED result.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        tolerance_percent: Decimal,
        reject_threshold_percent: Decimal,
    ):
        self.gateway = gateway
        self.tolerance_percent = Decimal(tolerance_percent)
        self.reject_threshold_percent = Decimal(reject_threshold_percent)

    @classmethod
    def from_settings(cls, gateway: PersistenceGateway, settings: Any) -> "WeightVerificationEngine":
        return cls(
            gateway,
            tolerance_percent=settings.VERIFICATION_TOLERANCE_PERCENT,
            reject_threshold_percent=settings.VERIFICATION_REJECT_THRESHOLD_PERCENT,
        )

    async def verify_batch_weight(
        self,
        batch_id: uuid.UUID | str,
        verified_weight_total: int,
        recycler_id: uuid.UUID | str,
    ) -> WeightComparisonResult:
        original_weight = 0
        try:
            summary = await self.gateway.get_batch_transaction_summary(batch_id)
            if summary is None or summary.count == 0:
                result = _rejected(0, verified_weight_total, _EMPTY_BATCH_MESSAGE)
            else:
                original_weight = summary.total_weight_grams
                result = classify_weight_difference(
                    original_weight,
                    verified_weight_total,
                    tolerance=self.tolerance_percent,
                    reject_threshold=self.reject_threshold_percent,
                )
        except Exception:
            logger.exception("verification.failed batch_id=%s", batch_id)
            result = _rejected(0, verified_weight_total, _SYSTEM_ERROR_MESSAGE)

        await self.gateway.append_audit_log(
            AUDIT_ACTION_VERIFICATION,
            object_id=batch_id,
            actor_id=recycler_id,
            actor_role="recycler",
            before_state={"original_weight": original_weight, "weight_difference_percentage": None},
            after_state={
                "verified_weight": result.verified_weight,
                "weight_difference_percentage": result.weight_difference_percentage,
                "status": result.status,
                "message": result.message,
            },
        )

        try:
            VERIFICATION_EVENTS_TOTAL.labels(result=result.status.lower()).inc()
        except Exception:
            pass

        logger.info(
            "verification.done batch_id=%s status=%s original=%s verified=%s percent=%s",
            batch_id,
            result.status,
            result.original_weight,
            result.verified_weight,
            _fmt(result.weight_difference_percentage),
        )
        return result

    async def get_recycler_stats(self, recycler_id: uuid.UUID | str) -> dict[str, Any]:
        return await self.gateway.get_recycler_stats(recycler_id)
