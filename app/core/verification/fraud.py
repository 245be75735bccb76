from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field

from app.core.batches.gateway import BatchTransactionSummary, PersistenceGateway

logger = logging.getLogger(__name__)

SUSPICIOUS_SCORE_THRESHOLD = 50

SMALL_TRANSACTION_GRAMS = 100
SMALL_TRANSACTION_SHARE = 0.8
IDENTICAL_WEIGHT_MIN_COUNT = 5
HIGH_AVERAGE_WEIGHT_GRAMS = 10_000
SHORT_SPAN_SECONDS = 60


@dataclass(frozen=True)
class FraudReport:
    is_suspicious: bool
    risk_score: int
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"is_suspicious": self.is_suspicious, "reasons": list(self.reasons), "risk_score": self.risk_score}


def _report(score: int, reasons: list[str]) -> FraudReport:
    return FraudReport(is_suspicious=score > SUSPICIOUS_SCORE_THRESHOLD, risk_score=score, reasons=reasons)


def detect_suspicious_patterns(summary: BatchTransactionSummary | None) -> FraudReport:
    """Score a batch's member transactions with additive heuristics.

    Advisory only; the score never blocks verification.
    """
    if summary is None:
        return FraudReport(is_suspicious=True, risk_score=100, reasons=["Batch not found"])

    txs = summary.transactions
    count = len(txs)
    reasons: list[str] = []
    score = 0
    if count == 0:
        return _report(score, reasons)

    small = sum(1 for t in txs if t.weight_grams < SMALL_TRANSACTION_GRAMS)
    if small >= count * SMALL_TRANSACTION_SHARE:
        reasons.append(f"High concentration of small transactions (< {SMALL_TRANSACTION_GRAMS}g)")
        score += 30

    if count > IDENTICAL_WEIGHT_MIN_COUNT and len({t.weight_grams for t in txs}) == 1:
        reasons.append("All transactions have identical weight values")
        score += 40

    repeated = [c for c, n in Counter(t.citizen_id for t in txs).items() if n > 1]
    if repeated:
        reasons.append(f"{len(repeated)} citizens have multiple transactions in same batch")
        score += 20

    if summary.total_weight_grams / count > HIGH_AVERAGE_WEIGHT_GRAMS:
        reasons.append("Unusually high average weight per transaction")
        score += 25

    stamps = [t.created_at for t in txs if t.created_at is not None]
    if count > 1 and len(stamps) == count:
        span = (max(stamps) - min(stamps)).total_seconds()
        if span < SHORT_SPAN_SECONDS:
            reasons.append("All transactions recorded within very short time period")
            score += 15

    return _report(score, reasons)


class FraudPatternDetector:
    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway

    async def analyze(self, batch_id: uuid.UUID | str) -> FraudReport:
        try:
            summary = await self.gateway.get_batch_transaction_summary(batch_id)
        except Exception:
            logger.exception("fraud.analyze_failed batch_id=%s", batch_id)
            return FraudReport(is_suspicious=True, risk_score=100, reasons=["Error during fraud detection"])

        report = detect_suspicious_patterns(summary)
        if report.is_suspicious:
            logger.warning(
                "fraud.suspicious_batch batch_id=%s risk_score=%s reasons=%s",
                batch_id,
                report.risk_score,
                "; ".join(report.reasons),
            )
        return report
