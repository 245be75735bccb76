from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class RewardPolicy:
    eiu_per_gram: Decimal = Decimal("0.1")
    citizen_share: Decimal = Decimal("0.85")
    collector_share: Decimal = Decimal("0.10")
    recycler_share: Decimal = Decimal("0.05")
    large_batch_min_tx: int = 50
    large_batch_bonus_rate: Decimal = Decimal("0.05")
    medium_batch_min_tx: int = 20
    medium_batch_bonus_rate: Decimal = Decimal("0.02")
    bonus_citizen_share: Decimal = Decimal("0.6")
    bonus_collector_share: Decimal = Decimal("0.3")
    bonus_recycler_share: Decimal = Decimal("0.1")

    @classmethod
    def from_settings(cls, settings: Any) -> "RewardPolicy":
        return cls(
            eiu_per_gram=Decimal(settings.REWARD_EIU_PER_GRAM),
            citizen_share=Decimal(settings.REWARD_CITIZEN_SHARE),
            collector_share=Decimal(settings.REWARD_COLLECTOR_SHARE),
            recycler_share=Decimal(settings.REWARD_RECYCLER_SHARE),
            large_batch_min_tx=int(settings.REWARD_VOLUME_BONUS_LARGE_MIN_TX),
            large_batch_bonus_rate=Decimal(settings.REWARD_VOLUME_BONUS_LARGE_RATE),
            medium_batch_min_tx=int(settings.REWARD_VOLUME_BONUS_MEDIUM_MIN_TX),
            medium_batch_bonus_rate=Decimal(settings.REWARD_VOLUME_BONUS_MEDIUM_RATE),
            bonus_citizen_share=Decimal(settings.REWARD_BONUS_CITIZEN_SHARE),
            bonus_collector_share=Decimal(settings.REWARD_BONUS_COLLECTOR_SHARE),
            bonus_recycler_share=Decimal(settings.REWARD_BONUS_RECYCLER_SHARE),
        )

    def volume_bonus_rate(self, transaction_count: int) -> Decimal:
        if transaction_count > self.large_batch_min_tx:
            return self.large_batch_bonus_rate
        if transaction_count > self.medium_batch_min_tx:
            return self.medium_batch_bonus_rate
        return Decimal("0")


@dataclass(frozen=True)
class RewardAllocation:
    citizen_rewards: Decimal
    collector_bonus: Decimal
    recycler_reward: Decimal
    total_eiu: Decimal
    volume_bonus: Decimal


def calculate_eiu_rewards(
    verified_weight_grams: int,
    transaction_count: int,
    policy: RewardPolicy | None = None,
) -> RewardAllocation:
    """Split the EIU earned by a verified batch between the three parties.

    Values are exact decimals; rounding is left to whoever credits balances.
    """
    policy = policy or RewardPolicy()
    base = Decimal(int(verified_weight_grams)) * policy.eiu_per_gram
    bonus = base * policy.volume_bonus_rate(int(transaction_count))
    return RewardAllocation(
        citizen_rewards=base * policy.citizen_share + bonus * policy.bonus_citizen_share,
        collector_bonus=base * policy.collector_share + bonus * policy.bonus_collector_share,
        recycler_reward=base * policy.recycler_share + bonus * policy.bonus_recycler_share,
        total_eiu=base + bonus,
        volume_bonus=bonus,
    )
