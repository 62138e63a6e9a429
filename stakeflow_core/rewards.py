"""
Reward accrual for StakeFlow stakes.

Linear, uncapped accrual against a fixed reference period:

    duration = max(0, now − start_time)
    gross    = amount × rate_percent × duration // (100 × reference_period)

With a referral account the gross reward is split:

    referral  = gross × referral_rate_percent // 100
    principal = gross − referral

Everything is integer arithmetic with floor division so results are
reproducible and auditable; ``principal + referral == gross`` always.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

from stakeflow_core.staking import REFERENCE_PERIOD, StakeRecord


class RewardBreakdown(NamedTuple):
    principal_reward: int
    referral_reward: int

    @property
    def gross(self) -> int:
        return self.principal_reward + self.referral_reward

    def to_dict(self) -> dict:
        return {
            "principal_reward": self.principal_reward,
            "referral_reward": self.referral_reward,
            "gross_reward": self.gross,
        }


def gross_reward(
    amount: int,
    rate_percent: int,
    duration: int,
    reference_period: int = REFERENCE_PERIOD,
) -> int:
    """Gross reward for *amount* held *duration* seconds at *rate_percent*."""
    if duration <= 0:
        return 0
    return amount * rate_percent * duration // (100 * reference_period)


def split_referral(gross: int, referral_rate_percent: int) -> tuple[int, int]:
    """Return ``(principal_share, referral_share)`` of *gross*."""
    referral = gross * referral_rate_percent // 100
    return gross - referral, referral


def compute_reward(
    record: StakeRecord,
    now: int,
    *,
    referral_rate_percent: Optional[int] = None,
    reference_period: int = REFERENCE_PERIOD,
) -> RewardBreakdown:
    """
    Reward accrued by *record* between its start and *now*.

    The referral rate defaults to the one snapshotted into the record;
    pass ``referral_rate_percent`` to apply a different (e.g. current
    global) rate instead.  Pure: *record* is not modified.
    """
    gross = gross_reward(
        record.amount,
        record.rate_percent,
        now - record.start_time,
        reference_period,
    )
    if not record.has_referral:
        return RewardBreakdown(gross, 0)
    rate = (
        record.referral_rate_percent
        if referral_rate_percent is None else referral_rate_percent
    )
    principal, referral = split_referral(gross, rate)
    return RewardBreakdown(principal, referral)
