"""
Staking engine for StakeFlow.

Orchestrates the stake and claim transitions against a Balance Ledger
and owns everything the core is responsible for:

  - the Stake Ledger (per-account, append-only stake records)
  - the global parameters (stake rate, referral rate, reference period)
  - the owner capability for administrative operations
  - the event log

Every mutating call runs inside ``_atomic()``: the Balance Ledger, the
parameters and the event-log length are captured first, the Stake Ledger
journals what the call touches, and all of it is restored if anything
raises, so an operation either fully succeeds or leaves no trace.
Validation and mutation happen in the same synchronous
step, which is what keeps a record from being claimed twice.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional

from stakeflow_core.balance_ledger import BalanceLedger, LedgerState
from stakeflow_core.errors import (
    AlreadyClaimed,
    InsufficientBalance,
    InvalidAccount,
    InvalidAmount,
    InvalidRate,
    InvariantViolation,
    StakeNotFound,
    StakingError,
    Unauthorized,
)
from stakeflow_core.events import (
    Event,
    EventLog,
    Minted,
    OwnershipTransferred,
    ReferralRateChanged,
    StakeClaimed,
    StakeCreated,
    StakeRateChanged,
)
from stakeflow_core.invariants import InvariantChecker
from stakeflow_core.rewards import RewardBreakdown, compute_reward
from stakeflow_core.staking import REFERENCE_PERIOD, StakeLedger, StakeRecord

if TYPE_CHECKING:
    from stakeflow_core.config import StakingConfig
    from stakeflow_core.storage import StakeStore

logger = logging.getLogger("stakeflow")


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_amount(amount: object, what: str = "amount") -> int:
    if not _is_int(amount):
        raise InvalidAmount(f"{what} must be an integer number of base units")
    if amount <= 0:
        raise InvalidAmount(f"{what} must be positive, got {amount}")
    return amount


def _validate_rate(percent: object, name: str, upper: Optional[int] = None) -> int:
    if not _is_int(percent) or percent < 0:
        raise InvalidRate(f"{name} must be a non-negative integer, got {percent!r}")
    if upper is not None and percent > upper:
        raise InvalidRate(f"{name} must be at most {upper}, got {percent}")
    return percent


def _validate_account(account: object, what: str = "account") -> str:
    if not isinstance(account, str) or not account:
        raise InvalidAccount(f"{what} must be a non-empty account id")
    return account


class StakingEngine:
    """
    Stake ledger + reward engine + parameter administration.

    ``now`` arguments are integer epoch seconds; when omitted the wall
    clock is used.
    """

    def __init__(
        self,
        balances: BalanceLedger,
        owner: str,
        *,
        stake_rate_percent: int = 10,
        referral_rate_percent: int = 10,
        reference_period: int = REFERENCE_PERIOD,
        snapshot_referral_rate: bool = True,
        check_invariants: bool = True,
        store: Optional[StakeStore] = None,
    ) -> None:
        self.balances = balances
        self.owner = _validate_account(owner, "owner")
        self.stake_rate_percent = _validate_rate(stake_rate_percent, "stake rate")
        self.referral_rate_percent = _validate_rate(
            referral_rate_percent, "referral rate", upper=100,
        )
        if not _is_int(reference_period) or reference_period <= 0:
            raise ValueError("reference_period must be a positive integer")
        self.reference_period = reference_period
        self.snapshot_referral_rate = snapshot_referral_rate
        self.check_invariants = check_invariants

        self.stakes = StakeLedger()
        self.event_log = EventLog()
        self.pending_admin_mint = 0

        self._store = store
        self._checker = InvariantChecker()
        self._params_dirty = False

    @classmethod
    def from_config(
        cls,
        cfg: StakingConfig,
        balances: BalanceLedger,
        store: Optional[StakeStore] = None,
    ) -> StakingEngine:
        return cls(
            balances,
            cfg.owner,
            stake_rate_percent=cfg.stake_rate_percent,
            referral_rate_percent=cfg.referral_rate_percent,
            reference_period=cfg.reference_period_seconds,
            snapshot_referral_rate=cfg.snapshot_referral_rate,
            check_invariants=cfg.check_invariants,
            store=store,
        )

    # ── atomicity ───────────────────────────────────────────────────

    @contextmanager
    def _atomic(self, operation: str) -> Iterator[None]:
        ledger_state = self.balances.snapshot()
        params = (self.owner, self.stake_rate_percent, self.referral_rate_percent)
        log_length = len(self.event_log)
        self.stakes.begin()
        self._params_dirty = False
        self.pending_admin_mint = 0
        if self.check_invariants:
            self._checker.capture(self)
        try:
            yield
            if self.check_invariants:
                ok, msg = self._checker.verify(self)
                if not ok:
                    raise InvariantViolation(f"{operation}: {msg}")
            if self._store is not None:
                self._persist(log_length, ledger_state)
        except BaseException as exc:
            self.balances.restore(ledger_state)
            self.stakes.rollback()
            self.owner, self.stake_rate_percent, self.referral_rate_percent = params
            self.event_log.truncate(log_length)
            if isinstance(exc, StakingError) and not isinstance(exc, InvariantViolation):
                logger.info(f"{operation} rejected: {exc}")
            else:
                logger.warning(f"{operation} rolled back: {exc!r}")
            raise
        else:
            self.stakes.commit()
        finally:
            self.pending_admin_mint = 0

    def _persist(self, log_length: int, ledger_before: object) -> None:
        assert self._store is not None
        journal = self.stakes.journal
        assert journal is not None
        records = [
            (account, index, self.stakes.get_stake(account, index))
            for account, index in journal.touched()
        ]
        params = None
        if self._params_dirty:
            params = (self.owner, self.stake_rate_percent, self.referral_rate_percent)

        # Only the in-memory ledger is ours to persist; other Balance
        # Ledgers keep their own books.
        ledger = self.balances.snapshot()
        changed = None
        if isinstance(ledger, LedgerState) and isinstance(ledger_before, LedgerState):
            changed = [
                account for account, balance in ledger.balances.items()
                if ledger_before.balances.get(account) != balance
            ]
        else:
            ledger = None
        self._store.persist(
            records,
            params,
            self.event_log.events_since(log_length),
            ledger=ledger,
            ledger_accounts=changed,
        )

    def _emit(self, event: Event) -> Event:
        return self.event_log.append(event)

    @staticmethod
    def _now(now: Optional[int]) -> int:
        return int(time.time()) if now is None else int(now)

    def _require_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise Unauthorized(f"{caller!r} is not the owner")

    def _reward_for(self, record: StakeRecord, now: int) -> RewardBreakdown:
        return compute_reward(
            record,
            now,
            referral_rate_percent=(
                None if self.snapshot_referral_rate else self.referral_rate_percent
            ),
            reference_period=self.reference_period,
        )

    # ── staking ─────────────────────────────────────────────────────

    def create_stake(
        self,
        account: str,
        amount: int,
        referral: Optional[str] = None,
        now: Optional[int] = None,
    ) -> int:
        """
        Lock *amount* from *account* and return the new stake id.

        Raises ``InvalidAmount`` for a zero / non-integer amount and
        ``InsufficientBalance`` when the account cannot fund it.
        """
        with self._atomic("create_stake"):
            _validate_account(account)
            _validate_amount(amount)
            referral = referral or None
            if referral is not None:
                _validate_account(referral, "referral")
            have = self.balances.available_balance(account)
            if have < amount:
                raise InsufficientBalance(
                    f"Insufficient balance: {account} has {have}, needs {amount}"
                )
            start = self._now(now)

            self.balances.move_to_custody(account, amount)
            record = StakeRecord(
                start_time=start,
                amount=amount,
                rate_percent=self.stake_rate_percent,
                referral_rate_percent=self.referral_rate_percent,
                referral_account=referral,
            )
            stake_id = self.stakes.append(account, record)
            self._emit(StakeCreated(
                id=stake_id,
                account=account,
                referral=referral,
                start_time=start,
                amount=amount,
                rate_percent=record.rate_percent,
            ))

        logger.info(
            f"Stake #{stake_id} created for {account}",
            extra={"account": account, "stake_id": stake_id, "amount": amount},
        )
        return stake_id

    def claim_stake_reward(
        self,
        account: str,
        index: int,
        now: Optional[int] = None,
    ) -> RewardBreakdown:
        """
        Pay out the accrued reward of an open stake and close it.

        Raises ``StakeNotFound`` for an unknown index and
        ``AlreadyClaimed`` for a closed record.
        """
        with self._atomic("claim_stake_reward"):
            record = self.stakes.for_update(account, index)
            if record is None or record.amount == 0:
                raise StakeNotFound(f"Stake {account}#{index} not found")
            if not record.is_open:
                raise AlreadyClaimed(
                    f"Stake {account}#{index} already claimed at {record.closed_time}"
                )
            claim_time = self._now(now)
            reward = self._reward_for(record, claim_time)

            record.claimed_total += reward.gross
            if reward.principal_reward > 0:
                self.balances.mint(account, reward.principal_reward)
            if record.referral_account and reward.referral_reward > 0:
                self.balances.mint(record.referral_account, reward.referral_reward)
            record.closed_time = claim_time
            self._emit(StakeClaimed(
                id=index,
                account=account,
                referral=record.referral_account,
                principal_reward=reward.principal_reward,
                referral_reward=reward.referral_reward,
                claim_time=claim_time,
            ))

        logger.info(
            f"Stake #{index} claimed by {account}: "
            f"{reward.principal_reward} + {reward.referral_reward} referral",
            extra={"account": account, "stake_id": index, "amount": reward.gross},
        )
        return reward

    # ── administration ──────────────────────────────────────────────

    def set_stake_rate(self, caller: str, percent: int) -> None:
        """Set the stake rate applied to stakes created from now on."""
        with self._atomic("set_stake_rate"):
            self._require_owner(caller)
            _validate_rate(percent, "stake rate")
            old = self.stake_rate_percent
            self.stake_rate_percent = percent
            self._params_dirty = True
            self._emit(StakeRateChanged(
                old_percent=old, new_percent=percent, changed_by=caller,
            ))
        logger.info(f"Stake rate changed {old}% -> {percent}%")

    def set_referral_rate(self, caller: str, percent: int) -> None:
        """Set the referral share (0-100 %) of gross rewards."""
        with self._atomic("set_referral_rate"):
            self._require_owner(caller)
            _validate_rate(percent, "referral rate", upper=100)
            old = self.referral_rate_percent
            self.referral_rate_percent = percent
            self._params_dirty = True
            self._emit(ReferralRateChanged(
                old_percent=old, new_percent=percent, changed_by=caller,
            ))
        logger.info(f"Referral rate changed {old}% -> {percent}%")

    def mint(self, caller: str, account: str, amount: int) -> None:
        """Issue *amount* new balance to *account* (owner only)."""
        with self._atomic("mint"):
            self._require_owner(caller)
            _validate_account(account)
            _validate_amount(amount)
            self.balances.mint(account, amount)
            self.pending_admin_mint += amount
            self._emit(Minted(account=account, amount=amount, minted_by=caller))
        logger.info(
            f"Minted {amount} to {account}",
            extra={"account": account, "amount": amount},
        )

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        with self._atomic("transfer_ownership"):
            self._require_owner(caller)
            _validate_account(new_owner, "new owner")
            previous = self.owner
            self.owner = new_owner
            self._params_dirty = True
            self._emit(OwnershipTransferred(
                previous_owner=previous, new_owner=new_owner,
            ))
        logger.warning(f"Ownership transferred {previous} -> {new_owner}")

    # ── queries ─────────────────────────────────────────────────────

    def get_stakes(self, account: str) -> list[StakeRecord]:
        return self.stakes.get_stakes(account)

    def get_stake(self, account: str, index: int) -> StakeRecord:
        return self.stakes.get_stake(account, index)

    def preview_reward(
        self, account: str, index: int, now: Optional[int] = None,
    ) -> RewardBreakdown:
        """Reward a claim would pay right now; closed stakes preview zero."""
        record = self.stakes._live(account, index)
        if record is None or record.amount == 0:
            raise StakeNotFound(f"Stake {account}#{index} not found")
        if not record.is_open:
            return RewardBreakdown(0, 0)
        return self._reward_for(record, self._now(now))

    def events_since(self, seq: int = 0) -> list[Event]:
        return self.event_log.events_since(seq)

    def get_params(self) -> dict:
        return {
            "owner": self.owner,
            "stake_rate_percent": self.stake_rate_percent,
            "referral_rate_percent": self.referral_rate_percent,
            "reference_period": self.reference_period,
            "snapshot_referral_rate": self.snapshot_referral_rate,
        }

    def get_summary(self, now: Optional[int] = None) -> dict:
        at = self._now(now)
        open_count = closed_count = 0
        total_claimed = pending = 0
        for _account, _index, record in self.stakes.iter_records():
            if record.is_open:
                open_count += 1
                pending += self._reward_for(record, at).gross
            else:
                closed_count += 1
                total_claimed += record.claimed_total
        return {
            "total_staked": self.stakes.total_principal(),
            "stakers": len(self.stakes.accounts()),
            "open_stakes": open_count,
            "closed_stakes": closed_count,
            "total_claimed": total_claimed,
            "pending_rewards": pending,
            "last_event_seq": self.event_log.last_seq,
        }
