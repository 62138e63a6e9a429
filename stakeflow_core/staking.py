"""
Stake records and the per-account Stake Ledger for StakeFlow.

Each stake action appends one ``StakeRecord`` to the staker's collection.
Collections are append-only: the position of a record in its account's
list is the public stake id, and ids are never reused or removed.

Record lifecycle
────────────────
  Open    closed_time is None     reward keeps accruing linearly
  Closed  closed_time == claim ts terminal, claimed_total is final

Only two fields ever change after creation, both during a claim:
``claimed_total`` and ``closed_time``.  Everything else is fixed at
stake time, including the rates, so later administrative changes never
reach an open stake retroactively.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterator, Optional

from stakeflow_core.errors import IndexOutOfRange
from stakeflow_core.precision import format_amount

SECONDS_PER_DAY: int = 86_400
REFERENCE_PERIOD: int = 365 * SECONDS_PER_DAY  # 31_536_000


# ── StakeRecord ─────────────────────────────────────────────────────────

@dataclass
class StakeRecord:
    """One locked principal and its claim-tracking fields."""
    start_time: int             # epoch seconds
    amount: int                 # principal in base units
    rate_percent: int           # stake rate at creation
    referral_rate_percent: int  # referral rate at creation
    referral_account: Optional[str] = None
    claimed_total: int = 0
    closed_time: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.closed_time is None

    @property
    def has_referral(self) -> bool:
        return bool(self.referral_account)

    def copy(self) -> StakeRecord:
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time,
            "amount": self.amount,
            "amount_display": format_amount(self.amount),
            "rate_percent": self.rate_percent,
            "referral_rate_percent": self.referral_rate_percent,
            "referral_account": self.referral_account,
            "claimed_total": self.claimed_total,
            "closed_time": self.closed_time,
            "status": "Open" if self.is_open else "Closed",
        }

    @classmethod
    def from_dict(cls, data: dict) -> StakeRecord:
        return cls(
            start_time=int(data["start_time"]),
            amount=int(data["amount"]),
            rate_percent=int(data["rate_percent"]),
            referral_rate_percent=int(data["referral_rate_percent"]),
            referral_account=data.get("referral_account") or None,
            claimed_total=int(data.get("claimed_total", 0)),
            closed_time=(
                int(data["closed_time"])
                if data.get("closed_time") is not None else None
            ),
        )


# ── StakeLedger ─────────────────────────────────────────────────────────

@dataclass
class StakeJournal:
    """
    Changes made to a StakeLedger since ``begin()``.

    ``appended`` lists new (account, index) keys in order; ``before``
    holds the pre-change copy of every existing record handed out by
    ``for_update()``.
    """
    appended: list[tuple[str, int]] = field(default_factory=list)
    before: dict[tuple[str, int], StakeRecord] = field(default_factory=dict)

    def touched(self) -> list[tuple[str, int]]:
        return sorted(set(self.appended) | set(self.before))


class StakeLedger:
    """
    Owns every StakeRecord, keyed by (account, index).

    Readers always receive copies.  ``for_update()`` hands out the stored
    record and is reserved for the claim transition in the engine.

    Rollback is journaled: between ``begin()`` and ``commit()`` the
    ledger remembers only what it appended and the original copy of
    each record it handed out for update, so undoing an operation costs
    time proportional to what the operation touched.
    """

    def __init__(self) -> None:
        self._stakes: dict[str, list[StakeRecord]] = {}
        self._size = 0
        self._journal: Optional[StakeJournal] = None

    # ── writes ──────────────────────────────────────────────────────

    def append(self, account: str, record: StakeRecord) -> int:
        """Append *record* and return its index in the account's list."""
        records = self._stakes.setdefault(account, [])
        records.append(record)
        self._size += 1
        index = len(records) - 1
        if self._journal is not None:
            self._journal.appended.append((account, index))
        return index

    def for_update(self, account: str, index: int) -> Optional[StakeRecord]:
        """The stored record (not a copy), or None when there is none."""
        record = self._live(account, index)
        if record is not None and self._journal is not None:
            key = (account, index)
            if key not in self._journal.before:
                self._journal.before[key] = record.copy()
        return record

    def _live(self, account: str, index: int) -> Optional[StakeRecord]:
        records = self._stakes.get(account, [])
        if isinstance(index, bool) or not isinstance(index, int):
            return None
        if 0 <= index < len(records):
            return records[index]
        return None

    # ── reads ───────────────────────────────────────────────────────

    def get_stakes(self, account: str) -> list[StakeRecord]:
        return [r.copy() for r in self._stakes.get(account, [])]

    def get_stake(self, account: str, index: int) -> StakeRecord:
        record = self._live(account, index)
        if record is None:
            raise IndexOutOfRange(
                f"Stake index {index} out of range for {account} "
                f"({self.count(account)} stakes)"
            )
        return record.copy()

    def count(self, account: str) -> int:
        return len(self._stakes.get(account, []))

    def total_count(self) -> int:
        return self._size

    def accounts(self) -> list[str]:
        return list(self._stakes)

    def iter_records(self) -> Iterator[tuple[str, int, StakeRecord]]:
        for account, records in self._stakes.items():
            for index, record in enumerate(records):
                yield account, index, record

    def total_principal(self) -> int:
        return sum(r.amount for _, _, r in self.iter_records())

    # ── journaled rollback ──────────────────────────────────────────

    @property
    def journal(self) -> Optional[StakeJournal]:
        return self._journal

    def begin(self) -> StakeJournal:
        self._journal = StakeJournal()
        return self._journal

    def commit(self) -> None:
        self._journal = None

    def rollback(self) -> None:
        """Undo everything recorded since ``begin()``."""
        journal, self._journal = self._journal, None
        if journal is None:
            return
        for (account, index), record in journal.before.items():
            self._stakes[account][index] = record
        for account, _index in reversed(journal.appended):
            records = self._stakes[account]
            records.pop()
            self._size -= 1
            if not records:
                del self._stakes[account]

    # ── bulk load ───────────────────────────────────────────────────

    def snapshot(self) -> dict[str, list[StakeRecord]]:
        return {a: [r.copy() for r in rs] for a, rs in self._stakes.items()}

    def restore(self, state: dict[str, list[StakeRecord]]) -> None:
        self._stakes = {a: [r.copy() for r in rs] for a, rs in state.items()}
        self._size = sum(len(rs) for rs in self._stakes.values())
        self._journal = None
