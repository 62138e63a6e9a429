"""
Structured events emitted by the StakeFlow engine.

Events are appended to an ``EventLog`` (an ordered, observable
sequence).  The engine never calls listeners: consumers poll the log
with ``events_since()`` using the last sequence number they have seen.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterator, Optional


@dataclass(frozen=True)
class Event:
    """Common envelope: ``seq`` is assigned by the log on append."""
    seq: int = field(default=0, init=False, compare=False)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        d = asdict(self)
        d["kind"] = self.kind
        return d


@dataclass(frozen=True)
class StakeCreated(Event):
    id: int = 0
    account: str = ""
    referral: Optional[str] = None
    start_time: int = 0
    amount: int = 0
    rate_percent: int = 0


@dataclass(frozen=True)
class StakeClaimed(Event):
    id: int = 0
    account: str = ""
    referral: Optional[str] = None
    principal_reward: int = 0
    referral_reward: int = 0
    claim_time: int = 0


@dataclass(frozen=True)
class StakeRateChanged(Event):
    old_percent: int = 0
    new_percent: int = 0
    changed_by: str = ""


@dataclass(frozen=True)
class ReferralRateChanged(Event):
    old_percent: int = 0
    new_percent: int = 0
    changed_by: str = ""


@dataclass(frozen=True)
class Minted(Event):
    account: str = ""
    amount: int = 0
    minted_by: str = ""


@dataclass(frozen=True)
class OwnershipTransferred(Event):
    previous_owner: str = ""
    new_owner: str = ""


EVENT_TYPES: dict[str, type[Event]] = {
    cls.__name__: cls
    for cls in (
        StakeCreated,
        StakeClaimed,
        StakeRateChanged,
        ReferralRateChanged,
        Minted,
        OwnershipTransferred,
    )
}


def event_from_dict(data: dict[str, Any]) -> Event:
    """Rebuild an event (including its ``seq``) from ``to_dict()`` output."""
    payload = dict(data)
    kind = payload.pop("kind")
    seq = payload.pop("seq", 0)
    cls = EVENT_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown event kind: {kind}")
    event = cls(**payload)
    object.__setattr__(event, "seq", seq)
    return event


class EventLog:
    """Append-only event sequence with 1-based sequence numbers."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def append(self, event: Event) -> Event:
        object.__setattr__(event, "seq", len(self._events) + 1)
        self._events.append(event)
        return event

    def events_since(self, seq: int = 0) -> list[Event]:
        """Events with a sequence number strictly greater than *seq*."""
        if seq < 0:
            seq = 0
        return self._events[seq:]

    @property
    def last_seq(self) -> int:
        return len(self._events)

    def truncate(self, length: int) -> None:
        """Drop events past *length* (rollback of an aborted operation)."""
        del self._events[length:]

    def load(self, events: list[Event]) -> None:
        self._events = sorted(events, key=lambda e: e.seq)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self._events)
