"""
SQLite-based persistence layer for StakeFlow engine state.

Stores stake records, global parameters and the event log so that a
service can recover its staking state after restart.  When the engine
runs on an ``InMemoryBalanceLedger`` its balances, custody and supply
totals are written in the same transaction, so restored stakes stay
backed by restored custody.

Usage:
    store = StakeStore("data/stakeflow.db")
    engine = StakingEngine(balances, owner="admin", store=store)
    ...
    store.restore_engine(fresh_engine)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from stakeflow_core.balance_ledger import InMemoryBalanceLedger, LedgerState
from stakeflow_core.events import Event, event_from_dict
from stakeflow_core.staking import StakeRecord

logger = logging.getLogger("stakeflow_storage")


class StakeStore:
    """Thin SQLite wrapper for persisting staking state."""

    CURRENT_SCHEMA_VERSION = 2

    def __init__(self, db_path: str = "data/stakeflow.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: multi-statement writes use transaction().
        self._conn = sqlite3.connect(db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS stakes (
                account               TEXT NOT NULL,
                idx                   INTEGER NOT NULL,
                start_time            INTEGER NOT NULL,
                amount                TEXT NOT NULL,
                rate_percent          INTEGER NOT NULL,
                referral_rate_percent INTEGER NOT NULL,
                referral_account      TEXT,
                claimed_total         TEXT NOT NULL DEFAULT '0',
                closed_time           INTEGER,
                PRIMARY KEY (account, idx)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS params (
                id                    INTEGER PRIMARY KEY CHECK (id = 1),
                owner                 TEXT NOT NULL,
                stake_rate_percent    INTEGER NOT NULL,
                referral_rate_percent INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS events (
                seq     INTEGER PRIMARY KEY,
                kind    TEXT NOT NULL,
                payload TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                account TEXT PRIMARY KEY,
                balance TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS ledger_totals (
                id             INTEGER PRIMARY KEY CHECK (id = 1),
                custody        TEXT NOT NULL,
                initial_supply TEXT NOT NULL,
                total_minted   TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    def _ensure_schema_version(self) -> None:
        """Check / set schema version; refuse databases from the future."""
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade StakeFlow."
            )
        elif row["version"] < self.CURRENT_SCHEMA_VERSION:
            # v1 lacked the ledger tables, which CREATE IF NOT EXISTS adds.
            self._conn.execute(
                "UPDATE schema_version SET version = ? WHERE id = 1",
                (self.CURRENT_SCHEMA_VERSION,),
            )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes into one SQLite transaction (all or nothing)."""
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    # ── stakes ───────────────────────────────────────────────────

    # Amounts are stored as TEXT: SQLite INTEGER is 64-bit, Python ints
    # are not.

    def save_stake(self, account: str, index: int, record: StakeRecord) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO stakes
               (account, idx, start_time, amount, rate_percent,
                referral_rate_percent, referral_account, claimed_total,
                closed_time)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (account, index, record.start_time, str(record.amount),
             record.rate_percent, record.referral_rate_percent,
             record.referral_account, str(record.claimed_total),
             record.closed_time),
        )

    def load_stakes(self) -> list[tuple[str, int, StakeRecord]]:
        rows = self._conn.execute(
            "SELECT * FROM stakes ORDER BY account, idx"
        ).fetchall()
        return [
            (row["account"], row["idx"], StakeRecord.from_dict(dict(row)))
            for row in rows
        ]

    # ── params ───────────────────────────────────────────────────

    def save_params(
        self, owner: str, stake_rate_percent: int, referral_rate_percent: int,
    ) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO params
               (id, owner, stake_rate_percent, referral_rate_percent)
               VALUES (1, ?, ?, ?)""",
            (owner, stake_rate_percent, referral_rate_percent),
        )

    def load_params(self) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM params WHERE id = 1").fetchone()
        return dict(row) if row else None

    # ── events ───────────────────────────────────────────────────

    def save_event(self, event: Event) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO events (seq, kind, payload) VALUES (?, ?, ?)",
            (event.seq, event.kind, json.dumps(event.to_dict())),
        )

    def load_events(self) -> list[Event]:
        rows = self._conn.execute("SELECT * FROM events ORDER BY seq").fetchall()
        return [event_from_dict(json.loads(row["payload"])) for row in rows]

    # ── in-memory Balance Ledger ─────────────────────────────────

    def has_ledger_state(self) -> bool:
        row = self._conn.execute("SELECT 1 FROM ledger_totals WHERE id = 1").fetchone()
        return row is not None

    def save_ledger(
        self, state: LedgerState, accounts: Iterable[str] | None = None,
    ) -> None:
        """Write supply totals and the balances of *accounts* (all if None)."""
        names = state.balances if accounts is None else accounts
        for account in names:
            self._conn.execute(
                "INSERT OR REPLACE INTO balances (account, balance) VALUES (?, ?)",
                (account, str(state.balances.get(account, 0))),
            )
        self._conn.execute(
            """INSERT OR REPLACE INTO ledger_totals
               (id, custody, initial_supply, total_minted)
               VALUES (1, ?, ?, ?)""",
            (str(state.custody), str(state.initial_supply), str(state.total_minted)),
        )

    def load_ledger(self) -> LedgerState | None:
        totals = self._conn.execute(
            "SELECT * FROM ledger_totals WHERE id = 1"
        ).fetchone()
        if totals is None:
            return None
        rows = self._conn.execute("SELECT * FROM balances").fetchall()
        return LedgerState(
            balances={row["account"]: int(row["balance"]) for row in rows},
            custody=int(totals["custody"]),
            initial_supply=int(totals["initial_supply"]),
            total_minted=int(totals["total_minted"]),
        )

    # ── bulk helpers ─────────────────────────────────────────────

    def persist(
        self,
        records: list[tuple[str, int, StakeRecord]],
        params: tuple[str, int, int] | None,
        events: list[Event],
        *,
        ledger: LedgerState | None = None,
        ledger_accounts: Iterable[str] | None = None,
    ) -> None:
        """
        Write one engine operation's changes in a single transaction.

        ``ledger_accounts`` narrows the balance rows written; the first
        ledger write to a store always writes every account.
        """
        with self.transaction():
            for account, index, record in records:
                self.save_stake(account, index, record)
            if params is not None:
                self.save_params(*params)
            for event in events:
                self.save_event(event)
            if ledger is not None:
                if not self.has_ledger_state():
                    ledger_accounts = None
                self.save_ledger(ledger, ledger_accounts)

    def snapshot_engine(self, engine: Any) -> None:
        """Persist the full current state of an engine atomically."""
        ledger = engine.balances.snapshot()
        self.persist(
            list(engine.stakes.iter_records()),
            (engine.owner, engine.stake_rate_percent, engine.referral_rate_percent),
            list(engine.event_log),
            ledger=ledger if isinstance(ledger, LedgerState) else None,
        )

    def restore_engine(self, engine: Any) -> int:
        """
        Restore stake records, parameters, events and (for an in-memory
        Balance Ledger) balances into *engine*.

        Returns the number of stake records loaded.
        """
        from stakeflow_core.staking import StakeLedger

        stakes = StakeLedger()
        loaded = self.load_stakes()
        for account, index, record in loaded:
            if stakes.append(account, record) != index:
                raise RuntimeError(
                    f"Stored stakes for {account} are not contiguous at index {index}"
                )
        params = self.load_params()
        if params is not None:
            engine.owner = params["owner"]
            engine.stake_rate_percent = params["stake_rate_percent"]
            engine.referral_rate_percent = params["referral_rate_percent"]
        engine.stakes.restore(stakes.snapshot())
        engine.event_log.load(self.load_events())
        ledger = self.load_ledger()
        if ledger is not None and isinstance(engine.balances, InMemoryBalanceLedger):
            engine.balances.restore(ledger)
            logger.info(
                f"Restored {len(ledger.balances)} balances "
                f"({ledger.custody} in custody) from {self.db_path}"
            )
        logger.info(f"Restored {len(loaded)} stakes from {self.db_path}")
        return len(loaded)

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
