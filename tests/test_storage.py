"""
Tests for SQLite persistence layer (storage.py).

Covers:
  - Schema creation and version guard
  - Stake, params and event roundtrip
  - Write-through persistence from the engine
  - restore_engine after a restart
  - In-memory Balance Ledger persistence
  - Rollback of a failed transaction
  - Context manager lifecycle
"""

from __future__ import annotations

import sqlite3

import pytest

from stakeflow_core.balance_ledger import InMemoryBalanceLedger, LedgerState
from stakeflow_core.engine import StakingEngine
from stakeflow_core.errors import InsufficientBalance
from stakeflow_core.events import StakeCreated
from stakeflow_core.staking import REFERENCE_PERIOD, StakeRecord
from stakeflow_core.storage import StakeStore

T0 = 1_700_000_000


@pytest.fixture
def store(tmp_path):
    """Fresh StakeStore in a temp directory."""
    s = StakeStore(str(tmp_path / "test.db"))
    yield s
    s.close()


def _engine(store):
    balances = InMemoryBalanceLedger({"rAlice": 1_000, "rBob": 500})
    return StakingEngine(balances, "rAdmin", stake_rate_percent=50,
                         referral_rate_percent=10, store=store)


class _ExternalLedger:
    """A Balance Ledger that keeps its own books."""

    def __init__(self, balances):
        self.balances = dict(balances)

    def available_balance(self, account):
        return self.balances.get(account, 0)

    def move_to_custody(self, account, amount):
        self.balances[account] = self.available_balance(account) - amount

    def mint(self, account, amount):
        self.balances[account] = self.available_balance(account) + amount

    def snapshot(self):
        return dict(self.balances)

    def restore(self, state):
        self.balances = dict(state)


# ═══════════════════════════════════════════════════════════════════
#  Schema
# ═══════════════════════════════════════════════════════════════════

class TestSchema:
    def test_tables_created(self, store):
        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        names = {r["name"] for r in tables}
        assert {"stakes", "params", "events", "schema_version"} <= names

    def test_schema_version_recorded(self, store):
        row = store._conn.execute("SELECT version FROM schema_version").fetchone()
        assert row["version"] == StakeStore.CURRENT_SCHEMA_VERSION

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "s.db"
        with StakeStore(str(path)):
            pass
        assert path.exists()

    def test_newer_schema_rejected(self, tmp_path):
        path = str(tmp_path / "future.db")
        StakeStore(path).close()
        conn = sqlite3.connect(path)
        conn.execute("UPDATE schema_version SET version = 99")
        conn.commit()
        conn.close()
        with pytest.raises(RuntimeError, match="newer"):
            StakeStore(path)

    def test_v1_database_upgraded(self, tmp_path):
        path = str(tmp_path / "old.db")
        StakeStore(path).close()
        conn = sqlite3.connect(path)
        conn.execute("DROP TABLE balances")
        conn.execute("DROP TABLE ledger_totals")
        conn.execute("UPDATE schema_version SET version = 1")
        conn.commit()
        conn.close()
        with StakeStore(path) as s:
            row = s._conn.execute("SELECT version FROM schema_version").fetchone()
            assert row["version"] == StakeStore.CURRENT_SCHEMA_VERSION
            assert s.load_ledger() is None

    def test_reopen_keeps_data(self, tmp_path):
        path = str(tmp_path / "s.db")
        with StakeStore(path) as s:
            s.save_params("rAdmin", 5, 6)
        with StakeStore(path) as s:
            assert s.load_params()["stake_rate_percent"] == 5


# ═══════════════════════════════════════════════════════════════════
#  Roundtrips
# ═══════════════════════════════════════════════════════════════════

class TestRoundtrip:
    def test_stake_roundtrip(self, store):
        record = StakeRecord(start_time=T0, amount=10**30, rate_percent=12,
                             referral_rate_percent=3, referral_account="rBob",
                             claimed_total=7, closed_time=T0 + 5)
        store.save_stake("rAlice", 0, record)
        assert store.load_stakes() == [("rAlice", 0, record)]

    def test_open_stake_roundtrip(self, store):
        record = StakeRecord(start_time=T0, amount=100, rate_percent=10,
                             referral_rate_percent=10)
        store.save_stake("rAlice", 0, record)
        (_, _, loaded), = store.load_stakes()
        assert loaded.is_open
        assert loaded.referral_account is None

    def test_save_stake_replaces(self, store):
        record = StakeRecord(start_time=T0, amount=100, rate_percent=10,
                             referral_rate_percent=10)
        store.save_stake("rAlice", 0, record)
        record.closed_time = T0 + 1
        store.save_stake("rAlice", 0, record)
        assert len(store.load_stakes()) == 1
        assert store.load_stakes()[0][2].closed_time == T0 + 1

    def test_params_empty(self, store):
        assert store.load_params() is None

    def test_params_roundtrip(self, store):
        store.save_params("rOps", 20, 5)
        p = store.load_params()
        assert (p["owner"], p["stake_rate_percent"], p["referral_rate_percent"]) == ("rOps", 20, 5)

    def test_event_roundtrip(self, store):
        event = StakeCreated(id=0, account="rAlice", referral=None,
                             start_time=T0, amount=100, rate_percent=10)
        object.__setattr__(event, "seq", 4)
        store.save_event(event)
        (loaded,) = store.load_events()
        assert loaded == event
        assert loaded.seq == 4

    def test_failed_transaction_rolls_back(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.save_params("rAdmin", 1, 1)
                raise RuntimeError("boom")
        assert store.load_params() is None


# ═══════════════════════════════════════════════════════════════════
#  Engine integration
# ═══════════════════════════════════════════════════════════════════

class TestEngineIntegration:
    def test_write_through(self, store):
        e = _engine(store)
        e.create_stake("rAlice", 100, "rBob", now=T0)
        assert len(store.load_stakes()) == 1
        assert len(store.load_events()) == 1

        e.claim_stake_reward("rAlice", 0, now=T0 + REFERENCE_PERIOD)
        (_, _, record), = store.load_stakes()
        assert record.closed_time == T0 + REFERENCE_PERIOD
        assert record.claimed_total == 50
        assert len(store.load_events()) == 2

    def test_params_written_on_admin_change(self, store):
        e = _engine(store)
        e.set_stake_rate("rAdmin", 30)
        e.transfer_ownership("rAdmin", "rOps")
        p = store.load_params()
        assert p["owner"] == "rOps"
        assert p["stake_rate_percent"] == 30

    def test_rejected_operation_writes_nothing(self, store):
        e = _engine(store)
        with pytest.raises(InsufficientBalance):
            e.create_stake("rAlice", 10_000, now=T0)
        assert store.load_stakes() == []
        assert store.load_events() == []

    def test_restore_engine(self, tmp_path):
        path = str(tmp_path / "s.db")
        with StakeStore(path) as s:
            e = _engine(s)
            e.create_stake("rAlice", 100, now=T0)
            e.create_stake("rAlice", 200, "rBob", now=T0)
            e.create_stake("rBob", 50, now=T0)
            e.claim_stake_reward("rAlice", 0, now=T0 + REFERENCE_PERIOD)
            e.set_referral_rate("rAdmin", 40)

        with StakeStore(path) as s:
            fresh = StakingEngine(InMemoryBalanceLedger(), "rAdmin")
            assert s.restore_engine(fresh) == 3
            assert fresh.referral_rate_percent == 40
            assert fresh.stake_rate_percent == 50
            assert [r.amount for r in fresh.get_stakes("rAlice")] == [100, 200]
            assert not fresh.get_stake("rAlice", 0).is_open
            assert fresh.get_stake("rAlice", 1).referral_account == "rBob"
            assert fresh.event_log.last_seq == 5
            assert fresh.balances.available_balance("rAlice") == 750
            assert fresh.balances.available_balance("rBob") == 450
            assert fresh.balances.custody == 350
            assert fresh.balances.total_minted == 50
            assert fresh.balances.initial_supply == 1_500

    def test_restore_rejects_gaps(self, store):
        record = StakeRecord(start_time=T0, amount=100, rate_percent=10,
                             referral_rate_percent=10)
        store.save_stake("rAlice", 1, record)
        with pytest.raises(RuntimeError, match="contiguous"):
            store.restore_engine(StakingEngine(InMemoryBalanceLedger(), "rAdmin"))

    def test_snapshot_engine(self, store):
        e = StakingEngine(InMemoryBalanceLedger({"rAlice": 100}), "rAdmin")
        e.create_stake("rAlice", 40, now=T0)
        store.snapshot_engine(e)
        assert len(store.load_stakes()) == 1
        assert store.load_params()["owner"] == "rAdmin"
        assert len(store.load_events()) == 1


# ═══════════════════════════════════════════════════════════════════
#  Balance Ledger state
# ═══════════════════════════════════════════════════════════════════

class TestLedgerState:
    def test_empty(self, store):
        assert store.load_ledger() is None
        assert not store.has_ledger_state()

    def test_roundtrip(self, store):
        state = LedgerState(balances={"rAlice": 10 ** 30, "rBob": 0},
                            custody=5, initial_supply=10 ** 30 + 5, total_minted=0)
        store.save_ledger(state)
        assert store.has_ledger_state()
        assert store.load_ledger() == state

    def test_first_write_is_full_then_narrowed(self, store):
        state = LedgerState(balances={"rAlice": 900, "rBob": 500},
                            custody=100, initial_supply=1_500)
        store.persist([], None, [], ledger=state, ledger_accounts=["rAlice"])
        assert store.load_ledger().balances == {"rAlice": 900, "rBob": 500}

        state.balances = {"rAlice": 800, "rBob": 1}
        state.custody = 200
        store.persist([], None, [], ledger=state, ledger_accounts=["rAlice"])
        loaded = store.load_ledger()
        assert loaded.balances == {"rAlice": 800, "rBob": 500}
        assert loaded.custody == 200

    def test_engine_writes_only_changed_balances(self, store):
        e = _engine(store)
        e.create_stake("rAlice", 100, now=T0)
        store._conn.execute("UPDATE balances SET balance = '7' WHERE account = 'rBob'")
        e.create_stake("rAlice", 100, now=T0)
        loaded = store.load_ledger()
        assert loaded.balances == {"rAlice": 800, "rBob": 7}
        assert loaded.custody == 200

    def test_failed_operation_leaves_ledger_untouched(self, store):
        e = _engine(store)
        e.create_stake("rAlice", 100, now=T0)
        with pytest.raises(InsufficientBalance):
            e.create_stake("rAlice", 10_000, now=T0)
        assert store.load_ledger().balances["rAlice"] == 900

    def test_external_ledger_left_alone(self, store):
        store.save_ledger(LedgerState(balances={"rAlice": 1}, initial_supply=1))
        external = _ExternalLedger({"rAlice": 500})
        engine = StakingEngine(external, "rAdmin", store=store)
        store.restore_engine(engine)
        assert external.available_balance("rAlice") == 500

        engine.create_stake("rAlice", 100, now=T0)
        assert store.load_ledger().balances == {"rAlice": 1}
        assert len(store.load_stakes()) == 1
