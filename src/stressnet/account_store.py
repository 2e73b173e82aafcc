"""Account state: per-layer nonces and cached balances, owned exclusively here.

Callers never read-modify-write account records themselves. They go through
the atomic primitives ``reserve_nonce``, ``apply_balance_delta`` and
``rollback_nonce``. The nonce stored for (account, layer) is the *next* nonce
to hand out.
"""

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from stressnet.constants import AccountStatus, BridgePhase, Layer, OutcomeKind
from stressnet.errors import AccountNotFound, StoreUnavailable
from stressnet.models import Account, BridgeOperation, TransactionOutcome

log = logging.getLogger("stressnet.account_store")


class AccountStore(Protocol):
    async def get(self, account_id: str) -> Account: ...
    async def put(self, account: Account) -> None: ...
    async def list_accounts(self, status: AccountStatus | None = None) -> list[Account]: ...
    async def set_status(self, account_id: str, status: AccountStatus) -> None: ...
    async def reserve_nonce(self, account_id: str, layer: Layer) -> int: ...
    async def rollback_nonce(self, account_id: str, layer: Layer, nonce: int) -> bool: ...
    async def reset_nonce(self, account_id: str, layer: Layer, value: int) -> None: ...
    async def apply_balance_delta(self, account_id: str, layer: Layer, delta: int) -> int: ...
    async def set_balance(self, account_id: str, layer: Layer, value: int) -> None: ...
    async def record_outcome(self, outcome: TransactionOutcome) -> bool: ...
    async def outcomes(self, account_id: str | None = None) -> list[TransactionOutcome]: ...
    async def save_bridge_operation(self, op: BridgeOperation) -> None: ...
    async def get_bridge_operation(self, op_id: str) -> BridgeOperation | None: ...
    async def bridge_operations(self, phase: BridgePhase | None = None) -> list[BridgeOperation]: ...


class InMemoryAccountStore:
    """Non-durable store with the same contract. Dry runs and tests."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._accounts: dict[str, Account] = {}
        self._outcomes: dict[str, TransactionOutcome] = {}
        self._bridge_ops: dict[str, dict] = {}

    def _require(self, account_id: str) -> Account:
        acct = self._accounts.get(account_id)
        if acct is None:
            raise AccountNotFound(account_id)
        return acct

    @staticmethod
    def _copy(acct: Account) -> Account:
        return Account(
            account_id=acct.account_id,
            address=acct.address,
            credential_ref=acct.credential_ref,
            nonces=dict(acct.nonces),
            balances=dict(acct.balances),
            status=acct.status,
        )

    async def get(self, account_id: str) -> Account:
        async with self._lock:
            return self._copy(self._require(account_id))

    async def put(self, account: Account) -> None:
        async with self._lock:
            existing = self._accounts.get(account.account_id)
            new = self._copy(account)
            if existing is not None:
                # Registration never rewinds a nonce that has already been handed out.
                new.nonces = {layer: max(existing.nonce(layer), account.nonce(layer)) for layer in Layer}
                new.balances = dict(existing.balances)
            self._accounts[account.account_id] = new

    async def list_accounts(self, status: AccountStatus | None = None) -> list[Account]:
        async with self._lock:
            return [
                self._copy(a)
                for _, a in sorted(self._accounts.items())
                if status is None or a.status == status
            ]

    async def set_status(self, account_id: str, status: AccountStatus) -> None:
        async with self._lock:
            self._require(account_id).status = status

    async def reserve_nonce(self, account_id: str, layer: Layer) -> int:
        async with self._lock:
            acct = self._require(account_id)
            nonce = acct.nonce(layer)
            acct.nonces[layer] = nonce + 1
            return nonce

    async def rollback_nonce(self, account_id: str, layer: Layer, nonce: int) -> bool:
        async with self._lock:
            acct = self._require(account_id)
            current = acct.nonce(layer)
            if current != nonce + 1:
                log.warning(
                    "Cannot roll back nonce %s for %s/%s - next nonce is %s (a later reservation consumed it)",
                    nonce, account_id, layer, current,
                )
                return False
            acct.nonces[layer] = nonce
            log.debug("Rolled back nonce %s for %s/%s", nonce, account_id, layer)
            return True

    async def reset_nonce(self, account_id: str, layer: Layer, value: int) -> None:
        async with self._lock:
            acct = self._require(account_id)
            log.warning("Resetting nonce for %s/%s: %s -> %s", account_id, layer, acct.nonce(layer), value)
            acct.nonces[layer] = value

    async def apply_balance_delta(self, account_id: str, layer: Layer, delta: int) -> int:
        async with self._lock:
            acct = self._require(account_id)
            acct.balances[layer] = acct.balance(layer) + delta
            return acct.balances[layer]

    async def set_balance(self, account_id: str, layer: Layer, value: int) -> None:
        async with self._lock:
            self._require(account_id).balances[layer] = value

    async def record_outcome(self, outcome: TransactionOutcome) -> bool:
        async with self._lock:
            if outcome.intent_id in self._outcomes:
                return False
            self._outcomes[outcome.intent_id] = outcome
            return True

    async def outcomes(self, account_id: str | None = None) -> list[TransactionOutcome]:
        async with self._lock:
            return [o for o in self._outcomes.values() if account_id is None or o.account_id == account_id]

    async def save_bridge_operation(self, op: BridgeOperation) -> None:
        async with self._lock:
            self._bridge_ops[op.op_id] = op.to_dict()

    async def get_bridge_operation(self, op_id: str) -> BridgeOperation | None:
        async with self._lock:
            d = self._bridge_ops.get(op_id)
            return BridgeOperation.from_dict(d) if d else None

    async def bridge_operations(self, phase: BridgePhase | None = None) -> list[BridgeOperation]:
        async with self._lock:
            ops = [BridgeOperation.from_dict(d) for d in self._bridge_ops.values()]
        return [op for op in ops if phase is None or op.phase == phase]


class SQLiteAccountStore:
    """Persistent store backed by SQLite.

    Every mutation runs inside ``BEGIN IMMEDIATE`` so it holds the database
    write lock for the whole read-modify-write, which keeps it atomic against
    other processes sharing the file. The asyncio lock serialises coroutines
    of this process.
    """

    def __init__(self, db_path: str | Path = "stressnet_state.db", *, busy_timeout: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._lock = asyncio.Lock()
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailable(f"{self.db_path}: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Connection inside an immediate (write-locked) transaction."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    address TEXT NOT NULL,
                    credential_ref TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                -- Per-layer counters. nonce is the next nonce to hand out.
                -- balance is decimal text: wei does not fit in 64 bits.
                CREATE TABLE IF NOT EXISTS account_layers (
                    account_id TEXT NOT NULL REFERENCES accounts(account_id),
                    layer TEXT NOT NULL,
                    nonce INTEGER NOT NULL DEFAULT 0,
                    balance TEXT NOT NULL DEFAULT '0',
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (account_id, layer)
                );

                -- Audit log, one row per intent
                CREATE TABLE IF NOT EXISTS outcomes (
                    intent_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    layer TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    nonce INTEGER,
                    tx_hash TEXT,
                    latency REAL NOT NULL,
                    error TEXT,
                    recorded_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_outcome_account ON outcomes(account_id);
                CREATE INDEX IF NOT EXISTS idx_outcome_kind ON outcomes(kind);

                CREATE TABLE IF NOT EXISTS bridge_operations (
                    op_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    data TEXT NOT NULL  -- JSON blob for all fields
                );
                CREATE INDEX IF NOT EXISTS idx_bridge_phase ON bridge_operations(phase);
                """
            )
        log.debug("SQLite account store initialized at %s", self.db_path)

    def _load(self, conn: sqlite3.Connection, account_id: str) -> Account:
        row = conn.execute(
            "SELECT address, credential_ref, status FROM accounts WHERE account_id = ?", (account_id,)
        ).fetchone()
        if row is None:
            raise AccountNotFound(account_id)
        address, credential_ref, status = row
        acct = Account(account_id=account_id, address=address, credential_ref=credential_ref,
                       status=AccountStatus(status))
        for layer, nonce, balance in conn.execute(
            "SELECT layer, nonce, balance FROM account_layers WHERE account_id = ?", (account_id,)
        ):
            acct.nonces[Layer(layer)] = nonce
            acct.balances[Layer(layer)] = int(balance)
        return acct

    def _layer_row(self, conn: sqlite3.Connection, account_id: str, layer: Layer) -> tuple[int, int]:
        row = conn.execute(
            "SELECT nonce, balance FROM account_layers WHERE account_id = ? AND layer = ?",
            (account_id, layer.value),
        ).fetchone()
        if row is None:
            raise AccountNotFound(account_id)
        return row[0], int(row[1])

    # =========================================================================
    # Account records
    # =========================================================================

    async def get(self, account_id: str) -> Account:
        async with self._lock:
            with self._connect() as conn:
                return self._load(conn, account_id)

    async def put(self, account: Account) -> None:
        """Register or update an account. Existing nonces only move forward."""
        async with self._lock:
            with self._write() as conn:
                now = time.time()
                conn.execute(
                    """
                    INSERT INTO accounts (account_id, address, credential_ref, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id) DO UPDATE SET
                        address = excluded.address,
                        credential_ref = excluded.credential_ref,
                        status = excluded.status,
                        updated_at = excluded.updated_at
                    """,
                    (account.account_id, account.address, account.credential_ref, account.status.value, now, now),
                )
                for layer in Layer:
                    conn.execute(
                        """
                        INSERT INTO account_layers (account_id, layer, nonce, balance, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(account_id, layer) DO UPDATE SET
                            nonce = MAX(nonce, excluded.nonce),
                            updated_at = excluded.updated_at
                        """,
                        (account.account_id, layer.value, account.nonce(layer), str(account.balance(layer)), now),
                    )
            log.debug("Saved account %s (%s)", account.account_id, account.address)

    async def list_accounts(self, status: AccountStatus | None = None) -> list[Account]:
        async with self._lock:
            with self._connect() as conn:
                if status is None:
                    ids = conn.execute("SELECT account_id FROM accounts ORDER BY account_id").fetchall()
                else:
                    ids = conn.execute(
                        "SELECT account_id FROM accounts WHERE status = ? ORDER BY account_id", (status.value,)
                    ).fetchall()
                return [self._load(conn, account_id) for (account_id,) in ids]

    async def set_status(self, account_id: str, status: AccountStatus) -> None:
        async with self._lock:
            with self._write() as conn:
                cur = conn.execute(
                    "UPDATE accounts SET status = ?, updated_at = ? WHERE account_id = ?",
                    (status.value, time.time(), account_id),
                )
                if cur.rowcount == 0:
                    raise AccountNotFound(account_id)

    # =========================================================================
    # Nonce primitives
    # =========================================================================

    async def reserve_nonce(self, account_id: str, layer: Layer) -> int:
        """Return the next nonce for (account, layer) and advance it, atomically."""
        async with self._lock:
            with self._write() as conn:
                nonce, _ = self._layer_row(conn, account_id, layer)
                conn.execute(
                    "UPDATE account_layers SET nonce = nonce + 1, updated_at = ? WHERE account_id = ? AND layer = ?",
                    (time.time(), account_id, layer.value),
                )
                return nonce

    async def rollback_nonce(self, account_id: str, layer: Layer, nonce: int) -> bool:
        """Give back ``nonce`` only if it is still the most recent reservation."""
        async with self._lock:
            with self._write() as conn:
                cur = conn.execute(
                    """
                    UPDATE account_layers SET nonce = ?, updated_at = ?
                    WHERE account_id = ? AND layer = ? AND nonce = ?
                    """,
                    (nonce, time.time(), account_id, layer.value, nonce + 1),
                )
                if cur.rowcount == 1:
                    log.debug("Rolled back nonce %s for %s/%s", nonce, account_id, layer)
                    return True
                current, _ = self._layer_row(conn, account_id, layer)
        log.warning(
            "Cannot roll back nonce %s for %s/%s - next nonce is %s (a later reservation consumed it)",
            nonce, account_id, layer, current,
        )
        return False

    async def reset_nonce(self, account_id: str, layer: Layer, value: int) -> None:
        async with self._lock:
            with self._write() as conn:
                current, _ = self._layer_row(conn, account_id, layer)
                conn.execute(
                    "UPDATE account_layers SET nonce = ?, updated_at = ? WHERE account_id = ? AND layer = ?",
                    (value, time.time(), account_id, layer.value),
                )
        log.warning("Resetting nonce for %s/%s: %s -> %s", account_id, layer, current, value)

    # =========================================================================
    # Balance tracking
    # =========================================================================

    async def apply_balance_delta(self, account_id: str, layer: Layer, delta: int) -> int:
        async with self._lock:
            with self._write() as conn:
                _, balance = self._layer_row(conn, account_id, layer)
                balance += delta
                conn.execute(
                    "UPDATE account_layers SET balance = ?, updated_at = ? WHERE account_id = ? AND layer = ?",
                    (str(balance), time.time(), account_id, layer.value),
                )
                return balance

    async def set_balance(self, account_id: str, layer: Layer, value: int) -> None:
        async with self._lock:
            with self._write() as conn:
                self._layer_row(conn, account_id, layer)
                conn.execute(
                    "UPDATE account_layers SET balance = ?, updated_at = ? WHERE account_id = ? AND layer = ?",
                    (str(value), time.time(), account_id, layer.value),
                )

    # =========================================================================
    # Outcome audit log
    # =========================================================================

    async def record_outcome(self, outcome: TransactionOutcome) -> bool:
        """Insert once per intent id. Returns False if it was already recorded."""
        async with self._lock:
            with self._write() as conn:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO outcomes
                        (intent_id, account_id, layer, kind, nonce, tx_hash, latency, error, recorded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        outcome.intent_id,
                        outcome.account_id,
                        outcome.layer.value,
                        outcome.kind.value,
                        outcome.nonce,
                        outcome.tx_hash,
                        outcome.latency,
                        outcome.error,
                        outcome.recorded_at,
                    ),
                )
                return cur.rowcount == 1

    async def outcomes(self, account_id: str | None = None) -> list[TransactionOutcome]:
        query = "SELECT intent_id, account_id, layer, kind, nonce, tx_hash, latency, error, recorded_at FROM outcomes"
        params: tuple = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        async with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query + " ORDER BY recorded_at", params).fetchall()
        return [
            TransactionOutcome(
                intent_id=intent_id,
                account_id=acct,
                layer=Layer(layer),
                kind=OutcomeKind(kind),
                nonce=nonce,
                tx_hash=tx_hash,
                latency=latency,
                error=error,
                recorded_at=recorded_at,
            )
            for intent_id, acct, layer, kind, nonce, tx_hash, latency, error, recorded_at in rows
        ]

    # =========================================================================
    # Bridge operations
    # =========================================================================

    async def save_bridge_operation(self, op: BridgeOperation) -> None:
        async with self._lock:
            with self._write() as conn:
                conn.execute(
                    """
                    INSERT INTO bridge_operations (op_id, account_id, phase, updated_at, data)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(op_id) DO UPDATE SET
                        phase = excluded.phase,
                        updated_at = excluded.updated_at,
                        data = excluded.data
                    """,
                    (op.op_id, op.account_id, op.phase.value, time.time(), json.dumps(op.to_dict())),
                )

    async def get_bridge_operation(self, op_id: str) -> BridgeOperation | None:
        async with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT data FROM bridge_operations WHERE op_id = ?", (op_id,)).fetchone()
        return BridgeOperation.from_dict(json.loads(row[0])) if row else None

    async def bridge_operations(self, phase: BridgePhase | None = None) -> list[BridgeOperation]:
        async with self._lock:
            with self._connect() as conn:
                if phase is None:
                    rows = conn.execute("SELECT data FROM bridge_operations ORDER BY updated_at").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT data FROM bridge_operations WHERE phase = ? ORDER BY updated_at", (phase.value,)
                    ).fetchall()
        return [BridgeOperation.from_dict(json.loads(data)) for (data,) in rows]
