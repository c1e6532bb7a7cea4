"""Append-only log of terminal transfer outcomes."""

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from airdrop.constants import Outcome
from airdrop.errors import CheckpointError

log = logging.getLogger("airdrop.result_store")


@dataclass(slots=True)
class TransferResult:
    sender: str
    asset: str
    address: str
    weight: str
    quantity: str
    outcome: Outcome
    tx_id: str | None = None
    reason: str | None = None
    created_destination: bool = False
    recorded_at: float = field(default_factory=time.time)


class ResultStore(Protocol):
    async def append(self, row: TransferResult) -> None: ...
    async def succeeded_addresses(self, sender: str, asset: str) -> dict[str, str]: ...
    async def all(self) -> list[TransferResult]: ...


class InMemoryResultStore:
    def __init__(self) -> None:
        self.rows: list[TransferResult] = []

    async def append(self, row: TransferResult) -> None:
        self.rows.append(row)

    async def succeeded_addresses(self, sender: str, asset: str) -> dict[str, str]:
        return {
            r.address: r.tx_id
            for r in self.rows
            if r.sender == sender and r.asset == asset and r.outcome == Outcome.SUCCEEDED
        }

    async def all(self) -> list[TransferResult]:
        return list(self.rows)


class SQLiteResultStore:
    """Result log backed by SQLite. Rows are only ever inserted."""

    def __init__(self, db_path: str | Path = "results/airdrop.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS transfers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    address TEXT NOT NULL,
                    weight TEXT NOT NULL,
                    quantity TEXT NOT NULL,
                    outcome TEXT NOT NULL,   -- 'SUCCEEDED' | 'FAILED'
                    tx_id TEXT,
                    reason TEXT,
                    created_destination INTEGER DEFAULT 0,
                    recorded_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_transfers_address ON transfers(address);
                CREATE INDEX IF NOT EXISTS idx_transfers_run ON transfers(sender, asset, outcome);
                """
            )
            conn.commit()
            log.debug("SQLite result log initialized at %s", self.db_path)
        finally:
            conn.close()

    async def append(self, row: TransferResult) -> None:
        async with self._lock:
            try:
                self._insert(row)
            except sqlite3.Error as e:
                raise CheckpointError(f"Could not append to result log {self.db_path}: {e}") from e

    def _insert(self, row: TransferResult) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO transfers (sender, asset, address, weight, quantity, outcome,
                                       tx_id, reason, created_destination, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row.sender,
                    row.asset,
                    row.address,
                    row.weight,
                    row.quantity,
                    str(row.outcome),
                    row.tx_id,
                    row.reason,
                    int(row.created_destination),
                    row.recorded_at,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    async def succeeded_addresses(self, sender: str, asset: str) -> dict[str, str]:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                cursor = conn.execute(
                    "SELECT address, tx_id FROM transfers WHERE sender = ? AND asset = ? AND outcome = ?",
                    (sender, asset, str(Outcome.SUCCEEDED)),
                )
                return dict(cursor.fetchall())
            finally:
                conn.close()

    async def all(self) -> list[TransferResult]:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                cursor = conn.execute(
                    "SELECT sender, asset, address, weight, quantity, outcome, tx_id, reason, "
                    "created_destination, recorded_at FROM transfers ORDER BY id"
                )
                return [
                    TransferResult(
                        sender=s, asset=a, address=addr, weight=w, quantity=q, outcome=Outcome(o),
                        tx_id=tx, reason=reason, created_destination=bool(cd), recorded_at=ts,
                    )
                    for s, a, addr, w, q, o, tx, reason, cd, ts in cursor.fetchall()
                ]
            finally:
                conn.close()
