import asyncio
import json
import sqlite3
from decimal import Decimal

import pytest
from fakes import address, recipients

from airdrop.constants import Outcome
from airdrop.errors import CheckpointError, ProgressConflict
from airdrop.models import Recipient, TransferAttempt
from airdrop.progress import ProgressLedger
from airdrop.result_store import InMemoryResultStore, SQLiteResultStore


def _ledger(tmp_path, **kw) -> ProgressLedger:
    return ProgressLedger(tmp_path / "remaining.json", tmp_path / "retry.json", **kw)


def test_terminal_sets_are_disjoint(tmp_path) -> None:
    p = _ledger(tmp_path)
    p.track(recipients(3))
    a, b, _ = (address(i) for i in range(3))

    p.record_success(a, "TX1")
    p.record_success(a, "TX1")
    p.record_failure(b, "no trust line")
    p.record_failure(b, "no trust line")

    assert p.succeeded == {a: "TX1"}
    assert p.failed == {b: "no trust line"}
    with pytest.raises(ProgressConflict):
        p.record_failure(a, "late failure")
    with pytest.raises(ProgressConflict):
        p.record_success(b, "TX2")
    assert p.counts() == {"succeeded": 1, "failed": 1, "remaining": 1}


def test_remaining_snapshot_excludes_only_succeeded(tmp_path) -> None:
    p = _ledger(tmp_path)
    rs = [Recipient(address=address(i), quantity=Decimal(i + 1), weight=Decimal(i + 1)) for i in range(4)]
    p.track(rs)
    p.record_success(address(0), "TX")
    p.record_failure(address(1), "boom")

    path = p.persist()

    assert json.loads(path.read_text()) == {address(1): 2, address(2): 3, address(3): 4}
    assert not (tmp_path / "remaining.json.tmp").exists()


def test_finalize_writes_only_failed_with_original_weights(tmp_path) -> None:
    p = _ledger(tmp_path)
    p.track([
        Recipient(address=address(0), quantity=Decimal(3), weight=Decimal(3)),
        Recipient(address=address(1), quantity=Decimal("2.5"), weight=Decimal("2.5")),
        Recipient(address=address(2), quantity=Decimal(1), weight=Decimal(1)),
    ])
    p.record_success(address(0), "TX")
    p.record_failure(address(1), "budget")

    retry = p.finalize()

    assert retry == tmp_path / "retry.json"
    assert json.loads(retry.read_text()) == {address(1): 2.5}


def test_finalize_without_failures_writes_no_retry_file(tmp_path) -> None:
    p = _ledger(tmp_path)
    p.track(recipients(1))
    p.record_success(address(0), "TX")

    assert p.finalize() is None
    assert not (tmp_path / "retry.json").exists()
    assert json.loads((tmp_path / "remaining.json").read_text()) == {}


def test_unwritable_checkpoint_raises(tmp_path) -> None:
    (tmp_path / "remaining.json").mkdir()
    p = _ledger(tmp_path)
    p.track(recipients(1))

    with pytest.raises(CheckpointError):
        p.persist()


def test_record_appends_to_result_log(tmp_path) -> None:
    store = InMemoryResultStore()
    p = _ledger(tmp_path, store=store, sender="rSender", asset="XRP")
    ok, bad = recipients(2)
    t_ok = TransferAttempt(recipient=ok)
    t_ok.succeed("TXOK")
    t_bad = TransferAttempt(recipient=bad)
    t_bad.fail("SIMULATE: tecNO_DST")

    async def scenario():
        await p.record(t_ok)
        await p.record(t_bad)
        return await store.succeeded_addresses("rSender", "XRP")

    assert asyncio.run(scenario()) == {ok.address: "TXOK"}
    assert [r.outcome for r in store.rows] == [Outcome.SUCCEEDED, Outcome.FAILED]
    assert store.rows[1].reason == "SIMULATE: tecNO_DST"


def test_sqlite_result_log_round_trip(tmp_path) -> None:
    store = SQLiteResultStore(tmp_path / "db" / "results.db")
    p = _ledger(tmp_path, store=store, sender="rSender", asset="USD.rIssuer")
    (r,) = recipients(1)
    t = TransferAttempt(recipient=r)
    t.succeed("TXOK")
    t.created_destination = True

    async def scenario():
        await p.record(t)
        return await store.all(), await store.succeeded_addresses("rSender", "USD.rIssuer")

    rows, paid = asyncio.run(scenario())
    assert paid == {r.address: "TXOK"}
    assert rows[0].outcome == Outcome.SUCCEEDED
    assert rows[0].created_destination is True
    assert rows[0].quantity == "1"


def test_broken_result_log_raises_checkpoint_error(tmp_path) -> None:
    db = tmp_path / "results.db"
    store = SQLiteResultStore(db)
    conn = sqlite3.connect(db)
    conn.execute("DROP TABLE transfers")
    conn.commit()
    conn.close()
    p = _ledger(tmp_path, store=store, sender="rSender", asset="XRP")
    t = TransferAttempt(recipient=recipients(1)[0])
    t.succeed("TXOK")

    with pytest.raises(CheckpointError):
        asyncio.run(p.record(t))


def test_restore_seeds_succeeded(tmp_path) -> None:
    p = _ledger(tmp_path)
    p.track(recipients(2))
    p.restore({address(0): "TXOLD"})

    assert p.is_succeeded(address(0))
    assert p.snapshot_remaining() == {address(1): Decimal(1)}
