import asyncio
from decimal import Decimal

from fakes import FakeLedger, RecordingSleep, address, make_job, recipients

from airdrop.constants import Outcome, TransferState
from airdrop.errors import ConfirmationTimeout, CredentialExpired, LedgerError, SimulationRejected, TransferRejected
from airdrop.retry import RetryPolicy
from airdrop.transfer import TransferAttemptMachine


def _machine(ledger, **job_kw):
    job = make_job(**job_kw)
    sleep = RecordingSleep()
    return TransferAttemptMachine(ledger, RetryPolicy.for_job(job), job, sleep=sleep), sleep


def test_confirms_on_first_pass() -> None:
    ledger = FakeLedger()
    machine, sleep = _machine(ledger)
    (r,) = recipients(1)

    t = asyncio.run(machine.run(r))

    assert t.state == TransferState.CONFIRMED
    assert t.outcome == Outcome.SUCCEEDED
    assert t.tx_id == "TX00000001"
    assert (t.attempts, t.expiry_retries, t.builds) == (0, 0, 1)
    assert sleep.delays == []
    assert ledger.released == []


def test_permanent_simulation_rejection_fails_without_retries() -> None:
    ledger = FakeLedger()
    (r,) = recipients(1)
    ledger.always[("simulate", r.address)] = SimulationRejected("tecNO_DST_INSUF_XRP")
    machine, sleep = _machine(ledger)

    t = asyncio.run(machine.run(r))

    assert t.state == TransferState.FAILED
    assert t.outcome == Outcome.FAILED
    assert t.attempts == 0
    assert t.builds == 1
    assert "tecNO_DST_INSUF_XRP" in t.reason
    assert ledger.calls["submit"] == []
    assert len(ledger.released) == 1
    assert sleep.delays == []


def test_expiry_loops_do_not_consume_the_budget() -> None:
    ledger = FakeLedger()
    (r,) = recipients(1)
    ledger.script[("confirm", r.address)] = [CredentialExpired("lls passed") for _ in range(40)]
    machine, sleep = _machine(ledger, max_retries=1, max_expiry_retries=0)

    t = asyncio.run(machine.run(r))

    assert t.state == TransferState.CONFIRMED
    assert t.attempts == 0
    assert t.expiry_retries == 40
    assert t.builds == 41
    assert sleep.delays == [0.5] * 40
    # submitted tokens are never handed back
    assert ledger.released == []


def test_expiry_cap_fails_the_transfer() -> None:
    ledger = FakeLedger()
    (r,) = recipients(1)
    ledger.always[("confirm", r.address)] = CredentialExpired("lls passed")
    machine, _ = _machine(ledger, max_expiry_retries=3)

    t = asyncio.run(machine.run(r))

    assert t.state == TransferState.FAILED
    assert t.attempts == 0
    assert t.expiry_retries == 3
    assert "credential expired 3 times" in t.reason


def test_repeated_confirmation_timeouts_exhaust_the_budget() -> None:
    ledger = FakeLedger()
    (r,) = recipients(1)
    ledger.always[("confirm", r.address)] = ConfirmationTimeout("not settled")
    machine, sleep = _machine(ledger, max_retries=5)

    t = asyncio.run(machine.run(r))

    assert t.state == TransferState.FAILED
    assert t.attempts == 5
    assert t.builds == 5
    assert sleep.delays == [2.0, 4.0, 6.0, 8.0]
    assert "retry budget exhausted" in t.reason


def test_transient_failure_then_success() -> None:
    ledger = FakeLedger()
    (r,) = recipients(1)
    ledger.script[("submit", r.address)] = [LedgerError("tooBusy")]
    ledger.script[("confirm", r.address)] = [CredentialExpired("lls passed")]
    machine, sleep = _machine(ledger)

    t = asyncio.run(machine.run(r))

    assert t.outcome == Outcome.SUCCEEDED
    assert (t.attempts, t.expiry_retries, t.builds) == (1, 1, 3)
    assert sleep.delays == [2.0, 0.5]
    # the token of the refused submission was released
    assert [tok.sequence for tok in ledger.released] == [1]
    assert t.last_error.startswith("CredentialExpired")


def test_rejected_on_validation_is_permanent() -> None:
    ledger = FakeLedger()
    (r,) = recipients(1)
    ledger.always[("confirm", r.address)] = TransferRejected("validated with tecPATH_DRY")
    machine, _ = _machine(ledger)

    t = asyncio.run(machine.run(r))

    assert t.outcome == Outcome.FAILED
    assert t.attempts == 0
    assert t.reason.startswith("AWAIT_CONFIRMATION")


def test_balance_guard_fails_when_sender_is_short() -> None:
    ledger = FakeLedger(balance=Decimal("0.5"))
    (r,) = recipients(1)
    machine, _ = _machine(ledger, balance_guard=True)

    t = asyncio.run(machine.run(r))

    assert t.outcome == Outcome.FAILED
    assert "InsufficientBalance" in t.reason
    assert ledger.calls["simulate"] == []


def test_missing_destination_is_created() -> None:
    ledger = FakeLedger(missing={address(0)})
    machine, _ = _machine(ledger)

    t = asyncio.run(machine.run(recipients(1)[0]))

    assert t.outcome == Outcome.SUCCEEDED
    assert t.created_destination
