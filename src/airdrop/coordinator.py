"""Batch driver for a distribution run."""

import asyncio
import logging
import time
from decimal import Decimal

from airdrop.constants import AmountMode
from airdrop.errors import InsufficientBalance
from airdrop.ledger import LedgerClient
from airdrop.limiter import Completion, run_bounded
from airdrop.models import DistributionJob, Recipient, RunSummary, TransferAttempt
from airdrop.progress import ProgressLedger
from airdrop.recipients import build_recipients, percent_unit
from airdrop.retry import RetryPolicy
from airdrop.transfer import TransferAttemptMachine

log = logging.getLogger("airdrop.coordinator")


async def preflight(
    ledger: LedgerClient,
    job: DistributionJob,
    recipients: list[Recipient],
    *,
    strict: bool = False,
) -> list[InsufficientBalance]:
    """Compare what the run will spend against the sender's balances.

    Shortfalls are logged and returned; with ``strict`` the first one is raised.
    """
    sender = job.sender_address
    fee = await ledger.estimate_fee()
    fees_needed = fee * len(recipients)
    total = sum((r.quantity for r in recipients), Decimal(0))
    native = await ledger.get_balance(sender)
    log.info("Sender %s: %s XRP, estimated fees %s XRP for %s transfers", sender, native, fees_needed, len(recipients))

    shortfalls = []
    if job.asset is None:
        if native < total + fees_needed:
            shortfalls.append(InsufficientBalance(sender, total + fees_needed, native))
    else:
        if native < fees_needed:
            shortfalls.append(InsufficientBalance(sender, fees_needed, native))
        held = await ledger.get_balance(sender, job.asset)
        log.info("Sender %s: %s %s, distributing %s", sender, held, job.asset_label, total)
        if held < total:
            shortfalls.append(InsufficientBalance(sender, total, held, job.asset_label))

    for s in shortfalls:
        log.warning("Insufficient balance: %s", s)
    if strict and shortfalls:
        raise shortfalls[0]
    return shortfalls


async def plan_recipients(
    ledger: LedgerClient,
    job: DistributionJob,
    weights: dict[str, Decimal],
    progress: ProgressLedger,
    *,
    resume: bool = False,
) -> list[Recipient]:
    """Turn weights into quantities.

    In percent mode the amount per unit of weight is fixed when the run starts
    and saved next to the checkpoint. A resumed run reuses it, because the
    sender balance has already been drawn down by the recipients paid so far.
    """
    if job.amount_mode != AmountMode.PERCENT:
        return build_recipients(weights, job)

    key = {"sender": job.sender_address, "asset": job.asset_label, "amount": str(job.amount)}
    plan = progress.load_plan() if resume else None
    if plan is not None and all(plan.get(k) == v for k, v in key.items()):
        unit = Decimal(plan["unit"])
        log.info("Resuming with %s %s per unit of weight from %s", unit, job.asset_label, progress.plan_path)
        return build_recipients(weights, job, unit=unit)

    pending = {a: w for a, w in weights.items() if not progress.is_succeeded(a)}
    if resume:
        log.warning("No matching run plan at %s, splitting the current balance over %s unpaid recipients",
                    progress.plan_path, len(pending))
    balance = await ledger.get_balance(job.sender_address, job.asset)
    fee_reserve = Decimal(0)
    if job.asset is None and job.amount == 100:
        fee_reserve = await ledger.estimate_fee() * len(pending)
    unit = percent_unit(pending, job, balance, fee_reserve)
    progress.save_plan({**key, "unit": str(unit)})
    return build_recipients(weights, job, unit=unit)


class BatchCoordinator:
    def __init__(self, ledger: LedgerClient, progress: ProgressLedger, *, sleep=asyncio.sleep):
        self.ledger = ledger
        self.progress = progress
        self._sleep = sleep

    async def _fold(self, c: Completion[Recipient, TransferAttempt]) -> None:
        # Only ever called from the limiter's single completion consumer.
        attempt = c.result
        if c.error is not None:
            attempt = TransferAttempt(recipient=c.item)
            attempt.last_error = f"{type(c.error).__name__}: {c.error}"
            attempt.fail(attempt.last_error)
        await self.progress.record(attempt)

    async def run(self, job: DistributionJob, recipients: list[Recipient]) -> RunSummary:
        start = time.monotonic()
        machine = TransferAttemptMachine(self.ledger, RetryPolicy.for_job(job), job, sleep=self._sleep)

        self.progress.track(recipients)
        todo = [r for r in recipients if not self.progress.is_succeeded(r.address)]
        skipped = len(recipients) - len(todo)
        if skipped:
            log.info("Skipping %s recipients already paid", skipped)

        bs = job.batch_size
        batches = [todo[i:i + bs] for i in range(0, len(todo), bs)]
        log.info("Sending %s %s to %s recipients in %s batches of up to %s (window %s)",
                 job.asset_label, job.amount_mode, len(todo), len(batches), bs, job.concurrency)

        for n, batch in enumerate(batches, start=1):
            self.progress.persist()
            log.info("Batch %s/%s: %s transfers", n, len(batches), len(batch))
            await run_bounded(batch, job.concurrency, machine.run, on_complete=self._fold)
            self.progress.persist()

            counts = self.progress.counts()
            log.info("Batch %s/%s done: %s succeeded, %s failed, %s remaining",
                     n, len(batches), counts["succeeded"], counts["failed"], counts["remaining"])
            if n < len(batches) and job.batch_pause > 0:
                await self._sleep(job.batch_pause)

        retry_path = self.progress.finalize()
        succeeded = sum(1 for r in recipients if self.progress.is_succeeded(r.address))
        failed = sum(1 for r in recipients if r.address in self.progress.failed)
        summary = RunSummary(
            sender=job.sender_address,
            total=len(recipients),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            batches=len(batches),
            elapsed=time.monotonic() - start,
            remaining_path=str(self.progress.remaining_path),
            retry_path=str(retry_path) if retry_path else None,
        )
        log.info("Run complete for %s: %s/%s succeeded, %s failed, %s skipped in %s",
                 summary.sender, summary.succeeded, summary.total, summary.failed, summary.skipped,
                 summary.elapsed_display)
        return summary
