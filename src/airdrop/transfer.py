"""Per-recipient submit/confirm state machine.

BUILD -> SIMULATE -> SIGN -> SUBMIT -> AWAIT_CONFIRMATION -> CONFIRMED
                                                          -> EXPIRED_RETRY -> BUILD
                                                          -> FAILED

Every pass through BUILD takes a fresh credential token. A token that was never
submitted is handed back to the ledger client so its sequence is not stranded.
"""

import asyncio
import logging

from airdrop.constants import ErrorKind, TransferState
from airdrop.errors import InsufficientBalance, PermanentSubmissionError
from airdrop.ledger import CredentialToken, LedgerClient, TransferDraft
from airdrop.models import DistributionJob, Recipient, TransferAttempt
from airdrop.retry import RetryPolicy

log = logging.getLogger("airdrop.transfer")


class TransferAttemptMachine:
    def __init__(self, ledger: LedgerClient, policy: RetryPolicy, job: DistributionJob, *, sleep=asyncio.sleep):
        self.ledger = ledger
        self.policy = policy
        self.job = job
        self._sleep = sleep

    def _to(self, t: TransferAttempt, state: TransferState) -> None:
        log.debug("%s: %s --> %s", t.address, t.state, state)
        t.state = state

    async def _build(self, t: TransferAttempt) -> tuple[TransferDraft, CredentialToken]:
        job = self.job
        if job.balance_guard:
            available = await self.ledger.get_balance(job.sender_address, job.asset)
            if available < t.recipient.quantity:
                raise InsufficientBalance(job.sender_address, t.recipient.quantity, available, job.asset_label)

        handle = await self.ledger.resolve_or_create_account(t.address, job.asset)
        t.created_destination = not handle.exists
        token = await self.ledger.get_fresh_credential_token(job.sender_address)
        draft = TransferDraft(
            source=job.sender_address,
            destination=t.address,
            quantity=t.recipient.quantity,
            asset=job.asset,
            creates_destination=not handle.exists,
        )
        return draft, token

    async def run(self, recipient: Recipient) -> TransferAttempt:
        """Drive one transfer to CONFIRMED or FAILED. Never raises for ledger failures."""
        t = TransferAttempt(recipient=recipient)

        while True:
            token: CredentialToken | None = None
            submitted = False
            try:
                if t.state != TransferState.BUILD:
                    self._to(t, TransferState.BUILD)
                t.builds += 1
                draft, token = await self._build(t)

                self._to(t, TransferState.SIMULATE)
                await self.ledger.simulate(draft, token)

                self._to(t, TransferState.SIGN)
                signed = await self.ledger.sign(draft, token, self.job.sender)

                self._to(t, TransferState.SUBMIT)
                submission_id = await self.ledger.submit(signed)
                submitted = True

                self._to(t, TransferState.AWAIT_CONFIRMATION)
                tx_id = await self.ledger.await_confirmation(submission_id, token)
            except Exception as e:
                if token is not None and not submitted:
                    await self.ledger.release_credential_token(token)
                if self._handle_failure(t, e):
                    return t
                delay = self.policy.expiry_delay() if t.state == TransferState.EXPIRED_RETRY \
                    else self.policy.backoff_delay(t.attempts)
                await self._sleep(delay)
                continue

            self._to(t, TransferState.CONFIRMED)
            t.succeed(tx_id)
            log.info("%s confirmed %s %s (tx %s)", t.address, t.recipient.quantity, self.job.asset_label, tx_id)
            return t

    def _handle_failure(self, t: TransferAttempt, e: Exception) -> bool:
        """Update counters for a failure; True when the attempt is now terminal."""
        kind = self.policy.classify(e)
        t.last_error = f"{type(e).__name__}: {e}"
        failed_in = t.state

        if kind == ErrorKind.PERMANENT:
            self._terminate(t, PermanentSubmissionError(t.address, f"{failed_in}: {t.last_error}"))
            return True

        if kind == ErrorKind.EXPIRED_CREDENTIAL:
            if self.policy.expiry_cap_reached(t.expiry_retries):
                self._terminate(t, PermanentSubmissionError(
                    t.address, f"credential expired {t.expiry_retries} times: {t.last_error}"))
                return True
            t.expiry_retries += 1
            self._to(t, TransferState.EXPIRED_RETRY)
            log.warning("%s credential expired in %s (%s), rebuilding [expiry %s]",
                        t.address, failed_in, e, t.expiry_retries)
            return False

        t.attempts += 1
        if self.policy.budget_exhausted(t.attempts):
            self._terminate(t, PermanentSubmissionError(
                t.address, f"retry budget exhausted after {t.attempts} attempts: {t.last_error}"))
            return True
        log.warning("%s transient failure in %s (%s), retry %s/%s in %.1fs",
                    t.address, failed_in, t.last_error, t.attempts, self.policy.max_retries,
                    self.policy.backoff_delay(t.attempts))
        return False

    def _terminate(self, t: TransferAttempt, err: PermanentSubmissionError) -> None:
        self._to(t, TransferState.FAILED)
        t.fail(err.reason)
        log.error("%s failed: %s", t.address, err.reason)
