"""Error classification and backoff for transfer attempts."""

from dataclasses import dataclass

import httpx

from airdrop.constants import BACKOFF_BASE, EXPIRY_PAUSE, MAX_EXPIRY_RETRIES, MAX_RETRIES, ErrorKind
from airdrop.errors import InsufficientBalance, LedgerError, ValidationError


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = MAX_RETRIES
    max_expiry_retries: int | None = MAX_EXPIRY_RETRIES
    backoff_base: float = BACKOFF_BASE
    expiry_pause: float = EXPIRY_PAUSE

    @classmethod
    def for_job(cls, job) -> "RetryPolicy":
        return cls(
            max_retries=job.max_retries,
            max_expiry_retries=job.max_expiry_retries,
            backoff_base=job.backoff_base,
            expiry_pause=job.expiry_pause,
        )

    def classify(self, error: BaseException) -> ErrorKind:
        if isinstance(error, LedgerError):
            return error.kind
        if isinstance(error, (ValidationError, InsufficientBalance)):
            return ErrorKind.PERMANENT
        if isinstance(error, (httpx.HTTPError, TimeoutError, OSError, ConnectionError)):
            return ErrorKind.TRANSIENT
        # Unrecognised failures are treated as network trouble and retried within budget.
        return ErrorKind.TRANSIENT

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base * max(attempt, 0)

    def expiry_delay(self) -> float:
        return self.expiry_pause

    def budget_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_retries

    def expiry_cap_reached(self, expiry_retries: int) -> bool:
        return self.max_expiry_retries is not None and expiry_retries >= self.max_expiry_retries
