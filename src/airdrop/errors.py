"""Error taxonomy for the distribution engine.

Failures coming back from the ledger boundary are ``LedgerError`` instances
carrying an ``ErrorKind`` tag. The retry policy only ever looks at that tag,
never at message text.
"""

from airdrop.constants import ErrorKind


class AirdropError(Exception):
    """Base class for everything raised by this package."""


class ValidationError(AirdropError, ValueError):
    """Malformed address, non-positive amount or invalid job parameters."""


class InsufficientBalance(AirdropError):
    def __init__(self, account: str, needed, available, asset: str = "XRP"):
        self.account = account
        self.needed = needed
        self.available = available
        self.asset = asset
        super().__init__(f"{account} holds {available} {asset}, needs {needed}")


class LedgerError(AirdropError):
    """A failure reported by the ledger boundary, tagged with how to treat it."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, kind: ErrorKind | None = None, engine_result: str | None = None):
        if kind is not None:
            self.kind = kind
        self.engine_result = engine_result
        super().__init__(message)


class SimulationRejected(LedgerError):
    kind = ErrorKind.PERMANENT


class CredentialExpired(LedgerError):
    kind = ErrorKind.EXPIRED_CREDENTIAL


class ConfirmationTimeout(LedgerError):
    kind = ErrorKind.TRANSIENT


class TransferRejected(LedgerError):
    kind = ErrorKind.PERMANENT


class PermanentSubmissionError(AirdropError):
    """Retry budget exhausted or a non-retryable rejection."""

    def __init__(self, address: str, reason: str):
        self.address = address
        self.reason = reason
        super().__init__(f"{address}: {reason}")


class CheckpointError(AirdropError):
    """Progress could not be written durably. Aborts the run."""


class ProgressConflict(AirdropError):
    """An address was recorded as both succeeded and failed."""


__all__ = [
    "AirdropError",
    "CheckpointError",
    "ConfirmationTimeout",
    "CredentialExpired",
    "InsufficientBalance",
    "LedgerError",
    "PermanentSubmissionError",
    "ProgressConflict",
    "SimulationRejected",
    "TransferRejected",
    "ValidationError",
]
