from typing import Final
from enum import StrEnum

# Black hole account - can receive but not send
ACCOUNT_ZERO: Final = "rrrrrrrrrrrrrrrrrrrrrhoLvTp"

NATIVE: Final = "XRP"


class TransferState(StrEnum):
    BUILD              = "BUILD"
    SIMULATE           = "SIMULATE"
    SIGN               = "SIGN"
    SUBMIT             = "SUBMIT"
    AWAIT_CONFIRMATION = "AWAIT_CONFIRMATION"
    EXPIRED_RETRY      = "EXPIRED_RETRY"
    CONFIRMED          = "CONFIRMED"
    FAILED             = "FAILED"


class Outcome(StrEnum):
    PENDING   = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED    = "FAILED"


class ErrorKind(StrEnum):
    EXPIRED_CREDENTIAL = "EXPIRED_CREDENTIAL"
    TRANSIENT          = "TRANSIENT"
    PERMANENT          = "PERMANENT"


class AmountMode(StrEnum):
    FIXED   = "fixed"
    PERCENT = "percent"


DEFAULT_BATCH_SIZE = 50
DEFAULT_CONCURRENCY = 5
MAX_RETRIES = 5
MAX_EXPIRY_RETRIES = 25
BACKOFF_BASE = 2.0      # seconds, multiplied by the attempt number
EXPIRY_PAUSE = 0.5      # seconds before rebuilding with a fresh token
BATCH_PAUSE = 3.0
HORIZON = 15  # Transfers expire if not validated within 15 ledgers (~45-60 seconds)
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20.0
CONFIRM_TIMEOUT = 90.0
POLL_INTERVAL = 0.5
MAX_FEE_DROPS = 1000  # Cap to prevent draining the sender during fee escalation

__all__ = [
    "ACCOUNT_ZERO",
    "BACKOFF_BASE",
    "BATCH_PAUSE",
    "CONFIRM_TIMEOUT",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_CONCURRENCY",
    "EXPIRY_PAUSE",
    "HORIZON",
    "MAX_EXPIRY_RETRIES",
    "MAX_FEE_DROPS",
    "MAX_RETRIES",
    "NATIVE",
    "POLL_INTERVAL",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",

    ######
    "AmountMode",
    "ErrorKind",
    "Outcome",
    "TransferState",
]
