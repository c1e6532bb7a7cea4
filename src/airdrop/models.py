"""Domain data structures for a distribution run."""

import time
from dataclasses import dataclass, field
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator, model_validator
from xrpl.core.addresscodec import is_valid_classic_address
from xrpl.wallet import Wallet

from airdrop.constants import (
    BACKOFF_BASE,
    BATCH_PAUSE,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    EXPIRY_PAUSE,
    MAX_EXPIRY_RETRIES,
    MAX_RETRIES,
    NATIVE,
    AmountMode,
    Outcome,
    TransferState,
)
from airdrop.errors import ValidationError


def validate_address(address: str) -> str:
    if not isinstance(address, str) or not is_valid_classic_address(address.strip()):
        raise ValidationError(f"Invalid address: {address!r}")
    return address.strip()


@dataclass(frozen=True, slots=True)
class AssetId:
    """An issued currency. ``None`` in its place means native XRP."""

    currency: str
    issuer: str

    @classmethod
    def parse(cls, text: str) -> "AssetId":
        """Parse ``CUR.rIssuer``."""
        currency, sep, issuer = text.strip().partition(".")
        if not sep or not currency:
            raise ValidationError(f"Asset must look like CUR.rIssuer, got {text!r}")
        if currency.upper() == NATIVE:
            raise ValidationError("XRP is the native asset, omit the asset identifier")
        return cls(currency=currency, issuer=validate_address(issuer))

    def __str__(self) -> str:
        return f"{self.currency}.{self.issuer}"


@dataclass(frozen=True, slots=True)
class Recipient:
    address: str
    quantity: Decimal  # whole units (XRP or token value), scaled on the wire
    weight: Decimal    # the value from the job input, written back into checkpoints


class DistributionJob(BaseModel):
    """Parameters of one run. Built once from operator input, read-only afterwards."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    sender: Wallet
    asset: AssetId | None = None
    amount_mode: AmountMode = AmountMode.FIXED
    amount: Decimal = Field(gt=0)
    concurrency: PositiveInt = DEFAULT_CONCURRENCY
    batch_size: PositiveInt = DEFAULT_BATCH_SIZE
    max_retries: PositiveInt = MAX_RETRIES
    max_expiry_retries: int | None = MAX_EXPIRY_RETRIES
    batch_pause: float = Field(default=BATCH_PAUSE, ge=0)
    backoff_base: float = Field(default=BACKOFF_BASE, ge=0)
    expiry_pause: float = Field(default=EXPIRY_PAUSE, ge=0)
    balance_guard: bool = False

    @field_validator("max_expiry_retries")
    @classmethod
    def zero_means_unbounded(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            return None
        return value

    @model_validator(mode="after")
    def check_percentage(self) -> "DistributionJob":
        if self.amount_mode == AmountMode.PERCENT and self.amount > 100:
            raise ValueError("percentage of balance cannot exceed 100")
        return self

    @property
    def sender_address(self) -> str:
        return self.sender.address

    @property
    def asset_label(self) -> str:
        return str(self.asset) if self.asset else NATIVE


@dataclass(slots=True)
class TransferAttempt:
    recipient: Recipient
    state: TransferState = TransferState.BUILD
    attempts: int = 0         # budget-consuming failures
    expiry_retries: int = 0   # stale credential loops, not counted against the budget
    builds: int = 0
    last_error: str | None = None
    outcome: Outcome = Outcome.PENDING
    tx_id: str | None = None
    reason: str | None = None
    created_destination: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def address(self) -> str:
        return self.recipient.address

    def succeed(self, tx_id: str) -> None:
        self.state = TransferState.CONFIRMED
        self.outcome = Outcome.SUCCEEDED
        self.tx_id = tx_id
        self.finished_at = time.time()

    def fail(self, reason: str) -> None:
        self.state = TransferState.FAILED
        self.outcome = Outcome.FAILED
        self.reason = reason
        self.finished_at = time.time()

    def __str__(self):
        return f"{self.address} -- {self.state} -- attempts={self.attempts} expiry={self.expiry_retries}"


@dataclass
class RunSummary:
    sender: str
    total: int
    succeeded: int
    failed: int
    skipped: int
    batches: int
    elapsed: float
    remaining_path: str | None = None
    retry_path: str | None = None

    @property
    def elapsed_display(self) -> str:
        minutes, seconds = divmod(int(self.elapsed), 60)
        return f"{minutes} min {seconds} s"

    def as_dict(self) -> dict:
        return {
            "sender": self.sender,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "batches": self.batches,
            "elapsed": round(self.elapsed, 3),
            "remaining_path": self.remaining_path,
            "retry_path": self.retry_path,
        }
