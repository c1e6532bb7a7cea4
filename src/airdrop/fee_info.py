"""Fee escalation state used to price each transfer."""

import logging
from dataclasses import dataclass

from airdrop.errors import LedgerError

log = logging.getLogger("airdrop.fee")


@dataclass
class FeeInfo:
    """Current fee escalation state from the rippled ``fee`` command.

    All fee values are in drops. Queue and ledger sizes change with every
    transaction, so fetch a fresh one per submission instead of caching.
    """

    expected_ledger_size: int
    current_ledger_size: int
    current_queue_size: int
    max_queue_size: int
    base_fee: int  # drops
    median_fee: int  # drops
    minimum_fee: int  # drops
    open_ledger_fee: int  # drops
    ledger_current_index: int

    @classmethod
    def from_fee_result(cls, result: dict) -> "FeeInfo":
        drops = result["drops"]
        return cls(
            expected_ledger_size=int(result["expected_ledger_size"]),
            current_ledger_size=int(result["current_ledger_size"]),
            current_queue_size=int(result["current_queue_size"]),
            max_queue_size=int(result["max_queue_size"]),
            base_fee=int(drops["base_fee"]),
            median_fee=int(drops["median_fee"]),
            minimum_fee=int(drops["minimum_fee"]),
            open_ledger_fee=int(drops["open_ledger_fee"]),
            ledger_current_index=int(result["ledger_current_index"]),
        )

    @property
    def escalated(self) -> bool:
        return self.minimum_fee > self.base_fee

    def submission_fee(self, max_fee_drops: int) -> int:
        """Fee to get into the queue, refusing to pay more than ``max_fee_drops``.

        minimum_fee equals base_fee while the queue has room. An over-cap fee is
        transient: the queue drains as ledgers close.
        """
        fee = self.minimum_fee
        if self.escalated:
            log.warning(
                "Queue fees escalated: minimum=%s open_ledger=%s base=%s queue=%s/%s",
                self.minimum_fee, self.open_ledger_fee, self.base_fee,
                self.current_queue_size, self.max_queue_size,
            )
        if fee > max_fee_drops:
            raise LedgerError(f"Fee too high ({fee} drops > {max_fee_drops} max), queue is full")
        return fee
