"""Run progress: which recipients succeeded, which failed, what is left.

The two terminal sets are disjoint and only grow. The remaining-work file is
rewritten atomically (temp file + rename) so a crash never leaves a torn
checkpoint; it has the same ``{address: weight}`` shape as the job input and
can be fed straight back in to resume.
"""

import json
import logging
import os
from decimal import Decimal
from pathlib import Path

from airdrop.constants import NATIVE, Outcome
from airdrop.errors import CheckpointError, ProgressConflict
from airdrop.models import Recipient, TransferAttempt
from airdrop.result_store import ResultStore, TransferResult

log = logging.getLogger("airdrop.progress")


def _json_weight(w: Decimal) -> int | float:
    return int(w) if w == w.to_integral_value() else float(w)


def write_json(path: Path, obj) -> None:
    """Atomically replace ``path`` with ``obj`` as JSON."""
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w") as f:
            json.dump(obj, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        raise CheckpointError(f"Could not write checkpoint {path}: {e}") from e


def write_weights(path: Path, weights: dict[str, Decimal]) -> None:
    write_json(path, {a: _json_weight(w) for a, w in weights.items()})


class ProgressLedger:
    def __init__(
        self,
        remaining_path: str | Path,
        retry_path: str | Path,
        *,
        store: ResultStore | None = None,
        sender: str = "",
        asset: str = NATIVE,
    ) -> None:
        self.remaining_path = Path(remaining_path)
        self.retry_path = Path(retry_path)
        self.store = store
        self.sender = sender
        self.asset = asset
        self.weights: dict[str, Decimal] = {}
        self.succeeded: dict[str, str] = {}  # address -> tx id
        self.failed: dict[str, str] = {}     # address -> reason

    def track(self, recipients: list[Recipient]) -> None:
        for r in recipients:
            self.weights.setdefault(r.address, r.weight)

    def restore(self, succeeded: dict[str, str]) -> None:
        """Seed addresses already paid in an earlier run."""
        for address, tx_id in succeeded.items():
            self.record_success(address, tx_id)
        if succeeded:
            log.info("Restored %s already-succeeded recipients", len(succeeded))

    def is_succeeded(self, address: str) -> bool:
        return address in self.succeeded

    def record_success(self, address: str, tx_id: str) -> None:
        if address in self.failed:
            raise ProgressConflict(f"{address} already recorded as failed")
        self.succeeded.setdefault(address, tx_id)

    def record_failure(self, address: str, reason: str) -> None:
        if address in self.succeeded:
            raise ProgressConflict(f"{address} already recorded as succeeded")
        self.failed.setdefault(address, reason)

    async def record(self, attempt: TransferAttempt) -> None:
        """Fold a terminal attempt into the sets and the result log."""
        r = attempt.recipient
        if attempt.outcome == Outcome.SUCCEEDED:
            self.record_success(r.address, attempt.tx_id)
        else:
            self.record_failure(r.address, attempt.reason or attempt.last_error or "unknown")
        if self.store is not None:
            await self.store.append(TransferResult(
                sender=self.sender,
                asset=self.asset,
                address=r.address,
                weight=str(r.weight),
                quantity=str(r.quantity),
                outcome=attempt.outcome,
                tx_id=attempt.tx_id,
                reason=attempt.reason,
                created_destination=attempt.created_destination,
            ))

    def snapshot_remaining(self) -> dict[str, Decimal]:
        return {a: w for a, w in self.weights.items() if a not in self.succeeded}

    def counts(self) -> dict[str, int]:
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "remaining": len(self.weights) - len(self.succeeded) - len(self.failed),
        }

    def persist(self) -> Path:
        snapshot = self.snapshot_remaining()
        write_weights(self.remaining_path, snapshot)
        log.debug("Checkpoint: %s remaining -> %s", len(snapshot), self.remaining_path)
        return self.remaining_path

    @property
    def plan_path(self) -> Path:
        return self.remaining_path.with_name(self.remaining_path.stem + ".plan.json")

    def save_plan(self, plan: dict) -> None:
        """Record how quantities were fixed at run start, so a resume pays the same."""
        write_json(self.plan_path, plan)

    def load_plan(self) -> dict | None:
        try:
            return json.loads(self.plan_path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Could not read run plan {self.plan_path}: {e}") from e

    def finalize(self) -> Path | None:
        """Write the retry file with exactly the failed recipients, if any."""
        self.persist()
        if not self.failed:
            return None
        write_weights(self.retry_path, {a: self.weights.get(a, Decimal(1)) for a in self.failed})
        log.info("%s failed recipients written to %s", len(self.failed), self.retry_path)
        return self.retry_path
