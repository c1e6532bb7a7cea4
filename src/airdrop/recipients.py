"""Loading the holder list and turning weights into transfer quantities."""

import json
import logging
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from pathlib import Path

from airdrop.constants import ACCOUNT_ZERO, AmountMode
from airdrop.errors import ValidationError
from airdrop.models import DistributionJob, Recipient, validate_address

log = logging.getLogger("airdrop.recipients")

# XRP is sent in drops; token values are rounded to the same precision.
QUANTUM = Decimal("0.000001")


def parse_weight(value) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid weight: {value!r}")
    try:
        w = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid weight: {value!r}") from None
    if not w.is_finite() or w <= 0:
        raise ValidationError(f"Weight must be positive, got {value!r}")
    return w


def parse_weights(data) -> dict[str, Decimal]:
    """Validate an ``{address: weight}`` mapping, dropping bad entries with a warning."""
    if not isinstance(data, dict):
        raise ValidationError(f"Holder list must be a JSON object of address -> weight, got {type(data).__name__}")

    weights: dict[str, Decimal] = {}
    for raw_address, raw_weight in data.items():
        try:
            address = validate_address(raw_address)
            if address == ACCOUNT_ZERO:
                raise ValidationError(f"Refusing to send to black hole account {address}")
            weights[address] = weights.get(address, Decimal(0)) + parse_weight(raw_weight)
        except ValidationError as e:
            log.warning("Skipping recipient: %s", e)

    if not weights:
        raise ValidationError("No valid recipients")
    log.info("Loaded %s valid recipients (%s rejected)", len(weights), len(data) - len(weights))
    return weights


def load_weights(path: str | Path) -> dict[str, Decimal]:
    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        raise ValidationError(f"Holder list {path} not found") from None
    except json.JSONDecodeError as e:
        raise ValidationError(f"Holder list {path} is not valid JSON: {e}") from None
    return parse_weights(data)


def percent_unit(
    weights: dict[str, Decimal],
    job: DistributionJob,
    balance: Decimal | None,
    fee_reserve: Decimal = Decimal(0),
) -> Decimal:
    """Amount per unit of weight: ``amount``% of ``balance``, less ``fee_reserve``, over the total weight."""
    if balance is None or not balance.is_finite():
        raise ValidationError("Percent mode needs a finite sender balance")
    budget = balance * job.amount / 100 - fee_reserve
    if budget <= 0:
        raise ValidationError(f"Nothing to distribute: {job.amount}% of {balance} less {fee_reserve} fees")
    total_weight = sum((w for a, w in weights.items() if a != job.sender_address), Decimal(0))
    if total_weight <= 0:
        raise ValidationError("No recipients left to pay")
    log.info("Distributing %s %s over total weight %s", budget, job.asset_label, total_weight)
    return budget / total_weight


def build_recipients(
    weights: dict[str, Decimal],
    job: DistributionJob,
    *,
    unit: Decimal | None = None,
    balance: Decimal | None = None,
    fee_reserve: Decimal = Decimal(0),
) -> list[Recipient]:
    """Compute each recipient's quantity as ``weight * unit``.

    fixed:   unit = amount
    percent: ``unit`` if given (a resumed run), else computed by ``percent_unit``
    """
    if job.amount_mode == AmountMode.PERCENT:
        if unit is None:
            unit = percent_unit(weights, job, balance, fee_reserve)
    else:
        unit = job.amount

    recipients = []
    for address, weight in weights.items():
        if address == job.sender_address:
            log.warning("Skipping %s: it is the sender", address)
            continue
        quantity = (weight * unit).quantize(QUANTUM, rounding=ROUND_DOWN)
        if quantity <= 0:
            log.warning("Skipping %s: share of weight %s rounds to zero", address, weight)
            continue
        recipients.append(Recipient(address=address, quantity=quantity, weight=weight))

    if not recipients:
        raise ValidationError("No recipients left to pay")
    return recipients
