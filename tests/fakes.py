"""Test doubles shared by the engine tests."""

import asyncio
from collections import defaultdict
from decimal import Decimal

from xrpl.core.addresscodec import encode_classic_address
from xrpl.wallet import Wallet

from airdrop.ledger import AccountHandle, CredentialToken, SignedTransfer
from airdrop.models import DistributionJob, Recipient


def address(i: int) -> str:
    return encode_classic_address((i + 1).to_bytes(20, "big"))


def recipients(n: int, weight: int = 1) -> list[Recipient]:
    return [Recipient(address=address(i), quantity=Decimal(weight), weight=Decimal(weight)) for i in range(n)]


def make_job(**kw) -> DistributionJob:
    params = dict(sender=Wallet.create(), amount=Decimal(1), batch_pause=0, backoff_base=2.0, expiry_pause=0.5)
    params.update(kw)
    return DistributionJob(**params)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeLedger:
    """Scriptable LedgerClient.

    ``script[(step, address)]`` is a list of outcomes consumed one per call;
    an exception instance is raised, anything else means success. Once the
    list runs out the step succeeds. ``always[(step, address)]`` raises on
    every call.
    """

    def __init__(self, *, balance: Decimal = Decimal(1_000_000), fee: Decimal = Decimal("0.00001"),
                 missing: set[str] = frozenset()):
        self.balance = balance
        self.fee = fee
        self.missing = set(missing)
        self.script: dict[tuple[str, str], list] = defaultdict(list)
        self.always: dict[tuple[str, str], Exception] = {}
        self.calls: dict[str, list[str]] = defaultdict(list)
        self.released: list[CredentialToken] = []
        self.seq = 0
        self._dest: dict[str, str] = {}
        self.closed = False

    def _step(self, step: str, addr: str) -> None:
        self.calls[step].append(addr)
        if (step, addr) in self.always:
            raise self.always[(step, addr)]
        queue = self.script.get((step, addr))
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome

    async def get_fresh_credential_token(self, account: str) -> CredentialToken:
        self.seq += 1
        return CredentialToken(account=account, sequence=self.seq, last_ledger_sequence=self.seq + 15,
                               ledger_index=self.seq, fee_drops=10)

    async def release_credential_token(self, token: CredentialToken) -> None:
        self.released.append(token)

    async def resolve_or_create_account(self, owner, asset):
        self._step("resolve", owner)
        return AccountHandle(address=owner, exists=owner not in self.missing, asset=asset)

    async def simulate(self, draft, token) -> None:
        await asyncio.sleep(0)
        self._step("simulate", draft.destination)

    async def sign(self, draft, token, wallet) -> SignedTransfer:
        tx_hash = f"TX{token.sequence:08d}"
        self._dest[tx_hash] = draft.destination
        return SignedTransfer(tx_hash=tx_hash, blob="00", token=token)

    async def submit(self, signed) -> str:
        self._step("submit", self._dest[signed.tx_hash])
        return signed.tx_hash

    async def await_confirmation(self, submission_id, token) -> str:
        await asyncio.sleep(0)
        self._step("confirm", self._dest[submission_id])
        return submission_id

    async def get_balance(self, account, asset=None) -> Decimal:
        self.calls["balance"].append(account)
        return self.balance

    async def estimate_fee(self) -> Decimal:
        return self.fee

    async def close(self) -> None:
        self.closed = True
