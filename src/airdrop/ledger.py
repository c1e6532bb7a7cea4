"""The capability the engine consumes from a ledger.

Every failure crossing this boundary is raised as a ``LedgerError`` subclass,
so callers classify by ``err.kind`` instead of parsing messages.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from xrpl.wallet import Wallet

from airdrop.models import AssetId


@dataclass(frozen=True, slots=True)
class CredentialToken:
    """Short-lived authorisation for one submission.

    ``sequence`` is the sender's account sequence reserved for this submission,
    ``last_ledger_sequence`` the last validated ledger it may land in.
    """

    account: str
    sequence: int
    last_ledger_sequence: int
    ledger_index: int
    fee_drops: int


@dataclass(frozen=True, slots=True)
class AccountHandle:
    address: str
    exists: bool
    asset: AssetId | None = None


@dataclass(frozen=True, slots=True)
class TransferDraft:
    source: str
    destination: str
    quantity: Decimal
    asset: AssetId | None
    creates_destination: bool = False


@dataclass(frozen=True, slots=True)
class SignedTransfer:
    tx_hash: str
    blob: str
    token: CredentialToken


class LedgerClient(Protocol):
    async def get_fresh_credential_token(self, account: str) -> CredentialToken: ...
    async def release_credential_token(self, token: CredentialToken) -> None: ...
    async def simulate(self, draft: TransferDraft, token: CredentialToken) -> None: ...
    async def sign(self, draft: TransferDraft, token: CredentialToken, wallet: Wallet) -> SignedTransfer: ...
    async def submit(self, signed: SignedTransfer) -> str: ...
    async def await_confirmation(self, submission_id: str, token: CredentialToken) -> str: ...
    async def get_balance(self, account: str, asset: AssetId | None = None) -> Decimal: ...
    async def resolve_or_create_account(self, owner: str, asset: AssetId | None) -> AccountHandle: ...
    async def estimate_fee(self) -> Decimal: ...
    async def close(self) -> None: ...
