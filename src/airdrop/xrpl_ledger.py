"""XRP Ledger implementation of the LedgerClient boundary.

Credential tokens are a reserved account Sequence plus a LastLedgerSequence
window. A submission is definitively expired once the validated ledger index
passes that window without the transaction in it; only then is it safe to
rebuild with a fresh token.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient, AsyncWebsocketClient
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign as sign_bytes
from xrpl.models import SubmitOnly
from xrpl.models.amounts import IssuedCurrencyAmount
from xrpl.models.requests import AccountInfo, AccountLines, Fee, ServerState, Simulate, Tx
from xrpl.models.transactions import Payment
from xrpl.utils import drops_to_xrp, xrp_to_drops
from xrpl.wallet import Wallet

import airdrop.constants as C
from airdrop.errors import (
    ConfirmationTimeout,
    CredentialExpired,
    LedgerError,
    SimulationRejected,
    TransferRejected,
)
from airdrop.fee_info import FeeInfo
from airdrop.ledger import AccountHandle, CredentialToken, SignedTransfer, TransferDraft
from airdrop.models import AssetId

log = logging.getLogger("airdrop.xrpl")

# Engine results meaning "this sequence/window can no longer be used"
STALE_CREDENTIAL_RESULTS = {"tefPAST_SEQ", "tefMAX_LEDGER"}
# Server-side RPC errors that say nothing about the transfer itself
MALFORMED_RPC_ERRORS = {"invalidTransaction", "invalidParams", "badSeed", "badSecret", "srcActMalformed"}
UNSUPPORTED_RPC_ERRORS = {"unknownCmd", "notImpl"}


@dataclass
class AccountRecord:
    lock: asyncio.Lock
    next_seq: int | None = None
    released: set[int] = field(default_factory=set)  # handed back below next_seq


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def classify_engine_result(er: str | None) -> C.ErrorKind | None:
    """None means the submission is (provisionally) in; wait for validation."""
    if er is None:
        return C.ErrorKind.TRANSIENT
    if er in STALE_CREDENTIAL_RESULTS:
        return C.ErrorKind.EXPIRED_CREDENTIAL
    if er == "tefALREADY":
        return None
    if er.startswith(("tem", "tef")):
        return C.ErrorKind.PERMANENT
    # tes / tec / ter / tel: the server holds or applied it, only validation decides
    return None


async def probe_endpoint(url: str, max_retries: int = 30, retry_delay: float = 2.0) -> dict:
    """Probe a JSON-RPC endpoint with ``server_info`` until it answers."""
    payload = {"method": "server_info", "params": [{}]}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=C.RPC_TIMEOUT * 2) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                info = r.json().get("result", {}).get("info", {})
                log.info("RPC endpoint responding (attempt %s/%s): rippled %s",
                         attempt, max_retries, info.get("build_version", "?"))
                return info
        except (httpx.HTTPError, ValueError) as e:
            if attempt < max_retries:
                log.info("RPC not ready yet (attempt %s/%s): %s - retrying in %ss",
                         attempt, max_retries, e.__class__.__name__, retry_delay)
                await asyncio.sleep(retry_delay)
            else:
                log.error("RPC failed after %s attempts", max_retries)
                raise
    return {}


class XrplLedgerClient:
    def __init__(
        self,
        url: str,
        *,
        client: AsyncJsonRpcClient | AsyncWebsocketClient | None = None,
        horizon: int = C.HORIZON,
        rpc_timeout: float = C.RPC_TIMEOUT,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        confirm_timeout: float = C.CONFIRM_TIMEOUT,
        poll_interval: float = C.POLL_INTERVAL,
        max_fee_drops: int = C.MAX_FEE_DROPS,
    ):
        self.url = url
        if client is None:
            client = AsyncWebsocketClient(url) if url.startswith(("ws://", "wss://")) else AsyncJsonRpcClient(url)
        self.client = client
        self.horizon = horizon
        self.rpc_timeout = rpc_timeout
        self.submit_timeout = submit_timeout
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.max_fee_drops = max_fee_drops
        self.accounts: dict[str, AccountRecord] = {}
        self._simulate_supported = True

    @classmethod
    def from_config(cls, conf: dict) -> "XrplLedgerClient":
        led = conf["ledger"]
        return cls(
            led["url"],
            horizon=int(led["horizon"]),
            rpc_timeout=float(led["rpc_timeout"]),
            submit_timeout=float(led["submit_timeout"]),
            confirm_timeout=float(led["confirm_timeout"]),
            poll_interval=float(led["poll_interval"]),
            max_fee_drops=int(led["max_fee_drops"]),
        )

    async def __aenter__(self) -> "XrplLedgerClient":
        if isinstance(self.client, AsyncWebsocketClient) and not self.client.is_open():
            await self.client.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if isinstance(self.client, AsyncWebsocketClient) and self.client.is_open():
            await self.client.close()
            log.debug("Closed websocket to %s", self.url)

    async def _rpc(self, req, *, t: float | None = None):
        return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)

    # =========================================================================
    # Sequence allocation. One allocator per sender shared by all attempts.
    # =========================================================================

    def _record_for(self, addr: str) -> AccountRecord:
        rec = self.accounts.get(addr)
        if rec is None:
            rec = AccountRecord(lock=asyncio.Lock(), next_seq=None)
            self.accounts[addr] = rec
        return rec

    async def alloc_seq(self, addr: str) -> int:
        rec = self._record_for(addr)

        async with rec.lock:
            if rec.next_seq is None:
                ai = await self._rpc(AccountInfo(account=addr, ledger_index="current", strict=True))
                if not ai.is_successful():
                    raise LedgerError(f"account_info failed for {addr}: {ai.result.get('error')}")
                rec.next_seq = ai.result["account_data"]["Sequence"]
                rec.released.clear()
                log.debug("Synced sequence for %s: %s", addr, rec.next_seq)

            if rec.released:
                s = min(rec.released)
                rec.released.discard(s)
                log.debug("Reusing released sequence %s for %s", s, addr)
                return s

            s = rec.next_seq
            rec.next_seq += 1
            return s

    async def release_seq(self, addr: str, seq: int) -> None:
        """Give back a sequence that was never submitted.

        The most recent allocation is rolled back, along with any released
        sequences directly below it. An older one is kept and handed out again
        before anything new, so the gap closes without issuing a duplicate.
        """
        rec = self._record_for(addr)
        async with rec.lock:
            if rec.next_seq is None or seq >= rec.next_seq:
                return
            if rec.next_seq == seq + 1:
                rec.next_seq = seq
                while rec.next_seq - 1 in rec.released:
                    rec.next_seq -= 1
                    rec.released.discard(rec.next_seq)
            else:
                rec.released.add(seq)
            log.debug("Released sequence %s for %s (next is %s, %s held)", seq, addr, rec.next_seq, len(rec.released))

    async def resync_seq(self, addr: str) -> None:
        rec = self._record_for(addr)
        async with rec.lock:
            rec.next_seq = None
            rec.released.clear()

    # =========================================================================
    # Ledger state
    # =========================================================================

    async def _validated_ledger_index(self) -> int:
        ss = await self._rpc(ServerState())
        return ss.result["state"]["validated_ledger"]["seq"]

    async def get_fee_info(self) -> FeeInfo:
        r = await self._rpc(Fee())
        return FeeInfo.from_fee_result(r.result)

    async def estimate_fee(self) -> Decimal:
        fee = (await self.get_fee_info()).submission_fee(self.max_fee_drops)
        return Decimal(drops_to_xrp(str(fee)))

    async def get_balance(self, account: str, asset: AssetId | None = None) -> Decimal:
        if asset is None:
            ai = await self._rpc(AccountInfo(account=account, ledger_index="validated"))
            if not ai.is_successful():
                raise LedgerError(f"account_info failed for {account}: {ai.result.get('error')}")
            return Decimal(drops_to_xrp(ai.result["account_data"]["Balance"]))

        if account == asset.issuer:
            # The issuer mints on send.
            return Decimal("Infinity")
        lines = await self._rpc(AccountLines(account=account, peer=asset.issuer, ledger_index="validated"))
        if not lines.is_successful():
            raise LedgerError(f"account_lines failed for {account}: {lines.result.get('error')}")
        for line in lines.result.get("lines", []):
            if line.get("currency") == asset.currency:
                return Decimal(line["balance"])
        return Decimal(0)

    async def resolve_or_create_account(self, owner: str, asset: AssetId | None) -> AccountHandle:
        """Find the destination's holding for ``asset``.

        A missing XRP account is created by the Payment itself. A token holding
        (trust line) can only be created by its owner, so its absence is final.
        """
        if asset is None:
            ai = await self._rpc(AccountInfo(account=owner, ledger_index="validated"))
            if ai.is_successful():
                return AccountHandle(address=owner, exists=True)
            if ai.result.get("error") == "actNotFound":
                return AccountHandle(address=owner, exists=False)
            raise LedgerError(f"account_info failed for {owner}: {ai.result.get('error')}")

        if owner == asset.issuer:
            return AccountHandle(address=owner, exists=True, asset=asset)
        lines = await self._rpc(AccountLines(account=owner, peer=asset.issuer, ledger_index="validated"))
        if not lines.is_successful():
            if lines.result.get("error") == "actNotFound":
                raise TransferRejected(f"{owner} does not exist, cannot hold {asset}")
            raise LedgerError(f"account_lines failed for {owner}: {lines.result.get('error')}")
        if any(line.get("currency") == asset.currency for line in lines.result.get("lines", [])):
            return AccountHandle(address=owner, exists=True, asset=asset)
        raise TransferRejected(f"{owner} has no trust line for {asset}")

    # =========================================================================
    # Submission protocol
    # =========================================================================

    async def get_fresh_credential_token(self, account: str) -> CredentialToken:
        # Fee and ledger first so a failure there does not strand a sequence.
        fee = (await self.get_fee_info()).submission_fee(self.max_fee_drops)
        validated = await self._validated_ledger_index()
        seq = await self.alloc_seq(account)
        return CredentialToken(
            account=account,
            sequence=seq,
            last_ledger_sequence=validated + self.horizon,
            ledger_index=validated,
            fee_drops=fee,
        )

    async def release_credential_token(self, token: CredentialToken) -> None:
        await self.release_seq(token.account, token.sequence)

    def _amount(self, draft: TransferDraft) -> str | IssuedCurrencyAmount:
        if draft.asset is None:
            return xrp_to_drops(draft.quantity)
        return IssuedCurrencyAmount(
            currency=draft.asset.currency,
            issuer=draft.asset.issuer,
            value=format(draft.quantity, "f"),
        )

    def build_payment(self, draft: TransferDraft, token: CredentialToken | None = None) -> Payment:
        if token is None:
            return Payment(account=draft.source, destination=draft.destination, amount=self._amount(draft))
        return Payment(
            account=draft.source,
            destination=draft.destination,
            amount=self._amount(draft),
            sequence=token.sequence,
            fee=str(token.fee_drops),
            last_ledger_sequence=token.last_ledger_sequence,
        )

    async def simulate(self, draft: TransferDraft, token: CredentialToken) -> None:
        if not self._simulate_supported:
            return
        # Sequence is left to the server: concurrent siblings hold lower ones that are not applied yet.
        resp = await self._rpc(Simulate(transaction=self.build_payment(draft)))
        res = resp.result
        if not resp.is_successful():
            err = res.get("error")
            if err in UNSUPPORTED_RPC_ERRORS:
                log.warning("Server does not support simulate (%s); submitting without dry runs", err)
                self._simulate_supported = False
                return
            raise LedgerError(f"simulate failed: {err}")

        er = res.get("engine_result")
        if er == "tesSUCCESS":
            return
        if er in STALE_CREDENTIAL_RESULTS:
            raise CredentialExpired(f"simulate: {er}", engine_result=er)
        if isinstance(er, str) and er.startswith(("tec", "tem", "tef")):
            raise SimulationRejected(f"simulate: {er} {res.get('engine_result_message', '')}".strip(), engine_result=er)
        raise LedgerError(f"simulate: {er}", engine_result=er)

    async def sign(self, draft: TransferDraft, token: CredentialToken, wallet: Wallet) -> SignedTransfer:
        tx = self.build_payment(draft, token).to_xrpl()
        if tx.get("Flags") == 0:
            del tx["Flags"]
        tx["SigningPubKey"] = wallet.public_key
        tx["TxnSignature"] = sign_bytes(bytes.fromhex(encode_for_signing(tx)), wallet.private_key)
        blob = encode(tx)
        return SignedTransfer(tx_hash=_txid_from_signed_blob_hex(blob), blob=blob, token=token)

    async def submit(self, signed: SignedTransfer) -> str:
        """Submit and return the transaction hash to wait on.

        A submission that timed out may still have reached the server, so it is
        handed to ``await_confirmation`` rather than failed.
        """
        try:
            resp = await self._rpc(SubmitOnly(tx_blob=signed.blob), t=self.submit_timeout)
        except (asyncio.TimeoutError, TimeoutError):
            log.warning("submit timed out for %s, waiting on the ledger instead", signed.tx_hash)
            return signed.tx_hash

        res = resp.result
        if not resp.is_successful():
            err = res.get("error")
            if err in MALFORMED_RPC_ERRORS:
                raise TransferRejected(f"submit: {err} {res.get('error_exception', '')}".strip())
            raise LedgerError(f"submit: {err}")

        er = res.get("engine_result")
        kind = classify_engine_result(er)
        if kind == C.ErrorKind.EXPIRED_CREDENTIAL:
            await self.resync_seq(signed.token.account)
            raise CredentialExpired(f"submit: {er}", engine_result=er)
        if kind == C.ErrorKind.PERMANENT:
            raise TransferRejected(f"submit: {er} {res.get('engine_result_message', '')}".strip(), engine_result=er)
        if kind is not None:
            raise LedgerError(f"submit: {er} {res.get('engine_result_message', '')}".strip(), kind=kind, engine_result=er)

        srv_txid = res.get("tx_json", {}).get("hash")
        if isinstance(er, str) and er.startswith(("tel", "ter")) and er != "terQUEUED":
            log.debug("%s held by server with %s, tracking until seq window closes", signed.tx_hash, er)
        return srv_txid or signed.tx_hash

    async def _validated_result(self, tx_hash: str) -> str | None:
        """TransactionResult if validated, None if not (yet)."""
        r = await self._rpc(Tx(transaction=tx_hash))
        result = r.result
        if not r.is_successful() or not result.get("validated"):
            return None
        meta = result.get("meta")
        if not isinstance(meta, dict) or "TransactionResult" not in meta:
            raise LedgerError(f"Validated response missing meta.TransactionResult for {tx_hash}")
        return meta["TransactionResult"]

    def _settle(self, tx_hash: str, meta_result: str) -> str:
        if meta_result == "tesSUCCESS":
            return tx_hash
        raise TransferRejected(f"validated with {meta_result}", engine_result=meta_result)

    async def await_confirmation(self, submission_id: str, token: CredentialToken) -> str:
        try:
            async with asyncio.timeout(self.confirm_timeout):
                while True:
                    try:
                        meta_result = await self._validated_result(submission_id)
                        if meta_result is not None:
                            return self._settle(submission_id, meta_result)

                        if await self._validated_ledger_index() > token.last_ledger_sequence:
                            # Every ledger it could have landed in is validated now; look once more.
                            meta_result = await self._validated_result(submission_id)
                            if meta_result is not None:
                                return self._settle(submission_id, meta_result)
                            await self.resync_seq(token.account)
                            raise CredentialExpired(
                                f"{submission_id} not validated by ledger {token.last_ledger_sequence}"
                            )
                    except (httpx.HTTPError, OSError, asyncio.TimeoutError) as e:
                        log.debug("poll for %s failed: %s", submission_id, e)
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError:
            raise ConfirmationTimeout(
                f"{submission_id} not settled after {self.confirm_timeout}s"
            ) from None
