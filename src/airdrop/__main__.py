import argparse
import asyncio
import logging
import sqlite3
import sys
from decimal import Decimal
from pathlib import Path

import httpx
import pydantic
from xrpl.constants import CryptoAlgorithm, XRPLException
from xrpl.wallet import Wallet

from airdrop.config import cfg, load_config, merge_config
from airdrop.constants import AmountMode
from airdrop.coordinator import BatchCoordinator, plan_recipients, preflight
from airdrop.errors import CheckpointError, InsufficientBalance, LedgerError, ValidationError
from airdrop.logging_config import setup_logging
from airdrop.models import AssetId, DistributionJob, RunSummary
from airdrop.progress import ProgressLedger
from airdrop.recipients import load_weights
from airdrop.result_store import SQLiteResultStore
from airdrop.xrpl_ledger import XrplLedgerClient, probe_endpoint

log = logging.getLogger("airdrop.main")

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_ABORTED = 2
EXIT_CHECKPOINT = 3


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="airdrop", description="Send XRP or an issued token to a list of holders.")
    parser.add_argument("-c", "--config",
                        type=Path,
                        help="TOML file merged over the packaged defaults.",
                        )
    parser.add_argument("-i", "--input",
                        type=Path,
                        help="JSON object of address -> weight.",
                        )
    parser.add_argument("-u", "--url",
                        help="rippled JSON-RPC (http) or websocket (ws) URL.",
                        )
    parser.add_argument("-a", "--asset",
                        help="Issued currency as CUR.rIssuer. Omit to send XRP.",
                        )
    parser.add_argument("-m", "--mode",
                        choices=[m.value for m in AmountMode],
                        help="fixed: weight * amount. percent: amount%% of the sender balance split by weight.",
                        )
    parser.add_argument("-n", "--amount",
                        help="Multiplier (fixed) or percentage (percent).",
                        )
    parser.add_argument("-w", "--concurrency",
                        type=int,
                        help="Maximum transfers in flight.",
                        )
    parser.add_argument("-b", "--batch-size",
                        type=int,
                        help="Recipients per checkpointed batch.",
                        )
    parser.add_argument("-r", "--max-retries",
                        type=int,
                        help="Transient failures allowed per recipient.",
                        )
    parser.add_argument("--max-expiry-retries",
                        type=int,
                        help="Credential expiries allowed per recipient (0 = unbounded).",
                        )
    parser.add_argument("--balance-guard",
                        action="store_true",
                        help="Check the sender balance before every transfer.",
                        )
    parser.add_argument("--strict-balance",
                        action="store_true",
                        help="Abort instead of warning when the pre-flight balance check fails.",
                        )
    parser.add_argument("--resume",
                        action="store_true",
                        help="Skip recipients the result log already shows as paid by this sender.",
                        )
    parser.add_argument("--no-probe",
                        action="store_true",
                        help="Do not wait for the endpoint to answer server_info first.",
                        )
    return parser.parse_args(argv)


def overrides(a) -> dict:
    o: dict = {}
    led = {}
    dist = {}
    paths = {}
    if a.url is not None:
        led["url"] = a.url
    if a.asset is not None:
        dist["asset"] = a.asset
    if a.mode is not None:
        dist["amount_mode"] = a.mode
    if a.amount is not None:
        dist["amount"] = a.amount
    if a.concurrency is not None:
        dist["concurrency"] = a.concurrency
    if a.batch_size is not None:
        dist["batch_size"] = a.batch_size
    if a.max_retries is not None:
        dist["max_retries"] = a.max_retries
    if a.max_expiry_retries is not None:
        dist["max_expiry_retries"] = a.max_expiry_retries
    if a.balance_guard:
        dist["balance_guard"] = True
    if a.input is not None:
        paths["input"] = str(a.input)
    for key, section in (("ledger", led), ("distribution", dist), ("paths", paths)):
        if section:
            o[key] = section
    return o


def load_wallets(conf: dict) -> list[Wallet]:
    seeds = conf["sender"]["seeds"]
    if not seeds:
        raise ValidationError("No sender seed configured (set AIRDROP_SENDER_SEED or [sender] seeds)")
    algo = conf["sender"].get("algorithm") or None
    try:
        return [Wallet.from_seed(s, algorithm=CryptoAlgorithm(algo) if algo else None) for s in seeds]
    except (XRPLException, ValueError) as e:
        raise ValidationError(f"Invalid sender seed: {e}") from None


def make_job(conf: dict, wallet: Wallet) -> DistributionJob:
    d = conf["distribution"]
    return DistributionJob(
        sender=wallet,
        asset=AssetId.parse(d["asset"]) if d.get("asset") else None,
        amount_mode=AmountMode(d["amount_mode"]),
        amount=Decimal(str(d["amount"])),
        concurrency=d["concurrency"],
        batch_size=d["batch_size"],
        max_retries=d["max_retries"],
        max_expiry_retries=d["max_expiry_retries"],
        batch_pause=d["batch_pause"],
        backoff_base=d["backoff_base"],
        expiry_pause=d["expiry_pause"],
        balance_guard=d["balance_guard"],
    )


def sender_path(path: str | Path, address: str, multi: bool) -> Path:
    path = Path(path)
    return path.with_name(f"{path.stem}_{address}{path.suffix}") if multi else path


async def run_sender(conf: dict, args, ledger: XrplLedgerClient, store: SQLiteResultStore,
                     job: DistributionJob, weights: dict[str, Decimal], multi: bool) -> RunSummary:
    addr = job.sender_address
    p = conf["paths"]
    progress = ProgressLedger(
        sender_path(p["remaining"], addr, multi),
        sender_path(p["retry"], addr, multi),
        store=store,
        sender=addr,
        asset=job.asset_label,
    )
    if args.resume:
        progress.restore(await store.succeeded_addresses(addr, job.asset_label))

    recipients = await plan_recipients(ledger, job, weights, progress, resume=args.resume)
    todo = [r for r in recipients if not progress.is_succeeded(r.address)]
    await preflight(ledger, job, todo, strict=args.strict_balance)
    return await BatchCoordinator(ledger, progress).run(job, recipients)


async def run(conf: dict, args) -> int:
    weights = load_weights(conf["paths"]["input"])
    wallets = load_wallets(conf)
    jobs = [make_job(conf, w) for w in wallets]

    led = conf["ledger"]
    if not args.no_probe and led["url"].startswith(("http://", "https://")):
        await probe_endpoint(led["url"], int(led["probe_retries"]), float(led["probe_delay"]))

    store = SQLiteResultStore(conf["paths"]["results_db"])
    summaries = []
    async with XrplLedgerClient.from_config(conf) as ledger:
        for job in jobs:
            summaries.append(await run_sender(conf, args, ledger, store, job, weights, multi=len(jobs) > 1))

    for s in summaries:
        log.info("%s", s.as_dict())
    return EXIT_FAILURES if any(s.failed for s in summaries) else EXIT_OK


def main(argv=None) -> int:
    args = parse_args(argv)
    logfile = setup_logging()
    log.debug("Logging to %s", logfile)
    try:
        conf = load_config(args.config) if args.config else cfg
        conf = merge_config(conf, overrides(args))
        return asyncio.run(run(conf, args))
    except (ValidationError, pydantic.ValidationError) as e:
        log.error("Invalid job: %s", e)
        return EXIT_ABORTED
    except InsufficientBalance as e:
        log.error("Aborting: %s", e)
        return EXIT_ABORTED
    except (httpx.HTTPError, TimeoutError) as e:
        log.error("Ledger endpoint unreachable: %s", e)
        return EXIT_ABORTED
    except LedgerError as e:
        log.error("Ledger refused a pre-flight query: %s", e)
        return EXIT_ABORTED
    except (CheckpointError, sqlite3.Error) as e:
        log.critical("Checkpoint failed, aborting: %s", e)
        return EXIT_CHECKPOINT
    except KeyboardInterrupt:
        log.warning("Interrupted. The last written checkpoint is still valid for resuming.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
