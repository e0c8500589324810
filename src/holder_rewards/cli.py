from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .batches import BatchBuilder, RpcAccountExistence, get_associated_token_address
from .config import DistributionConfig, Settings, history_path_from_env, load_keypair
from .dispatch import Dispatcher, RpcSubmitter
from .engine import COMPLETED, DistributionEngine, RunReport
from .ledger import HistoryPersistenceError, JsonHistoryStore, LedgerRecorder
from .project_constants import (
    AMM_PROGRAMS,
    BLACKLISTED_ADDRESSES,
    DISTRIBUTION_MINT,
    EXCLUDED_WALLETS_FILE,
    HISTORY_FILE,
    SNAPSHOT_MINT,
    TOKEN_DECIMALS,
)
from .rpc import AsyncRpcClient
from .spells import SpellStateLookup
from .token_accounts import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    default_sources,
    load_excluded_wallets,
    short,
)
from .weights import distributable_pool

EXIT_BATCH_FAILURES = 1
EXIT_HISTORY_NOT_SAVED = 2


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def to_tokens(raw_amount: int, decimals: int = TOKEN_DECIMALS) -> float:
    return raw_amount / (10**decimals)


async def detect_token_program(rpc: AsyncRpcClient, mint: str) -> Pubkey:
    info = await rpc.get_account_info_base64(mint)
    if info is None:
        raise RuntimeError(f"Distribution mint {mint} not found.")
    if info["owner"] == TOKEN_2022_PROGRAM_ID:
        return Pubkey.from_string(TOKEN_2022_PROGRAM_ID)
    if info["owner"] == TOKEN_PROGRAM_ID:
        return Pubkey.from_string(TOKEN_PROGRAM_ID)
    raise RuntimeError(f"Unknown token program for mint {mint}: {info['owner']}")


async def distributor_balance(
    rpc: AsyncRpcClient, token_account: Pubkey, token_program: Pubkey
) -> Tuple[int, int]:
    """Returns (raw balance, decimals) of the distributor's token account."""
    info = await rpc.get_account_info_base64(str(token_account))
    if info is None:
        raise RuntimeError(f"Token account does not exist: {token_account}")
    if info["owner"] != str(token_program):
        raise RuntimeError(
            f"Token account program mismatch: mint uses {token_program}, "
            f"account uses {info['owner']}"
        )
    balance = await rpc.get_token_account_balance(str(token_account))
    return balance["amount"], balance["decimals"]


def blacklist_from(path: str | None) -> frozenset[str]:
    extra: set[str] = set()
    if path:
        try:
            extra = load_excluded_wallets(path)
        except FileNotFoundError:
            logging.getLogger("distribute").debug("No exclusion file at %s", path)
    return frozenset(BLACKLISTED_ADDRESSES | extra)


async def run_distribution(args: argparse.Namespace, preview_only: bool) -> RunReport:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    config = DistributionConfig.from_env()
    log = logging.getLogger("distribute")

    payer: Keypair = load_keypair(settings.keypair_path)
    mint = Pubkey.from_string(args.distribution_mint)
    log.info("Distributor wallet : %s", payer.pubkey())
    log.info("Snapshot token     : %s", args.snapshot_mint)
    log.info("Distribution token : %s", mint)

    async with AsyncRpcClient(settings.rpc_url, timeout_s=args.timeout) as rpc:
        token_program = await detect_token_program(rpc, str(mint))
        if settings.distributor_token_account:
            source = Pubkey.from_string(settings.distributor_token_account)
        else:
            source = get_associated_token_address(payer.pubkey(), mint, token_program)

        balance, decimals = await distributor_balance(rpc, source, token_program)
        log.info("Distributor balance: %s tokens", f"{to_tokens(balance, decimals):,}")

        pool = distributable_pool(balance, config.reserve, config.min_distribution)
        if pool is None:
            log.info(
                "Balance %s is not above the minimum %s; skipping",
                to_tokens(balance, decimals),
                to_tokens(config.min_distribution, decimals),
            )

        builder = BatchBuilder(
            existence=RpcAccountExistence(rpc),
            blockhashes=rpc,
            payer=payer.pubkey(),
            source_token_account=source,
            mint=mint,
            token_program=token_program,
            decimals=decimals,
            transfers_per_tx=config.transfers_per_tx,
        )
        dispatcher = Dispatcher(
            RpcSubmitter(rpc, payer, poll_s=config.confirm_poll_s),
            config,
            refresh=builder.refresh,
        )

        async with SpellStateLookup(rpc) as lookup:
            engine = DistributionEngine(
                sources=default_sources(rpc),
                lookup=lookup,
                builder=builder,
                dispatcher=dispatcher,
                recorder=LedgerRecorder(JsonHistoryStore(settings.history_path)),
                config=config,
                snapshot_mint=args.snapshot_mint,
                distribution_mint=str(mint),
                pool_programs=AMM_PROGRAMS,
                blacklist=blacklist_from(args.excluded_wallets_file),
            )
            if preview_only:
                return await engine.plan(pool or 0)
            return await engine.run(pool)


def report_to_dict(report: RunReport) -> Dict[str, Any]:
    return {
        "metadata": {
            "tool": "solana-holder-rewards",
            "generated_at_utc": datetime.now(timezone.utc).isoformat(),
            "status": report.status,
            "pool": report.pool,
            "decimals": report.decimals,
            "snapshot_source": report.snapshot_source,
            "duration_s": round(report.duration_s, 1),
        },
        "skipped": {
            "malformed": report.dropped_malformed,
            "below_min_points": report.below_min_points,
            "dust": report.dust,
            "off_curve": report.off_curve,
            "invalid": report.invalid,
        },
        "recipients": [
            {
                "address": r.address,
                "raw_amount": r.raw_amount,
                "bonus_amount": r.bonus_amount,
                "multiplier": r.multiplier,
                "points": str(r.points),
                "share": float(r.share_fraction),
                "payout": r.payout_amount,
                "payout_tokens": to_tokens(r.payout_amount, report.decimals),
            }
            for r in report.recipients
        ],
        "run": report.run.to_dict() if report.run else None,
    }


def print_allocations(report: RunReport, limit: int = 10) -> None:
    ranked = sorted(report.recipients, key=lambda r: r.payout_amount, reverse=True)
    print("========================================")
    print("DISTRIBUTION PREVIEW")
    print("========================================")
    print(f"Pool          : {to_tokens(report.pool, report.decimals)}")
    print(f"Recipients    : {len(report.recipients)}")
    print(f"Allocated     : {to_tokens(report.allocated_total, report.decimals)}")
    print(f"Skipped       : dust={report.dust} off-curve={report.off_curve} invalid={report.invalid}")
    print("----------------------------------------")
    for i, r in enumerate(ranked[:limit], 1):
        print(
            f"{i:>2}. {short(r.address)}: {float(r.share_fraction) * 100:.2f}% "
            f"= {to_tokens(r.payout_amount, report.decimals):.6f} tokens (x{r.multiplier:.2f})"
        )
    if len(ranked) > limit:
        print(f"... and {len(ranked) - limit} more recipients")


def cmd_preview(args: argparse.Namespace) -> int:
    report = asyncio.run(run_distribution(args, preview_only=True))
    print_allocations(report)
    return 0


def cmd_distribute(args: argparse.Namespace) -> int:
    try:
        report = asyncio.run(run_distribution(args, preview_only=False))
    except HistoryPersistenceError as e:
        print("❌ TRANSFERS LANDED BUT HISTORY WAS NOT SAVED", file=sys.stderr)
        print(json.dumps(e.run.to_dict(), indent=2), file=sys.stderr)
        return EXIT_HISTORY_NOT_SAVED

    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(report_to_dict(report), f, indent=2)

    if report.status != COMPLETED:
        print(f"Nothing distributed ({report.status}).")
        return 0

    run = report.run
    history = report.history
    confirmed = len(report.outcomes) - report.failed_batches
    print("========================================")
    print("DISTRIBUTION COMPLETE")
    print("========================================")
    print(f"✅ Distributed          : {to_tokens(run.total_amount, run.decimals):.6f} tokens")
    print(f"✅ Recipients           : {run.recipient_count}")
    print(f"✅ Transactions         : {confirmed}/{len(report.outcomes)}")
    print(f"✅ Time taken           : {report.duration_s:.1f} seconds")
    print(f"✅ All-time distributed : {to_tokens(history.total_distributed, run.decimals):.6f} tokens")
    if args.out:
        print(f"🧾 Wrote report: {args.out}")
    if report.failed_batches:
        print(f"⚠️  {report.failed_batches} transactions failed")
        return EXIT_BATCH_FAILURES
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    path = args.history_file or history_path_from_env()
    history = JsonHistoryStore(path).load()
    decimals = history.distributions[-1].decimals if history.distributions else TOKEN_DECIMALS
    print(f"History file: {path}")
    print(f"Total distributed all-time: {to_tokens(history.total_distributed, decimals):.6f} tokens")
    print(f"Runs: {len(history.distributions)}")
    for run in history.distributions[-args.last :]:
        print(
            f"  {run.timestamp}  {to_tokens(run.total_amount, run.decimals):>16.6f}  "
            f"recipients={run.recipient_count}  txs={len(run.tx_signatures)}"
        )
    return 0


def positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return n


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="holder-rewards",
        description="Points-weighted token distribution to Solana token holders.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--rpc-url", default=None, help="Override RPC URL (else use env).")
    p.add_argument("--timeout", type=float, default=60.0, help="RPC timeout seconds.")

    sub = p.add_subparsers(dest="cmd", required=True)

    for name, help_text, func in (
        ("preview", "Compute allocations without sending anything.", cmd_preview),
        ("distribute", "Run a full distribution and record it.", cmd_distribute),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("--snapshot-mint", default=SNAPSHOT_MINT, help="Mint whose holders are paid.")
        s.add_argument("--distribution-mint", default=DISTRIBUTION_MINT, help="Mint that is paid out.")
        s.add_argument(
            "--excluded-wallets-file",
            default=EXCLUDED_WALLETS_FILE,
            help="Extra addresses to exclude, one per line.",
        )
        s.set_defaults(func=func)
        if name == "distribute":
            s.add_argument("--out", default=None, help="Write a JSON run report here.")

    h = sub.add_parser("history", help="Show the distribution history.")
    h.add_argument(
        "--history-file",
        default=None,
        help=f"History JSON path (default: $HISTORY_FILE or {HISTORY_FILE}).",
    )
    h.add_argument("--last", type=positive_int, default=10, help="Number of recent runs to show.")
    h.set_defaults(func=cmd_history)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    raise SystemExit(args.func(args))
