from __future__ import annotations

import base64
import binascii
import logging
import struct
from collections import defaultdict
from dataclasses import dataclass
from typing import AbstractSet, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import base58

from .rpc import AsyncRpcClient, RpcError

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
CLASSIC_TOKEN_ACCOUNT_SIZE = 165

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotEntry:
    owner: str
    amount: int
    program: str  # program owning the token account


@dataclass(frozen=True)
class HolderRecord:
    address: str
    raw_amount: int


@dataclass(frozen=True)
class SnapshotStats:
    accounts_seen: int
    zero_balance: int
    pool_filtered: int
    blacklisted: int
    holders: int


def parse_owner_and_amount(account_data: bytes) -> Tuple[str, int] | None:
    """
    Standard token account layout (works for classic; Token-2022 keeps these offsets too).
    Mint(0-32) | Owner(32-64) | Amount(64-72)
    """
    if len(account_data) < 72:
        return None

    owner_bytes = account_data[32:64]
    amount_bytes = account_data[64:72]
    owner = base58.b58encode(owner_bytes).decode("ascii")
    amount = struct.unpack("<Q", amount_bytes)[0]
    return owner, amount


def decode_entries(accounts: Iterable[Dict[str, str]]) -> List[SnapshotEntry]:
    """Turns raw getProgramAccounts items into snapshot entries, skipping junk."""
    entries: List[SnapshotEntry] = []
    for item in accounts:
        try:
            raw = base64.b64decode(item["data"])
        except (binascii.Error, ValueError):
            continue

        parsed = parse_owner_and_amount(raw)
        if not parsed:
            continue

        owner, amount = parsed
        entries.append(SnapshotEntry(owner=owner, amount=int(amount), program=item["owner"]))
    return entries


class SnapshotSource(Protocol):
    name: str

    async def fetch(self, mint: str) -> List[SnapshotEntry]: ...


class ProgramAccountsSource:
    """Scans every token account of a mint under one token program."""

    def __init__(
        self,
        rpc: AsyncRpcClient,
        program_id: str,
        name: str,
        data_size: Optional[int] = None,
    ) -> None:
        self.rpc = rpc
        self.program_id = program_id
        self.name = name
        self.data_size = data_size

    async def fetch(self, mint: str) -> List[SnapshotEntry]:
        accounts = await self.rpc.get_program_accounts_base64(
            program_id=self.program_id,
            mint=mint,
            data_size=self.data_size,
        )
        return decode_entries(accounts)


def default_sources(rpc: AsyncRpcClient) -> List[ProgramAccountsSource]:
    # Token-2022 first, then the classic program.
    return [
        ProgramAccountsSource(rpc, TOKEN_2022_PROGRAM_ID, name="token-2022"),
        ProgramAccountsSource(
            rpc,
            TOKEN_PROGRAM_ID,
            name="spl-token",
            data_size=CLASSIC_TOKEN_ACCOUNT_SIZE,
        ),
    ]


async def fetch_snapshot(
    sources: Sequence[SnapshotSource], mint: str
) -> Tuple[str | None, List[SnapshotEntry]]:
    """Returns the first non-empty snapshot from an ordered list of sources."""
    for source in sources:
        log.info("Scanning %s accounts for %s...", source.name, mint)
        try:
            entries = await source.fetch(mint)
        except RpcError as e:
            log.warning("Snapshot source %s failed: %s", source.name, e)
            continue
        if entries:
            log.info("Found %d accounts via %s", len(entries), source.name)
            return source.name, entries
        log.info("No accounts via %s", source.name)
    return None, []


def filter_snapshot(
    entries: Iterable[SnapshotEntry],
    pool_programs: AbstractSet[str],
    blacklist: AbstractSet[str],
) -> Tuple[List[HolderRecord], SnapshotStats]:
    """Drops zero balances, pools and blacklisted owners; merges by owner."""
    balances: Dict[str, int] = defaultdict(int)
    seen = zero = pooled = blacklisted = 0

    for entry in entries:
        seen += 1
        if entry.amount <= 0:
            zero += 1
            continue
        if entry.owner in blacklist:
            blacklisted += 1
            log.debug("Blacklisted address excluded: %s", short(entry.owner))
            continue
        if entry.owner in pool_programs or entry.program in pool_programs:
            pooled += 1
            continue
        balances[entry.owner] += entry.amount

    # Deterministic ordering (critical for reproducibility)
    holders = [HolderRecord(addr, bal) for addr, bal in sorted(balances.items())]
    stats = SnapshotStats(
        accounts_seen=seen,
        zero_balance=zero,
        pool_filtered=pooled,
        blacklisted=blacklisted,
        holders=len(holders),
    )
    return holders, stats


def load_excluded_wallets(path: str | None) -> set[str]:
    if not path:
        return set()
    out: set[str] = set()
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            w = line.strip()
            if not w or w.startswith("#"):
                continue
            out.add(w)
    return out


def short(address: str) -> str:
    return f"{address[:8]}...{address[-4:]}"
