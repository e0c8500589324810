"""
One distribution run: snapshot -> score -> allocate -> validate -> batch ->
dispatch -> record.

Per-holder and per-batch problems only show up in the report counts. A
missing snapshot or a failed history write propagates to the caller.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import AbstractSet, List, Optional, Sequence

from .batches import BatchBuilder
from .config import DistributionConfig
from .dispatch import BatchOutcome, Dispatcher
from .ledger import DistributionHistory, DistributionRun, LedgerRecorder, build_run
from .project_constants import TOKEN_DECIMALS
from .recipients import validate_recipients
from .token_accounts import SnapshotSource, SnapshotStats, fetch_snapshot, filter_snapshot
from .weights import AllocatedHolder, BonusLookup, allocate, score_holders

SKIPPED = "skipped"
NO_RECIPIENTS = "no_recipients"
PREVIEW = "preview"
COMPLETED = "completed"

log = logging.getLogger(__name__)


class SnapshotUnavailableError(RuntimeError):
    """No snapshot source returned any token accounts."""


@dataclass
class RunReport:
    status: str
    pool: int = 0
    decimals: int = TOKEN_DECIMALS
    snapshot_source: Optional[str] = None
    snapshot: Optional[SnapshotStats] = None
    dropped_malformed: int = 0
    lookup_defaults: int = 0
    below_min_points: int = 0
    dust: int = 0
    off_curve: int = 0
    invalid: int = 0
    recipients: List[AllocatedHolder] = field(default_factory=list)
    outcomes: List[BatchOutcome] = field(default_factory=list)
    run: Optional[DistributionRun] = None
    history: Optional[DistributionHistory] = None
    duration_s: float = 0.0

    @property
    def allocated_total(self) -> int:
        return sum(r.payout_amount for r in self.recipients)

    @property
    def failed_batches(self) -> int:
        return sum(not o.confirmed for o in self.outcomes)


class DistributionEngine:
    def __init__(
        self,
        sources: Sequence[SnapshotSource],
        lookup: BonusLookup,
        builder: BatchBuilder,
        dispatcher: Dispatcher,
        recorder: LedgerRecorder,
        config: DistributionConfig,
        snapshot_mint: str,
        distribution_mint: str,
        pool_programs: AbstractSet[str] = frozenset(),
        blacklist: AbstractSet[str] = frozenset(),
    ) -> None:
        self.sources = sources
        self.lookup = lookup
        self.builder = builder
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.config = config
        self.snapshot_mint = snapshot_mint
        self.distribution_mint = distribution_mint
        self.pool_programs = pool_programs
        self.blacklist = blacklist

    async def plan(self, pool: int) -> RunReport:
        """Everything up to the validated recipient list; sends nothing."""
        report = RunReport(status=PREVIEW, pool=pool, decimals=self.builder.decimals)

        source_name, entries = await fetch_snapshot(self.sources, self.snapshot_mint)
        if not entries:
            raise SnapshotUnavailableError(
                f"No token accounts found for snapshot mint {self.snapshot_mint}"
            )
        report.snapshot_source = source_name

        holders, stats = filter_snapshot(entries, self.pool_programs, self.blacklist)
        report.snapshot = stats
        log.info(
            "Snapshot: %d accounts, %d pool/AMM filtered, %d blacklisted, %d eligible holders",
            stats.accounts_seen,
            stats.pool_filtered,
            stats.blacklisted,
            stats.holders,
        )

        scoring = await score_holders(holders, self.lookup, self.config)
        report.dropped_malformed = scoring.dropped_malformed
        report.lookup_defaults = scoring.lookup_defaults

        allocation = allocate(scoring.holders, pool, self.config)
        report.below_min_points = allocation.below_min_points
        report.dust = allocation.dust

        validation = validate_recipients(allocation.recipients)
        report.off_curve = validation.off_curve
        report.invalid = validation.invalid
        report.recipients = validation.valid
        log.info("Valid recipients: %d", len(report.recipients))
        return report

    async def run(self, pool: Optional[int]) -> RunReport:
        if not pool or pool <= 0:
            log.info("Skipping distribution: nothing available above the minimum threshold")
            return RunReport(status=SKIPPED, pool=pool or 0, decimals=self.builder.decimals)

        started = time.monotonic()
        report = await self.plan(pool)
        if not report.recipients:
            report.status = NO_RECIPIENTS
            log.info("No eligible recipients; nothing sent")
            return report

        # Fail on an unreadable history before anything is sent.
        self.recorder.store.load()

        batches = await self.builder.build(report.recipients)
        report.outcomes = await self.dispatcher.dispatch(batches)

        report.run = build_run(
            batches,
            report.outcomes,
            snapshot_token=self.snapshot_mint,
            distributed_token=self.distribution_mint,
            decimals=self.builder.decimals,
        )
        report.history = self.recorder.record(report.run)
        report.status = COMPLETED
        report.duration_s = time.monotonic() - started
        return report
