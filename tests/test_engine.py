from __future__ import annotations

import asyncio
import dataclasses

import pytest
from conftest import (
    FakeBlockhashes,
    FakeExistence,
    FakeLookup,
    FakeSource,
    FakeSubmitter,
    MemoryHistoryStore,
    always_fail,
    make_address,
    off_curve_address,
)
from solders.pubkey import Pubkey

from holder_rewards.batches import BatchBuilder
from holder_rewards.dispatch import Dispatcher
from holder_rewards.engine import (
    COMPLETED,
    NO_RECIPIENTS,
    SKIPPED,
    DistributionEngine,
    SnapshotUnavailableError,
)
from holder_rewards.ledger import HistoryPersistenceError, LedgerRecorder
from holder_rewards.project_constants import AMM_PROGRAMS
from holder_rewards.token_accounts import TOKEN_PROGRAM_ID, SnapshotEntry

SNAPSHOT_MINT = "WXsX5HSoVquYRGuJXJrCSogT1M6nZiPRrfZhQsPcXAU"
DIST_MINT = Pubkey.from_string("GoLDppdjB1vDTPSGxyMJFqdnj134yH6Prg9eqsGDiw6A")
RAYDIUM = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"


def make_engine(config, entries, submitter=None, store=None, lookup=None, blacklist=frozenset(), blockhashes=None):
    payer = Pubkey.new_unique()
    builder = BatchBuilder(
        existence=FakeExistence(),
        blockhashes=blockhashes or FakeBlockhashes(),
        payer=payer,
        source_token_account=Pubkey.new_unique(),
        mint=DIST_MINT,
        token_program=Pubkey.from_string(TOKEN_PROGRAM_ID),
        decimals=6,
        transfers_per_tx=config.transfers_per_tx,
    )
    submitter = submitter or FakeSubmitter()
    store = store or MemoryHistoryStore()
    engine = DistributionEngine(
        sources=[FakeSource("token-2022"), FakeSource("spl-token", entries)],
        lookup=lookup or FakeLookup(),
        builder=builder,
        dispatcher=Dispatcher(submitter, config, refresh=builder.refresh),
        recorder=LedgerRecorder(store),
        config=config,
        snapshot_mint=SNAPSHOT_MINT,
        distribution_mint=str(DIST_MINT),
        pool_programs=AMM_PROGRAMS,
        blacklist=blacklist,
    )
    return engine, submitter, store


def holders(n, amount=1_000):
    return [SnapshotEntry(make_address(), amount, TOKEN_PROGRAM_ID) for _ in range(n)]


def test_full_run_records_only_confirmed_batches(fast_config):
    entries = holders(7)
    # batch 2 never lands
    engine, submitter, store = make_engine(fast_config, entries, FakeSubmitter({2: always_fail()}))

    report = asyncio.run(engine.run(7_000))

    assert report.status == COMPLETED
    assert report.snapshot_source == "spl-token"
    assert len(report.recipients) == 7
    assert [o.status for o in report.outcomes] == ["confirmed", "failed", "confirmed"]
    assert report.failed_batches == 1
    # 7 equal holders, 1000 each
    assert report.run.total_amount == 4 * 1_000
    assert report.run.recipient_count == 4
    assert store.history.total_distributed == 4_000
    assert len(store.history.distributions) == 1
    assert report.run.tx_signatures == ["sig-1-1", "sig-3-1"]


def test_filters_feed_through_to_recipients(fast_config):
    banned = make_address()
    keep = holders(2)
    entries = keep + [
        SnapshotEntry(banned, 10_000, TOKEN_PROGRAM_ID),
        SnapshotEntry(RAYDIUM, 10_000, TOKEN_PROGRAM_ID),
        SnapshotEntry(off_curve_address(), 10_000, TOKEN_PROGRAM_ID),
        SnapshotEntry(make_address(), 0, TOKEN_PROGRAM_ID),
    ]
    engine, _, _ = make_engine(fast_config, entries, blacklist={banned})

    report = asyncio.run(engine.run(1_000_000))

    assert sorted(r.address for r in report.recipients) == sorted(e.owner for e in keep)
    assert report.snapshot.blacklisted == 1
    assert report.snapshot.pool_filtered == 1
    assert report.snapshot.zero_balance == 1
    assert report.off_curve == 1
    # the off-curve holder's share is not redistributed
    assert report.run.total_amount < 1_000_000


def test_skip_when_pool_missing(fast_config):
    engine, submitter, store = make_engine(fast_config, holders(3))

    report = asyncio.run(engine.run(None))

    assert report.status == SKIPPED
    assert submitter.attempts == {}
    assert store.saves == 0


def test_zero_points_is_a_quiet_no_op(fast_config):
    config = dataclasses.replace(fast_config, holder_weight=0, bonus_weight=0)
    engine, submitter, store = make_engine(config, holders(3))

    report = asyncio.run(engine.run(1_000))

    assert report.status == NO_RECIPIENTS
    assert report.recipients == []
    assert submitter.attempts == {}
    assert store.saves == 0


def test_missing_snapshot_is_fatal(fast_config):
    engine, _, _ = make_engine(fast_config, [])
    with pytest.raises(SnapshotUnavailableError):
        asyncio.run(engine.run(1_000))


def test_history_failure_surfaces_with_confirmed_signatures(fast_config):
    engine, _, _ = make_engine(fast_config, holders(4), store=MemoryHistoryStore(fail_save=True))

    with pytest.raises(HistoryPersistenceError) as exc:
        asyncio.run(engine.run(4_000))

    assert exc.value.run.tx_signatures == ["sig-1-1", "sig-2-1"]
    assert exc.value.run.total_amount == 4_000


def test_unreadable_history_aborts_before_sending(fast_config):
    class Broken(MemoryHistoryStore):
        def load(self):
            raise RuntimeError("corrupt history")

    engine, submitter, _ = make_engine(fast_config, holders(2), store=Broken())

    with pytest.raises(RuntimeError):
        asyncio.run(engine.run(1_000))
    assert submitter.attempts == {}


def test_bonus_and_multiplier_shift_shares(fast_config):
    a, b = make_address(), make_address()
    entries = [SnapshotEntry(a, 1000, TOKEN_PROGRAM_ID), SnapshotEntry(b, 500, TOKEN_PROGRAM_ID)]
    engine, _, _ = make_engine(fast_config, entries, lookup=FakeLookup({b: (1000, 1.5)}))

    report = asyncio.run(engine.plan(1000))

    payouts = {r.address: r.payout_amount for r in report.recipients}
    assert payouts == {a: 210, b: 789}


def test_blockhashes_are_fetched_as_batches_go_out(fast_config):
    config = dataclasses.replace(fast_config, concurrency=2)
    events = []

    class Hashes(FakeBlockhashes):
        async def get_latest_blockhash(self):
            events.append("blockhash")
            return await super().get_latest_blockhash()

    class Submitter(FakeSubmitter):
        async def submit(self, b):
            events.append("submit")
            return await super().submit(b)

    engine, _, _ = make_engine(config, holders(30), Submitter(), blockhashes=Hashes())

    report = asyncio.run(engine.run(30_000))

    assert report.status == COMPLETED
    assert len(report.outcomes) == 10
    assert events.count("blockhash") == 10
    # sending starts before the later batches have a blockhash
    assert events.index("submit") <= config.concurrency
