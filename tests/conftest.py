"""
Shared fixtures and in-memory collaborators for the test suite.

Provides:
  - ``make_address`` / ``off_curve_address`` for valid Solana keys.
  - fake bonus lookup, account existence, blockhash source, submitter and
    history store used by the component and engine tests.
"""

from __future__ import annotations

import asyncio
import base64
import struct
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from holder_rewards.config import DistributionConfig
from holder_rewards.dispatch import SubmissionError
from holder_rewards.ledger import DistributionHistory
from holder_rewards.token_accounts import TOKEN_PROGRAM_ID, SnapshotEntry


def make_address() -> str:
    return str(Keypair().pubkey())


def off_curve_address(seed: bytes = b"pool") -> str:
    pda, _ = Pubkey.find_program_address([seed], Pubkey.from_string(TOKEN_PROGRAM_ID))
    return str(pda)


def token_account_b64(mint: str, owner: str, amount: int) -> str:
    raw = bytes(Pubkey.from_string(mint)) + bytes(Pubkey.from_string(owner)) + struct.pack("<Q", amount)
    return base64.b64encode(raw + bytes(165 - len(raw))).decode("ascii")


class FakeLookup:
    def __init__(self, states: Optional[Dict[str, Tuple[int, float]]] = None, failing: Sequence[str] = ()) -> None:
        self.states = states or {}
        self.failing = set(failing)
        self.calls: List[str] = []

    async def fetch(self, address: str) -> Tuple[int, float]:
        self.calls.append(address)
        await asyncio.sleep(0)
        if address in self.failing:
            raise RuntimeError("account does not exist")
        return self.states.get(address, (0, 1.0))


class FakeExistence:
    def __init__(self, existing: Sequence[Pubkey] = ()) -> None:
        self.existing = set(existing)

    async def exists(self, address: Pubkey) -> bool:
        return address in self.existing


class FakeBlockhashes:
    def __init__(self) -> None:
        self.issued: List[str] = []

    async def get_latest_blockhash(self) -> str:
        blockhash = str(Hash.new_unique())
        self.issued.append(blockhash)
        return blockhash


class FakeSubmitter:
    """
    Scripted submitter: ``script[batch_id]`` is a list of per-attempt
    results, each either an exception to raise or None for success.
    Batches without a script succeed first time.
    """

    def __init__(self, script: Optional[Dict[int, List[Optional[Exception]]]] = None, delay: float = 0.0) -> None:
        self.script = script or {}
        self.delay = delay
        self.attempts: Dict[int, int] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.active_ids: set = set()
        self.overlap = False

    async def submit(self, batch) -> str:
        if batch.batch_id in self.active_ids:
            self.overlap = True
        self.active_ids.add(batch.batch_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            n = self.attempts.get(batch.batch_id, 0)
            self.attempts[batch.batch_id] = n + 1
            steps = self.script.get(batch.batch_id, [])
            if n < len(steps) and steps[n] is not None:
                raise steps[n]
            return f"sig-{batch.batch_id}-{n + 1}"
        finally:
            self.in_flight -= 1
            self.active_ids.discard(batch.batch_id)


def always_fail(times: int = 10) -> List[Optional[Exception]]:
    return [SubmissionError("node is behind") for _ in range(times)]


class MemoryHistoryStore:
    def __init__(self, history: Optional[DistributionHistory] = None, fail_save: bool = False) -> None:
        self.history = history or DistributionHistory()
        self.fail_save = fail_save
        self.saves = 0

    def load(self) -> DistributionHistory:
        return DistributionHistory(
            total_distributed=self.history.total_distributed,
            distributions=list(self.history.distributions),
        )

    def save(self, history: DistributionHistory) -> None:
        if self.fail_save:
            raise OSError("disk full")
        self.saves += 1
        self.history = history


class FakeSource:
    def __init__(self, name: str, entries: Sequence[SnapshotEntry] = (), error: Optional[Exception] = None) -> None:
        self.name = name
        self.entries = list(entries)
        self.error = error
        self.calls = 0

    async def fetch(self, mint: str) -> List[SnapshotEntry]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.entries)


@pytest.fixture()
def fast_config() -> DistributionConfig:
    """Defaults with all waits removed."""
    return DistributionConfig(
        retry_backoff_s=0.0,
        bonus_group_delay_s=0.0,
        attempt_timeout_s=5.0,
        min_distribution=0,
    )


@pytest.fixture()
def sleeps(monkeypatch) -> List[float]:
    """Records every ``asyncio.sleep`` delay and yields control without waiting."""
    real_sleep = asyncio.sleep
    delays: List[float] = []

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays
