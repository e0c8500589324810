from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Protocol, Sequence, Tuple

from .batches import TransferBatch
from .dispatch import BatchOutcome
from .project_constants import TOKEN_DECIMALS

log = logging.getLogger(__name__)


class HistoryPersistenceError(RuntimeError):
    """Saving the history failed after transfers already landed on chain."""

    def __init__(self, message: str, run: "DistributionRun") -> None:
        super().__init__(message)
        self.run = run


@dataclass(frozen=True)
class DistributionRun:
    timestamp: str
    total_amount: int
    recipient_count: int
    batch_results: Tuple[Dict[str, Any], ...]
    snapshot_token: str
    distributed_token: str
    decimals: int = TOKEN_DECIMALS

    @property
    def tx_signatures(self) -> List[str]:
        return [r["signature"] for r in self.batch_results if r.get("signature")]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "total_amount": self.total_amount,
            "recipient_count": self.recipient_count,
            "tx_signatures": self.tx_signatures,
            "batch_results": list(self.batch_results),
            "snapshot_token": self.snapshot_token,
            "distributed_token": self.distributed_token,
            "decimals": self.decimals,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "DistributionRun":
        return DistributionRun(
            timestamp=d["timestamp"],
            total_amount=int(d["total_amount"]),
            recipient_count=int(d["recipient_count"]),
            batch_results=tuple(d.get("batch_results", [])),
            snapshot_token=d.get("snapshot_token", ""),
            distributed_token=d.get("distributed_token", ""),
            decimals=int(d.get("decimals", TOKEN_DECIMALS)),
        )


@dataclass
class DistributionHistory:
    total_distributed: int = 0
    distributions: List[DistributionRun] = field(default_factory=list)

    def append(self, run: DistributionRun) -> None:
        self.total_distributed += run.total_amount
        self.distributions.append(run)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_distributed": self.total_distributed,
            "distributions": [r.to_dict() for r in self.distributions],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "DistributionHistory":
        return DistributionHistory(
            total_distributed=int(d.get("total_distributed", 0)),
            distributions=[DistributionRun.from_dict(r) for r in d.get("distributions", [])],
        )


class HistoryStore(Protocol):
    def load(self) -> DistributionHistory: ...

    def save(self, history: DistributionHistory) -> None: ...


class JsonHistoryStore:
    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> DistributionHistory:
        if not os.path.exists(self.path):
            return DistributionHistory()
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise RuntimeError(f"History file {self.path} is not valid JSON: {e}") from e
        return DistributionHistory.from_dict(data)

    def save(self, history: DistributionHistory) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(prefix=".history-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(history.to_dict(), f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def build_run(
    batches: Sequence[TransferBatch],
    outcomes: Sequence[BatchOutcome],
    snapshot_token: str,
    distributed_token: str,
    decimals: int = TOKEN_DECIMALS,
    now: datetime | None = None,
) -> DistributionRun:
    """Only recipients of confirmed batches count as distributed."""
    by_id = {b.batch_id: b for b in batches}
    total = 0
    recipients = 0
    results: List[Dict[str, Any]] = []

    for outcome in outcomes:
        if outcome.confirmed:
            batch = by_id[outcome.batch_id]
            total += batch.total_amount
            recipients += len(batch.recipients)
        results.append(
            {
                "batch_id": outcome.batch_id,
                "status": outcome.status,
                "signature": outcome.signature,
                "attempts": outcome.attempts,
                "error": outcome.error,
            }
        )

    return DistributionRun(
        timestamp=(now or datetime.now(timezone.utc)).isoformat(),
        total_amount=total,
        recipient_count=recipients,
        batch_results=tuple(results),
        snapshot_token=snapshot_token,
        distributed_token=distributed_token,
        decimals=decimals,
    )


class LedgerRecorder:
    def __init__(self, store: HistoryStore) -> None:
        self.store = store

    def record(self, run: DistributionRun) -> DistributionHistory:
        """Appends the run and persists. Must be the last step of a run."""
        try:
            history = self.store.load()
            history.append(run)
            self.store.save(history)
        except Exception as e:
            log.error(
                "FAILED TO SAVE DISTRIBUTION HISTORY; %d confirmed signatures: %s",
                len(run.tx_signatures),
                ", ".join(run.tx_signatures),
            )
            raise HistoryPersistenceError(f"could not persist distribution history: {e}", run) from e

        log.info("Total distributed all-time: %d", history.total_distributed)
        return history
