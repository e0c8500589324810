from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

from .batches import TransferBatch
from .config import DistributionConfig
from .rpc import AsyncRpcClient, RpcError, TransientRpcError

CONFIRMED = "confirmed"
FAILED = "failed"

_LANDED = ("confirmed", "finalized")

log = logging.getLogger(__name__)


class SubmissionError(RuntimeError):
    def __init__(
        self,
        message: str,
        retryable: bool = True,
        needs_new_blockhash: bool = False,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.needs_new_blockhash = needs_new_blockhash


@dataclass(frozen=True)
class BatchOutcome:
    batch_id: int
    status: str
    signature: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status == CONFIRMED


class Submitter(Protocol):
    async def submit(self, batch: TransferBatch) -> str: ...


class RpcSubmitter:
    """Signs a batch as one legacy transaction, sends it and waits for confirmation."""

    def __init__(self, rpc: AsyncRpcClient, payer: Keypair, poll_s: float = 1.0) -> None:
        self.rpc = rpc
        self.payer = payer
        self.poll_s = poll_s

    def sign(self, batch: TransferBatch) -> Transaction:
        # Same batch + same blockhash gives the same signature, so a resend is idempotent.
        return Transaction.new_signed_with_payer(
            list(batch.instructions),
            self.payer.pubkey(),
            [self.payer],
            Hash.from_string(batch.recent_blockhash),
        )

    async def submit(self, batch: TransferBatch) -> str:
        if batch.recent_blockhash is None:
            raise SubmissionError("batch has no blockhash", needs_new_blockhash=True)
        tx = self.sign(batch)
        signature = str(tx.signatures[0])

        try:
            await self.rpc.send_transaction(bytes(tx))
        except TransientRpcError as e:
            raise SubmissionError(str(e)) from e
        except RpcError as e:
            message = str(e)
            if "already been processed" in message:
                log.debug("Batch %d already processed: %s", batch.batch_id, signature)
            elif "Blockhash not found" in message or "BlockhashNotFound" in message:
                raise SubmissionError(message, needs_new_blockhash=True) from e
            else:
                raise SubmissionError(message) from e

        await self._await_confirmation(signature)
        return signature

    async def _await_confirmation(self, signature: str) -> None:
        while True:
            try:
                statuses = await self.rpc.get_signature_statuses([signature])
            except TransientRpcError as e:
                log.debug("Status poll for %s failed: %s", signature[:8], e)
                statuses = [None]
            except RpcError as e:
                raise SubmissionError(str(e)) from e

            status = statuses[0] if statuses else None
            if status is not None:
                if status.get("err") is not None:
                    # A failed transaction is final; only a fresh one can land.
                    raise SubmissionError(
                        f"transaction {signature} failed: {status['err']}",
                        needs_new_blockhash=True,
                    )
                if status.get("confirmationStatus") in _LANDED:
                    return
            await asyncio.sleep(self.poll_s)


class Dispatcher:
    """
    Sends batches through a fixed pool of concurrent workers.

    Each worker takes the next batch from a shared queue, so a batch is
    submitted by exactly one worker. Batches built without a blockhash are
    stamped through ``refresh`` when a worker picks them up. ``dispatch``
    returns once every batch is confirmed or failed.
    """

    def __init__(
        self,
        submitter: Submitter,
        config: DistributionConfig,
        refresh: Optional[Callable[[TransferBatch], Awaitable[TransferBatch]]] = None,
    ) -> None:
        self.submitter = submitter
        self.config = config
        self.refresh = refresh

    async def dispatch(self, batches: Sequence[TransferBatch]) -> List[BatchOutcome]:
        ids = [b.batch_id for b in batches]
        if len(set(ids)) != len(ids):
            raise ValueError("batch ids must be unique")
        if not batches:
            return []

        queue: asyncio.Queue[TransferBatch] = asyncio.Queue()
        for batch in batches:
            queue.put_nowait(batch)

        outcomes: Dict[int, BatchOutcome] = {}
        workers = min(self.config.concurrency, len(batches))
        log.info("Dispatching %d batches with %d workers", len(batches), workers)

        async def worker(slot: int) -> None:
            while True:
                try:
                    batch = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                outcomes[batch.batch_id] = await self._run_batch(batch, slot)

        await asyncio.gather(*(worker(slot) for slot in range(workers)))

        confirmed = sum(o.confirmed for o in outcomes.values())
        log.info("Successful transactions: %d/%d", confirmed, len(batches))
        return [outcomes[batch_id] for batch_id in sorted(outcomes)]

    async def _run_batch(self, batch: TransferBatch, slot: int) -> BatchOutcome:
        cfg = self.config
        last_error = "not attempted"
        # Unstamped batches get their blockhash here, right before the first send.
        stale = batch.recent_blockhash is None

        for attempt in range(1, cfg.max_attempts + 1):
            try:
                if stale and self.refresh is not None:
                    batch = await self.refresh(batch)
                    stale = False
                signature = await asyncio.wait_for(
                    self.submitter.submit(batch), timeout=cfg.attempt_timeout_s
                )
            except asyncio.TimeoutError:
                last_error = f"timed out after {cfg.attempt_timeout_s}s"
            except SubmissionError as e:
                last_error = str(e)
                if not e.retryable:
                    break
                stale = e.needs_new_blockhash
            except RpcError as e:
                last_error = f"blockhash refresh failed: {e}"
            except Exception as e:
                log.exception("Batch %d: unexpected error", batch.batch_id)
                last_error = f"{type(e).__name__}: {e}"
                break
            else:
                log.info(
                    "Batch %d (worker %d) confirmed: %s...",
                    batch.batch_id,
                    slot,
                    signature[:8],
                )
                return BatchOutcome(batch.batch_id, CONFIRMED, signature, attempt)

            log.warning(
                "Batch %d attempt %d/%d failed: %s",
                batch.batch_id,
                attempt,
                cfg.max_attempts,
                last_error,
            )
            if attempt < cfg.max_attempts:
                await asyncio.sleep(cfg.retry_backoff_s)

        log.error("Batch %d failed: %s", batch.batch_id, last_error)
        return BatchOutcome(batch.batch_id, FAILED, None, attempt, last_error)
