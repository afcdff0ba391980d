"""Batch scheduler: sequential batches, bounded parallelism inside each batch.

Only the scheduler touches the ledger's in-memory map. Workers hand their results back
through their job objects; records are updated once the whole batch is in, then the
ledger is snapshotted. The window of un-persisted work is therefore one batch.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from batchmint.constants import (
    ACQUIRE_POLL_INTERVAL,
    BATCH_DELAY,
    BATCH_SIZE,
    CONCURRENCY_LIMIT,
    EXIT_INTERRUPTED,
    EXIT_OK,
    ErrorKind,
    RESYNC_EVERY,
    TokenStatus,
)
from batchmint.endpoints import EndpointPool
from batchmint.engine import Outcome, Retryable, RetryPolicy, Success, SubmissionEngine, Terminal
from batchmint.ledger import Ledger, TokenRecord, ensure_records, pending_ids, summarize
from batchmint.metadata import MetadataProvider
from batchmint.signers import SignerPool

log = logging.getLogger("batchmint.scheduler")


@dataclass
class BatchRun:
    """Everything one job needs, built once at startup and passed in explicitly."""

    token_ids: Sequence[int]
    ledger: Ledger
    signers: SignerPool
    endpoints: EndpointPool
    engine: SubmissionEngine
    metadata: MetadataProvider
    concurrency_limit: int = CONCURRENCY_LIMIT
    batch_size: int = BATCH_SIZE
    batch_delay: float = BATCH_DELAY
    resync_every: int = RESYNC_EVERY
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    retry_failed: bool = True
    acquire_poll: float = ACQUIRE_POLL_INTERVAL

    def __post_init__(self):
        if self.concurrency_limit < 1 or self.batch_size < 1:
            raise ValueError("concurrency_limit and batch_size must be positive")


@dataclass
class RunResult:
    batches: int = 0
    attempts: int = 0
    completed: int = 0
    failed: int = 0
    interrupted: bool = False
    summary: dict = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return EXIT_INTERRUPTED if self.interrupted else EXIT_OK


@dataclass(slots=True)
class _Job:
    token_id: int
    uri: str
    attempts: int = 0
    outcome: Outcome | None = None
    last_kind: ErrorKind | None = None
    last_error: str | None = None
    interrupted: bool = False
    settled: bool = False


class BatchScheduler:
    def __init__(self, run: BatchRun, *, stop: asyncio.Event | None = None) -> None:
        self.ctx = run
        self.stop = stop or asyncio.Event()
        self.records: dict[int, TokenRecord] = {}
        self.running = False
        self.current_batch = 0
        self.total_batches = 0
        self.started_at: float | None = None

    def request_stop(self) -> None:
        if not self.stop.is_set():
            log.warning("Stop requested, finishing in-flight mints")
        self.stop.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that wakes early on stop."""
        if seconds <= 0:
            # Still yield, or a worker polling for a signer would starve the others.
            await asyncio.sleep(0)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self.stop.wait(), timeout=seconds)

    async def _checkpoint(self) -> None:
        signer_stats = self.ctx.signers.stats()
        records = self.records
        await asyncio.to_thread(self.ctx.ledger.snapshot, records, signer_stats=signer_stats)

    async def run(self) -> RunResult:
        r = self.ctx
        result = RunResult()
        self.records = r.ledger.load()
        todo = pending_ids(r.token_ids, self.records, include_failed=r.retry_failed)
        if not todo:
            log.info("Nothing to mint, all %s tokens in range are settled", len(r.token_ids))
            result.summary = summarize(self.records)
            return result

        created, unresolved = ensure_records(todo, self.records, r.metadata.resolve_uri)
        for token_id in todo:
            rec = self.records[token_id]
            if rec.status == TokenStatus.FAILED:
                rec.requeue()
        for token_id, reason in unresolved.items():
            rec = self.records[token_id]
            rec.mark_in_flight()
            rec.mark_failed(ErrorKind.METADATA_ERROR, reason)
            result.failed += 1
            log.error("mint %s: no metadata URI, skipping: %s", token_id, reason)
        todo = [t for t in todo if t not in unresolved]
        log.info("Tokens to process: %s (%s new, %s without metadata)", len(todo), created, len(unresolved))
        if not todo:
            await self._checkpoint()
            result.summary = summarize(self.records)
            return result

        await r.signers.initialize()

        self.running = True
        self.started_at = time.time()
        self.total_batches = -(-len(todo) // r.batch_size)
        try:
            for i in range(0, len(todo), r.batch_size):
                if self.stop.is_set():
                    result.interrupted = True
                    break
                self.current_batch = i // r.batch_size + 1
                group = todo[i:i + r.batch_size]
                interrupted = await self._run_batch(group, result)
                result.batches += 1
                await self._checkpoint()
                more = i + r.batch_size < len(todo)
                if interrupted or (self.stop.is_set() and more):
                    result.interrupted = True
                    break
                if not more:
                    break
                if r.resync_every and self.current_batch % r.resync_every == 0:
                    log.info("Resyncing signer nonces after batch %s", self.current_batch)
                    await r.signers.resync_all()
                log.debug("Pausing %.1fs between batches", r.batch_delay)
                await self._sleep(r.batch_delay)
        finally:
            self.running = False
            await self._checkpoint()

        result.summary = summarize(self.records)
        if result.interrupted:
            log.warning("Interrupted after %s batches, resumable: %s", result.batches, result.summary)
        else:
            log.info("Run complete: %s", result.summary)
        return result

    async def _run_batch(self, group: list[int], result: RunResult) -> bool:
        r = self.ctx
        started = time.perf_counter()
        log.info("Batch %s/%s: %s tokens (%s..%s)",
                 self.current_batch, self.total_batches, len(group), group[0], group[-1])

        jobs = []
        for token_id in group:
            rec = self.records[token_id]
            rec.mark_in_flight()
            jobs.append(_Job(token_id=token_id, uri=rec.uri))

        queue: asyncio.Queue[_Job] = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)

        try:
            async with asyncio.TaskGroup() as tg:
                for n in range(min(r.concurrency_limit, len(jobs))):
                    tg.create_task(self._worker(queue), name=f"mint-worker-{n}")
        finally:
            for job in jobs:
                self._apply(job, result)

        done = [self.records[j.token_id] for j in jobs]
        ok = sum(1 for rec in done if rec.status == TokenStatus.COMPLETED)
        bad = sum(1 for rec in done if rec.status == TokenStatus.FAILED)
        log.info("Batch %s complete: %s success, %s failed in %.1fs",
                 self.current_batch, ok, bad, time.perf_counter() - started)
        log.info("Total progress: %s", summarize(self.records))
        return any(j.interrupted for j in jobs)

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            try:
                job = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if await self._attempt(job):
                queue.put_nowait(job)

    async def _attempt(self, job: _Job) -> bool:
        """Drive one token through its retries. Returns True if it must be deferred."""
        r = self.ctx
        while True:
            if self.stop.is_set():
                job.interrupted = True
                return False

            outcome = await r.engine.submit(job.token_id, job.uri)
            if outcome is None:
                # No signer free: let another token take this slot, come back later.
                await self._sleep(r.acquire_poll)
                return True

            job.attempts += 1
            job.outcome = outcome
            match outcome:
                case Success():
                    job.settled = True
                    log.debug("mint %s: block %s", job.token_id, outcome.block_number)
                    return False
                case Terminal(kind=kind, message=message):
                    job.last_kind, job.last_error = kind, message
                    job.settled = True
                    log.error("mint %s: %s, not retrying: %s", job.token_id, kind, message[:80])
                    return False
                case Retryable(kind=kind, message=message):
                    job.last_kind, job.last_error = kind, message
                    if job.attempts >= r.retry.attempts:
                        job.settled = True
                        log.error("mint %s: giving up after %s attempts: %s %s",
                                  job.token_id, job.attempts, kind, message[:80])
                        return False
                    delay = r.retry.delay(job.attempts - 1)
                    log.info("mint %s: %s, retry %s/%s in %.1fs",
                             job.token_id, kind, job.attempts, r.retry.attempts - 1, delay)
                    await self._sleep(delay)

    def _apply(self, job: _Job, result: RunResult) -> None:
        rec = self.records[job.token_id]
        rec.add_attempts(job.attempts)
        result.attempts += job.attempts
        if job.last_kind is not None:
            rec.note_error(job.last_kind, job.last_error or "")

        match job.outcome:
            case Success() as s:
                rec.mark_completed(tx_hash=s.tx_hash, block_number=s.block_number, gas_used=s.gas_used,
                                   signer_id=s.signer_id, signer_address=s.signer_address, nonce_used=s.nonce)
                result.completed += 1
            case Terminal() as t:
                rec.mark_failed(t.kind, t.message, signer_id=t.signer_id,
                                signer_address=t.signer_address, nonce_used=t.nonce)
                result.failed += 1
            case Retryable() as t if job.settled:
                rec.mark_failed(t.kind, t.message, signer_id=t.signer_id,
                                signer_address=t.signer_address, nonce_used=t.nonce)
                result.failed += 1
            case _:
                # Never attempted, interrupted between retries, or cut off mid-flight.
                rec.return_to_pending()

