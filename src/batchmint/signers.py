"""Pool of signing identities with exclusive checkout and per-signer nonce cursors.

Two mechanisms keep nonces correct:

1. A signer is lent to at most one submission at a time (acquire/release), so nonce
   allocation for a signer is strictly sequential inside this process.
2. The cursor is resynchronized from the network's pending transaction count at startup,
   after any NONCE_ERROR or ambiguous send and every few batches, which repairs drift from outside
   transactions or a crashed sibling process.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from batchmint.chain import Chain
from batchmint.constants import ErrorKind, SIGNER_BACKOFF_DURATION, SIGNER_BACKOFF_THRESHOLD
from batchmint.endpoints import EndpointPool
from batchmint.errors import ChainError, SignerInitError

log = logging.getLogger("batchmint.signers")


@dataclass(slots=True)
class SignerState:
    signer_id: int
    address: str
    credential: str = field(repr=False)  # reference to a key, e.g. "env:SIGNER_KEY_0"
    nonce_cursor: int | None = None
    consecutive_failures: int = 0
    backoff_until: float = 0.0
    lifetime_minted: int = 0
    lifetime_failed: int = 0
    times_backed_off: int = 0
    last_used: float = 0.0
    borrowed: bool = False
    needs_resync: bool = True

    def __str__(self):
        return f"signer {self.signer_id} ({self.address[:8]}...)"

    def selectable(self, now: float) -> bool:
        return now >= self.backoff_until


class SignerPool:
    def __init__(
        self,
        signers: list[SignerState],
        chain: Chain,
        endpoints: EndpointPool,
        *,
        backoff_threshold: int = SIGNER_BACKOFF_THRESHOLD,
        backoff_duration: float = SIGNER_BACKOFF_DURATION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.signers = list(signers)
        self.chain = chain
        self.endpoints = endpoints
        self.backoff_threshold = backoff_threshold
        self.backoff_duration = backoff_duration
        self.clock = clock
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self.signers)

    async def initialize(self) -> None:
        """Fetch every signer's nonce. Signers that fail are dropped; losing all of them is fatal."""
        usable = []
        for s in self.signers:
            try:
                await self.resync_nonce(s)
            except ChainError as e:
                log.warning("Dropping %s: nonce lookup failed (%s)", s, e)
                continue
            usable.append(s)
        if not usable:
            raise SignerInitError(f"none of the {len(self.signers)} signers could be initialized")
        if len(usable) < len(self.signers):
            log.warning("Continuing with %s/%s signers", len(usable), len(self.signers))
        self.signers = usable
        for s in self.signers:
            log.info("%s ready at nonce %s", s, s.nonce_cursor)

    async def resync_nonce(self, signer: SignerState) -> int:
        """Set the cursor to the network's pending-inclusive transaction count."""
        endpoint = self.endpoints.next()
        try:
            nonce = await self.chain.get_pending_nonce(signer.address, endpoint)
        except Exception as e:
            err = ChainError.from_exception(e)
            self.endpoints.record_failure(endpoint, err.message or str(err.kind))
            signer.needs_resync = True
            raise err from e
        self.endpoints.record_success(endpoint)
        if signer.nonce_cursor is not None and signer.nonce_cursor != nonce:
            log.warning("%s nonce resync %s -> %s", signer, signer.nonce_cursor, nonce)
        signer.nonce_cursor = nonce
        signer.needs_resync = False
        return nonce

    async def resync_all(self) -> None:
        """Resync every signer not currently lent out. Failures leave the signer flagged."""
        for s in self.signers:
            if s.borrowed:
                continue
            try:
                await self.resync_nonce(s)
            except ChainError as e:
                log.warning("Periodic resync failed for %s: %s", s, e)

    def _candidates(self, now: float) -> list[SignerState]:
        free = [s for s in self.signers if not s.borrowed and s.selectable(now)]
        return sorted(free, key=lambda s: s.last_used)

    async def _checkout(self, skip: set[int]) -> SignerState | None:
        async with self._lock:
            now = self.clock()
            for s in self._candidates(now):
                if s.signer_id in skip:
                    continue
                if s.backoff_until and now >= s.backoff_until:
                    log.info("%s reactivated after backoff", s)
                    s.backoff_until = 0.0
                    s.consecutive_failures = 0
                s.borrowed = True
                s.last_used = now
                return s
            return None

    async def acquire(self) -> SignerState | None:
        """Lend out the least recently used signer, or None if all are busy or backed off.

        A flagged signer is resynced after checkout, outside the pool lock, so a slow
        endpoint only holds up the caller that drew that signer.
        """
        skip: set[int] = set()
        while (s := await self._checkout(skip)) is not None:
            if not s.needs_resync and s.nonce_cursor is not None:
                return s
            try:
                await self.resync_nonce(s)
            except ChainError as e:
                log.warning("Skipping %s, resync failed: %s", s, e)
                s.borrowed = False
                skip.add(s.signer_id)
                continue
            return s
        return None

    def next_nonce(self, signer: SignerState) -> int:
        if not signer.borrowed:
            raise RuntimeError(f"{signer} must be acquired before allocating a nonce")
        if signer.nonce_cursor is None:
            raise RuntimeError(f"{signer} has no nonce cursor")
        nonce = signer.nonce_cursor
        signer.nonce_cursor += 1
        return nonce

    def _back_off(self, signer: SignerState, reason: str) -> None:
        signer.backoff_until = self.clock() + self.backoff_duration
        signer.times_backed_off += 1
        log.warning("%s paused for %.0fs (%s)", signer, self.backoff_duration, reason)

    @staticmethod
    def _settle_nonce(signer: SignerState, nonce: int | None, consumed: bool, uncertain: bool) -> None:
        if not consumed and nonce is not None and signer.nonce_cursor == nonce + 1:
            signer.nonce_cursor = nonce
            log.debug("Returned nonce %s to %s", nonce, signer)
        if uncertain:
            signer.needs_resync = True

    async def release(self, signer: SignerState, error: ErrorKind | None = None, *,
                      nonce: int | None = None, consumed: bool = True, uncertain: bool = False) -> None:
        """Return a signer to the pool.

        error:
            None on success (ALREADY_KNOWN counts as success), otherwise the classified kind.
        nonce:
            The nonce this submission used.
        consumed:
            False when the node explicitly rejected the transaction, so the nonce is handed back.
        uncertain:
            The node may or may not hold the transaction; resync before the signer's next use.
        """
        try:
            if error is None or error is ErrorKind.ALREADY_KNOWN:
                signer.consecutive_failures = 0
                signer.lifetime_minted += 1
                if nonce is not None and signer.nonce_cursor is not None:
                    signer.nonce_cursor = max(signer.nonce_cursor, nonce + 1)
                return

            signer.lifetime_failed += 1
            self._settle_nonce(signer, nonce, consumed, uncertain)

            if error is ErrorKind.NONCE_ERROR:
                signer.needs_resync = True
                try:
                    await self.resync_nonce(signer)
                except ChainError as e:
                    log.warning("Resync after nonce error failed for %s, will retry on next acquire: %s", signer, e)
                return

            if error is ErrorKind.INSUFFICIENT_FUNDS:
                signer.consecutive_failures = 0
                self._back_off(signer, "insufficient funds")
                return

            signer.consecutive_failures += 1
            if signer.consecutive_failures >= self.backoff_threshold:
                self._back_off(signer, f"{signer.consecutive_failures} consecutive failures")
        finally:
            signer.borrowed = False

    def abandon(self, signer: SignerState, *, nonce: int | None = None, consumed: bool = True,
                uncertain: bool = False) -> None:
        """Return a signer whose submission was cancelled. Counts neither a mint nor a failure."""
        self._settle_nonce(signer, nonce, consumed, uncertain)
        signer.borrowed = False

    def stats(self) -> dict[str, dict]:
        now = self.clock()
        return {
            str(s.signer_id): {
                "address": s.address,
                "minted": s.lifetime_minted,
                "failed": s.lifetime_failed,
                "backedOff": s.times_backed_off,
                "consecutiveFailures": s.consecutive_failures,
                "nonceCursor": s.nonce_cursor,
                "backoffRemaining": max(0.0, s.backoff_until - now),
                "borrowed": s.borrowed,
            }
            for s in self.signers
        }
