import asyncio
import logging
import random
from dataclasses import dataclass

from batchmint.chain import Chain
from batchmint.constants import (
    ALREADY_KNOWN_TX_HASH,
    ErrorKind,
    GAS_LIMIT_FALLBACK,
    GAS_MARGIN_PCT,
    MAX_RETRY_DELAY,
    RETRY_ATTEMPTS,
    RETRY_DELAY,
    RETRY_JITTER,
    TX_TIMEOUT,
)
from batchmint.endpoints import EndpointPool
from batchmint.errors import ChainError
from batchmint.signers import SignerPool

log = logging.getLogger("batchmint.engine")

# Never retried automatically: it won't fix itself.
NON_RETRYABLE = {ErrorKind.INSUFFICIENT_FUNDS}


@dataclass(frozen=True, slots=True)
class Success:
    tx_hash: str
    block_number: int | None
    gas_used: int | None
    signer_id: int
    signer_address: str
    nonce: int


@dataclass(frozen=True, slots=True)
class Retryable:
    kind: ErrorKind
    message: str
    signer_id: int
    signer_address: str
    nonce: int


@dataclass(frozen=True, slots=True)
class Terminal:
    kind: ErrorKind
    message: str
    signer_id: int | None = None
    signer_address: str | None = None
    nonce: int | None = None


Outcome = Success | Retryable | Terminal


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = RETRY_ATTEMPTS
    base_delay: float = RETRY_DELAY
    max_delay: float = MAX_RETRY_DELAY
    jitter: float = RETRY_JITTER

    def delay(self, retry: int) -> float:
        """Exponential backoff with jitter; `retry` counts from 0."""
        return min(self.base_delay * 2 ** retry, self.max_delay) + random.uniform(0, self.jitter)


class SubmissionEngine:
    """One mint attempt: borrow a signer, send, wait for the receipt, classify, give the signer back."""

    def __init__(
        self,
        chain: Chain,
        signers: SignerPool,
        endpoints: EndpointPool,
        *,
        tx_timeout: float = TX_TIMEOUT,
        gas_margin_pct: int = GAS_MARGIN_PCT,
        gas_fallback: int = GAS_LIMIT_FALLBACK,
    ) -> None:
        self.chain = chain
        self.signers = signers
        self.endpoints = endpoints
        self.tx_timeout = tx_timeout
        self.gas_margin_pct = gas_margin_pct
        self.gas_fallback = gas_fallback

    async def _gas_limit(self, sender: str, uri: str, endpoint) -> int:
        try:
            estimate = await self.chain.estimate_gas(sender, uri, endpoint)
        except Exception as e:
            log.debug("Gas estimate failed on %s (%s), using %s", endpoint, e.__class__.__name__, self.gas_fallback)
            return self.gas_fallback
        return estimate * (100 + self.gas_margin_pct) // 100

    async def submit(self, token_id: int, uri: str) -> Outcome | None:
        """Returns None when no signer is free; the caller should try this token later."""
        signer = await self.signers.acquire()
        if signer is None:
            return None

        nonce = self.signers.next_nonce(signer)
        endpoint = self.endpoints.next()
        stage = "gas"
        log.debug("mint %s: %s nonce=%s via %s", token_id, signer, nonce, endpoint)
        try:
            gas_limit = await self._gas_limit(signer.address, uri, endpoint)
            stage = "send"
            tx_hash = await self.chain.send_transaction(signer.address, uri, nonce, gas_limit, endpoint)
            stage = "receipt"
            log.debug("mint %s: submitted %s", token_id, tx_hash)
            receipt = await asyncio.wait_for(
                self.chain.await_receipt(tx_hash, self.tx_timeout, endpoint),
                timeout=self.tx_timeout + 5,
            )
        except asyncio.CancelledError:
            self.signers.abandon(signer, nonce=nonce, consumed=stage != "gas", uncertain=stage == "send")
            raise
        except Exception as e:
            err = ChainError.from_exception(e)
            return await self._failed(token_id, signer, nonce, endpoint, err, stage)

        self.endpoints.record_success(endpoint)
        await self.signers.release(signer, nonce=nonce)
        return Success(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            signer_id=signer.signer_id,
            signer_address=signer.address,
            nonce=nonce,
        )

    async def _failed(self, token_id, signer, nonce, endpoint, err: ChainError, stage: str) -> Outcome:
        kind = err.kind
        if kind is ErrorKind.ALREADY_KNOWN:
            # The node has this exact transaction already; treated as done without on-chain proof.
            self.endpoints.record_success(endpoint)
            await self.signers.release(signer, ErrorKind.ALREADY_KNOWN, nonce=nonce)
            log.info("mint %s: already known, marking completed", token_id)
            return Success(
                tx_hash=ALREADY_KNOWN_TX_HASH,
                block_number=None,
                gas_used=None,
                signer_id=signer.signer_id,
                signer_address=signer.address,
                nonce=nonce,
            )

        if kind is ErrorKind.NETWORK_ERROR:
            self.endpoints.record_failure(endpoint, err.message or str(kind))

        # Only an explicit rejection from the node hands the nonce back. A transport failure
        # while sending may still have landed, so the nonce stays used and the signer is
        # resynced from the network before its next submission.
        uncertain = stage == "send" and kind is ErrorKind.NETWORK_ERROR
        consumed = stage == "receipt" or uncertain or kind is ErrorKind.NONCE_ERROR
        await self.signers.release(signer, kind, nonce=nonce, consumed=consumed, uncertain=uncertain)
        log.debug("mint %s: %s at %s on %s nonce=%s: %s", token_id, kind, stage, signer, nonce, err.message)

        if kind in NON_RETRYABLE:
            return Terminal(kind, err.message, signer.signer_id, signer.address, nonce)
        return Retryable(kind, err.message, signer.signer_id, signer.address, nonce)
