from typing import Final
from enum import StrEnum


class TokenStatus(StrEnum):
    PENDING   = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED    = "failed"


class ErrorKind(StrEnum):
    ALREADY_KNOWN      = "ALREADY_KNOWN"
    NONCE_ERROR        = "NONCE_ERROR"
    NETWORK_ERROR      = "NETWORK_ERROR"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    METADATA_ERROR     = "METADATA_ERROR"
    UNKNOWN            = "UNKNOWN_ERROR"


TERMINAL_STATUS = {TokenStatus.COMPLETED, TokenStatus.FAILED}

# Recorded as the tx hash when the node reports the mint as already known.
ALREADY_KNOWN_TX_HASH: Final = "already_known"

RPC_TIMEOUT = 15.0
TX_TIMEOUT = 45.0
RECEIPT_POLL_LATENCY = 1.0

GAS_MARGIN_PCT = 30
GAS_LIMIT_FALLBACK = 300_000

RETRY_ATTEMPTS = 5
RETRY_DELAY = 2.0
MAX_RETRY_DELAY = 15.0
RETRY_JITTER = 1.0

SIGNER_BACKOFF_THRESHOLD = 3
SIGNER_BACKOFF_DURATION = 30.0
ACQUIRE_POLL_INTERVAL = 0.5

ENDPOINT_UNHEALTHY_AFTER = 3

BATCH_SIZE = 60
CONCURRENCY_LIMIT = 10
BATCH_DELAY = 3.0
RESYNC_EVERY = 10

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 3

MINT_URI_ABI: Final = [
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "string", "name": "uri", "type": "string"},
        ],
        "name": "mintURI",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

__all__ = [
    "ACQUIRE_POLL_INTERVAL",
    "ALREADY_KNOWN_TX_HASH",
    "BATCH_DELAY",
    "BATCH_SIZE",
    "CONCURRENCY_LIMIT",
    "ENDPOINT_UNHEALTHY_AFTER",
    "EXIT_FATAL",
    "EXIT_INTERRUPTED",
    "EXIT_OK",
    "GAS_LIMIT_FALLBACK",
    "GAS_MARGIN_PCT",
    "MAX_RETRY_DELAY",
    "MINT_URI_ABI",
    "RECEIPT_POLL_LATENCY",
    "RESYNC_EVERY",
    "RETRY_ATTEMPTS",
    "RETRY_DELAY",
    "RETRY_JITTER",
    "RPC_TIMEOUT",
    "SIGNER_BACKOFF_DURATION",
    "SIGNER_BACKOFF_THRESHOLD",
    "TERMINAL_STATUS",
    "TX_TIMEOUT",

    ######
    "ErrorKind",
    "TokenStatus",
]
