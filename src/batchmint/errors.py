"""Exception hierarchy and the single place raw chain errors get classified."""

import asyncio
import logging

import aiohttp
import httpx
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from batchmint.constants import ErrorKind

log = logging.getLogger("batchmint.errors")


class BatchMintError(Exception):
    """Base class for everything raised by batchmint."""


class ConfigError(BatchMintError):
    pass


class CorruptStateError(BatchMintError):
    """The ledger exists but can't be parsed. Needs an operator, never auto-repaired."""

    def __init__(self, location: str, reason: str) -> None:
        super().__init__(f"ledger at {location} is unreadable: {reason}")
        self.location = location
        self.reason = reason


class InvalidTransitionError(BatchMintError):
    def __init__(self, token_id: int, current: str, wanted: str) -> None:
        super().__init__(f"token {token_id}: illegal transition {current} -> {wanted}")
        self.token_id = token_id
        self.current = current
        self.wanted = wanted


class SignerInitError(BatchMintError):
    pass


class MetadataError(BatchMintError):
    """One token's metadata can't be resolved. Fails that token, never the run."""

    def __init__(self, token_id: int, reason: str) -> None:
        super().__init__(f"token {token_id}: {reason}")
        self.token_id = token_id
        self.reason = reason


# Lowercased substrings of node error messages, checked in order.
_MESSAGE_KINDS: list[tuple[tuple[str, ...], ErrorKind]] = [
    (("already known", "known transaction", "transaction already exists"), ErrorKind.ALREADY_KNOWN),
    (("nonce too low", "nonce too high", "already been used", "replacement transaction underpriced",
      "invalid nonce"), ErrorKind.NONCE_ERROR),
    (("insufficient funds",), ErrorKind.INSUFFICIENT_FUNDS),
    (("timeout", "timed out", "econnreset", "connection reset", "network", "too many requests",
      "429", "502", "503", "504", "rate limit"), ErrorKind.NETWORK_ERROR),
]


def _rpc_message(exc: BaseException) -> str:
    """Pull the node's message out of whatever shape web3 handed us."""
    rpc_response = getattr(exc, "rpc_response", None)
    if isinstance(rpc_response, dict):
        err = rpc_response.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message", exc.args[0]))
    return str(exc) or type(exc).__name__


def classify_message(message: str) -> ErrorKind:
    lowered = message.lower()
    for needles, kind in _MESSAGE_KINDS:
        if any(n in lowered for n in needles):
            return kind
    return ErrorKind.UNKNOWN


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, ChainError):
        return exc.kind
    if isinstance(exc, (TimeExhausted, asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.NETWORK_ERROR
    if isinstance(exc, (aiohttp.ClientError, httpx.TransportError, ConnectionError)):
        return ErrorKind.NETWORK_ERROR
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return ErrorKind.NETWORK_ERROR if status == 429 or status >= 500 else ErrorKind.UNKNOWN
    if isinstance(exc, ContractLogicError):
        # A revert can still carry "insufficient funds" from the estimate path.
        kind = classify_message(_rpc_message(exc))
        return kind if kind is ErrorKind.INSUFFICIENT_FUNDS else ErrorKind.UNKNOWN
    if isinstance(exc, (Web3RPCError, ValueError)):
        return classify_message(_rpc_message(exc))
    if isinstance(exc, OSError):
        return ErrorKind.NETWORK_ERROR
    return classify_message(str(exc))


class ChainError(BatchMintError):
    """A chain failure tagged with its ErrorKind. `message` is diagnostic only."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(f"{kind}: {message}" if message else str(kind))
        self.kind = kind
        self.message = message

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ChainError":
        if isinstance(exc, ChainError):
            return exc
        kind = classify_error(exc)
        message = _rpc_message(exc)
        log.debug("classified %s as %s: %s", type(exc).__name__, kind, message)
        return cls(kind, message[:300])
