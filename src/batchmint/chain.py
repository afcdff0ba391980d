"""Chain operations the submission engine depends on, and their web3.py implementation."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3

from batchmint.constants import ErrorKind, MINT_URI_ABI, RECEIPT_POLL_LATENCY, RPC_TIMEOUT
from batchmint.endpoints import EndpointState
from batchmint.errors import ChainError

log = logging.getLogger("batchmint.chain")


@dataclass(frozen=True, slots=True)
class Receipt:
    tx_hash: str
    block_number: int
    gas_used: int
    status: int = 1


class Chain(Protocol):
    async def estimate_gas(self, sender: str, uri: str, endpoint: EndpointState) -> int: ...
    async def get_pending_nonce(self, address: str, endpoint: EndpointState) -> int: ...
    async def send_transaction(self, sender: str, uri: str, nonce: int, gas_limit: int,
                               endpoint: EndpointState) -> str: ...
    async def await_receipt(self, tx_hash: str, timeout: float, endpoint: EndpointState) -> Receipt: ...


class Web3Chain:
    """mintURI(to, uri) against one contract, through whichever endpoint the caller picks.

    Private keys live in the keyring handed in at construction, indexed by address; the
    signer pool only ever sees addresses and credential references.
    """

    def __init__(self, contract_address: str, keyring: dict[str, LocalAccount], *,
                 mint_to: str | None = None, rpc_timeout: float = RPC_TIMEOUT) -> None:
        self.contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self.keyring = {AsyncWeb3.to_checksum_address(a): acct for a, acct in keyring.items()}
        self.mint_to = AsyncWeb3.to_checksum_address(mint_to) if mint_to else None
        self.rpc_timeout = rpc_timeout
        self._clients: dict[str, AsyncWeb3] = {}

    def _w3(self, endpoint: EndpointState) -> AsyncWeb3:
        w3 = self._clients.get(endpoint.url)
        if w3 is None:
            w3 = AsyncWeb3(AsyncHTTPProvider(endpoint.url, request_kwargs={"timeout": self.rpc_timeout}))
            self._clients[endpoint.url] = w3
        return w3

    def _mint_call(self, w3: AsyncWeb3, sender: str, uri: str):
        contract = w3.eth.contract(address=self.contract_address, abi=MINT_URI_ABI)
        return contract.functions.mintURI(self.mint_to or AsyncWeb3.to_checksum_address(sender), uri)

    async def estimate_gas(self, sender: str, uri: str, endpoint: EndpointState) -> int:
        w3 = self._w3(endpoint)
        call = self._mint_call(w3, sender, uri)
        return await asyncio.wait_for(call.estimate_gas({"from": AsyncWeb3.to_checksum_address(sender)}),
                                      timeout=self.rpc_timeout)

    async def get_pending_nonce(self, address: str, endpoint: EndpointState) -> int:
        w3 = self._w3(endpoint)
        return await asyncio.wait_for(
            w3.eth.get_transaction_count(AsyncWeb3.to_checksum_address(address), "pending"),
            timeout=self.rpc_timeout,
        )

    async def send_transaction(self, sender: str, uri: str, nonce: int, gas_limit: int,
                               endpoint: EndpointState) -> str:
        account = self.keyring.get(AsyncWeb3.to_checksum_address(sender))
        if account is None:
            raise ChainError(ErrorKind.UNKNOWN, f"no key loaded for {sender}")
        w3 = self._w3(endpoint)
        call = self._mint_call(w3, sender, uri)
        # build_transaction fills chainId and fee fields from this endpoint.
        tx = await asyncio.wait_for(
            call.build_transaction({"from": account.address, "nonce": nonce, "gas": gas_limit}),
            timeout=self.rpc_timeout,
        )
        signed = account.sign_transaction(tx)
        tx_hash = await asyncio.wait_for(w3.eth.send_raw_transaction(signed.raw_transaction),
                                         timeout=self.rpc_timeout)
        return AsyncWeb3.to_hex(tx_hash)

    async def await_receipt(self, tx_hash: str, timeout: float, endpoint: EndpointState) -> Receipt:
        w3 = self._w3(endpoint)
        r = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=RECEIPT_POLL_LATENCY)
        receipt = Receipt(
            tx_hash=AsyncWeb3.to_hex(r["transactionHash"]),
            block_number=int(r["blockNumber"]),
            gas_used=int(r["gasUsed"]),
            status=int(r.get("status", 1)),
        )
        if receipt.status != 1:
            raise ChainError(ErrorKind.UNKNOWN, f"mint reverted in block {receipt.block_number} ({tx_hash})")
        return receipt
