import asyncio
from unittest import TestCase

import aiohttp
import httpx
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from batchmint.constants import ErrorKind
from batchmint.errors import ChainError, classify_error, classify_message


class TestClassifyMessage(TestCase):
    def test_node_messages(self):
        cases = {
            "already known": ErrorKind.ALREADY_KNOWN,
            "nonce too low: next nonce 12, tx nonce 11": ErrorKind.NONCE_ERROR,
            "replacement transaction underpriced": ErrorKind.NONCE_ERROR,
            "insufficient funds for gas * price + value": ErrorKind.INSUFFICIENT_FUNDS,
            "request timed out": ErrorKind.NETWORK_ERROR,
            "read ECONNRESET": ErrorKind.NETWORK_ERROR,
            "execution reverted: Ownable: caller is not the owner": ErrorKind.UNKNOWN,
        }
        for message, kind in cases.items():
            with self.subTest(message=message):
                self.assertIs(classify_message(message), kind)


class TestClassifyError(TestCase):
    def test_timeouts_are_network(self):
        for exc in (TimeExhausted("no receipt"), asyncio.TimeoutError(), TimeoutError()):
            self.assertIs(classify_error(exc), ErrorKind.NETWORK_ERROR)

    def test_transport_errors_are_network(self):
        for exc in (aiohttp.ClientConnectionError("reset"), httpx.ConnectError("refused"), ConnectionResetError()):
            self.assertIs(classify_error(exc), ErrorKind.NETWORK_ERROR)

    def test_http_status(self):
        req = httpx.Request("POST", "http://rpc.test")
        busy = httpx.HTTPStatusError("busy", request=req, response=httpx.Response(429, request=req))
        bad = httpx.HTTPStatusError("bad", request=req, response=httpx.Response(400, request=req))
        self.assertIs(classify_error(busy), ErrorKind.NETWORK_ERROR)
        self.assertIs(classify_error(bad), ErrorKind.UNKNOWN)

    def test_rpc_error_payload(self):
        exc = Web3RPCError("rpc error", rpc_response={"error": {"code": -32000, "message": "nonce too low"}})
        self.assertIs(classify_error(exc), ErrorKind.NONCE_ERROR)

    def test_value_error_with_dict(self):
        exc = ValueError({"code": -32000, "message": "already known"})
        self.assertIs(classify_error(exc), ErrorKind.ALREADY_KNOWN)

    def test_revert_is_unknown(self):
        self.assertIs(classify_error(ContractLogicError("execution reverted: timeout")), ErrorKind.UNKNOWN)

    def test_chain_error_keeps_kind(self):
        err = ChainError(ErrorKind.INSUFFICIENT_FUNDS, "broke")
        self.assertIs(ChainError.from_exception(err), err)
        self.assertIs(classify_error(err), ErrorKind.INSUFFICIENT_FUNDS)

    def test_from_exception(self):
        err = ChainError.from_exception(ValueError({"code": -32000, "message": "insufficient funds for gas"}))
        self.assertIs(err.kind, ErrorKind.INSUFFICIENT_FUNDS)
        self.assertEqual(err.message, "insufficient funds for gas")
