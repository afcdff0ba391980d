import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

from batchmint.constants import ENDPOINT_UNHEALTHY_AFTER, RPC_TIMEOUT

log = logging.getLogger("batchmint.endpoints")


@dataclass
class EndpointState:
    url: str
    position: int
    requests: int = 0
    failures: int = 0
    recent_failures: int = 0
    last_latency: float | None = None
    last_error: str | None = None

    def __str__(self):
        return f"rpc[{self.position}] {self.name}"

    @property
    def name(self) -> str:
        # Strip query strings, they tend to carry API tokens.
        return self.url.split("?", 1)[0]

    def stats(self, unhealthy_after: int) -> dict:
        return {
            "position": self.position,
            "url": self.name,
            "requests": self.requests,
            "failures": self.failures,
            "recent_failures": self.recent_failures,
            "last_latency": self.last_latency,
            "last_error": self.last_error,
            "healthy": self.recent_failures < unhealthy_after,
        }


class EndpointPool:
    """Round-robin over RPC endpoints.

    Health is informational: an endpoint with `unhealthy_after` consecutive failures is
    skipped while a healthy one exists, but nothing is ever removed from rotation. If every
    endpoint looks unhealthy the first one is returned.
    """

    def __init__(self, urls: list[str], *, unhealthy_after: int = ENDPOINT_UNHEALTHY_AFTER) -> None:
        if not urls:
            raise ValueError("EndpointPool needs at least one endpoint")
        self.endpoints = [EndpointState(url=u, position=i) for i, u in enumerate(urls)]
        self.unhealthy_after = unhealthy_after
        self._cursor = 0

    def __len__(self) -> int:
        return len(self.endpoints)

    def is_healthy(self, endpoint: EndpointState) -> bool:
        return endpoint.recent_failures < self.unhealthy_after

    def next(self) -> EndpointState:
        n = len(self.endpoints)
        start = self._cursor
        self._cursor = (start + 1) % n
        for offset in range(n):
            candidate = self.endpoints[(start + offset) % n]
            if self.is_healthy(candidate):
                if offset:
                    self._cursor = (start + offset + 1) % n
                return candidate
        return self.endpoints[0]

    def record_success(self, endpoint: EndpointState, latency: float | None = None) -> None:
        endpoint.requests += 1
        endpoint.recent_failures = 0
        if latency is not None:
            endpoint.last_latency = latency

    def record_failure(self, endpoint: EndpointState, error: str) -> None:
        endpoint.requests += 1
        endpoint.failures += 1
        endpoint.recent_failures += 1
        endpoint.last_error = error[:200]
        if endpoint.recent_failures == self.unhealthy_after:
            log.warning("%s deprioritized after %s consecutive failures: %s",
                        endpoint, endpoint.recent_failures, endpoint.last_error)

    def stats(self) -> list[dict]:
        return [e.stats(self.unhealthy_after) for e in self.endpoints]


async def _probe_one(http: httpx.AsyncClient, pool: EndpointPool, endpoint: EndpointState) -> dict:
    payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []}
    started = time.perf_counter()
    try:
        r = await http.post(endpoint.url, json=payload)
        r.raise_for_status()
        body = r.json()
        if "error" in body:
            raise ValueError(body["error"].get("message", body["error"]))
        block = int(body["result"], 16)
    except Exception as e:
        pool.record_failure(endpoint, f"{e.__class__.__name__}: {e}")
        log.info("Probe %s failed: %s", endpoint, e.__class__.__name__)
        return {"url": endpoint.name, "ok": False, "error": endpoint.last_error}
    latency = time.perf_counter() - started
    pool.record_success(endpoint, latency)
    log.debug("Probe %s ok in %.3fs at block %s", endpoint, latency, block)
    return {"url": endpoint.name, "ok": True, "latency": latency, "block": block}


async def probe_endpoints(pool: EndpointPool, *, timeout: float = RPC_TIMEOUT,
                          transport: httpx.AsyncBaseTransport | None = None) -> list[dict]:
    """Hit every endpoint with eth_blockNumber and fold the result into its health."""
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as http:
        return list(await asyncio.gather(*(_probe_one(http, pool, e) for e in pool.endpoints)))
