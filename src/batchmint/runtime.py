"""Turn a config dict into a wired BatchRun. No network calls happen here."""

import logging
import os
from collections.abc import Mapping

from eth_account import Account
from eth_account.signers.local import LocalAccount

import batchmint.constants as C
from batchmint.chain import Web3Chain
from batchmint.config import token_ids_from_config
from batchmint.endpoints import EndpointPool
from batchmint.engine import RetryPolicy, SubmissionEngine
from batchmint.errors import SignerInitError
from batchmint.ledger import open_ledger
from batchmint.metadata import provider_from_config
from batchmint.scheduler import BatchRun
from batchmint.signers import SignerPool, SignerState

log = logging.getLogger("batchmint.runtime")


def load_signers(key_env: list[str], environ: Mapping[str, str] = os.environ) -> tuple[list[SignerState], dict[str, LocalAccount]]:
    """Signer states plus the keyring they reference. Missing or bad keys are skipped with a warning."""
    signers: list[SignerState] = []
    keyring: dict[str, LocalAccount] = {}
    for signer_id, var in enumerate(key_env):
        key = environ.get(var)
        if not key:
            log.warning("Signer %s: %s is not set, skipping", signer_id, var)
            continue
        try:
            account = Account.from_key(key)
        except Exception as e:
            log.warning("Signer %s: %s does not hold a valid key (%s), skipping", signer_id, var, e)
            continue
        if account.address in keyring:
            log.warning("Signer %s: %s duplicates %s, skipping", signer_id, var, account.address)
            continue
        keyring[account.address] = account
        signers.append(SignerState(signer_id=signer_id, address=account.address, credential=f"env:{var}"))
        log.info("Signer %s: %s", signer_id, account.address)
    if not signers:
        raise SignerInitError(f"no usable signer keys in {', '.join(key_env) or '(none configured)'}")
    return signers, keyring


def build_batch_run(cfg: dict, *, environ: Mapping[str, str] = os.environ) -> BatchRun:
    rpc, run, retry, gas = cfg["rpc"], cfg["run"], cfg["retry"], cfg["gas"]
    signer_cfg, ledger_cfg = cfg["signers"], cfg["ledger"]

    endpoints = EndpointPool(rpc["endpoints"], unhealthy_after=rpc.get("unhealthy_after", C.ENDPOINT_UNHEALTHY_AFTER))
    signers, keyring = load_signers(signer_cfg.get("key_env", []), environ)
    chain = Web3Chain(
        cfg["contract"]["address"],
        keyring,
        mint_to=cfg["contract"].get("mint_to"),
        rpc_timeout=rpc.get("timeout", C.RPC_TIMEOUT),
    )
    pool = SignerPool(
        signers,
        chain,
        endpoints,
        backoff_threshold=signer_cfg.get("backoff_threshold", C.SIGNER_BACKOFF_THRESHOLD),
        backoff_duration=signer_cfg.get("backoff_duration", C.SIGNER_BACKOFF_DURATION),
    )
    engine = SubmissionEngine(
        chain,
        pool,
        endpoints,
        tx_timeout=run.get("tx_timeout", C.TX_TIMEOUT),
        gas_margin_pct=gas.get("margin_pct", C.GAS_MARGIN_PCT),
        gas_fallback=gas.get("fallback_limit", C.GAS_LIMIT_FALLBACK),
    )
    ledger = open_ledger(ledger_cfg.get("backend", "json"), ledger_cfg.get("path", "output/mint_log.json"),
                         label=ledger_cfg.get("label"))
    token_ids = token_ids_from_config(run)
    log.info("Run over %s tokens, %s signers, %s endpoints", len(token_ids), len(signers), len(endpoints))
    return BatchRun(
        token_ids=token_ids,
        ledger=ledger,
        signers=pool,
        endpoints=endpoints,
        engine=engine,
        metadata=provider_from_config(cfg.get("metadata", {})),
        concurrency_limit=run.get("concurrency", C.CONCURRENCY_LIMIT),
        batch_size=run.get("batch_size", C.BATCH_SIZE),
        batch_delay=run.get("batch_delay", C.BATCH_DELAY),
        resync_every=run.get("resync_every", C.RESYNC_EVERY),
        retry=RetryPolicy(
            attempts=retry.get("attempts", C.RETRY_ATTEMPTS),
            base_delay=retry.get("base_delay", C.RETRY_DELAY),
            max_delay=retry.get("max_delay", C.MAX_RETRY_DELAY),
            jitter=retry.get("jitter", C.RETRY_JITTER),
        ),
        retry_failed=run.get("retry_failed", True),
    )
