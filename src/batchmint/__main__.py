import argparse
import asyncio
import json
import logging
import os
import signal
import sys

import uvicorn

from batchmint.config import load_config, token_ids_from_config
from batchmint.constants import EXIT_FATAL, EXIT_OK
from batchmint.errors import BatchMintError
from batchmint.ledger import open_ledger, requeue_failed
from batchmint.logging_config import setup_logging
from batchmint.report import analyze
from batchmint.runtime import build_batch_run
from batchmint.scheduler import BatchScheduler

log = logging.getLogger("batchmint")


async def run_headless(cfg: dict) -> int:
    scheduler = BatchScheduler(build_batch_run(cfg))
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.request_stop)
    result = await scheduler.run()
    log.info("Attempts: %s, completed: %s, failed: %s", result.attempts, result.completed, result.failed)
    return result.exit_code


def cmd_serve(args, cfg: dict) -> int:
    server = cfg["server"]
    uvicorn.run(
        "batchmint.app:app",
        host=args.host or server.get("host", "0.0.0.0"),
        port=args.port or server.get("port", 8000),
        lifespan="on",
        log_config=None,
    )
    return EXIT_OK


def cmd_run(args, cfg: dict) -> int:
    return asyncio.run(run_headless(cfg))


def cmd_report(args, cfg: dict) -> int:
    ledger_cfg = cfg["ledger"]
    ledger = open_ledger(ledger_cfg.get("backend", "json"), ledger_cfg.get("path", "output/mint_log.json"))
    records = ledger.load()
    print(json.dumps(analyze(records, token_ids_from_config(cfg["run"]), limit=args.limit), indent=2))
    return EXIT_OK


def cmd_requeue(args, cfg: dict) -> int:
    ledger_cfg = cfg["ledger"]
    ledger = open_ledger(ledger_cfg.get("backend", "json"), ledger_cfg.get("path", "output/mint_log.json"),
                         label=ledger_cfg.get("label"))
    records = ledger.load()
    moved = requeue_failed(records, args.token_ids or None)
    if moved:
        ledger.snapshot(records)
    print(f"Requeued {len(moved)} tokens")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="batchmint", description="Resumable multi-signer NFT batch minting")
    p.add_argument("-c", "--config", help="path to config.toml (default: $BATCHMINT_CONFIG or the bundled file)")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP control service")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    run = sub.add_parser("run", help="mint the configured range headless, then exit")
    run.set_defaults(func=cmd_run)

    report = sub.add_parser("report", help="summarize the ledger as JSON")
    report.add_argument("--limit", type=int, default=5)
    report.set_defaults(func=cmd_report)

    requeue = sub.add_parser("requeue", help="move failed tokens back to pending")
    requeue.add_argument("token_ids", nargs="*", type=int)
    requeue.set_defaults(func=cmd_requeue)
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    try:
        cfg = load_config(args.config)
        if args.config:
            # The service reloads config inside its lifespan.
            os.environ["BATCHMINT_CONFIG"] = args.config
        return args.func(args, cfg)
    except BatchMintError as e:
        log.error("%s", e)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
