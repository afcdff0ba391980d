import os
import tomllib
from pathlib import Path

from batchmint.errors import ConfigError

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


def load_config(path: str | Path | None = None) -> dict:
    """Read the TOML config and apply environment overrides. Returns a fresh dict each call."""
    path = Path(path or os.getenv("BATCHMINT_CONFIG", config_file))
    try:
        cfg = tomllib.loads(path.read_text())
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e

    for section in ("contract", "rpc", "signers", "run", "retry", "gas", "ledger", "metadata", "server"):
        cfg.setdefault(section, {})

    if endpoints := os.getenv("RPC_ENDPOINTS"):
        cfg["rpc"]["endpoints"] = [e.strip() for e in endpoints.split(",") if e.strip()]
    if contract := os.getenv("CONTRACT_ADDRESS"):
        cfg["contract"]["address"] = contract
    if ledger_path := os.getenv("LEDGER_PATH"):
        cfg["ledger"]["path"] = ledger_path

    if not cfg["contract"].get("address"):
        raise ConfigError("contract.address is required")
    if not cfg["rpc"].get("endpoints"):
        raise ConfigError("rpc.endpoints needs at least one URL")
    return cfg


def token_ids_from_config(run: dict) -> list[int] | range:
    if ids := run.get("token_ids"):
        return sorted({int(i) for i in ids})
    try:
        start, end = int(run["start"]), int(run["end"])
    except KeyError as e:
        raise ConfigError(f"run.{e.args[0]} is required when run.token_ids isn't set") from e
    if end < start:
        raise ConfigError(f"run.end ({end}) is before run.start ({start})")
    return range(start, end + 1)
