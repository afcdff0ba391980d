from collections import Counter
from collections.abc import Iterable

from batchmint.constants import TokenStatus
from batchmint.ledger import TokenRecord, summarize


def find_gaps(token_ids: Iterable[int], records: dict[int, TokenRecord]) -> list[dict]:
    """Runs of IDs in `token_ids` the ledger has never seen."""
    gaps = []
    run_start = prev = None
    for token_id in sorted(token_ids):
        if token_id in records:
            continue
        if run_start is None or token_id != prev + 1:
            if run_start is not None:
                gaps.append({"from": run_start, "to": prev, "missing": prev - run_start + 1})
            run_start = token_id
        prev = token_id
    if run_start is not None:
        gaps.append({"from": run_start, "to": prev, "missing": prev - run_start + 1})
    return gaps


def analyze(records: dict[int, TokenRecord], token_ids: Iterable[int] | None = None, *, limit: int = 5) -> dict:
    failed = sorted((r for r in records.values() if r.status == TokenStatus.FAILED), key=lambda r: r.token_id)
    completed = [r for r in records.values() if r.status == TokenStatus.COMPLETED]
    last = max(completed, key=lambda r: r.token_id, default=None)
    report = {
        "summary": summarize(records),
        "failures_by_kind": dict(Counter(str(r.last_error_kind) for r in failed)),
        "first_failed": [
            {"tokenId": r.token_id, "attempts": r.attempts, "errorType": r.last_error_kind, "error": r.last_error}
            for r in failed[:limit]
        ],
        "last_completed": None if last is None else {
            "tokenId": last.token_id, "txHash": last.tx_hash, "completedAt": last.completed_at,
        },
        "total_attempts": sum(r.attempts for r in records.values()),
    }
    if token_ids is not None:
        report["gaps"] = find_gaps(token_ids, records)
    return report
