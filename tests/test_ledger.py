"""Ledger records, transitions and both storage backends."""

import json
import os
import tempfile
from pathlib import Path
from unittest import TestCase, mock

from batchmint.constants import ErrorKind, TokenStatus
from batchmint.errors import ConfigError, CorruptStateError, InvalidTransitionError, MetadataError
from batchmint.ledger import (
    JsonLedger,
    SQLiteLedger,
    TokenRecord,
    ensure_records,
    open_ledger,
    pending_ids,
    requeue_failed,
    summarize,
)


def completed(token_id: int) -> TokenRecord:
    rec = TokenRecord(token_id=token_id, uri=f"ipfs://x/{token_id}")
    rec.mark_in_flight()
    rec.add_attempts(1)
    rec.mark_completed(tx_hash=f"0x{token_id:064x}", block_number=10 + token_id, gas_used=123456,
                       signer_id=0, signer_address="0xabc", nonce_used=token_id)
    return rec


def failed(token_id: int, kind: ErrorKind = ErrorKind.UNKNOWN) -> TokenRecord:
    rec = TokenRecord(token_id=token_id, uri=f"ipfs://x/{token_id}")
    rec.mark_in_flight()
    rec.add_attempts(3)
    rec.mark_failed(kind, "execution reverted", signer_id=1, signer_address="0xdef", nonce_used=7)
    return rec


class TestTokenRecord(TestCase):
    def test_happy_path(self):
        rec = completed(1)
        self.assertEqual(rec.status, TokenStatus.COMPLETED)
        self.assertTrue(rec.is_terminal)
        self.assertIsNotNone(rec.completed_at)

    def test_terminal_states_are_final(self):
        for rec in (completed(1), failed(2)):
            with self.assertRaises(InvalidTransitionError):
                rec.mark_in_flight()
            with self.assertRaises(InvalidTransitionError):
                rec.mark_completed(tx_hash="0x1", block_number=1, gas_used=1)
            with self.assertRaises(InvalidTransitionError):
                rec.return_to_pending()

    def test_pending_cannot_complete_directly(self):
        rec = TokenRecord(token_id=1)
        with self.assertRaises(InvalidTransitionError):
            rec.mark_completed(tx_hash="0x1", block_number=1, gas_used=1)
        with self.assertRaises(InvalidTransitionError):
            rec.mark_failed(ErrorKind.UNKNOWN, "boom")

    def test_requeue_only_from_failed(self):
        rec = failed(1)
        rec.requeue()
        self.assertEqual(rec.status, TokenStatus.PENDING)
        self.assertEqual(rec.attempts, 3)
        with self.assertRaises(InvalidTransitionError):
            completed(2).requeue()

    def test_uri_is_immutable(self):
        rec = TokenRecord(token_id=1, uri="ipfs://a")
        rec.set_uri("ipfs://a")
        with self.assertRaises(ValueError):
            rec.set_uri("ipfs://b")

    def test_attempts_never_decrease(self):
        with self.assertRaises(ValueError):
            TokenRecord(token_id=1).add_attempts(-1)

    def test_dict_uses_mint_log_fields(self):
        d = completed(5).to_dict()
        self.assertEqual(d["tokenId"], 5)
        self.assertEqual(d["gasUsed"], "123456")
        self.assertEqual(d["txHash"], f"0x{5:064x}")
        self.assertEqual(d["status"], "completed")
        back = TokenRecord.from_dict(d)
        self.assertEqual(back.gas_used, 123456)
        self.assertEqual(back.status, TokenStatus.COMPLETED)

        f = TokenRecord.from_dict(failed(6, ErrorKind.NONCE_ERROR).to_dict())
        self.assertIs(f.last_error_kind, ErrorKind.NONCE_ERROR)


class TestLedgerHelpers(TestCase):
    def test_summary_counts_in_flight_as_pending(self):
        records = {1: completed(1), 2: failed(2), 3: TokenRecord(token_id=3), 4: TokenRecord(token_id=4)}
        records[4].mark_in_flight()
        self.assertEqual(summarize(records), {"total": 4, "successful": 1, "failed": 1, "pending": 2})

    def test_pending_ids(self):
        records = {1: completed(1), 2: failed(2), 3: TokenRecord(token_id=3)}
        self.assertEqual(pending_ids(range(1, 6), records), [2, 3, 4, 5])
        self.assertEqual(pending_ids(range(1, 6), records, include_failed=False), [3, 4, 5])
        self.assertEqual(pending_ids(range(1, 6), records), pending_ids(range(1, 6), records))

    def test_ensure_records_resolves_uri_once(self):
        records = {1: completed(1)}
        calls = []

        def resolve(token_id):
            calls.append(token_id)
            return f"ipfs://new/{token_id}"

        self.assertEqual(ensure_records([1, 2, 3], records, resolve), (2, {}))
        self.assertEqual(calls, [2, 3])
        self.assertEqual(records[2].uri, "ipfs://new/2")
        self.assertEqual(records[1].uri, "ipfs://x/1")

    def test_ensure_records_keeps_unresolvable_tokens(self):
        def resolve(token_id):
            if token_id == 3:
                raise MetadataError(token_id, "no metadata document")
            return f"ipfs://new/{token_id}"

        records = {}
        created, unresolved = ensure_records([2, 3], records, resolve)
        self.assertEqual(created, 2)
        self.assertEqual(unresolved, {3: "no metadata document"})
        self.assertIsNone(records[3].uri)
        self.assertEqual(records[3].status, TokenStatus.PENDING)

        # A later pass tries again for the record still without a URI.
        created, unresolved = ensure_records([2, 3], records, lambda t: f"ipfs://fixed/{t}")
        self.assertEqual((created, unresolved), (0, {}))
        self.assertEqual(records[3].uri, "ipfs://fixed/3")
        self.assertEqual(records[2].uri, "ipfs://new/2")

    def test_requeue_failed(self):
        records = {1: completed(1), 2: failed(2), 3: failed(3)}
        self.assertEqual(requeue_failed(records, [3, 1, 99]), [3])
        self.assertEqual(records[2].status, TokenStatus.FAILED)
        self.assertEqual(requeue_failed(records), [2])


class LedgerBackendMixin:
    def make_ledger(self, tmp: Path):
        raise NotImplementedError

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.ledger = self.make_ledger(self.tmp)

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_ledger_is_empty(self):
        self.assertEqual(self.ledger.load(), {})

    def test_snapshot_then_load(self):
        records = {1: completed(1), 2: failed(2, ErrorKind.INSUFFICIENT_FUNDS), 3: TokenRecord(token_id=3, uri="u")}
        self.ledger.snapshot(records, signer_stats={"0": {"minted": 1}})
        loaded = self.make_ledger(self.tmp).load()
        self.assertEqual(sorted(loaded), [1, 2, 3])
        self.assertEqual(loaded[1].tx_hash, records[1].tx_hash)
        self.assertEqual(loaded[2].last_error_kind, ErrorKind.INSUFFICIENT_FUNDS)
        self.assertEqual(loaded[3].status, TokenStatus.PENDING)
        self.assertEqual(summarize(loaded), summarize(records))

    def test_in_flight_comes_back_pending(self):
        rec = TokenRecord(token_id=1, uri="u")
        rec.mark_in_flight()
        self.ledger.snapshot({1: rec})
        self.assertEqual(self.make_ledger(self.tmp).load()[1].status, TokenStatus.PENDING)

    def test_snapshot_replaces_previous_contents(self):
        self.ledger.snapshot({1: completed(1), 2: completed(2)})
        self.ledger.snapshot({2: completed(2)})
        self.assertEqual(sorted(self.ledger.load()), [2])


class TestJsonLedger(LedgerBackendMixin, TestCase):
    def make_ledger(self, tmp):
        return JsonLedger(tmp / "out" / "mint_log.json", label="batch-1")

    def test_document_layout(self):
        self.ledger.snapshot({1: completed(1), 2: failed(2)}, signer_stats={"0": {"minted": 1}})
        doc = json.loads(self.ledger.path.read_text())
        self.assertEqual(doc["batch"], "batch-1")
        self.assertEqual(doc["summary"], {"total": 2, "successful": 1, "failed": 1, "pending": 0})
        self.assertEqual(set(doc["tokens"]), {"1", "2"})
        self.assertEqual(doc["signerStats"], {"0": {"minted": 1}})

    def test_failed_rename_keeps_previous_snapshot(self):
        self.ledger.snapshot({1: completed(1)})
        with mock.patch("batchmint.ledger.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                self.ledger.snapshot({1: completed(1), 2: completed(2)})
        self.assertEqual(sorted(self.ledger.load()), [1])
        leftovers = [p for p in os.listdir(self.ledger.path.parent) if p.endswith(".tmp")]
        self.assertEqual(leftovers, [])

    def test_garbage_is_corrupt(self):
        self.ledger.path.parent.mkdir(parents=True)
        self.ledger.path.write_text("{not json")
        with self.assertRaises(CorruptStateError):
            self.ledger.load()

    def test_wrong_shape_is_corrupt(self):
        self.ledger.path.parent.mkdir(parents=True)
        self.ledger.path.write_text(json.dumps({"tokens": {"1": {"status": "minted?"}}}))
        with self.assertRaises(CorruptStateError):
            self.ledger.load()


class TestSQLiteLedger(LedgerBackendMixin, TestCase):
    def make_ledger(self, tmp):
        return SQLiteLedger(tmp / "ledger.db")

    def test_garbage_is_corrupt(self):
        self.ledger.db_path.write_bytes(b"this is not a database file" * 100)
        with self.assertRaises(CorruptStateError):
            self.ledger.load()


class TestOpenLedger(TestCase):
    def test_backends(self):
        self.assertIsInstance(open_ledger("json", "a.json"), JsonLedger)
        self.assertIsInstance(open_ledger("sqlite", "a.db"), SQLiteLedger)
        with self.assertRaises(ConfigError):
            open_ledger("redis", "x")
