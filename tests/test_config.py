import os
import tempfile
from pathlib import Path
from unittest import TestCase, mock

from batchmint.config import config_file, load_config, token_ids_from_config
from batchmint.errors import ConfigError, SignerInitError
from batchmint.ledger import SQLiteLedger
from batchmint.metadata import TemplateUri
from batchmint.runtime import build_batch_run, load_signers

# Well-known throwaway development keys.
KEY_A = "0x" + "11" * 32
KEY_B = "0x" + "22" * 32

CONFIG = """
[contract]
address = "0x7d1955f814f25ec2065c01b9bfc0acc29b3f2926"

[rpc]
endpoints = ["http://rpc-a.test", "http://rpc-b.test"]

[signers]
key_env = ["KEY_A", "KEY_B", "KEY_MISSING"]
backoff_threshold = 4

[run]
start = 10
end = 19
concurrency = 3
batch_size = 4

[retry]
attempts = 2

[ledger]
backend = "sqlite"
path = "{ledger}"

[metadata]
kind = "template"
template = "ipfs://cid/{{token_id}}.json"
"""


class TestLoadConfig(TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.path = self.tmp / "config.toml"
        self.path.write_text(CONFIG.format(ledger=self.tmp / "ledger.db"))

    def tearDown(self):
        self._tmp.cleanup()

    def test_bundled_config_loads(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = load_config(config_file)
        self.assertTrue(cfg["contract"]["address"].startswith("0x"))
        self.assertEqual(cfg["ledger"]["backend"], "json")

    def test_env_overrides(self):
        env = {"RPC_ENDPOINTS": "http://x.test, http://y.test", "LEDGER_PATH": "/data/log.json"}
        with mock.patch.dict(os.environ, env, clear=True):
            cfg = load_config(self.path)
        self.assertEqual(cfg["rpc"]["endpoints"], ["http://x.test", "http://y.test"])
        self.assertEqual(cfg["ledger"]["path"], "/data/log.json")
        self.assertEqual(cfg["server"], {})

    def test_config_path_from_env(self):
        with mock.patch.dict(os.environ, {"BATCHMINT_CONFIG": str(self.path)}, clear=True):
            cfg = load_config()
        self.assertEqual(cfg["run"]["start"], 10)

    def test_missing_contract(self):
        self.path.write_text('[rpc]\nendpoints = ["http://a.test"]\n')
        with mock.patch.dict(os.environ, {}, clear=True), self.assertRaises(ConfigError):
            load_config(self.path)

    def test_unreadable(self):
        with self.assertRaises(ConfigError):
            load_config(self.tmp / "nope.toml")
        self.path.write_text("[[[")
        with self.assertRaises(ConfigError):
            load_config(self.path)

    def test_token_ids(self):
        self.assertEqual(list(token_ids_from_config({"start": 1, "end": 3})), [1, 2, 3])
        self.assertEqual(token_ids_from_config({"token_ids": [5, 2, 5]}), [2, 5])
        with self.assertRaises(ConfigError):
            token_ids_from_config({"start": 1})
        with self.assertRaises(ConfigError):
            token_ids_from_config({"start": 5, "end": 1})


class TestRuntime(TestCase):
    def test_load_signers_skips_bad_keys(self):
        env = {"A": KEY_A, "B": "not-a-key", "C": KEY_A, "D": KEY_B}
        signers, keyring = load_signers(["A", "B", "C", "D", "E"], env)
        self.assertEqual([s.signer_id for s in signers], [0, 3])
        self.assertEqual(signers[0].credential, "env:A")
        self.assertEqual(set(keyring), {s.address for s in signers})
        self.assertNotIn(KEY_A, repr(signers[0]))

    def test_no_keys_is_fatal(self):
        with self.assertRaises(SignerInitError):
            load_signers(["A"], {})

    def test_build_batch_run(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.toml"
            path.write_text(CONFIG.format(ledger=Path(tmp) / "ledger.db"))
            with mock.patch.dict(os.environ, {}, clear=True):
                cfg = load_config(path)
            run = build_batch_run(cfg, environ={"KEY_A": KEY_A, "KEY_B": KEY_B})

        self.assertEqual(list(run.token_ids), list(range(10, 20)))
        self.assertEqual(len(run.signers), 2)
        self.assertEqual(run.signers.backoff_threshold, 4)
        self.assertEqual(len(run.endpoints), 2)
        self.assertEqual(run.concurrency_limit, 3)
        self.assertEqual(run.batch_size, 4)
        self.assertEqual(run.retry.attempts, 2)
        self.assertIsInstance(run.ledger, SQLiteLedger)
        self.assertIsInstance(run.metadata, TemplateUri)
        self.assertEqual(run.metadata.resolve_uri(10), "ipfs://cid/10.json")

    def test_unknown_metadata_kind_is_config_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.toml"
            text = CONFIG.format(ledger=Path(tmp) / "ledger.db").replace('kind = "template"', 'kind = "s3"')
            path.write_text(text)
            with mock.patch.dict(os.environ, {}, clear=True):
                cfg = load_config(path)
            with self.assertRaisesRegex(ConfigError, "s3"):
                build_batch_run(cfg, environ={"KEY_A": KEY_A, "KEY_B": KEY_B})
