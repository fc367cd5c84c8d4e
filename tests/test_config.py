import json
import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from modelvault import logging_config
from modelvault.config import Config, config_path, default_cache_root, load_config, redact_token, save_config


class TestConfig(unittest.TestCase):
    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_config(Path(td) / "config.json"), Config())

    def test_save_load_round_trip_ignores_unknown_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "config.json"
            cfg = Config(repository_kind="http", repository_root="https://models.example.com", token="tok_secret_123")

            save_config(cfg, path)
            raw = json.loads(path.read_text(encoding="utf-8"))
            raw["future_option"] = True
            path.write_text(json.dumps(raw), encoding="utf-8")

            self.assertEqual(load_config(path), cfg)

    def test_env_override_path(self) -> None:
        with patch.dict(os.environ, {"MODELVAULT_CONFIG_PATH": "/tmp/mv/config.json"}):
            self.assertEqual(config_path(), Path("/tmp/mv/config.json"))
        self.assertEqual(config_path("/x/y.json"), Path("/x/y.json"))

    def test_cache_root(self) -> None:
        self.assertEqual(Config(cache_root="/tmp/c").resolved_cache_root(), Path("/tmp/c"))
        self.assertEqual(Config().resolved_cache_root(), default_cache_root())
        self.assertEqual(default_cache_root().name, "models")

    def test_redact_token(self) -> None:
        self.assertEqual(redact_token("tok_1234567890"), "tok_12...7890")
        self.assertEqual(redact_token("short"), "sh...rt")
        self.assertIsNone(redact_token(None))


class TestLoggingConfig(unittest.TestCase):
    def setUp(self) -> None:
        logging_config._CONFIGURED = False

    def tearDown(self) -> None:
        logging_config._CONFIGURED = False

    def test_silent_by_default(self) -> None:
        with patch.dict(os.environ, {}, clear=True), patch("logging.basicConfig") as basic:
            logging_config.configure_logging()
        basic.assert_not_called()

    def test_level_from_env_and_idempotent(self) -> None:
        with patch.dict(os.environ, {"MODELVAULT_LOG_LEVEL": "2"}, clear=True), patch("logging.basicConfig") as basic:
            logging_config.configure_logging()
            logging_config.configure_logging()
        basic.assert_called_once()
        self.assertEqual(basic.call_args.kwargs["level"], logging.DEBUG)

    def test_log_file(self) -> None:
        with tempfile.TemporaryDirectory() as td, patch("logging.basicConfig") as basic:
            logging_config.configure_logging(1, str(Path(td) / "logs" / "mv.log"))
            self.assertTrue((Path(td) / "logs").is_dir())
        self.assertEqual(basic.call_args.kwargs["level"], logging.INFO)
        self.assertEqual(basic.call_args.kwargs["filename"], Path(td) / "logs" / "mv.log")


if __name__ == "__main__":
    unittest.main()
