from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run_import(self, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", "import config; print('ok')"],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        missing_path = "data/__definitely_missing_env_for_test__.env"
        result = self._run_import(missing_path)
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_bot_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("UNITTEST_BOT_ENV_FLAG=loaded\n", encoding="utf-8")
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    "import os, config; print(os.getenv('UNITTEST_BOT_ENV_FLAG', ''))",
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def test_trading_keys_are_loaded_from_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text(
                "\n".join(
                    [
                        "MODE=LIVE",
                        "TP1_SELL_RATIO=0.35",
                        "MAX_TRADES_PER_HOUR=7",
                        "CIRCUIT_BREAKER_PERSIST=no",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    (
                        "import config; "
                        "print(f\"{config.MODE}|{config.TP1_SELL_RATIO}|"
                        "{config.MAX_TRADES_PER_HOUR}|{config.CIRCUIT_BREAKER_PERSIST}\")"
                    ),
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "live|0.35|7|False")


class ConfigValidationTests(unittest.TestCase):
    def setUp(self) -> None:
        import config

        self.config = config
        self._old = {
            key: getattr(config, key)
            for key in ("RPC_URL", "MODE", "WALLET_KEYPAIR_PATH", "AUTHORITY_POLICY", "TP1_SELL_RATIO", "BOT_POLL_SECONDS")
        }
        config.RPC_URL = "https://rpc.example"
        config.MODE = "paper"
        config.WALLET_KEYPAIR_PATH = ""
        config.AUTHORITY_POLICY = "permissive"
        config.TP1_SELL_RATIO = 0.5
        config.BOT_POLL_SECONDS = 15

    def tearDown(self) -> None:
        for key, value in self._old.items():
            setattr(self.config, key, value)

    def test_paper_defaults_validate(self) -> None:
        self.config.validate()

    def test_live_without_wallet_is_fatal(self) -> None:
        self.config.MODE = "live"
        with self.assertRaises(self.config.ConfigError) as ctx:
            self.config.validate()
        self.assertIn("WALLET_KEYPAIR_PATH", str(ctx.exception))

    def test_collects_every_problem(self) -> None:
        self.config.RPC_URL = ""
        self.config.AUTHORITY_POLICY = "lenient"
        self.config.TP1_SELL_RATIO = 1.5
        with self.assertRaises(self.config.ConfigError) as ctx:
            self.config.validate()
        message = str(ctx.exception)
        self.assertIn("RPC_URL", message)
        self.assertIn("AUTHORITY_POLICY", message)
        self.assertIn("TP1_SELL_RATIO", message)

    def test_snapshot_masks_secrets(self) -> None:
        self.config.RPC_URL = "https://mainnet.example/?api-key=abcdef123456"
        snap = self.config.snapshot()
        self.assertNotIn("abcdef123456", str(snap["RPC_URL"]))
        self.assertIn("***", snap["RPC_URL"])
        self.assertEqual(snap["MODE"], "paper")


if __name__ == "__main__":
    unittest.main()
