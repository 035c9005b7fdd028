from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import config


class LoadConfigTest(unittest.TestCase):
    def setUp(self) -> None:
        self._base_env = {
            "TV_SESSION": "sess-123",
            "TV_SIGNATURE": "sig-456",
        }

    def _write_runtime_settings(self, payload: dict[str, object]) -> Path:
        with tempfile.NamedTemporaryFile("w", delete=False, suffix=".json") as tmp:
            json.dump(payload, tmp)
            tmp_path = Path(tmp.name)
        return tmp_path

    def _load_with_payload(
        self,
        payload: dict[str, object],
        extra_env: dict[str, str] | None = None,
        **overrides: object,
    ) -> config.ClientConfig:
        runtime_path = self._write_runtime_settings(payload)
        try:
            env = dict(self._base_env)
            if extra_env:
                env.update(extra_env)
            with mock.patch.dict(os.environ, env, clear=False):
                with mock.patch.object(config, "RUNTIME_SETTINGS_FILE", runtime_path), mock.patch.object(
                    config, "load_dotenv"
                ):
                    return config.load_config(**overrides)
        finally:
            try:
                runtime_path.unlink()
            except FileNotFoundError:
                pass

    def test_defaults_without_json(self) -> None:
        cfg = self._load_with_payload({})
        self.assertEqual(cfg.session, "sess-123")
        self.assertEqual(cfg.signature, "sig-456")
        self.assertEqual(cfg.server, "data")
        self.assertTrue(cfg.auto_rehydrate)
        self.assertEqual(cfg.reconnect.max_retries, 10)
        self.assertEqual(cfg.connect_timeout, 15.0)
        self.assertFalse(cfg.anonymous)

    def test_load_config_reads_reconnect_policy(self) -> None:
        payload = {
            "reconnect": {"max_retries": 4, "base_delay": 2, "max_delay": 45, "multiplier": 1.5, "jitter": False},
            "keepalive": {"check_interval": 5, "max_missed": 2},
        }
        cfg = self._load_with_payload(payload)
        self.assertEqual(cfg.reconnect.max_retries, 4)
        self.assertEqual(cfg.reconnect.base_delay, 2.0)
        self.assertEqual(cfg.reconnect.max_delay, 45.0)
        self.assertEqual(cfg.reconnect.multiplier, 1.5)
        self.assertFalse(cfg.reconnect.jitter)
        self.assertEqual(cfg.keepalive.check_interval, 5.0)
        self.assertEqual(cfg.keepalive.max_missed, 2)

    def test_reconnect_values_are_clamped(self) -> None:
        payload = {"reconnect": {"max_retries": -3, "base_delay": 10, "max_delay": 1, "multiplier": 0.5}}
        cfg = self._load_with_payload(payload)
        self.assertEqual(cfg.reconnect.max_retries, 0)
        self.assertEqual(cfg.reconnect.multiplier, 1.0)
        # max_delay не може бути меншим за base_delay.
        self.assertEqual(cfg.reconnect.max_delay, 10.0)

    def test_env_overrides_json(self) -> None:
        payload = {"reconnect": {"max_retries": 4}, "timeouts": {"request": 12, "history": 50}}
        env = {
            "TV_RECONNECT_MAX_RETRIES": "7",
            "TV_REQUEST_TIMEOUT": "3",
            "TV_SERVER": "prodata",
            "TV_AUTO_REHYDRATE": "false",
            "TV_AUTH_MAX_ATTEMPTS": "5",
        }
        cfg = self._load_with_payload(payload, env)
        self.assertEqual(cfg.reconnect.max_retries, 7)
        self.assertEqual(cfg.request_timeout, 3.0)
        self.assertEqual(cfg.history_timeout, 50.0)
        self.assertEqual(cfg.server, "prodata")
        self.assertFalse(cfg.auto_rehydrate)
        self.assertEqual(cfg.auth.max_attempts, 5)

    def test_connect_timeout_has_floor(self) -> None:
        cfg = self._load_with_payload({"timeouts": {"connect": 0.1}}, {"TV_CONNECT_TIMEOUT": "0.2"})
        self.assertEqual(cfg.connect_timeout, 1.0)

    def test_explicit_overrides_win(self) -> None:
        cfg = self._load_with_payload({}, {"TV_SERVER": "prodata"}, server="widgetdata", token="tok")
        self.assertEqual(cfg.server, "widgetdata")
        self.assertEqual(cfg.static_token, "tok")

    def test_unknown_server_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self._load_with_payload({}, {"TV_SERVER": "moon"})

    def test_history_server_requires_chart_id(self) -> None:
        with self.assertRaises(ValueError):
            self._load_with_payload({}, {"TV_SERVER": "history-data"})
        cfg = self._load_with_payload({}, {"TV_SERVER": "history-data", "TV_CHART_ID": "abc"})
        self.assertTrue(cfg.endpoint_url().endswith("&chartId=abc"))

    def test_metrics_settings(self) -> None:
        cfg = self._load_with_payload({}, {"TV_METRICS_ENABLED": "1", "TV_METRICS_PORT": "9311"})
        self.assertTrue(cfg.observability.metrics_enabled)
        self.assertEqual(cfg.observability.metrics_port, 9311)


class FromOptionsTest(unittest.TestCase):
    def test_camel_case_options(self) -> None:
        cfg = config.ClientConfig.from_options(
            {
                "token": "abc",
                "server": "prodata",
                "reconnectMaxRetries": 3,
                "reconnectBaseDelayMs": 200,
                "reconnectMaxDelayMs": 5000,
                "keepaliveIntervalMs": 2000,
                "requestTimeoutMs": 750,
                "autoRehydrate": False,
            }
        )
        self.assertEqual(cfg.token, "abc")
        self.assertEqual(cfg.reconnect.max_retries, 3)
        self.assertAlmostEqual(cfg.reconnect.base_delay, 0.2)
        self.assertAlmostEqual(cfg.reconnect.max_delay, 5.0)
        self.assertAlmostEqual(cfg.keepalive.check_interval, 2.0)
        self.assertAlmostEqual(cfg.request_timeout, 0.75)
        self.assertFalse(cfg.auto_rehydrate)

    def test_snake_case_kwargs(self) -> None:
        cfg = config.ClientConfig.from_options(session_id="s", auth_max_attempts=0, delivery_high_water=5)
        self.assertEqual(cfg.session, "s")
        self.assertEqual(cfg.auth.max_attempts, 1)
        self.assertEqual(cfg.delivery_high_water, 5)

    def test_connect_timeout_is_clamped(self) -> None:
        cfg = config.ClientConfig.from_options(connectTimeoutMs=10)
        self.assertEqual(cfg.connect_timeout, 1.0)

    def test_anonymous_defaults(self) -> None:
        cfg = config.ClientConfig.from_options()
        self.assertTrue(cfg.anonymous)
        self.assertEqual(cfg.static_token, "unauthorized_user_token")
        self.assertEqual(cfg.endpoint_url(), "wss://data.tradingview.com/socket.io/websocket?type=chart")

    def test_with_overrides_keeps_validation(self) -> None:
        cfg = config.ClientConfig.from_options()
        with self.assertRaises(ValueError):
            cfg.with_overrides(server="history-data")


if __name__ == "__main__":
    unittest.main()
