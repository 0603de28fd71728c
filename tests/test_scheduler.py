import unittest
from unittest import mock

from orgsync.models import AppConfig, ConfigurationError, SyncResult
from orgsync.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def test_startup_run_then_stop(self) -> None:
        engine = mock.Mock()
        engine.run_once.return_value = SyncResult(status="error", message="boom", duration_ms=1, trigger="startup")
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig.from_dict({"sync": {"interval_seconds": 3600}})

        scheduler = SyncScheduler(engine, config_manager)
        scheduler.start()
        scheduler.stop()

        engine.run_once.assert_any_call(trigger="startup")
        self.assertFalse(scheduler.is_running)
        status = scheduler.status()
        self.assertFalse(status["running"])
        self.assertEqual(status["interval_seconds"], 3600)
        self.assertEqual(status["last_result"]["status"], "error")

    def test_interval_falls_back_on_bad_config(self) -> None:
        config_manager = mock.Mock()
        config_manager.load.side_effect = ConfigurationError("broken")
        scheduler = SyncScheduler(mock.Mock(), config_manager)
        self.assertEqual(scheduler._interval_seconds(), 300)

        config_manager.load.side_effect = None
        config_manager.load.return_value = AppConfig.from_dict({"sync": {"interval_seconds": 120}})
        self.assertEqual(scheduler._interval_seconds(), 120)
        self.assertIsNone(scheduler.status()["last_result"])


if __name__ == "__main__":
    unittest.main()
