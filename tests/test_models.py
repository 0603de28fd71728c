import os
import unittest
from datetime import date, datetime, time, timedelta, timezone
from unittest import mock

from orgsync.models import (
    AppConfig,
    ConfigurationError,
    DocumentConfig,
    MalformedEventError,
    RecurrenceCondition,
    RemoteConfig,
    RemoteError,
    SyncConfig,
    lookahead_window,
    parse_iso_datetime,
    resolve_timezone,
)


class ModelsTests(unittest.TestCase):
    def test_app_config_validate_lists_missing_settings(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            AppConfig.from_dict({"remote": {"base_url": "https://x.example.com"}}).validate()
        self.assertIn("remote.username", str(ctx.exception))
        self.assertIn("document.path", str(ctx.exception))
        self.assertNotIn("remote.base_url", str(ctx.exception))

        AppConfig.from_dict(
            {
                "remote": {"base_url": "https://x.example.com", "username": "u"},
                "document": {"path": "schedule.org"},
            }
        ).validate()

    def test_sync_config_defaults_and_clamps(self) -> None:
        cfg = SyncConfig.from_dict({"horizon_days": 0, "interval_seconds": 5, "timezone": " "})
        self.assertEqual(cfg.horizon_days, 1)
        self.assertEqual(cfg.interval_seconds, 30)
        self.assertEqual(cfg.timezone, "UTC")
        self.assertEqual(SyncConfig.from_dict({}).horizon_days, 14)

    def test_remote_password_falls_back_to_environment(self) -> None:
        with mock.patch.dict(os.environ, {"ORGSYNC_REMOTE_PASSWORD": "env-secret"}):
            self.assertEqual(RemoteConfig.from_dict({}).resolved_password(), "env-secret")
            self.assertEqual(RemoteConfig.from_dict({"password": "file"}).resolved_password(), "file")

    def test_document_archive_path_default(self) -> None:
        self.assertEqual(DocumentConfig(path="a.org").resolved_archive_path(), "a.org_archive")
        self.assertEqual(DocumentConfig(path="a.org", archive_path="b.org").resolved_archive_path(), "b.org")
        self.assertEqual(DocumentConfig().resolved_archive_path(), "")

    def test_recurrence_condition_from_dict(self) -> None:
        condition = RecurrenceCondition.from_dict(
            {"type": "week", "week": "3", "start_date": "2024-01-01", "start_time": "10:00:00"},
            event_id="7",
            horizon_days=14,
        )
        self.assertEqual(condition.end_date, date(2024, 1, 15))
        self.assertEqual(condition.week, 3)
        self.assertIsNone(condition.day)
        self.assertEqual(condition.start_time, time(10, 0))
        self.assertIsNone(condition.end_time)

    def test_recurrence_condition_invalid_values(self) -> None:
        with self.assertRaises(MalformedEventError) as ctx:
            RecurrenceCondition.from_dict({"type": "week", "start_date": "2024-01-01", "week": "wed"}, event_id="7")
        self.assertIsInstance(ctx.exception, RemoteError)
        self.assertEqual(ctx.exception.event_id, "7")

    def test_lookahead_window(self) -> None:
        now = datetime(2024, 1, 31, 20, 0, tzinfo=timezone.utc)
        self.assertEqual(lookahead_window(now, 14), (date(2024, 1, 31), date(2024, 2, 14)))
        jst = timezone(timedelta(hours=9))
        self.assertEqual(lookahead_window(now, 14, jst), (date(2024, 2, 1), date(2024, 2, 15)))

    def test_parse_iso_datetime(self) -> None:
        self.assertEqual(
            parse_iso_datetime("2024-01-03T01:00:00Z"),
            datetime(2024, 1, 3, 1, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(parse_iso_datetime("2024-01-03T01:00:00").tzinfo, timezone.utc)
        self.assertIsNone(parse_iso_datetime(None))

    def test_resolve_timezone_utc(self) -> None:
        self.assertIs(resolve_timezone("UTC"), timezone.utc)
        self.assertIs(resolve_timezone(""), timezone.utc)


if __name__ == "__main__":
    unittest.main()
