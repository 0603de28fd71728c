import os
import unittest
from datetime import date, timedelta, timezone
from unittest import mock

import requests

from orgsync.garoon_client import GaroonService, describe_manifest
from orgsync.models import RemoteConfig, RemoteError, VersionEntry


ENVELOPE = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope"'
    ' xmlns:schedule="http://wsdl.cybozu.co.jp/schedule/2008">'
    "<soap:Body>{body}</soap:Body></soap:Envelope>"
)

VERSIONS_BODY = (
    "<schedule:ScheduleGetEventVersionsResponse><returns>"
    '<event_item id="1" version="10" operation="add"/>'
    '<event_item id="2" version="11" operation="modify"/>'
    '<event_item id="3" version="12" operation="remove"/>'
    "</returns></schedule:ScheduleGetEventVersionsResponse>"
)

EVENTS_BODY = (
    "<schedule:ScheduleGetEventsByIdResponse><returns>"
    '<schedule_event id="1" version="10" event_type="normal" plan="Meeting" detail="Kickoff"'
    ' description="Bring slides">'
    "<members>"
    '<member order="0"><user id="5" name="Alice"/></member>'
    '<member order="1"><facility id="8" name="Room A"/></member>'
    "</members>"
    '<when><datetime start="2024-01-03T01:00:00Z" end="2024-01-03T02:00:00Z"/></when>'
    "</schedule_event>"
    '<schedule_event id="2" version="11" event_type="repeat" plan="" detail="Standup">'
    "<repeat_info>"
    '<condition type="weekday" start_date="2024-01-01" end_date="2024-01-31"'
    ' start_time="09:00:00" end_time="09:15:00"/>'
    "<exclusive_datetimes>"
    '<exclusive_datetime start="2024-01-08T00:00:00Z" end="2024-01-08T23:59:59Z"/>'
    "</exclusive_datetimes>"
    "</repeat_info>"
    "</schedule_event>"
    "</returns></schedule:ScheduleGetEventsByIdResponse>"
)

FAULT_BODY = (
    "<soap:Fault><soap:Code><soap:Value>soap:Sender</soap:Value></soap:Code>"
    '<soap:Reason><soap:Text xml:lang="en">Authentication failed</soap:Text></soap:Reason>'
    "<soap:Detail><code>GRN_CMMN_00105</code><cause>Wrong password</cause></soap:Detail>"
    "</soap:Fault>"
)


def _response(body: str, status_code: int = 200) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.content = ENVELOPE.format(body=body).encode("utf-8")
    return response


class GaroonServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = GaroonService(
            RemoteConfig(base_url="https://groupware.example.com/api", username="alice", password="pw")
        )

    def test_version_manifest_parsed_and_known_versions_sent(self) -> None:
        with mock.patch("orgsync.garoon_client.requests.post", return_value=_response(VERSIONS_BODY)) as post:
            entries = self.service.get_version_manifest(date(2024, 1, 1), date(2024, 1, 15), {"2": "9"})

        self.assertEqual(
            entries,
            [
                VersionEntry(id="1", version="10", operation="add"),
                VersionEntry(id="2", version="11", operation="modify"),
                VersionEntry(id="3", version="12", operation="remove"),
            ],
        )
        payload = post.call_args.kwargs["data"].decode("utf-8")
        self.assertIn("<Action>ScheduleGetEventVersions</Action>", payload)
        self.assertIn('<event_item id="2" version="9"/>', payload)
        self.assertIn('start="2024-01-01T00:00:00Z"', payload)
        self.assertIn('end="2024-01-15T23:59:59Z"', payload)
        self.assertIn("<Username>alice</Username>", payload)
        self.assertEqual(post.call_args.args[0], "https://groupware.example.com/api")

    def test_version_manifest_window_follows_zone(self) -> None:
        jst = timezone(timedelta(hours=9))
        with mock.patch("orgsync.garoon_client.requests.post", return_value=_response(VERSIONS_BODY)) as post:
            self.service.get_version_manifest(date(2024, 1, 1), date(2024, 1, 15), tz=jst)

        payload = post.call_args.kwargs["data"].decode("utf-8")
        self.assertIn('start="2023-12-31T15:00:00Z"', payload)
        self.assertIn('end="2024-01-15T14:59:59Z"', payload)

    def test_events_by_id_parsed(self) -> None:
        with mock.patch("orgsync.garoon_client.requests.post", return_value=_response(EVENTS_BODY)) as post:
            events = self.service.get_events_by_id(["1", "2"])

        payload = post.call_args.kwargs["data"].decode("utf-8")
        self.assertIn("<event_id>1</event_id><event_id>2</event_id>", payload)
        self.assertEqual([event.id for event in events], ["1", "2"])
        first, second = events
        self.assertEqual(first.plan, "Meeting")
        self.assertEqual(first.detail, "Kickoff")
        self.assertEqual(first.description, "Bring slides")
        self.assertEqual([(m.kind, m.name) for m in first.members], [("user", "Alice"), ("facility", "Room A")])
        self.assertEqual(first.when, [{"start": "2024-01-03T01:00:00Z", "end": "2024-01-03T02:00:00Z"}])
        self.assertEqual(second.conditions[0]["type"], "weekday")
        self.assertEqual(second.exclusions[0]["start"], "2024-01-08T00:00:00Z")
        self.assertEqual(second.event_type, "repeat")

    def test_empty_ids_skip_request(self) -> None:
        with mock.patch("orgsync.garoon_client.requests.post") as post:
            self.assertEqual(self.service.get_events_by_id([]), [])
        post.assert_not_called()

    def test_fault_raises_remote_error(self) -> None:
        with mock.patch("orgsync.garoon_client.requests.post", return_value=_response(FAULT_BODY, 500)):
            with self.assertRaises(RemoteError) as ctx:
                self.service.get_version_manifest(date(2024, 1, 1), date(2024, 1, 15))
        self.assertIn("Authentication failed", str(ctx.exception))
        self.assertIn("ScheduleGetEventVersions", str(ctx.exception))

    def test_unparsable_response_raises(self) -> None:
        response = mock.Mock(status_code=502, content=b"<html>Bad gateway")
        with mock.patch("orgsync.garoon_client.requests.post", return_value=response):
            with self.assertRaises(RemoteError):
                self.service.get_events_by_id(["1"])

    def test_http_error_without_fault_raises(self) -> None:
        with mock.patch("orgsync.garoon_client.requests.post", return_value=_response("<returns/>", 503)):
            with self.assertRaises(RemoteError) as ctx:
                self.service.get_events_by_id(["1"])
        self.assertIn("503", str(ctx.exception))

    def test_transport_error_raises(self) -> None:
        with mock.patch(
            "orgsync.garoon_client.requests.post",
            side_effect=requests.ConnectionError("connection refused"),
        ):
            with self.assertRaises(RemoteError):
                self.service.get_version_manifest(date(2024, 1, 1), date(2024, 1, 15))

    def test_missing_returns_raises(self) -> None:
        with mock.patch("orgsync.garoon_client.requests.post", return_value=_response("<nothing/>")):
            with self.assertRaises(RemoteError):
                self.service.get_version_manifest(date(2024, 1, 1), date(2024, 1, 15))

    def test_malformed_event_item_raises(self) -> None:
        body = '<returns><event_item id="1" version="2"/></returns>'
        with mock.patch("orgsync.garoon_client.requests.post", return_value=_response(body)):
            with self.assertRaises(RemoteError) as ctx:
                self.service.get_version_manifest(date(2024, 1, 1), date(2024, 1, 15))
        self.assertIn("event_item", str(ctx.exception))

    def test_incomplete_config_does_not_call_remote(self) -> None:
        service = GaroonService(RemoteConfig(base_url="", username="alice"))
        with mock.patch("orgsync.garoon_client.requests.post") as post:
            with self.assertRaises(RemoteError):
                service.get_version_manifest(date(2024, 1, 1), date(2024, 1, 15))
        post.assert_not_called()

    def test_password_from_environment(self) -> None:
        service = GaroonService(RemoteConfig(base_url="https://groupware.example.com/api", username="alice"))
        with mock.patch.dict(os.environ, {"ORGSYNC_REMOTE_PASSWORD": "from-env"}):
            with mock.patch("orgsync.garoon_client.requests.post", return_value=_response(VERSIONS_BODY)) as post:
                service.get_version_manifest(date(2024, 1, 1), date(2024, 1, 15))
        self.assertIn("<Password>from-env</Password>", post.call_args.kwargs["data"].decode("utf-8"))

    def test_describe_manifest(self) -> None:
        entries = [
            VersionEntry(id="1", version="1", operation="add"),
            VersionEntry(id="2", version="1", operation="add"),
            VersionEntry(id="3", version="1", operation="remove"),
        ]
        self.assertEqual(describe_manifest(entries), {"add": 2, "modify": 0, "remove": 1})


if __name__ == "__main__":
    unittest.main()
