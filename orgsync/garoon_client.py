from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Iterable, Mapping
from xml.sax.saxutils import escape, quoteattr

import requests

from orgsync.calendar_math import at, end_of_day
from orgsync.models import Member, RawEvent, RemoteConfig, RemoteError, VersionEntry


logger = logging.getLogger(__name__)

SOAP_CONTENT_TYPE = "application/soap+xml; charset=UTF-8"
TOKEN_LIFETIME = timedelta(minutes=5)
MEMBER_KINDS = ("user", "organization", "facility")

ENVELOPE_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope">
  <soap:Header>
    <Action>{action}</Action>
    <Security>
      <UsernameToken>
        <Username>{username}</Username>
        <Password>{password}</Password>
      </UsernameToken>
    </Security>
    <Timestamp>
      <Created>{created}</Created>
      <Expires>{expires}</Expires>
    </Timestamp>
    <Locale>en</Locale>
  </soap:Header>
  <soap:Body>
    <{action}>
      <parameters{parameter_attrs}>{parameters}</parameters>
    </{action}>
  </soap:Body>
</soap:Envelope>"""


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local_name(child.tag) == name]


def _first(element: ET.Element, name: str) -> ET.Element | None:
    for item in element.iter():
        if _local_name(item.tag) == name:
            return item
    return None


def _utc_stamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _attrs(element: ET.Element) -> dict[str, str]:
    return {_local_name(key): str(value) for key, value in element.attrib.items()}


def _fault_message(fault: ET.Element) -> str:
    parts: list[str] = []
    for name in ("Text", "faultstring", "cause", "diagnosis"):
        node = _first(fault, name)
        if node is not None and (node.text or "").strip():
            parts.append(node.text.strip())
    return "; ".join(parts) or "unknown fault"


def parse_version_items(returns: ET.Element) -> list[VersionEntry]:
    entries: list[VersionEntry] = []
    for item in returns.iter():
        if _local_name(item.tag) != "event_item":
            continue
        attrs = _attrs(item)
        event_id = attrs.get("id", "").strip()
        operation = attrs.get("operation", "").strip()
        if not event_id or not operation:
            raise RemoteError(f"Malformed event_item in version manifest: {ET.tostring(item, encoding='unicode')}")
        entries.append(VersionEntry(id=event_id, version=attrs.get("version", "").strip(), operation=operation))
    return entries


def parse_schedule_event(element: ET.Element) -> RawEvent:
    attrs = _attrs(element)
    event_id = attrs.get("id", "").strip()
    version = attrs.get("version", "").strip()
    if not event_id or not version:
        raise RemoteError(f"Malformed schedule_event: {ET.tostring(element, encoding='unicode')[:200]}")

    members: list[Member] = []
    for members_node in _children(element, "members"):
        for member_node in _children(members_node, "member"):
            for child in member_node:
                kind = _local_name(child.tag)
                if kind not in MEMBER_KINDS:
                    continue
                child_attrs = _attrs(child)
                members.append(
                    Member(
                        kind=kind,
                        id=child_attrs.get("id", ""),
                        name=child_attrs.get("name", ""),
                    )
                )

    when: list[dict[str, str]] = []
    for when_node in _children(element, "when"):
        for span in when_node:
            if _local_name(span.tag) in {"datetime", "date"}:
                when.append(_attrs(span))

    conditions: list[dict[str, str]] = []
    exclusions: list[dict[str, str]] = []
    for repeat_node in _children(element, "repeat_info"):
        for condition in _children(repeat_node, "condition"):
            conditions.append(_attrs(condition))
        for group in _children(repeat_node, "exclusive_datetimes"):
            for exclusive in _children(group, "exclusive_datetime"):
                exclusions.append(_attrs(exclusive))

    description = attrs.get("description", "")
    for node in _children(element, "description"):
        description = node.text or description

    return RawEvent(
        id=event_id,
        version=version,
        event_type=attrs.get("event_type", "normal"),
        plan=attrs.get("plan", ""),
        detail=attrs.get("detail", ""),
        description=description,
        when=when,
        conditions=conditions,
        exclusions=exclusions,
        members=members,
    )


class GaroonService:
    def __init__(self, config: RemoteConfig) -> None:
        self.config = config

    def _envelope(self, action: str, parameters: str, parameter_attrs: str = "", now: datetime | None = None) -> str:
        created = now or datetime.now(timezone.utc)
        return ENVELOPE_TEMPLATE.format(
            action=action,
            username=escape(self.config.username),
            password=escape(self.config.resolved_password()),
            created=_utc_stamp(created),
            expires=_utc_stamp(created + TOKEN_LIFETIME),
            parameter_attrs=parameter_attrs,
            parameters=parameters,
        )

    def _call(self, action: str, parameters: str, parameter_attrs: str = "") -> ET.Element:
        if not self.config.base_url or not self.config.username:
            raise RemoteError("Remote service config is incomplete.")
        envelope = self._envelope(action, parameters, parameter_attrs)
        logger.debug("POST %s action=%s", self.config.base_url, action)
        try:
            response = requests.post(
                self.config.base_url,
                data=envelope.encode("utf-8"),
                headers={"Content-Type": SOAP_CONTENT_TYPE},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RemoteError(f"{action} request failed: {exc}") from exc

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as exc:
            raise RemoteError(
                f"{action} returned unparsable XML (HTTP {response.status_code}): {exc}"
            ) from exc

        fault = _first(root, "Fault")
        if fault is not None:
            raise RemoteError(f"{action} fault: {_fault_message(fault)}")
        if response.status_code >= 400:
            raise RemoteError(f"{action} failed with HTTP {response.status_code}")

        returns = _first(root, "returns")
        if returns is None:
            raise RemoteError(f"{action} response missing returns element")
        return returns

    def get_version_manifest(
        self,
        window_start: date,
        window_end: date,
        known_versions: Mapping[str, str] | None = None,
        tz: tzinfo | None = None,
    ) -> list[VersionEntry]:
        """Version manifest for local days ``window_start``..``window_end`` in ``tz``, sent as UTC bounds."""
        items = "".join(
            f"<event_item id={quoteattr(str(event_id))} version={quoteattr(str(version))}/>"
            for event_id, version in (known_versions or {}).items()
        )
        parameter_attrs = (
            f" start={quoteattr(_utc_stamp(at(window_start, None, tz)))}"
            f" end={quoteattr(_utc_stamp(end_of_day(window_end, tz)))}"
        )
        returns = self._call("ScheduleGetEventVersions", items, parameter_attrs)
        return parse_version_items(returns)

    def get_events_by_id(self, ids: Iterable[str]) -> list[RawEvent]:
        id_list = [str(event_id) for event_id in ids if str(event_id).strip()]
        if not id_list:
            return []
        parameters = "".join(f"<event_id>{escape(event_id)}</event_id>" for event_id in id_list)
        returns = self._call("ScheduleGetEventsById", parameters)
        return [parse_schedule_event(node) for node in returns.iter() if _local_name(node.tag) == "schedule_event"]

    def test_connectivity(self) -> tuple[bool, str]:
        today = datetime.now(timezone.utc).date()
        try:
            entries = self.get_version_manifest(today, today)
        except RemoteError as exc:
            return False, str(exc)
        return True, f"Connected. {len(entries)} event versions today."


def describe_manifest(entries: Iterable[VersionEntry]) -> dict[str, Any]:
    counts = {"add": 0, "modify": 0, "remove": 0}
    for entry in entries:
        counts[entry.operation] = counts.get(entry.operation, 0) + 1
    return counts
