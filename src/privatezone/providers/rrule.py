"""Recurrence rule helpers for Google RRULE lines and Graph recurrence ranges."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, tzinfo
from typing import Any

logger = logging.getLogger(__name__)

_GRAPH_FREQ = {
    "daily": "DAILY",
    "weekly": "WEEKLY",
    "absolutemonthly": "MONTHLY",
    "relativemonthly": "MONTHLY",
    "absoluteyearly": "YEARLY",
    "relativeyearly": "YEARLY",
}

_GRAPH_DAY = {
    "sunday": "SU",
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
}

_GRAPH_INDEX = {"first": "1", "second": "2", "third": "3", "fourth": "4", "last": "-1"}


def rrule_components(recurrence_rule: str) -> dict[str, str]:
    """Split ``RRULE:FREQ=WEEKLY;BYDAY=MO`` into an ordered component dict."""
    normalized = recurrence_rule.strip().removeprefix("RRULE:")
    values: dict[str, str] = {}
    for part in normalized.split(";"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        values[key.strip().upper()] = value.strip()
    return values


def format_rrule(components: dict[str, str]) -> str:
    return "RRULE:" + ";".join(f"{key}={value}" for key, value in components.items())


def rrule_until(recurrence_rule: str) -> datetime | None:
    until_raw = rrule_components(recurrence_rule).get("UNTIL")
    if not until_raw:
        return None
    if until_raw.endswith("Z"):
        until_raw = f"{until_raw[:-1]}+0000"
    for pattern in ("%Y%m%dT%H%M%S%z", "%Y%m%dT%H%M%S", "%Y%m%d"):
        try:
            parsed = datetime.strptime(until_raw, pattern)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    return None


def _until_value(last_day: date, *, all_day: bool, tz: tzinfo | None) -> str:
    if all_day:
        return last_day.strftime("%Y%m%d")
    end_of_day = datetime.combine(last_day, time(23, 59, 59), tzinfo=tz or UTC)
    return end_of_day.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def truncate_rrule_lines(
    lines: list[str],
    last_day: date,
    *,
    all_day: bool = False,
    tz: tzinfo | None = None,
) -> list[str]:
    """Return *lines* with every RRULE ending on *last_day*.

    ``COUNT`` is dropped because RFC 5545 forbids combining it with ``UNTIL``.
    An existing ``UNTIL`` that already ends earlier is kept.  Non-RRULE lines
    (``EXDATE``, ``RDATE``) pass through unchanged.

    Raises
    ------
    ValueError
        If *lines* contains no RRULE.
    """
    new_until = _until_value(last_day, all_day=all_day, tz=tz)
    cutoff = datetime.combine(last_day, time(23, 59, 59), tzinfo=tz or UTC).astimezone(UTC)

    truncated: list[str] = []
    found = False
    for line in lines:
        if not line.strip().upper().startswith("RRULE:"):
            truncated.append(line)
            continue
        found = True
        existing_until = rrule_until(line)
        if existing_until is not None and existing_until <= cutoff:
            truncated.append(line)
            continue
        components = rrule_components(line)
        components.pop("COUNT", None)
        components["UNTIL"] = new_until
        truncated.append(format_rrule(components))

    if not found:
        raise ValueError("recurrence has no RRULE to truncate")
    return truncated


# ---------------------------------------------------------------------------
# Microsoft Graph patterned recurrence
# ---------------------------------------------------------------------------


def truncate_graph_recurrence(recurrence: dict[str, Any], last_day: date) -> dict[str, Any]:
    """Return a copy of a Graph ``patternedRecurrence`` ending on *last_day*."""
    range_payload = dict(recurrence.get("range") or {})
    if not range_payload:
        raise ValueError("recurrence has no range to truncate")

    existing_end = range_payload.get("endDate")
    if range_payload.get("type") == "endDate" and isinstance(existing_end, str):
        try:
            if date.fromisoformat(existing_end) <= last_day:
                return dict(recurrence)
        except ValueError:
            logger.debug("Ignoring unparseable Graph recurrence endDate: %r", existing_end)

    range_payload["type"] = "endDate"
    range_payload["endDate"] = last_day.isoformat()
    range_payload.pop("numberOfOccurrences", None)
    return {**recurrence, "range": range_payload}


def restart_graph_recurrence(recurrence: dict[str, Any], first_day: date) -> dict[str, Any]:
    """Return a copy of a Graph ``patternedRecurrence`` starting on *first_day*.

    The original end (``endDate``/``noEnd``/``numbered``) is kept as-is.
    """
    range_payload = dict(recurrence.get("range") or {})
    if not range_payload:
        raise ValueError("recurrence has no range to restart")
    range_payload["startDate"] = first_day.isoformat()
    return {**recurrence, "range": range_payload}


def graph_recurrence_to_rrule(recurrence: Any) -> str | None:
    """Render a Graph ``patternedRecurrence`` as an RRULE line for local storage."""
    if not isinstance(recurrence, dict):
        return None
    pattern = recurrence.get("pattern")
    if not isinstance(pattern, dict):
        return None
    freq = _GRAPH_FREQ.get(str(pattern.get("type", "")).lower())
    if freq is None:
        return None

    components: dict[str, str] = {"FREQ": freq}
    interval = pattern.get("interval")
    if isinstance(interval, int) and interval > 1:
        components["INTERVAL"] = str(interval)

    days = [
        _GRAPH_DAY[d.lower()]
        for d in pattern.get("daysOfWeek") or []
        if isinstance(d, str) and d.lower() in _GRAPH_DAY
    ]
    if days:
        index = _GRAPH_INDEX.get(str(pattern.get("index", "")).lower())
        if str(pattern.get("type", "")).lower().startswith("relative") and index:
            days = [f"{index}{d}" for d in days]
        components["BYDAY"] = ",".join(days)

    if isinstance(pattern.get("dayOfMonth"), int) and pattern["dayOfMonth"] > 0:
        components["BYMONTHDAY"] = str(pattern["dayOfMonth"])
    if isinstance(pattern.get("month"), int) and pattern["month"] > 0:
        components["BYMONTH"] = str(pattern["month"])

    range_payload = recurrence.get("range")
    if isinstance(range_payload, dict):
        range_type = range_payload.get("type")
        if range_type == "endDate" and isinstance(range_payload.get("endDate"), str):
            try:
                components["UNTIL"] = date.fromisoformat(range_payload["endDate"]).strftime(
                    "%Y%m%d"
                )
            except ValueError:
                logger.debug(
                    "Ignoring unparseable Graph recurrence endDate: %r", range_payload["endDate"]
                )
        elif range_type == "numbered" and isinstance(
            range_payload.get("numberOfOccurrences"), int
        ):
            components["COUNT"] = str(range_payload["numberOfOccurrences"])

    return format_rrule(components)
