"""Temporal validation for sleep-session timestamps and date-range filters.

Three independent checks, each returning a Result:
- parse_instant: strict ISO-8601 with a mandatory timezone designator
- ensure_not_future: the instant must not be after "now"
- validate_range: start must not be after end

Lenient parsing is deliberately not offered: "2024-03-14", "2024-03-14 23:00"
and timestamps without an offset are all rejected as invalid_format.
"""

import re
from datetime import UTC, datetime, timedelta, timezone

from shared.clock import Clock
from shared.result import Err, Ok, Result, bad_request, unprocessable

_ISO_8601 = re.compile(
    r"\A(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    r"T(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:?\d{2})\Z"
)


def _parse_offset(designator: str) -> timezone | None:
    if designator == "Z":
        return UTC
    sign = -1 if designator[0] == "-" else 1
    digits = designator[1:].replace(":", "")
    hours, minutes = int(digits[:2]), int(digits[2:])
    if hours > 23 or minutes > 59:
        return None
    return timezone(sign * timedelta(hours=hours, minutes=minutes))


def parse_instant(raw: str, field: str) -> Result[datetime]:
    """Parse a strict ISO-8601 timestamp into a UTC instant."""
    match = _ISO_8601.match(raw) if isinstance(raw, str) else None
    if match is None:
        return bad_request("invalid_format", f"Invalid {field} format", field)

    tz = _parse_offset(match["tz"])
    if tz is None:
        return bad_request("invalid_format", f"Invalid {field} format", field)

    # Fractions finer than microseconds are truncated
    fraction = (match["fraction"] or "0")[:6].ljust(6, "0")
    try:
        instant = datetime(
            int(match["year"]),
            int(match["month"]),
            int(match["day"]),
            int(match["hour"]),
            int(match["minute"]),
            int(match["second"]),
            int(fraction),
            tzinfo=tz,
        )
    except ValueError:
        return bad_request("invalid_format", f"Invalid {field} format", field)
    return Ok(instant.astimezone(UTC))


def ensure_not_future(instant: datetime, now: datetime, field: str) -> Result[datetime]:
    if instant > now:
        label = field.replace("_", " ").capitalize()
        return unprocessable(
            "temporal_constraint_violation", f"{label} cannot be in the future", field
        )
    return Ok(instant)


def validate_range(
    start: datetime | None, end: datetime | None
) -> Result[tuple[datetime | None, datetime | None]]:
    if start is not None and end is not None and start > end:
        return bad_request("bad_range", "start_date must be before end_date", "start_date")
    return Ok((start, end))


class TemporalValidator:
    """Bundles the temporal checks against an injectable clock."""

    def __init__(self, clock: Clock):
        self.clock = clock

    def parse(self, raw: str | None, field: str) -> Result[datetime | None]:
        """Parse an optional timestamp. Blank input means "not supplied"."""
        if raw is None or raw == "":
            return Ok(None)
        return parse_instant(raw, field)

    def parse_past(self, raw: str | None, field: str) -> Result[datetime | None]:
        """Parse an optional timestamp that must not lie in the future."""
        parsed = self.parse(raw, field)
        if isinstance(parsed, Err) or parsed.value is None:
            return parsed
        return ensure_not_future(parsed.value, self.clock.now(), field)

    def parse_range(
        self, start_raw: str | None, end_raw: str | None
    ) -> Result[tuple[datetime | None, datetime | None]]:
        start = self.parse(start_raw, "start_date")
        if isinstance(start, Err):
            return start
        end = self.parse(end_raw, "end_date")
        if isinstance(end, Err):
            return end
        return validate_range(start.value, end.value)
