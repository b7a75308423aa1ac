"""
mqtt2influxdb — Point construction

Assembles a storage point from a matched rule and its decoded values:

    measurement   rule template with {N} replaced by the N-th topic level
    tags          static tags first, then decoded tags (absent ones skipped)
    fields        decoded fields, absent ones skipped; at least one required
    timestamp     receive time, or a validated payload timestamp

Line protocol rendering is delegated to influxdb_client.Point so escaping
and the integer/float/bool/string field encodings match what the server
expects.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from influxdb_client import Point as LinePoint
from influxdb_client import WritePrecision

from .decoder import DecodedMessage, PayloadDecoder
from .errors import PointConstructionError
from .rules import MEASUREMENT_REF, MappingRule, TimestampSpec
from .topics import RuleMatch

logger = logging.getLogger("mqtt2influxdb.points")

FieldValue = Union[float, int, bool, str]

# Plausible window for payload timestamps, in ns since the epoch.  The
# lower bound catches values sent in the wrong precision (seconds read as
# milliseconds land in January 1970); the upper bound is the int64 limit.
MIN_TIMESTAMP_NS = 946_684_800 * 1_000_000_000   # 2000-01-01T00:00:00Z
MAX_TIMESTAMP_NS = 2**63 - 1                     # 2262-04-11T23:47:16Z


@dataclass(slots=True)
class Point:
    """Single point ready for the sink."""
    measurement: str
    tags: dict[str, str] = field(default_factory=dict)
    fields: dict[str, FieldValue] = field(default_factory=dict)
    timestamp: int = 0      # ns since epoch

    def to_line_protocol(self) -> str:
        point = LinePoint(self.measurement)
        for key, value in self.tags.items():
            point.tag(key, value)
        for key, value in self.fields.items():
            point.field(key, value)
        point.time(self.timestamp, WritePrecision.NS)
        return point.to_line_protocol()


@dataclass
class BuilderStats:
    built: int = 0
    empty_points: int = 0
    missing_levels: int = 0
    empty_measurements: int = 0
    timestamp_rejections: int = 0


class PointBuilder:
    """Builds points; counts the reasons it could not."""

    def __init__(self) -> None:
        self.stats = BuilderStats()

    def build(
        self,
        match: RuleMatch,
        decoded: DecodedMessage,
        received_ns: int,
        payload: Optional[PayloadDecoder] = None,
    ) -> Point:
        """
        Raises PointConstructionError if the point would be empty, the
        measurement template needs a topic level this topic doesn't have,
        or the template expands to an empty name (e.g. `{1}` on `home//c`).
        """
        rule = match.rule

        fields = {k: v for k, v in decoded.fields.items() if v is not None}
        if not fields:
            self.stats.empty_points += 1
            raise PointConstructionError(
                f"{rule.label}: no usable fields in message on {match.topic}"
            )

        measurement = self._measurement(rule, match)
        if not measurement:
            self.stats.empty_measurements += 1
            raise PointConstructionError(
                f"{rule.label}: measurement is empty for topic {match.topic!r}"
            )

        tags = dict(rule.static_tags)
        for key, value in decoded.tags.items():
            if value:   # absent or empty tag values are not written
                tags[key] = value

        timestamp = received_ns
        if rule.timestamp is not None and payload is not None:
            timestamp = self._timestamp(rule, rule.timestamp, payload, received_ns)

        self.stats.built += 1
        return Point(measurement=measurement, tags=tags, fields=fields, timestamp=timestamp)

    def _measurement(self, rule: MappingRule, match: RuleMatch) -> str:
        if not rule.measurement_refs:
            return rule.measurement

        def substitute(m) -> str:
            level = int(m.group(1))
            if level >= len(match.levels):
                self.stats.missing_levels += 1
                raise PointConstructionError(
                    f"{rule.label}: measurement needs topic level {level}, "
                    f"{match.topic!r} has {len(match.levels)}"
                )
            return match.levels[level]

        return MEASUREMENT_REF.sub(substitute, rule.measurement)

    def _timestamp(
        self,
        rule: MappingRule,
        spec: TimestampSpec,
        payload: PayloadDecoder,
        received_ns: int,
    ) -> int:
        raw = payload.raw(spec.path)
        ns = parse_timestamp(raw, spec)
        if ns is None or not MIN_TIMESTAMP_NS <= ns <= MAX_TIMESTAMP_NS:
            self.stats.timestamp_rejections += 1
            logger.warning(
                "%s: implausible timestamp %.100r (%s), using receive time",
                rule.label, raw, spec.precision.value,
            )
            return received_ns
        return ns


def parse_timestamp(raw: Any, spec: TimestampSpec) -> Optional[int]:
    """Convert a payload timestamp to ns since epoch.  None if unusable."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        text = raw.strip()
        try:
            raw = float(text) if any(c in text for c in ".eE") else int(text)
        except ValueError:
            return _parse_iso(text)
    if isinstance(raw, int):
        return raw * spec.precision.ns_factor
    if isinstance(raw, float):
        if not math.isfinite(raw):
            return None
        return int(raw * spec.precision.ns_factor)
    return None


def _parse_iso(text: str) -> Optional[int]:
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000
