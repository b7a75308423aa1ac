"""
mqtt2influxdb — Payload decoder

Turns raw payload bytes into typed values according to a ValueSpec.

An extracted value is float | int | bool | str, or None when the value is
absent: not present in the payload, not parseable as the declared type,
or not representable in line protocol (NaN, ±Inf, integers wider than
int64).  Absent is never replaced by a default, so a missing reading
can't masquerade as zero.

Nothing here raises on bad input.  Failures are logged at DEBUG and
reported as None.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Optional, Union

from .rules import ExtractionKind, MappingRule, ValueSpec, ValueType

logger = logging.getLogger("mqtt2influxdb.decoder")

ExtractedValue = Optional[Union[float, int, bool, str]]

TRUE_WORDS = frozenset({"true", "1", "on", "yes"})
FALSE_WORDS = frozenset({"false", "0", "off", "no"})

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_MISSING = object()
_UNPARSED = object()


class DecodedMessage:
    """Tag and field values decoded from one payload for one rule."""

    __slots__ = ("tags", "fields", "failures")

    def __init__(self) -> None:
        self.tags: dict[str, ExtractedValue] = {}
        self.fields: dict[str, ExtractedValue] = {}
        self.failures: list[str] = []


class PayloadDecoder:
    """
    Wraps one payload.  The UTF-8 text and the JSON document are decoded
    at most once, however many specs read from them.  Use decode() for a
    whole rule, or extract() for a single spec.
    """

    def __init__(self, payload: bytes) -> None:
        self._payload = payload
        self._text: Any = _UNPARSED
        self._document: Any = _UNPARSED

    # ── Lazily decoded views of the payload ─────────────────────────────

    @property
    def text(self) -> Optional[str]:
        if self._text is _UNPARSED:
            try:
                self._text = self._payload.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug("Payload is not valid UTF-8")
                self._text = None
        return self._text

    @property
    def document(self) -> Any:
        """Parsed JSON payload, or _MISSING if the payload is not JSON."""
        if self._document is _UNPARSED:
            self._document = _MISSING
            text = self.text
            if text is not None:
                try:
                    self._document = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("Payload is not valid JSON")
        return self._document

    # ── Extraction ──────────────────────────────────────────────────────

    def extract(self, spec: ValueSpec) -> ExtractedValue:
        if spec.kind is ExtractionKind.WHOLE_TEXT:
            return self.text
        if spec.kind is ExtractionKind.WHOLE_TYPED:
            text = self.text
            if text is None:
                return None
            return coerce_text(text.strip(), spec.value_type)
        if spec.kind is ExtractionKind.PATH:
            node = lookup_path(self.document, spec.path)
            if node is _MISSING:
                return None
            return coerce_json(node, spec.value_type)
        raise ValueError(f"Unknown extraction kind: {spec.kind!r}")

    def raw(self, path: tuple[str, ...]) -> Any:
        """Untyped JSON node at path (whole text for an empty path), None if absent."""
        if not path:
            return self.text
        node = lookup_path(self.document, path)
        return None if node is _MISSING else node

    def decode(self, rule: MappingRule) -> DecodedMessage:
        decoded = DecodedMessage()
        for spec in rule.tags:
            value = self.extract(spec)
            if value is not None and not isinstance(value, str):
                value = format_tag(value)
            decoded.tags[spec.name] = value
            if value is None:
                decoded.failures.append(spec.name)
        for spec in rule.fields:
            value = self.extract(spec)
            decoded.fields[spec.name] = value
            if value is None:
                decoded.failures.append(spec.name)

        if decoded.failures:
            logger.debug(
                "%s: could not decode %s from payload %.200r",
                rule.label, ", ".join(decoded.failures), self._payload,
            )
        return decoded


def lookup_path(document: Any, path: tuple[str, ...]) -> Any:
    """Walk a dotted path; numeric segments index arrays.  _MISSING if absent."""
    if document is _MISSING:
        return _MISSING
    node = document
    for segment in path:
        if isinstance(node, dict):
            if segment not in node:
                return _MISSING
            node = node[segment]
        elif isinstance(node, list):
            try:
                node = node[int(segment)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return node


# ── Coercion ────────────────────────────────────────────────────────────

def _finite(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


def _int64(value: int) -> Optional[int]:
    """Line protocol integers are signed 64-bit; anything wider is absent."""
    return value if INT64_MIN <= value <= INT64_MAX else None


def coerce_text(text: str, value_type: ValueType) -> ExtractedValue:
    """Parse a bare text value as the declared type."""
    if value_type is ValueType.STRING:
        return text
    if value_type is ValueType.FLOAT:
        try:
            return _finite(float(text))
        except ValueError:
            return None
    if value_type is ValueType.INTEGER:
        try:
            return _int64(int(text))
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return _int64(int(number)) if math.isfinite(number) and number.is_integer() else None
    if value_type is ValueType.BOOLEAN:
        word = text.lower()
        if word in TRUE_WORDS:
            return True
        if word in FALSE_WORDS:
            return False
        return None
    if value_type is ValueType.AUTO:
        try:
            node = json.loads(text)
        except json.JSONDecodeError:
            return text
        return coerce_json(node, ValueType.AUTO)
    raise ValueError(f"Unknown value type: {value_type!r}")


def coerce_json(node: Any, value_type: ValueType) -> ExtractedValue:
    """Convert a JSON node to the declared type."""
    if node is None:
        return None

    if value_type is ValueType.AUTO:
        if isinstance(node, bool):
            return node
        if isinstance(node, (int, float)):
            return _finite(float(node))
        if isinstance(node, str):
            return node
        return json.dumps(node, separators=(",", ":"))

    if isinstance(node, str):
        return coerce_text(node.strip() if value_type is not ValueType.STRING else node, value_type)

    if value_type is ValueType.STRING:
        if isinstance(node, (dict, list)):
            return json.dumps(node, separators=(",", ":"))
        return format_tag(node)

    if value_type is ValueType.BOOLEAN:
        if isinstance(node, bool):
            return node
        if isinstance(node, (int, float)) and node in (0, 1):
            return bool(node)
        return None

    # Numeric targets never accept booleans or containers.
    if isinstance(node, bool) or not isinstance(node, (int, float)):
        return None
    if value_type is ValueType.FLOAT:
        return _finite(float(node))
    if value_type is ValueType.INTEGER:
        if isinstance(node, int):
            return _int64(node)
        return _int64(int(node)) if math.isfinite(node) and node.is_integer() else None
    raise ValueError(f"Unknown value type: {value_type!r}")


def format_tag(value: Union[float, int, bool, str]) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
