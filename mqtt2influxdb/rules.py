"""
mqtt2influxdb — Mapping rules

Loads the YAML mapping file once at startup into an immutable RuleSet.
Every structural problem (bad topic filter, duplicate names, tag/field
collisions, dangling measurement references) is a ConfigurationError here,
so nothing about rule validity is left to discover at runtime.

File format:

    rules:
      - topic: home/+/climate
        measurement: "climate_{1}"        # {N} = N-th topic level, 0-based
        static_tags: {site: home}
        tags:
          - {name: room, path: meta.room}
        fields:
          - {name: temperature, path: temp, type: float}
          - {name: raw, source: payload}
        timestamp: {path: ts, precision: ms}

The older single-file layout (`entries:` with src_topic / dst_name /
type: single_text|json) is accepted as well and translated on load.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationError
from .topics import MULTI_LEVEL, parse_pattern

logger = logging.getLogger("mqtt2influxdb.rules")

MEASUREMENT_REF = re.compile(r"\{(\d+)\}")


class ValueType(str, Enum):
    FLOAT = "float"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    STRING = "string"
    AUTO = "auto"          # keep the JSON type: bool, number→float, text


class ExtractionKind(str, Enum):
    WHOLE_TEXT = "whole_text"      # payload bytes as UTF-8 text
    WHOLE_TYPED = "whole_typed"    # payload parsed as the declared type
    PATH = "path"                  # dotted path into a JSON payload


class Precision(str, Enum):
    S = "s"
    MS = "ms"
    US = "us"
    NS = "ns"

    @property
    def ns_factor(self) -> int:
        return {"s": 1_000_000_000, "ms": 1_000_000, "us": 1_000, "ns": 1}[self.value]


@dataclass(frozen=True)
class ValueSpec:
    """How to extract one tag or field value from a payload."""
    name: str
    kind: ExtractionKind
    value_type: ValueType = ValueType.STRING
    path: tuple[str, ...] = ()


@dataclass(frozen=True)
class TimestampSpec:
    path: tuple[str, ...] = ()     # empty → whole payload
    precision: Precision = Precision.MS


@dataclass(frozen=True)
class MappingRule:
    index: int
    topic: str
    pattern: tuple[str, ...]
    measurement: str
    tags: tuple[ValueSpec, ...] = ()
    fields: tuple[ValueSpec, ...] = ()
    static_tags: tuple[tuple[str, str], ...] = ()
    timestamp: Optional[TimestampSpec] = None
    measurement_refs: tuple[int, ...] = ()

    @property
    def label(self) -> str:
        return f"rule[{self.index}] {self.topic}"


@dataclass(frozen=True)
class RuleSet:
    """Ordered, immutable collection of mapping rules."""
    rules: tuple[MappingRule, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[MappingRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def __getitem__(self, i: int) -> MappingRule:
        return self.rules[i]

    @property
    def topic_patterns(self) -> tuple[str, ...]:
        """Distinct topic filters in configuration order, for subscribing."""
        return tuple(dict.fromkeys(r.topic for r in self.rules))


# ── File schema ──────────────────────────────────────────────────────────

class ValueRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    path: Optional[str] = None
    source: Optional[Literal["payload"]] = None
    type: ValueType = ValueType.STRING

    @model_validator(mode="after")
    def _path_or_payload(self) -> "ValueRecord":
        if self.path is not None and self.source is not None:
            raise ValueError("give either 'path' or 'source: payload', not both")
        if self.path is not None and not self.path.strip():
            raise ValueError("'path' must not be empty")
        return self


class TimestampRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: Optional[str] = None
    precision: Precision = Precision.MS


class RuleRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    topic: str
    measurement: str = Field(min_length=1)
    static_tags: dict[str, Union[str, int, float, bool]] = Field(default_factory=dict)
    tags: list[ValueRecord] = Field(default_factory=list)
    fields: list[ValueRecord] = Field(default_factory=list)
    timestamp: Optional[TimestampRecord] = None


class LegacyJsonField(BaseModel):
    src_path: str
    dst_variant: Literal["Field", "Tag"] = "Field"
    dst_name: Optional[str] = None


class LegacyEntry(BaseModel):
    src_topic: str
    dst_name: str
    type: Literal["single_text", "json"]
    dst_variant: Literal["Field", "Tag"] = "Field"
    fields: list[LegacyJsonField] = Field(default_factory=list)


class MappingFile(BaseModel):
    rules: Optional[list[RuleRecord]] = None
    entries: Optional[list[LegacyEntry]] = None

    @model_validator(mode="after")
    def _one_layout(self) -> "MappingFile":
        if (self.rules is None) == (self.entries is None):
            raise ValueError("mapping file needs exactly one of 'rules' or 'entries'")
        return self


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate keys instead of keeping the last."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"duplicate key {key!r}", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


# ── Conversion ───────────────────────────────────────────────────────────

def _split_path(path: str) -> tuple[str, ...]:
    return tuple(path.split("."))


def _value_spec(record: ValueRecord) -> ValueSpec:
    if record.path is not None:
        return ValueSpec(record.name, ExtractionKind.PATH, record.type, _split_path(record.path))
    if record.type is ValueType.STRING:
        return ValueSpec(record.name, ExtractionKind.WHOLE_TEXT, ValueType.STRING)
    return ValueSpec(record.name, ExtractionKind.WHOLE_TYPED, record.type)


def _format_static(value: Union[str, int, float, bool]) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _measurement_refs(template: str, pattern: tuple[str, ...], label: str) -> tuple[int, ...]:
    refs = tuple(int(m.group(1)) for m in MEASUREMENT_REF.finditer(template))
    open_ended = pattern[-1] == MULTI_LEVEL
    for ref in refs:
        if ref >= len(pattern) and not open_ended:
            raise ConfigurationError(
                f"{label}: measurement refers to topic level {ref} "
                f"but the pattern has only {len(pattern)} levels"
            )
    return refs


def _check_names(label: str, tags, fields, static_tags) -> None:
    seen: dict[str, str] = {}
    for kind, names in (
        ("static tag", [k for k, _ in static_tags]),
        ("tag", [s.name for s in tags]),
        ("field", [s.name for s in fields]),
    ):
        for name in names:
            if name in seen:
                raise ConfigurationError(
                    f"{label}: {kind} {name!r} collides with {seen[name]} of the same name"
                )
            seen[name] = kind


def build_rule(index: int, record: RuleRecord) -> MappingRule:
    label = f"rule[{index}] {record.topic}"
    try:
        pattern = parse_pattern(record.topic)
    except ConfigurationError as e:
        raise ConfigurationError(f"rule[{index}]: {e}") from None

    tags = tuple(_value_spec(r) for r in record.tags)
    fields = tuple(_value_spec(r) for r in record.fields)
    static_tags = tuple((k, _format_static(v)) for k, v in record.static_tags.items())

    if not fields:
        raise ConfigurationError(f"{label}: at least one field is required")
    _check_names(label, tags, fields, static_tags)

    timestamp = None
    if record.timestamp is not None:
        timestamp = TimestampSpec(
            path=_split_path(record.timestamp.path) if record.timestamp.path else (),
            precision=record.timestamp.precision,
        )

    return MappingRule(
        index=index,
        topic=record.topic,
        pattern=pattern,
        measurement=record.measurement,
        tags=tags,
        fields=fields,
        static_tags=static_tags,
        timestamp=timestamp,
        measurement_refs=_measurement_refs(record.measurement, pattern, label),
    )


def _from_legacy(entry: LegacyEntry) -> RuleRecord:
    """Translate an `entries:` item into the rules layout."""
    tags: list[ValueRecord] = []
    fields: list[ValueRecord] = []

    if entry.type == "single_text":
        # The entry's dst_name names both the measurement and the value.
        value = ValueRecord(name=entry.dst_name, source="payload")
        (tags if entry.dst_variant == "Tag" else fields).append(value)
    else:
        for f in entry.fields:
            value = ValueRecord(
                name=f.dst_name or f.src_path,
                path=f.src_path,
                type=ValueType.AUTO,
            )
            (tags if f.dst_variant == "Tag" else fields).append(value)

    return RuleRecord(
        topic=entry.src_topic,
        measurement=entry.dst_name,
        tags=tags,
        fields=fields,
    )


def parse_rules(document: Any) -> RuleSet:
    """Validate an already-parsed YAML document into a RuleSet."""
    if not isinstance(document, dict):
        raise ConfigurationError("Mapping file must be a YAML mapping at the top level")

    try:
        mapping = MappingFile.model_validate(document)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid mapping file:\n{e}") from None

    records = mapping.rules
    if records is None:
        records = [_from_legacy(entry) for entry in mapping.entries]
    if not records:
        raise ConfigurationError("Mapping file defines no rules")

    return RuleSet(tuple(build_rule(i, r) for i, r in enumerate(records)))


def load_rules(path: Union[str, Path]) -> RuleSet:
    """Read and validate the mapping file.  Raises ConfigurationError."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.load(f, Loader=_UniqueKeyLoader)
    except OSError as e:
        raise ConfigurationError(f"Cannot read mapping file {path}: {e}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse mapping file {path}: {e}") from None

    rules = parse_rules(document)
    logger.info("Loaded %d mapping rules from %s", len(rules), path)
    for rule in rules:
        logger.debug(
            "%s → %s (%d tags, %d fields)",
            rule.label, rule.measurement, len(rule.tags), len(rule.fields),
        )
    return rules
