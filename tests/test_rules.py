"""Mapping file loading and validation."""

import textwrap

import pytest

from mqtt2influxdb.errors import ConfigurationError
from mqtt2influxdb.rules import (
    ExtractionKind,
    Precision,
    ValueSpec,
    ValueType,
    load_rules,
    parse_rules,
)


def write_yaml(tmp_path, text):
    path = tmp_path / "mapping.yaml"
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


# =============================================================================
# LOADING
# =============================================================================

class TestLoadRules:
    def test_loads_rules_layout(self, tmp_path):
        path = write_yaml(tmp_path, """
            rules:
              - topic: home/+/climate
                measurement: "climate_{1}"
                static_tags: {site: home, floor: 2}
                tags:
                  - {name: room, path: meta.room}
                fields:
                  - {name: temperature, path: temp, type: float}
                  - {name: raw, source: payload}
                timestamp: {path: ts, precision: s}
              - topic: power/#
                measurement: power
                fields:
                  - {name: watts, source: payload, type: integer}
        """)
        rules = load_rules(path)

        assert len(rules) == 2
        first = rules[0]
        assert first.pattern == ("home", "+", "climate")
        assert first.measurement_refs == (1,)
        assert first.static_tags == (("site", "home"), ("floor", "2"))
        assert first.tags == (ValueSpec("room", ExtractionKind.PATH, ValueType.STRING, ("meta", "room")),)
        assert first.fields[0] == ValueSpec("temperature", ExtractionKind.PATH, ValueType.FLOAT, ("temp",))
        assert first.fields[1].kind is ExtractionKind.WHOLE_TEXT
        assert first.timestamp.path == ("ts",)
        assert first.timestamp.precision is Precision.S

        assert rules[1].fields[0].kind is ExtractionKind.WHOLE_TYPED
        assert rules[1].fields[0].value_type is ValueType.INTEGER

    def test_topic_patterns_are_distinct_and_ordered(self, make_rules):
        field = [{"name": "v", "source": "payload"}]
        rules = make_rules(
            {"topic": "b/#", "measurement": "m1", "fields": field},
            {"topic": "a/+", "measurement": "m2", "fields": field},
            {"topic": "b/#", "measurement": "m3", "fields": field},
        )
        assert rules.topic_patterns == ("b/#", "a/+")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_rules(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = write_yaml(tmp_path, "rules: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Cannot parse"):
            load_rules(path)

    def test_duplicate_keys_rejected(self, tmp_path):
        path = write_yaml(tmp_path, """
            rules:
              - topic: a/b
                measurement: one
                measurement: two
                fields:
                  - {name: v, source: payload}
        """)
        with pytest.raises(ConfigurationError, match="duplicate key"):
            load_rules(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = write_yaml(tmp_path, "- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            load_rules(path)


# =============================================================================
# VALIDATION
# =============================================================================

class TestRuleValidation:
    def test_invalid_topic_pattern(self, make_rules):
        with pytest.raises(ConfigurationError, match="rule\\[0\\]"):
            make_rules({"topic": "a/#/b", "measurement": "m",
                        "fields": [{"name": "v", "source": "payload"}]})

    def test_tag_and_field_with_same_name(self, make_rules):
        with pytest.raises(ConfigurationError, match="collides"):
            make_rules({
                "topic": "a/b", "measurement": "m",
                "tags": [{"name": "room", "path": "room"}],
                "fields": [{"name": "room", "path": "value", "type": "float"}],
            })

    def test_static_tag_collides_with_tag(self, make_rules):
        with pytest.raises(ConfigurationError, match="collides"):
            make_rules({
                "topic": "a/b", "measurement": "m",
                "static_tags": {"room": "x"},
                "tags": [{"name": "room", "path": "room"}],
                "fields": [{"name": "v", "source": "payload"}],
            })

    def test_duplicate_field_names(self, make_rules):
        with pytest.raises(ConfigurationError, match="collides"):
            make_rules({
                "topic": "a/b", "measurement": "m",
                "fields": [{"name": "v", "path": "x"}, {"name": "v", "path": "y"}],
            })

    def test_rule_without_fields(self, make_rules):
        with pytest.raises(ConfigurationError, match="at least one field"):
            make_rules({"topic": "a/b", "measurement": "m",
                        "tags": [{"name": "t", "path": "t"}]})

    def test_measurement_ref_beyond_pattern(self, make_rules):
        with pytest.raises(ConfigurationError, match="topic level 2"):
            make_rules({"topic": "a/+", "measurement": "m_{2}",
                        "fields": [{"name": "v", "source": "payload"}]})

    def test_measurement_ref_allowed_with_multi_level_wildcard(self, make_rules):
        rules = make_rules({"topic": "a/#", "measurement": "m_{3}",
                            "fields": [{"name": "v", "source": "payload"}]})
        assert rules[0].measurement_refs == (3,)

    def test_path_and_source_are_exclusive(self, make_rules):
        with pytest.raises(ConfigurationError):
            make_rules({"topic": "a", "measurement": "m",
                        "fields": [{"name": "v", "path": "x", "source": "payload"}]})

    def test_unknown_keys_rejected(self, make_rules):
        with pytest.raises(ConfigurationError):
            make_rules({"topic": "a", "measurement": "m", "retain": True,
                        "fields": [{"name": "v", "source": "payload"}]})

    def test_unknown_value_type(self, make_rules):
        with pytest.raises(ConfigurationError):
            make_rules({"topic": "a", "measurement": "m",
                        "fields": [{"name": "v", "source": "payload", "type": "decimal"}]})

    def test_empty_rule_list(self):
        with pytest.raises(ConfigurationError, match="no rules"):
            parse_rules({"rules": []})

    def test_both_layouts_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rules({"rules": [], "entries": []})


# =============================================================================
# LEGACY LAYOUT
# =============================================================================

class TestLegacyEntries:
    def test_entries_translated(self, tmp_path):
        path = write_yaml(tmp_path, """
            entries:
              - src_topic: sensors/+/json
                dst_name: env
                type: json
                fields:
                  - src_path: a.b
                  - src_path: room
                    dst_variant: Tag
                    dst_name: location
              - src_topic: sensors/+/text
                dst_name: note
                type: single_text
        """)
        rules = load_rules(path)

        env = rules[0]
        assert env.measurement == "env"
        assert env.fields == (ValueSpec("a.b", ExtractionKind.PATH, ValueType.AUTO, ("a", "b")),)
        assert env.tags[0].name == "location"
        assert env.tags[0].path == ("room",)

        note = rules[1]
        assert note.measurement == "note"
        assert note.fields == (ValueSpec("note", ExtractionKind.WHOLE_TEXT, ValueType.STRING),)

    def test_single_text_as_tag_has_no_field(self):
        with pytest.raises(ConfigurationError, match="at least one field"):
            parse_rules({"entries": [{
                "src_topic": "a/b", "dst_name": "state",
                "type": "single_text", "dst_variant": "Tag",
            }]})
