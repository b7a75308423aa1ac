"""
mqtt2influxdb — Topic matching

MQTT topic filters are split on "/" into levels:

    literal   must equal the topic level exactly
    +         matches exactly one level, whatever its content
    #         last level only; matches the current level and everything
              after it, including nothing at all ("a/#" matches "a")

Matching is structural only.  When several rules match, the earliest one
in configuration order wins; there is no "most specific" ranking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

from .errors import ConfigurationError

if TYPE_CHECKING:
    from .rules import MappingRule, RuleSet

logger = logging.getLogger("mqtt2influxdb.topics")

SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"
SEPARATOR = "/"


def parse_pattern(pattern: str) -> tuple[str, ...]:
    """
    Split a topic filter into level tokens, validating wildcard placement.
    Raises ConfigurationError for filters a broker would refuse.
    """
    if not pattern:
        raise ConfigurationError("Topic pattern must not be empty")

    levels = tuple(pattern.split(SEPARATOR))
    for i, level in enumerate(levels):
        if level in (SINGLE_LEVEL, MULTI_LEVEL):
            if level == MULTI_LEVEL and i != len(levels) - 1:
                raise ConfigurationError(
                    f"'#' must be the last level in topic pattern {pattern!r}"
                )
            continue
        if SINGLE_LEVEL in level or MULTI_LEVEL in level:
            raise ConfigurationError(
                f"Wildcards must occupy a whole level in topic pattern {pattern!r}"
            )
    return levels


def match_levels(pattern: Sequence[str], topic: Sequence[str]) -> bool:
    """True if the topic levels satisfy the pattern levels."""
    for i, token in enumerate(pattern):
        if token == MULTI_LEVEL:
            return True
        if i >= len(topic):
            return False
        if token != SINGLE_LEVEL and token != topic[i]:
            return False
    return len(topic) == len(pattern)


def topic_matches(pattern: str, topic: str) -> bool:
    return match_levels(parse_pattern(pattern), topic.split(SEPARATOR))


@dataclass(frozen=True)
class RuleMatch:
    """A rule together with the topic levels that satisfied it."""
    rule: MappingRule
    topic: str
    levels: tuple[str, ...]


class TopicMatcher:
    """First-match-wins lookup of a topic against an ordered RuleSet."""

    def __init__(self, rules: RuleSet) -> None:
        self._rules = rules

    def match(self, topic: str) -> Optional[RuleMatch]:
        levels = tuple(topic.split(SEPARATOR))
        for rule in self._rules:
            if match_levels(rule.pattern, levels):
                return RuleMatch(rule=rule, topic=topic, levels=levels)
        logger.debug("No rule matches topic %s", topic)
        return None
