"""Topic names and topic filters.

Topics are ``/``-separated, case-sensitive. In a filter ``+`` stands for
exactly one level and ``#`` for zero or more trailing levels; both must
occupy a whole level and ``#`` must be the last one.
"""

from typing import List

SEPARATOR = "/"
SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"

MAX_LENGTH = 65535


def _check_common(value: str, what: str) -> None:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{what} must be a non-empty string")
    if "\x00" in value:
        raise ValueError(f"{what} must not contain NUL characters")
    if len(value.encode("utf-8")) > MAX_LENGTH:
        raise ValueError(f"{what} is longer than {MAX_LENGTH} bytes")


def validate_filter(topic_filter: str) -> List[str]:
    """Return the levels of ``topic_filter`` or raise ``ValueError``."""
    _check_common(topic_filter, "Topic filter")
    levels = topic_filter.split(SEPARATOR)
    last = len(levels) - 1
    for idx, level in enumerate(levels):
        if MULTI_LEVEL in level:
            if level != MULTI_LEVEL:
                raise ValueError(f"'#' must occupy a whole level in {topic_filter!r}")
            if idx != last:
                raise ValueError(f"'#' must be the last level in {topic_filter!r}")
        if SINGLE_LEVEL in level and level != SINGLE_LEVEL:
            raise ValueError(f"'+' must occupy a whole level in {topic_filter!r}")
    return levels


def validate_topic(topic: str) -> List[str]:
    """Concrete topic names never carry wildcards."""
    _check_common(topic, "Topic")
    if SINGLE_LEVEL in topic or MULTI_LEVEL in topic:
        raise ValueError(f"Topic {topic!r} must not contain wildcards")
    return topic.split(SEPARATOR)


def is_valid_filter(topic_filter: str) -> bool:
    try:
        validate_filter(topic_filter)
    except ValueError:
        return False
    return True


def matches(topic_filter: str, topic: str) -> bool:
    """True when the concrete ``topic`` is selected by ``topic_filter``.

    ``a/+/c`` matches ``a/b/c`` but not ``a/b/b/c``; ``a/#`` matches ``a``,
    ``a/b`` and ``a/b/c``.
    """
    filter_levels = topic_filter.split(SEPARATOR)
    topic_levels = topic.split(SEPARATOR)

    for idx, level in enumerate(filter_levels):
        if level == MULTI_LEVEL:
            return True
        if idx >= len(topic_levels):
            return False
        if level != SINGLE_LEVEL and level != topic_levels[idx]:
            return False
    return len(filter_levels) == len(topic_levels)


def device_id(topic: str) -> str:
    # esp8266/led/control -> esp8266
    return topic.split(SEPARATOR, 1)[0]
