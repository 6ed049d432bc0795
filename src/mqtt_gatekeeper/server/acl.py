"""
Topic ACL glob matching.

ACL patterns are slash segmented like topics but use their own wildcards:

    **        a whole segment matching zero or more segments
              (on its own it matches every topic)
    *         any run of characters inside one segment
    ?         exactly one character inside one segment
    [abc]     a character class inside one segment

MQTT filter wildcards (`+`, `#`) have no special meaning here.
"""
from fnmatch import fnmatchcase
from typing import List

GLOBSTAR = "**"
SEPARATOR = "/"


def match(pattern: str, topic: str) -> bool:
    """Returns True when `topic` is covered by the ACL `pattern`."""
    if pattern == GLOBSTAR:
        return True
    return _match_segments(pattern.split(SEPARATOR), topic.split(SEPARATOR))


def _match_segments(pattern: List[str], topic: List[str]) -> bool:
    if not pattern:
        return not topic

    head = pattern[0]
    if head == GLOBSTAR:
        # Collapse runs of globstars, then try every split point
        rest = pattern[1:]
        while rest and rest[0] == GLOBSTAR:
            rest = rest[1:]
        if not rest:
            return True
        return any(_match_segments(rest, topic[i:]) for i in range(len(topic) + 1))

    if not topic:
        return False
    return fnmatchcase(topic[0], head) and _match_segments(pattern[1:], topic[1:])
