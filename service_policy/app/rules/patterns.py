"""
Endpoint pattern matching shared by rate-limit and access-control rules.

`*` matches any suffix (including further path segments), `:name` matches
exactly one path segment, and a bare `*` matches every endpoint. Patterns
are anchored at both ends.
"""

import re
from functools import lru_cache
from typing import Iterable, Pattern

_TOKEN = re.compile(r"\*|:[A-Za-z_][A-Za-z0-9_]*")


@lru_cache(maxsize=1024)
def compile_endpoint_pattern(pattern: str) -> Pattern[str]:
    parts = []
    position = 0
    for match in _TOKEN.finditer(pattern):
        parts.append(re.escape(pattern[position:match.start()]))
        parts.append(".*" if match.group() == "*" else "[^/]+")
        position = match.end()
    parts.append(re.escape(pattern[position:]))
    return re.compile("^" + "".join(parts) + "$")


def endpoint_matches(pattern: str, endpoint: str) -> bool:
    if pattern == "*":
        return True
    return compile_endpoint_pattern(pattern).match(endpoint) is not None


def method_matches(rule_method: str, method: str) -> bool:
    return rule_method == "*" or rule_method.upper() == method.upper()


def any_endpoint_matches(patterns: Iterable[str], endpoint: str) -> bool:
    return any(endpoint_matches(pattern, endpoint) for pattern in patterns)


def any_method_matches(methods: Iterable[str], method: str) -> bool:
    return any(method_matches(rule_method, method) for rule_method in methods)


def is_valid_pattern(pattern: str) -> bool:
    """Patterns must be `*` or an absolute path."""
    return pattern == "*" or pattern.startswith("/")
