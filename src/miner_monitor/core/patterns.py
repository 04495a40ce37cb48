"""
IPv4 discovery pattern expansion.

A pattern has four dot-separated parts. Each part is one of:

    17          literal octet
    *           every octet 0-255
    (10-20)     inclusive range
    [1;5;9]     explicit list

The expansion is the cartesian product of the parts, part 1 outermost:

    >>> expand_pattern("10.0.0.(1-3)")
    ['10.0.0.1', '10.0.0.2', '10.0.0.3']
"""

from __future__ import annotations

import itertools

OCTET_MIN = 0
OCTET_MAX = 255


class PatternError(ValueError):
    """Raised for a malformed discovery pattern."""

    def __init__(self, pattern: str, reason: str):
        super().__init__(f"Invalid discovery pattern '{pattern}': {reason}")
        self.pattern = pattern
        self.reason = reason


def _parse_octet(pattern: str, token: str) -> int:
    token = token.strip()
    if not (token.isascii() and token.isdigit()):
        raise PatternError(pattern, f"'{token}' is not a number")

    value = int(token)
    if not OCTET_MIN <= value <= OCTET_MAX:
        raise PatternError(pattern, f"{value} is outside {OCTET_MIN}-{OCTET_MAX}")
    return value


def _expand_part(pattern: str, part: str) -> list[int]:
    part = part.strip()
    if not part:
        raise PatternError(pattern, "empty part")

    if part == "*":
        return list(range(OCTET_MIN, OCTET_MAX + 1))

    if part[0] == "(":
        if part[-1] != ")":
            raise PatternError(pattern, f"unterminated range '{part}'")
        bounds = part[1:-1].split("-")
        if len(bounds) != 2:
            raise PatternError(pattern, f"range '{part}' needs exactly two bounds")
        start, end = (_parse_octet(pattern, b) for b in bounds)
        if start > end:
            raise PatternError(pattern, f"range '{part}' is reversed")
        return list(range(start, end + 1))

    if part[0] == "[":
        if part[-1] != "]":
            raise PatternError(pattern, f"unterminated list '{part}'")
        inner = part[1:-1]
        if not inner.strip():
            raise PatternError(pattern, f"list '{part}' is empty")
        values = [_parse_octet(pattern, item) for item in inner.split(";")]
        # dict keeps first-seen order
        return list(dict.fromkeys(values))

    return [_parse_octet(pattern, part)]


def expand_pattern(pattern: str) -> list[str]:
    """
    Expand a discovery pattern into dotted-quad addresses.

    Args:
        pattern: Four-part pattern, e.g. "192.168.(1-2).[10;20]"

    Returns:
        Addresses in nested iteration order (part 1 outer, part 4 inner)

    Raises:
        PatternError: If the pattern is malformed
    """
    parts = pattern.strip().split(".")
    if len(parts) != 4:
        raise PatternError(pattern, f"expected 4 parts, got {len(parts)}")

    octets = [_expand_part(pattern, part) for part in parts]

    return [
        ".".join(str(o) for o in combo)
        for combo in itertools.product(*octets)
    ]
