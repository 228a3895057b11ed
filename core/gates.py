"""Gate penalty string parsing.

Timing systems report per-gate penalties as a raw string, either
comma-separated (``"0,0,2,0,50,,,"``) or space-separated
(``"0 0 2 0 50"``). Valid penalties are 0, 2 and 50 seconds. Anything
else (including an empty slot for a gate not yet passed) becomes
``None``.

Example:
    >>> parse_gates("0,0,2,0,50")
    [0, 0, 2, 0, 50]
    >>> parse_gates("0 x 2")
    [0, None, 2]
    >>> total_penalty(parse_gates("0,2,50"))
    52
"""

import re

_VALID_PENALTIES: frozenset[int] = frozenset((0, 2, 50))

_SEPARATOR: re.Pattern[str] = re.compile(r"[,\s]+")


def parse_gates(gates: object) -> list[int | None]:
    """Parse a raw gates string into a list of penalties.

    Consecutive separators are collapsed, so trailing empty slots do not
    produce entries.

    Args:
        gates: Raw gates value. Non-string input yields ``[]``.

    Returns:
        One entry per gate: 0, 2, 50 or ``None`` for invalid values.
    """
    if not isinstance(gates, str) or not gates.strip():
        return []

    penalties: list[int | None] = []
    for part in _SEPARATOR.split(gates.strip()):
        if not part:
            continue
        try:
            value: int = int(part)
        except ValueError:
            penalties.append(None)
            continue
        penalties.append(value if value in _VALID_PENALTIES else None)
    return penalties


def total_penalty(gates: list[int | None]) -> int:
    """Sum of gate penalties, treating ``None`` as 0."""
    return sum(pen or 0 for pen in gates)
