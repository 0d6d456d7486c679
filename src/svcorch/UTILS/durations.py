"""
Utilities for parsing compose-style durations such as ``30s`` or ``1m30s``.
"""
import re
from typing import Union

_UNITS = {
    "us": 0.000001,
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART = re.compile(r'(\d+(?:\.\d+)?)(us|ms|s|m|h)')


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Converts a duration into seconds.

    Bare numbers are taken as seconds. Strings are a sequence of
    ``<number><unit>`` parts, where unit is one of us, ms, s, m, h.

    :param value: The duration to convert.
    :return: The duration in seconds.
    :raises ValueError: If the value is negative or not a valid duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return float(value)

    text = str(value).strip()
    if not text:
        raise ValueError("Duration must not be empty")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return seconds

    total = 0.0
    pos = 0
    for match in _PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total
