"""
Size and duration values parsed from compact, human-readable strings.

Sizes look like "256M", "4G", "2048s" (sectors) and durations like "5m",
"30s", "500ms". Both are used by the configuration and the cache volume.
"""

import functools
import logging
import re

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([gmk]b?|b|s)\s*$", re.IGNORECASE)
_SIZE_UNITS = {
    "g": 1024 * 1024 * 1024,
    "m": 1024 * 1024,
    "k": 1024,
    "b": 1,
    "s": SECTOR_SIZE,
}

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*(ms|s|m|h)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
}

DEFAULT_SYNC_INTERVAL_MS = 5 * 60 * 1000


@functools.total_ordering
class SizeValue:
    """An immutable byte count.

    Accepts either a byte count (int) or a size string made of digits
    followed by a unit: g, m, k (binary multiples), b (bytes) or
    s (512-byte sectors), case-insensitive.
    """

    __slots__ = ("_bytes",)

    def __init__(self, size):
        if isinstance(size, bool):
            raise TypeError("Size should be either a string or a number, got bool")
        if isinstance(size, str):
            value = self._parse(size)
        elif isinstance(size, (int, float)):
            value = int(size)
        elif isinstance(size, SizeValue):
            value = size.bytes
        else:
            raise TypeError(
                f"Size should be either a string or a number, got {type(size).__name__}"
            )
        if value < 0:
            raise ValueError(f"Size cannot be negative: {size!r}")
        object.__setattr__(self, "_bytes", value)

    @staticmethod
    def _parse(text: str) -> int:
        match = _SIZE_PATTERN.match(text)
        if match is None:
            raise ValueError(f"Invalid memory size format: {text!r}")
        value = int(match.group(1))
        unit = match.group(2)[0].lower()
        return value * _SIZE_UNITS[unit]

    def __setattr__(self, name, value):
        raise AttributeError("SizeValue is immutable")

    @property
    def bytes(self) -> int:
        return self._bytes

    @property
    def sectors(self) -> float:
        return self._bytes / SECTOR_SIZE

    @property
    def kilobytes(self) -> float:
        return self._bytes / 1024

    @property
    def megabytes(self) -> float:
        return self._bytes / 1024 / 1024

    @property
    def gigabytes(self) -> float:
        return self._bytes / 1024 / 1024 / 1024

    def eq(self, other: "SizeValue") -> bool:
        return self._bytes == other.bytes

    def gt(self, other: "SizeValue") -> bool:
        return self._bytes > other.bytes

    def lt(self, other: "SizeValue") -> bool:
        return self._bytes < other.bytes

    def gte(self, other: "SizeValue") -> bool:
        return self._bytes >= other.bytes

    def lte(self, other: "SizeValue") -> bool:
        return self._bytes <= other.bytes

    def __eq__(self, other):
        if not isinstance(other, SizeValue):
            return NotImplemented
        return self._bytes == other.bytes

    def __lt__(self, other):
        if not isinstance(other, SizeValue):
            return NotImplemented
        return self._bytes < other.bytes

    def __hash__(self):
        return hash(self._bytes)

    def __int__(self):
        return self._bytes

    def __repr__(self):
        return f"SizeValue({self._bytes})"

    def __str__(self):
        return f"{self.megabytes:.1f}MB"


def parse_duration(value) -> int:
    """
    Parse a duration such as "5m", "10s", "300MS" or "2h" into milliseconds.

    Invalid values log a warning and fall back to 5 minutes.
    """
    match = _DURATION_PATTERN.match(str(value))
    if match is None:
        logger.warning(
            f'Invalid sync interval "{value}". Use a number followed by a unit of time: '
            f"ms (milliseconds), s (seconds), m (minutes) or h (hours). "
            f"Reverting to a default value of 5m"
        )
        return DEFAULT_SYNC_INTERVAL_MS
    return int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
