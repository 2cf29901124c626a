"""
Duration parsing utilities for auto-update intervals.

Converts Go-style duration strings (e.g., "30s", "5m", "1h30m") to seconds
as required by the job scheduler.
"""

import re
from typing import Union

# Unit to seconds multipliers
_UNIT_SECONDS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1,
    'm': 60,
    'h': 3600,
}

_COMPONENT_PATTERN = re.compile(r'(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)')
_FULL_PATTERN = re.compile(r'^(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|s|m|h))+$')


def parse_duration(duration: Union[str, int, float, None]) -> float:
    """
    Parse a duration string to seconds.

    Supported units:
    - ns: nanoseconds
    - us (or µs): microseconds
    - ms: milliseconds
    - s: seconds
    - m: minutes
    - h: hours

    Args:
        duration: Duration string (e.g., "30s", "1m30s"), number of seconds, or None

    Returns:
        Duration in seconds

    Raises:
        ValueError: If duration string format is invalid

    Examples:
        >>> parse_duration("30s")
        30.0
        >>> parse_duration("1h30m")
        5400.0
        >>> parse_duration(None)
        0.0
    """
    if duration is None or duration == '':
        return 0.0

    # Already seconds
    if isinstance(duration, (int, float)):
        return float(duration)

    duration_str = str(duration).strip()
    if not duration_str:
        return 0.0

    # Whole string must be a sequence of <number><unit> components, so
    # values like "5 minutes" or "5" are rejected instead of half-parsed
    if not _FULL_PATTERN.match(duration_str):
        raise ValueError(
            f"Invalid duration format: '{duration}'. "
            f"Expected format: <number><unit> (e.g., '30s', '5m', '1h30m'). "
            f"Valid units: ns, us, ms, s, m, h"
        )

    total_seconds = 0.0
    for value_str, unit in _COMPONENT_PATTERN.findall(duration_str):
        total_seconds += float(value_str) * _UNIT_SECONDS[unit]

    return total_seconds
