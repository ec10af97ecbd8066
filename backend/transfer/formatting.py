"""Human-readable sizes, speeds and remaining times."""

import math

_UNITS = ("B", "KB", "MB", "GB")


def format_size(num_bytes: int | float | None) -> str:
    if not num_bytes:
        return "0 B"
    if num_bytes < 1024:
        return f"{int(num_bytes)} B"

    value = float(num_bytes)
    for unit in _UNITS[1:]:
        value /= 1024
        if value < 1024 or unit == _UNITS[-1]:
            return f"{value:.1f} {unit}"
    return f"{value:.1f} {_UNITS[-1]}"


def format_speed(bytes_per_second: float | None) -> str:
    if not bytes_per_second:
        return "Calculating..."
    if bytes_per_second < 1024:
        return f"{bytes_per_second:.1f} B/s"
    if bytes_per_second < 1024 * 1024:
        return f"{bytes_per_second / 1024:.1f} KB/s"
    return f"{bytes_per_second / (1024 * 1024):.1f} MB/s"


def format_eta(seconds: float | None) -> str:
    if seconds is None:
        return "Calculating..."
    if seconds <= 0:
        return "done"
    if seconds < 60:
        return f"{math.ceil(seconds)} seconds remaining"
    if seconds < 3600:
        return f"{math.ceil(seconds / 60)} minutes remaining"

    hours = int(seconds // 3600)
    minutes = math.ceil((seconds % 3600) / 60)
    return (
        f"{hours} hour{'s' if hours > 1 else ''} "
        f"{minutes} minute{'s' if minutes != 1 else ''} remaining"
    )
