"""Human-readable byte sizes."""

_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_bytes(num_bytes: int | None) -> str:
    """Format a byte count using binary units.

    Examples:
        0 -> "0 B"
        1536 -> "1.50 KB"
        None -> "unknown"
    """
    if num_bytes is None:
        return "unknown"
    if num_bytes <= 0:
        return "0 B"

    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1

    if unit == 0:
        return f"{num_bytes} B"
    return f"{value:.2f} {_UNITS[unit]}"
