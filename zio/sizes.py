from __future__ import annotations


def readable_size(size: int) -> str:
    """
    Format a byte count the way the summary prints it.

    Thresholds are decimal (1e6, 1e9) while the divisor is binary (1024),
    so 1500000 bytes reads as "1.4Mb".
    """
    if size >= 1_000_000_000:
        return f"{size / 1024 / 1024 / 1024:.1f}Gb"
    if size >= 1_000_000:
        return f"{size / 1024 / 1024:.1f}Mb"
    return f"{size / 1024:.1f}Kb"


def readable_time(seconds: float) -> str:
    total = int(seconds)
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if days > 0:
        parts.append(f"{days} days")
    if hours > 0:
        parts.append(f"{hours} hours")
    if minutes > 0:
        parts.append(f"{minutes} minutes")

    if parts:
        return " ".join(parts) + f" and {secs} seconds"
    return f"{secs} seconds"


def saved_percent(bytes_in: int, bytes_out: int) -> float:
    # Nothing read means nothing saved.
    if bytes_in <= 0:
        return 0.0
    return (bytes_in - bytes_out) * 100.0 / bytes_in
