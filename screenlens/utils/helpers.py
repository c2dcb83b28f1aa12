"""Helper utilities."""

from datetime import datetime


def human_duration(millis: int) -> str:
    total = max(0, int(millis) // 1000)
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}h {m}m {s}s"
    if m:
        return f"{m}m {s}s"
    return f"{s}s"


def now_millis() -> int:
    return int(datetime.now().timestamp() * 1000)


def from_millis(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000)


def format_start_time(millis: int) -> str:
    return from_millis(millis).strftime("%b %d, %Y %H:%M")


def format_clock(millis: int) -> str:
    return from_millis(millis).strftime("%H:%M:%S")


def human_size(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def truncate(text: str, max_len: int = 40) -> str:
    return text if len(text) <= max_len else text[:max_len - 1] + "…"
