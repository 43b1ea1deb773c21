"""Small display helpers shared by logging and the CLI summary."""


def format_duration(seconds: float) -> str:
    """
    Render a duration for step summaries.

    Examples:
        >>> format_duration(0.25)
        '250ms'
        >>> format_duration(75)
        '1m 15s'
    """
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


def format_bytes(size_bytes: float) -> str:
    """Human-readable object size, e.g. ``'1.5 MB'``."""
    size = float(size_bytes)
    if size < 1024:
        return f"{int(size)} B"
    for unit in ("KB", "MB", "GB", "TB"):
        size /= 1024.0
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}"
    return f"{size:.1f} PB"


def shorten(text: str, limit: int = 200) -> str:
    # error messages from the server can embed whole statements
    text = " ".join(str(text).split())
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."
