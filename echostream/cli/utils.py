"""Shared CLI helpers."""

from rich.console import Console

console = Console()


def truncate(text: str, width: int = 60) -> str:
    """Single-line preview of ``text``."""
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 1] + "…"
