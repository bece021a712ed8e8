"""clipstitch.common — shared helpers.

Contains: step timeouts, source identifier truncation, path variable
resolution for manifests, deterministic number formatting for filter
graph parameters, and container muxer flags.
"""

import asyncio
import re
from typing import Awaitable, TypeVar

from .errors import StepTimeoutError

T = TypeVar("T")

SOURCE_PREVIEW_CHARS = 80


# ── Timeouts ───────────────────────────────────────────────────────

async def with_timeout(aw: Awaitable[T], seconds: float | None, step: str) -> T:
    """Await `aw`, converting a timeout into a StepTimeoutError naming `step`.

    A `seconds` of None disables the bound.
    """
    if seconds is None:
        return await aw
    try:
        return await asyncio.wait_for(aw, seconds)
    except asyncio.TimeoutError as exc:
        raise StepTimeoutError(step, seconds) from exc


# ── Source identifiers ─────────────────────────────────────────────

def describe_source(source) -> str:
    """Return a short, printable identifier for a clip or track source.

    Long identifiers (data URLs, signed URLs) are cut to 80 characters
    with a trailing ellipsis. Raw bytes are described by their size.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        return f"<{len(source)} bytes>"
    text = str(source)
    if len(text) > SOURCE_PREVIEW_CHARS:
        return text[:SOURCE_PREVIEW_CHARS] + "..."
    return text


# ── Path utilities ─────────────────────────────────────────────────

def resolve_path_vars(text: str, paths: dict[str, str]) -> str:
    """Replace ${name} variables in a string using the paths dict."""
    def _replace(match):
        key = match.group(1)
        if key not in paths:
            raise ValueError(f"Unknown path variable: ${{{key}}}")
        return paths[key]
    return re.sub(r"\$\{(\w+)\}", _replace, text)


# ── Number formatting ──────────────────────────────────────────────

def format_number(value: int | float) -> str:
    """Format a numeric filter parameter.

    Integers (and bools) print as-is. Floats are rounded to milliseconds
    precision and stripped of trailing zeros, so 1.0 -> "1", 0.8 -> "0.8",
    4.2000000001 -> "4.2". Same input always gives the same text.
    """
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    if text in ("-0", ""):
        return "0"
    return text


# ── Containers ─────────────────────────────────────────────────────

def container_args(output_format: str) -> list[str]:
    """Muxer flags for the output container (faststart for mp4/mov)."""
    if output_format in ("mp4", "mov"):
        return ["-movflags", "+faststart"]
    return []
