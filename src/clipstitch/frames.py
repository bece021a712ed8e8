"""Frame extractor — a still JPEG of a video's last frame, for thumbnails.

Two strategies:
  1. Decode locally with moviepy: open the file, seek just before the
     end, grab the frame and encode it with Pillow.
  2. On any failure of (1), stage the video into the shared engine and
     let ffmpeg seek back from end-of-stream and write one frame.

Each step is bounded by the same timeout. A timeout in (1) escalates to
(2); a failure in (2) is final.
"""

import asyncio
import io
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional
from uuid import uuid4

import numpy as np
from moviepy import VideoFileClip
from PIL import Image

from .common import with_timeout
from .engine import best_effort_release
from .errors import ClipstitchError, FrameExtractionError
from .lifecycle import EngineManager, default_manager
from .models import ExtractedFrame
from .sources import fetch_source

logger = logging.getLogger(__name__)

JPEG_MIME = "image/jpeg"
JPEG_QUALITY = 92
END_EPSILON = 0.05
SSEOF_OFFSET = "-0.1"
DEFAULT_TIMEOUT = 20.0


# ── Primary: local decode ─────────────────────────────────────────


def _encode_jpeg(frame: np.ndarray) -> bytes:
    if frame.dtype != np.uint8:
        frame = np.clip(frame, 0, 255).astype(np.uint8)
    buf = io.BytesIO()
    Image.fromarray(frame).convert("RGB").save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()


def _decode_last_frame(data: bytes) -> bytes:
    """Spill `data` to a temp file, grab its last frame, encode as JPEG.

    Runs in a worker thread. The reader is closed and the temp file
    removed here, so an abandoned worker still cleans up after itself.
    """
    fd, path = tempfile.mkstemp(suffix=".mp4", prefix="clipstitch_frame_")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        clip = VideoFileClip(path, audio=False)
        try:
            target = max(0.0, (clip.duration or 0.0) - END_EPSILON)
            frame = clip.get_frame(target)
        finally:
            clip.close()
        return _encode_jpeg(frame)
    finally:
        Path(path).unlink(missing_ok=True)


async def extract_via_decode(source, timeout: float) -> ExtractedFrame:
    """Decode the last frame with moviepy.

    Opening, seeking and encoding share one worker thread and one
    timeout. On timeout the worker is left to finish and release its own
    reader and temp file.
    """
    data = await with_timeout(
        fetch_source(source, timeout), timeout, "fetching video for frame extraction",
    )
    jpeg = await with_timeout(
        asyncio.to_thread(_decode_last_frame, data), timeout, "decoding last frame",
    )
    return ExtractedFrame(jpeg, JPEG_MIME)


# ── Fallback: engine ──────────────────────────────────────────────


async def extract_via_engine(
    source, timeout: float, manager: EngineManager,
) -> ExtractedFrame:
    """Extract the last frame with ffmpeg in the shared engine."""
    engine = await with_timeout(manager.acquire(), timeout, "initializing engine")
    token = uuid4().hex[:12]
    input_name = f"frame_input_{token}.mp4"
    output_name = f"frame_output_{token}.jpg"

    try:
        data = await with_timeout(
            fetch_source(source, timeout), timeout, "loading video into engine",
        )
        await with_timeout(
            engine.write_file(input_name, data), timeout, "writing video into engine",
        )
        await engine.exec(
            [
                "-sseof", SSEOF_OFFSET,
                "-i", input_name,
                "-frames:v", "1",
                "-q:v", "2",
                "-y", output_name,
            ],
            timeout=timeout,
        )
        jpeg = await with_timeout(
            engine.read_file(output_name), timeout, "reading extracted frame from engine",
        )
    finally:
        await best_effort_release(engine, [input_name, output_name])

    if not jpeg:
        raise FrameExtractionError("Engine produced an empty frame")
    return ExtractedFrame(jpeg, JPEG_MIME)


# ── Public API ────────────────────────────────────────────────────


async def extract_last_frame(
    source,
    timeout: float = DEFAULT_TIMEOUT,
    manager: Optional[EngineManager] = None,
) -> ExtractedFrame:
    """Extract the last frame of a video as JPEG.

    Args:
        source: Path, URL, data URL or raw bytes of the video.
        timeout: Seconds allowed for each individual step.
        manager: Engine manager for the fallback; defaults to the
            process-wide one.

    Raises:
        FrameExtractionError: Both strategies failed. The message names
            the fallback and the primary failure; __cause__ is the
            fallback's error.
    """
    try:
        return await extract_via_decode(source, timeout)
    except Exception as primary_exc:
        logger.warning("Local frame decode failed, falling back to engine: %s", primary_exc)
        primary = primary_exc

    try:
        return await extract_via_engine(source, timeout, manager or default_manager())
    except (ClipstitchError, OSError) as exc:
        raise FrameExtractionError(
            f"Frame extraction failed: {exc} (local decode: {primary})"
        ) from exc
