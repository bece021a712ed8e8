"""Audio mixer — overlay one auxiliary track onto a composed video.

The track is added on top of the video's own audio (amix without
normalization), never replacing it. Output length follows the video:
amix duration=first keeps the primary input's length whatever the
track's length is.

Offset handling:
  - offset_ms >= 0: the track starts offset_ms into the video (adelay).
  - offset_ms < 0: |offset_ms| is trimmed from the track head, and what
    remains is mixed from time zero.
"""

import logging
from typing import Optional

from .common import container_args
from .errors import ClipstitchError, MixError
from .graph import Filter, FilterGraph
from .models import AudioTrack

logger = logging.getLogger(__name__)

MIX_OUT = "aout"


def track_filters(track: AudioTrack) -> list[Filter]:
    """Offset and gain filters applied to the auxiliary track."""
    if track.offset_ms < 0:
        skip = abs(track.offset_ms) / 1000
        shift = [
            Filter("atrim", kwargs={"start": skip}),
            Filter("asetpts", ("PTS-STARTPTS",)),
        ]
    else:
        shift = [Filter("adelay", kwargs={"delays": int(round(track.offset_ms)), "all": 1})]
    return [*shift, Filter("volume", (float(track.volume),))]


def build_mix_graph(track: AudioTrack) -> FilterGraph:
    """Graph over inputs 0 (composed video) and 1 (track) ending in [aout]."""
    graph = FilterGraph(input_count=2)
    graph.add(["1:a"], track_filters(track), ["aux"])
    graph.add(
        ["0:a", "aux"],
        [Filter("amix", kwargs={
            "inputs": 2,
            "duration": "first",
            "dropout_transition": 0,
            "normalize": 0,
        })],
        [MIX_OUT],
    )
    graph.validate([MIX_OUT])
    return graph


def mix_command(
    video_name: str,
    track_name: str,
    output_name: str,
    track: AudioTrack,
    output_format: str = "mp4",
) -> list[str]:
    return [
        "-i", video_name,
        "-i", track_name,
        "-filter_complex", build_mix_graph(track).serialize(),
        "-map", "0:v",
        "-map", f"[{MIX_OUT}]",
        "-c:v", "copy",
        "-c:a", "aac", "-b:a", "192k",
        *container_args(output_format),
        "-y", output_name,
    ]


async def mix_audio_track(
    engine,
    video_name: str,
    track_name: str,
    output_name: str,
    track: AudioTrack,
    output_format: str = "mp4",
    duration: Optional[float] = None,
    timeout: Optional[float] = None,
) -> bytes:
    """Mix the staged track into the staged video and return the result.

    Both inputs must already be in the engine namespace. The caller owns
    cleanup of all three names.

    Raises:
        MixError: The engine run failed or produced nothing.
    """
    try:
        await engine.exec(
            mix_command(video_name, track_name, output_name, track, output_format),
            duration=duration,
            timeout=timeout,
        )
        data = await engine.read_file(output_name)
    except (ClipstitchError, OSError) as exc:
        raise MixError(f"Audio mixing failed: {exc}") from exc
    if not data:
        raise MixError("Audio mixing failed: mixed output file is empty")
    logger.debug("Mixed %s into %s (%d bytes)", track_name, video_name, len(data))
    return data
