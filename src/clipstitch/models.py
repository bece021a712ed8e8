"""Data model for clip composition.

Clips, audio tracks and export options are caller-owned and immutable for
the duration of one export. Validation is explicit: a bad trim window is
an error, never a silently clamped value.
"""

import asyncio
import base64
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .errors import ValidationError


def _is_number(value) -> bool:
    """True for a finite int or float (bools excluded)."""
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


# ── Transitions ───────────────────────────────────────────────────
# Transition names accepted on a junction, mapped to the engine's blend
# names. "zoom" is the only one whose engine name differs.

TRANSITION_BLENDS = {
    "fade": "fade",
    "dissolve": "dissolve",
    "wiperight": "wiperight",
    "wipeleft": "wipeleft",
    "slideright": "slideright",
    "slideleft": "slideleft",
    "circleopen": "circleopen",
    "circleclose": "circleclose",
    "zoom": "zoomin",
}

OUTPUT_FORMATS = {"mp4", "mov", "mkv"}


@dataclass(frozen=True)
class Transition:
    """Junction from a clip to the next one in scene order."""

    type: str = "fade"
    duration: float = 0.5

    @property
    def blend(self) -> str:
        """Engine blend name for this transition type."""
        return TRANSITION_BLENDS[self.type]

    def validate(self, prefix: str = "Transition") -> None:
        if self.type not in TRANSITION_BLENDS:
            raise ValidationError(
                f"{prefix}: invalid transition type '{self.type}'. "
                f"Valid: {sorted(TRANSITION_BLENDS)}"
            )
        if not _is_number(self.duration) or self.duration <= 0:
            raise ValidationError(
                f"{prefix}: transition duration must be > 0, got {self.duration!r}"
            )


DEFAULT_TRANSITION = Transition("fade", 0.5)


# ── Clips ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Clip:
    """One input video segment.

    `duration` is authoritative and never re-measured. `trim_end` defaults
    to `duration`. `transition_out` describes the junction to the next clip
    in sorted order and is ignored on the last clip.
    """

    source: object
    scene_number: int
    duration: float
    trim_start: float = 0.0
    trim_end: Optional[float] = None
    mute: bool = False
    transition_out: Optional[Transition] = None

    @property
    def start(self) -> float:
        return self.trim_start

    @property
    def end(self) -> float:
        return self.duration if self.trim_end is None else self.trim_end

    @property
    def effective_duration(self) -> float:
        return self.end - self.start

    @property
    def is_trimmed(self) -> bool:
        return self.start > 0 or self.end < self.duration

    def validate(self, index: int = 0) -> None:
        prefix = f"Clip {index} (scene {self.scene_number})"
        if self.source is None or self.source == "":
            raise ValidationError(f"{prefix}: missing source")
        if not _is_number(self.duration) or self.duration <= 0:
            raise ValidationError(f"{prefix}: duration must be > 0, got {self.duration!r}")
        if not _is_number(self.trim_start):
            raise ValidationError(
                f"{prefix}: trim_start must be a finite number, got {self.trim_start!r}"
            )
        if self.trim_end is not None and not _is_number(self.trim_end):
            raise ValidationError(
                f"{prefix}: trim_end must be a finite number, got {self.trim_end!r}"
            )
        if self.start < 0:
            raise ValidationError(f"{prefix}: trim_start must be >= 0, got {self.start}")
        if self.end > self.duration:
            raise ValidationError(
                f"{prefix}: trim_end ({self.end}) exceeds duration ({self.duration})"
            )
        if self.start >= self.end:
            raise ValidationError(
                f"{prefix}: trim_start ({self.start}) must be < trim_end ({self.end})"
            )
        if self.transition_out is not None:
            self.transition_out.validate(prefix)


def validate_clips(clips: list[Clip]) -> list[Clip]:
    """Validate every clip and return them sorted by scene number.

    The sort is stable, so clips sharing a scene number keep their
    relative order.

    Raises:
        ValidationError: Empty list or any invalid clip.
    """
    if not clips:
        raise ValidationError("No clips to export")
    for i, clip in enumerate(clips):
        clip.validate(i)
    return sorted(clips, key=lambda c: c.scene_number)


# ── Audio ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AudioTrack:
    """Auxiliary track mixed over the composed video.

    Negative `offset_ms` skips into the track; positive delays its start.
    """

    source: object
    offset_ms: float = 0
    volume: float = 1.0

    def validate(self) -> None:
        if self.source is None or self.source == "":
            raise ValidationError("Audio track: missing source")
        if not _is_number(self.offset_ms):
            raise ValidationError(f"Audio track: invalid offset_ms {self.offset_ms!r}")
        if not _is_number(self.volume) or self.volume < 0:
            raise ValidationError(f"Audio track: volume must be >= 0, got {self.volume!r}")


# ── Progress ──────────────────────────────────────────────────────


class ExportPhase(Enum):
    LOADING = "loading"
    PREPARING = "preparing"
    CONCATENATING = "concatenating"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"


PHASE_ORDER = [
    ExportPhase.LOADING,
    ExportPhase.PREPARING,
    ExportPhase.CONCATENATING,
    ExportPhase.FINALIZING,
    ExportPhase.COMPLETE,
]


@dataclass(frozen=True)
class ExportProgress:
    phase: ExportPhase
    progress: int
    message: str
    current_file: Optional[int] = None
    total_files: Optional[int] = None


# ── Options and results ───────────────────────────────────────────


@dataclass
class ExportOptions:
    """Per-export settings.

    `cancel_event` is observed at every suspension point; setting it makes
    the export raise ExportCancelledError after cleaning up.
    """

    output_format: str = "mp4"
    remove_silence: bool = False
    audio_track: Optional[AudioTrack] = None
    on_progress: Optional[Callable[[ExportProgress], None]] = None
    cancel_event: Optional[asyncio.Event] = None
    fetch_timeout: Optional[float] = 60.0
    exec_timeout: Optional[float] = None

    def validate(self) -> None:
        if self.output_format not in OUTPUT_FORMATS:
            raise ValidationError(
                f"Invalid output format '{self.output_format}'. "
                f"Valid: {sorted(OUTPUT_FORMATS)}"
            )
        if self.audio_track is not None:
            self.audio_track.validate()


@dataclass
class ExportResult:
    """Composed video bytes plus what happened on the way.

    `degraded` is True when the transition-free fallback render produced
    the output. `warnings` holds user-facing notes (fallback, dropped
    audio overlay).
    """

    data: bytes
    mime_type: str
    strategy: str
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    def save(self, path: str | Path) -> Path:
        """Write the video bytes to `path`, creating parent dirs."""
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(self.data)
        return out


@dataclass(frozen=True)
class ExtractedFrame:
    data: bytes
    mime_type: str

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"
