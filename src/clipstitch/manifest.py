"""Export manifest loader — describe an export in YAML.

Follows the same ${var} path resolution as other manifests: any `source`
may reference entries of the `paths` table.

Export manifest schema:
  paths:
    renders: "/data/renders"
  output:
    format: mp4                 # mp4 | mov | mkv
    remove_silence: false
    transition:                 # default for clips declaring `transition: true`
      type: fade
      duration: 0.5
  audio:                        # optional overlay track
    source: "${renders}/music.mp3"
    offset_ms: -2000
    volume: 0.6
  clips:
    - source: "${renders}/scene-01.mp4"
      scene: 1
      duration: 5.0
      trim_start: 0.5           # optional
      trim_end: 4.5             # optional
      mute: false               # optional
      transition:               # optional, junction to the next clip
        type: dissolve
        duration: 0.8
"""

from pathlib import Path

import yaml

from .common import resolve_path_vars
from .errors import ValidationError
from .models import (
    OUTPUT_FORMATS,
    AudioTrack,
    Clip,
    ExportOptions,
    Transition,
)


def _number(value, prefix: str, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{prefix}: '{field}' must be a number, got {value!r}")
    return float(value)


def _parse_transition(raw, default: Transition | None, prefix: str) -> Transition | None:
    """Parse a transition entry.

    `true` selects the manifest default, `false`/missing means none, a
    string is a type with the default duration, a dict sets both.
    """
    if raw is None or raw is False:
        return None
    if raw is True:
        return default or Transition()
    base = default or Transition()
    if isinstance(raw, str):
        transition = Transition(raw, base.duration)
    elif isinstance(raw, dict):
        transition = Transition(
            str(raw.get("type", base.type)),
            _number(raw.get("duration", base.duration), prefix, "transition.duration"),
        )
    else:
        raise ValidationError(f"{prefix}: invalid transition {raw!r}")
    transition.validate(prefix)
    return transition


def _parse_clip(raw: dict, index: int, paths: dict, default: Transition | None) -> Clip:
    prefix = f"Clip {index}"
    if not isinstance(raw, dict):
        raise ValidationError(f"{prefix}: expected a mapping, got {raw!r}")
    for key in ("source", "scene", "duration"):
        if key not in raw:
            raise ValidationError(f"{prefix}: missing required field '{key}'")

    scene = raw["scene"]
    if isinstance(scene, bool) or not isinstance(scene, int):
        raise ValidationError(f"{prefix}: 'scene' must be an integer, got {scene!r}")

    duration = _number(raw["duration"], prefix, "duration")
    clip = Clip(
        source=resolve_path_vars(str(raw["source"]), paths),
        scene_number=scene,
        duration=duration,
        trim_start=_number(raw.get("trim_start", 0.0), prefix, "trim_start"),
        trim_end=(
            _number(raw["trim_end"], prefix, "trim_end")
            if raw.get("trim_end") is not None else None
        ),
        mute=bool(raw.get("mute", False)),
        transition_out=_parse_transition(raw.get("transition"), default, prefix),
    )
    clip.validate(index)
    return clip


def load_export_manifest(manifest_path: str | Path) -> dict:
    """Load, validate, and normalize an export manifest.

    Processing pipeline:
      1. Parse YAML.
      2. Validate output settings and the default transition.
      3. Resolve ${path} variables in every source.
      4. Build and validate Clip / AudioTrack objects.

    Args:
        manifest_path: Path to the YAML export manifest.

    Returns:
        {"clips": [Clip, ...], "options": ExportOptions}. Clips keep
        manifest order; the export sorts them by scene.

    Raises:
        ValidationError: Missing/invalid fields (a ValueError).
        FileNotFoundError: Missing manifest file.
    """
    with open(manifest_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValidationError("Export manifest: top level must be a mapping")

    paths = raw.get("paths", {}) or {}

    output = raw.get("output", {}) or {}
    fmt = str(output.get("format", "mp4"))
    if fmt not in OUTPUT_FORMATS:
        raise ValidationError(
            f"Export manifest: invalid output.format '{fmt}'. "
            f"Valid: {sorted(OUTPUT_FORMATS)}"
        )
    default_transition = None
    if output.get("transition") is not None:
        default_transition = _parse_transition(
            output["transition"], None, "Export manifest: output",
        )

    raw_clips = raw.get("clips")
    if not raw_clips:
        raise ValidationError("Export manifest: missing required 'clips' list")
    clips = [
        _parse_clip(c, i, paths, default_transition) for i, c in enumerate(raw_clips)
    ]

    audio_track = None
    audio = raw.get("audio")
    if audio is not None:
        if not isinstance(audio, dict) or "source" not in audio:
            raise ValidationError("Export manifest: audio requires a 'source'")
        audio_track = AudioTrack(
            source=resolve_path_vars(str(audio["source"]), paths),
            offset_ms=_number(audio.get("offset_ms", 0), "Audio", "offset_ms"),
            volume=_number(audio.get("volume", 1.0), "Audio", "volume"),
        )
        audio_track.validate()

    options = ExportOptions(
        output_format=fmt,
        remove_silence=bool(output.get("remove_silence", False)),
        audio_track=audio_track,
    )
    return {"clips": clips, "options": options}


def validate_manifest_sources(config: dict) -> None:
    """Check that every local clip and audio source exists on disk.

    URLs and data URLs are skipped.

    Raises:
        FileNotFoundError: Lists all missing files.
    """
    sources = [c.source for c in config["clips"]]
    track = config["options"].audio_track
    if track is not None:
        sources.append(track.source)

    missing = [
        s for s in sources
        if "://" not in str(s) and not str(s).startswith("data:") and not Path(s).exists()
    ]
    if missing:
        msg = f"Missing {len(missing)} source file(s):\n"
        for p in missing:
            msg += f"  - {p}\n"
        raise FileNotFoundError(msg)
