"""Execution driver — stage clips, run the plan, mix, read back.

Phases run strictly in order:

  loading -> preparing -> concatenating -> finalizing -> complete

with `error` reachable from any of them. Progress numbers:

  loading        0 .. 100 (own sub-scale, around engine acquisition)
  preparing      (staged / total) * 40
  concatenating  45 + native * 45   (engine's 0..1 progress, rescaled)
  finalizing     90 (audio mix), 95 (read back)
  complete       100

Recovery: when the primary run fails, every staged input is re-encoded
on its own to the canonical format and the results are joined with the
concat demuxer. Transitions are lost on that path. If it fails too, the
primary error is raised, not the fallback's.

Every name written to the engine namespace is released before returning,
on success, error and cancellation alike.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional
from uuid import uuid4

from .common import container_args, describe_source, with_timeout
from .engine import best_effort_release
from .errors import (
    EngineError,
    ExportCancelledError,
    FetchError,
    MixError,
    StepTimeoutError,
)
from .graph import Filter
from .graph_builder import (
    STRATEGY_COPY,
    TARGET_PIXEL_FORMAT,
    GraphPlan,
    build_plan,
    canonical_video_filters,
)
from .lifecycle import EngineManager, default_manager
from .manifest import load_export_manifest, validate_manifest_sources
from .mixer import mix_audio_track
from .models import (
    PHASE_ORDER,
    Clip,
    ExportOptions,
    ExportPhase,
    ExportProgress,
    ExportResult,
    validate_clips,
)
from .sources import fetch_source

logger = logging.getLogger(__name__)


# ── Encoding ──────────────────────────────────────────────────────
# Fixed target; there is no per-export quality negotiation.

ENCODING_PRESET = "medium"
ENCODING_CRF = 23
AUDIO_BITRATE = "192k"

FALLBACK_PRESET = "fast"
FALLBACK_SAMPLE_RATE = 44100

MIME_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "mkv": "video/x-matroska",
}

PREPARE_SHARE = 40
CONCAT_START = 45
CONCAT_END = 90
MIX_PROGRESS = 90
FINALIZE_PROGRESS = 95

FALLBACK_WARNING = (
    "Transitions could not be rendered; exported a plain concatenation instead."
)


def encode_args(output_format: str) -> list[str]:
    return [
        "-c:v", "libx264",
        "-preset", ENCODING_PRESET,
        "-crf", str(ENCODING_CRF),
        "-pix_fmt", TARGET_PIXEL_FORMAT,
        "-c:a", "aac", "-b:a", AUDIO_BITRATE,
        *container_args(output_format),
    ]


# ── Progress ──────────────────────────────────────────────────────


class ProgressReporter:
    """Delivers ExportProgress to the observer, in phase order.

    Emitting a phase earlier than the current one is a bug and raises.
    """

    def __init__(self, observer: Optional[Callable[[ExportProgress], None]]):
        self._observer = observer
        self.phase: Optional[ExportPhase] = None
        self.last: Optional[ExportProgress] = None

    def emit(
        self,
        phase: ExportPhase,
        progress: int,
        message: str,
        current_file: Optional[int] = None,
        total_files: Optional[int] = None,
    ) -> None:
        if self.phase is ExportPhase.ERROR or self.phase is ExportPhase.COMPLETE:
            raise RuntimeError(f"Progress after terminal phase {self.phase.value}")
        if (
            phase is not ExportPhase.ERROR
            and self.phase is not None
            and PHASE_ORDER.index(phase) < PHASE_ORDER.index(self.phase)
        ):
            raise RuntimeError(f"Phase {phase.value} after {self.phase.value}")
        self.phase = phase
        self.last = ExportProgress(
            phase, max(0, min(100, int(progress))), message, current_file, total_files,
        )
        if self._observer is not None:
            self._observer(self.last)

    def fail(self, message: str) -> None:
        if self.phase is ExportPhase.ERROR or self.phase is ExportPhase.COMPLETE:
            return
        self.emit(ExportPhase.ERROR, 0, message)

    def scaled(self, start: int, end: int, message: str) -> Callable[[float], None]:
        """Observer mapping native 0..1 progress into [start, end].

        Values below what was already reported are dropped, so a retry
        after partial progress does not move the bar backwards.
        """
        last = [None]

        def _on_native(ratio: float) -> None:
            ratio = min(max(ratio, 0.0), 1.0)
            value = start + round(ratio * (end - start))
            if self.last is not None and value < self.last.progress:
                return
            if value != last[0]:
                last[0] = value
                self.emit(ExportPhase.CONCATENATING, value, message)

        return _on_native


def _checkpoint(options: ExportOptions) -> None:
    if options.cancel_event is not None and options.cancel_event.is_set():
        raise ExportCancelledError("Export cancelled")


# ── Primary and fallback runs ─────────────────────────────────────


def primary_command(plan: GraphPlan, inputs: list[str], output: str, output_format: str) -> list[str]:
    """ffmpeg arguments for the planned run."""
    if plan.strategy == STRATEGY_COPY:
        return ["-i", inputs[0], "-c", "copy", *container_args(output_format), "-y", output]

    input_args = [arg for name in inputs for arg in ("-i", name)]
    return [
        *input_args,
        "-filter_complex", plan.filter_complex,
        "-map", f"[{plan.video_out}]",
        "-map", f"[{plan.audio_out}]",
        *encode_args(output_format),
        "-y", output,
    ]


def normalize_command(clip: Clip, source: str, output: str) -> list[str]:
    """Re-encode one staged clip to the canonical format, on its own."""
    trim = []
    if clip.is_trimmed:
        trim = ["-ss", f"{clip.start:.3f}", "-t", f"{clip.effective_duration:.3f}"]
    audio = [Filter("aresample", (FALLBACK_SAMPLE_RATE,))]
    if clip.mute:
        audio.append(Filter("volume", (0,)))
    return [
        *trim,
        "-i", source,
        "-vf", ",".join(f.serialize() for f in canonical_video_filters()),
        "-af", ",".join(f.serialize() for f in audio),
        "-c:v", "libx264", "-preset", FALLBACK_PRESET, "-crf", str(ENCODING_CRF),
        "-c:a", "aac",
        "-y", output,
    ]


def concat_list(names: Iterable[str]) -> bytes:
    return "".join(f"file '{name}'\n" for name in names).encode()


async def _run_fallback(
    engine,
    clips: list[Clip],
    inputs: list[str],
    output: str,
    output_format: str,
    prefix: str,
    staged: list[str],
    reporter: ProgressReporter,
    options: ExportOptions,
) -> None:
    """Normalize each input in isolation, then join with the concat demuxer.

    All names live under `prefix`, apart from the shared primary inputs
    and `output`.
    """
    steps = len(inputs) + 1
    span = CONCAT_END - CONCAT_START
    normalized = []

    for i, (clip, name) in enumerate(zip(clips, inputs)):
        _checkpoint(options)
        norm = f"{prefix}norm_{i}.mp4"
        staged.append(norm)
        lo = CONCAT_START + span * i // steps
        hi = CONCAT_START + span * (i + 1) // steps
        await engine.exec(
            normalize_command(clip, name, norm),
            duration=clip.effective_duration,
            on_progress=reporter.scaled(lo, hi, f"Normalizing scene {clip.scene_number}..."),
            timeout=options.exec_timeout,
        )
        normalized.append(norm)

    _checkpoint(options)
    list_name = f"{prefix}concat_list.txt"
    staged.append(list_name)
    await engine.write_file(list_name, concat_list(normalized))
    await engine.exec(
        [
            "-f", "concat", "-safe", "0",
            "-i", list_name,
            "-c", "copy",
            *container_args(output_format),
            "-y", output,
        ],
        timeout=options.exec_timeout,
    )
    reporter.emit(ExportPhase.CONCATENATING, CONCAT_END, "Videos joined")


# ── Public API ────────────────────────────────────────────────────


async def export_clips(
    clips: list[Clip],
    options: Optional[ExportOptions] = None,
    manager: Optional[EngineManager] = None,
) -> ExportResult:
    """Compose clips into one video.

    Clips are validated and sorted by scene number before anything is
    fetched or staged.

    Args:
        clips: Clip descriptors, in any order.
        options: Export options (format, silence removal, audio track,
            progress observer, cancellation signal, timeouts).
        manager: Engine manager; defaults to the process-wide one.

    Returns:
        ExportResult with the container bytes, the strategy used, and
        warnings for fallback rendering or a dropped audio overlay.

    Raises:
        ValidationError: Invalid clips or options.
        FetchError: A clip source could not be loaded.
        EngineError: The primary run failed and so did the fallback
            (the primary error is raised).
        ExportCancelledError: The cancel event was set.
    """
    options = options or ExportOptions()
    reporter = ProgressReporter(options.on_progress)
    try:
        ordered = validate_clips(list(clips))
        options.validate()
        plan = build_plan(ordered, options)
        return await _export(ordered, plan, options, manager or default_manager(), reporter)
    except asyncio.CancelledError:
        reporter.fail("Export cancelled")
        raise
    except Exception as exc:
        logger.error("Export failed: %s", exc)
        reporter.fail(f"Error: {exc}")
        raise


async def _export(
    clips: list[Clip],
    plan: GraphPlan,
    options: ExportOptions,
    manager: EngineManager,
    reporter: ProgressReporter,
) -> ExportResult:
    n = len(clips)
    fmt = options.output_format
    prefix = f"job{uuid4().hex[:12]}_"
    staged: list[str] = []
    warnings: list[str] = []

    reporter.emit(ExportPhase.LOADING, 0, "Loading engine...")
    _checkpoint(options)
    engine = await manager.acquire()
    reporter.emit(ExportPhase.LOADING, 100, "Engine loaded")

    try:
        reporter.emit(ExportPhase.PREPARING, 0, "Preparing videos...", 0, n)
        inputs = []
        for i, clip in enumerate(clips):
            _checkpoint(options)
            reporter.emit(
                ExportPhase.PREPARING,
                round((i + 1) / n * PREPARE_SHARE),
                f"Loading scene {clip.scene_number}...",
                i + 1, n,
            )
            data = await with_timeout(
                fetch_source(clip.source, options.fetch_timeout),
                options.fetch_timeout,
                f"fetching scene {clip.scene_number} ({describe_source(clip.source)})",
            )
            name = f"{prefix}input_{i}.mp4"
            staged.append(name)
            await engine.write_file(name, data)
            inputs.append(name)

        _checkpoint(options)
        reporter.emit(ExportPhase.CONCATENATING, CONCAT_START, "Applying transitions...")
        output = f"{prefix}output.{fmt}"
        staged.append(output)

        degraded = False
        try:
            await engine.exec(
                primary_command(plan, inputs, output, fmt),
                duration=plan.expected_duration,
                on_progress=reporter.scaled(CONCAT_START, CONCAT_END, "Applying transitions..."),
                timeout=options.exec_timeout,
            )
        except (EngineError, StepTimeoutError) as primary_exc:
            logger.warning(
                "Primary %s run failed, falling back to normalized concat: %s",
                plan.strategy, primary_exc,
            )
            fallback_failed = False
            try:
                await _run_fallback(
                    engine, clips, inputs, output, fmt,
                    f"{prefix}fallback_", staged, reporter, options,
                )
            except (EngineError, StepTimeoutError, OSError) as fallback_exc:
                logger.error("Normalized fallback also failed: %s", fallback_exc)
                fallback_failed = True
            if fallback_failed:
                raise primary_exc
            degraded = True
            warnings.append(FALLBACK_WARNING)

        result_name = output
        mixed = None
        if options.audio_track is not None:
            _checkpoint(options)
            reporter.emit(ExportPhase.FINALIZING, MIX_PROGRESS, "Mixing audio...")
            track = options.audio_track
            track_name = f"{prefix}audio_track"
            mixed_name = f"{prefix}final_with_audio.{fmt}"
            staged.extend([track_name, mixed_name])
            try:
                track_data = await with_timeout(
                    fetch_source(track.source, options.fetch_timeout),
                    options.fetch_timeout,
                    "fetching audio track",
                )
                await engine.write_file(track_name, track_data)
                mixed = await mix_audio_track(
                    engine, output, track_name, mixed_name, track,
                    output_format=fmt,
                    duration=plan.expected_duration,
                    timeout=options.exec_timeout,
                )
            except (FetchError, MixError, StepTimeoutError) as exc:
                logger.warning("Audio mixing failed, using video without mixed audio: %s", exc)
                warnings.append(f"Audio track was not mixed: {exc}")

        _checkpoint(options)
        reporter.emit(ExportPhase.FINALIZING, FINALIZE_PROGRESS, "Finalizing...")
        data = mixed if mixed is not None else await engine.read_file(result_name)
        if not data:
            raise EngineError("ffmpeg produced an empty output file")
    finally:
        await best_effort_release(engine, staged)

    reporter.emit(ExportPhase.COMPLETE, 100, "Export complete")
    return ExportResult(
        data=data,
        mime_type=MIME_TYPES[fmt],
        strategy=plan.strategy,
        degraded=degraded,
        warnings=warnings,
    )


async def export_manifest(
    manifest_path: str,
    output_path: str,
    on_progress: Optional[Callable[[ExportProgress], None]] = None,
    manager: Optional[EngineManager] = None,
) -> ExportResult:
    """Load an export manifest, check its sources, export, and save.

    Args:
        manifest_path: Path to YAML export manifest.
        output_path: Where the composed video is written.
        on_progress: Optional progress observer.
        manager: Engine manager; defaults to the process-wide one.
    """
    config = load_export_manifest(manifest_path)
    validate_manifest_sources(config)
    options = config["options"]
    options.on_progress = on_progress
    result = await export_clips(config["clips"], options, manager)
    result.save(output_path)
    logger.info("Exported %d clips to %s", len(config["clips"]), output_path)
    return result
