"""Filter graph builder — sorted clips + options to an executable plan.

Picks one strategy by looking at the whole clip set:

  - copy: a single untrimmed, unmuted clip without silence removal.
    No graph; the engine stream-copies the input.
  - concat: nothing to trim, mute, strip or blend. Raw streams are
    concatenated by input index.
  - trim: some clip is trimmed or muted, or silence removal is on, but no
    clip declares a transition. Each clip is normalized to the canonical
    format, then concatenated.
  - xfade: some clip declares `transition_out`. Clips are normalized and
    chained left to right through N-1 pairwise blends.

Junction arithmetic (xfade):
  d_i      = min(requested_i, eff_i / 2, eff_{i+1} / 2)
  offset_i = running + eff_i - d_i ;  running = offset_i
  total    = running + eff_last  ==  sum(eff) - sum(d)

`running` tracks the start of clip i+1 on the output timeline, so the
overlap shared by both clips of a junction is never counted twice.
"""

from dataclasses import dataclass, field
from typing import Optional

from .graph import Filter, FilterGraph
from .models import DEFAULT_TRANSITION, Clip, ExportOptions, Transition


# ── Canonical format ──────────────────────────────────────────────
# Every clip is normalized to this before concatenation or blending.

TARGET_WIDTH = 1080
TARGET_HEIGHT = 1920
TARGET_FPS = 30
TARGET_PIXEL_FORMAT = "yuv420p"

SILENCE_THRESHOLD = "-50dB"

STRATEGY_COPY = "copy"
STRATEGY_CONCAT = "concat"
STRATEGY_TRIM = "trim"
STRATEGY_XFADE = "xfade"

VIDEO_OUT = "vfinal"
AUDIO_OUT = "afinal"


@dataclass(frozen=True)
class Junction:
    """A computed blend between clip `index` and clip `index + 1`."""

    index: int
    transition: Transition
    duration: float
    offset: float


@dataclass
class GraphPlan:
    strategy: str
    graph: Optional[FilterGraph]
    video_out: Optional[str]
    audio_out: Optional[str]
    expected_duration: float
    junctions: list[Junction] = field(default_factory=list)

    @property
    def filter_complex(self) -> str:
        return self.graph.serialize() if self.graph is not None else ""


# ── Strategy selection ────────────────────────────────────────────


def has_transitions(clips: list[Clip]) -> bool:
    return any(c.transition_out is not None for c in clips)


def needs_normalization(clips: list[Clip], remove_silence: bool) -> bool:
    return remove_silence or any(c.is_trimmed or c.mute for c in clips)


def select_strategy(clips: list[Clip], remove_silence: bool = False) -> str:
    normalize = needs_normalization(clips, remove_silence)
    if len(clips) == 1 and not normalize:
        return STRATEGY_COPY
    if has_transitions(clips):
        return STRATEGY_XFADE
    if normalize:
        return STRATEGY_TRIM
    return STRATEGY_CONCAT


# ── Per-clip normalization ────────────────────────────────────────


def canonical_video_filters() -> list[Filter]:
    """Aspect-fit scale, pad to the canvas, fixed rate, format and SAR."""
    return [
        Filter("scale", (TARGET_WIDTH, TARGET_HEIGHT),
               {"force_original_aspect_ratio": "decrease"}),
        Filter("pad", (TARGET_WIDTH, TARGET_HEIGHT, "(ow-iw)/2", "(oh-ih)/2", "black")),
        Filter("fps", (TARGET_FPS,)),
        Filter("format", (TARGET_PIXEL_FORMAT,)),
        Filter("setsar", (1,)),
    ]


def _add_normalized_clip(
    graph: FilterGraph, index: int, clip: Clip, remove_silence: bool,
) -> None:
    """Append [v<i>] and [a<i>] chains for one clip."""
    graph.add(
        [f"{index}:v"],
        [
            Filter("trim", kwargs={"start": clip.start, "end": clip.end}),
            Filter("setpts", ("PTS-STARTPTS",)),
            *canonical_video_filters(),
        ],
        [f"v{index}"],
    )

    audio = [
        Filter("atrim", kwargs={"start": clip.start, "end": clip.end}),
        Filter("asetpts", ("PTS-STARTPTS",)),
    ]
    # Mute wins over silence removal: there is nothing left to strip.
    if clip.mute:
        audio.append(Filter("volume", (0,)))
    elif remove_silence:
        audio.append(Filter("silenceremove", kwargs={
            "start_periods": 1,
            "start_duration": 0,
            "start_threshold": SILENCE_THRESHOLD,
        }))
    graph.add([f"{index}:a"], audio, [f"a{index}"])


def _add_concat(graph: FilterGraph, pads: list[str], n: int) -> None:
    graph.add(
        pads,
        [Filter("concat", kwargs={"n": n, "v": 1, "a": 1})],
        [VIDEO_OUT, AUDIO_OUT],
    )


# ── Junctions ─────────────────────────────────────────────────────


def effective_transition_duration(requested: float, left: float, right: float) -> float:
    """Clamp a requested blend so it never exceeds half of either clip."""
    return min(requested, left / 2, right / 2)


def plan_junctions(clips: list[Clip]) -> list[Junction]:
    """Compute clamped durations and blend offsets for every junction.

    A left clip without `transition_out` gets the default 0.5s fade,
    since the chain blends every junction once any clip has one.
    """
    junctions = []
    running = 0.0
    for i in range(len(clips) - 1):
        left = clips[i].effective_duration
        right = clips[i + 1].effective_duration
        transition = clips[i].transition_out or DEFAULT_TRANSITION
        d = effective_transition_duration(transition.duration, left, right)
        offset = running + left - d
        junctions.append(Junction(i, transition, d, offset))
        running = offset
    return junctions


def expected_xfade_duration(clips: list[Clip], junctions: list[Junction]) -> float:
    if not junctions:
        return clips[0].effective_duration
    return junctions[-1].offset + clips[-1].effective_duration


# ── Plan construction ─────────────────────────────────────────────


def build_plan(clips: list[Clip], options: Optional[ExportOptions] = None) -> GraphPlan:
    """Build the processing plan for clips already sorted by scene number.

    Pure: the same clips and options always give the same graph, offsets
    and durations.

    Args:
        clips: Validated clips in scene order (see models.validate_clips).
        options: Export options; only `remove_silence` is read.

    Returns:
        GraphPlan with the strategy, graph (None for copy), output labels
        and expected output duration.
    """
    remove_silence = bool(options and options.remove_silence)
    n = len(clips)
    strategy = select_strategy(clips, remove_silence)

    if strategy == STRATEGY_COPY:
        return GraphPlan(STRATEGY_COPY, None, None, None, clips[0].duration)

    graph = FilterGraph(input_count=n)

    if strategy == STRATEGY_CONCAT:
        pads = [p for i in range(n) for p in (f"{i}:v", f"{i}:a")]
        _add_concat(graph, pads, n)
        total = sum(c.duration for c in clips)
        graph.validate([VIDEO_OUT, AUDIO_OUT])
        return GraphPlan(strategy, graph, VIDEO_OUT, AUDIO_OUT, total)

    for i, clip in enumerate(clips):
        _add_normalized_clip(graph, i, clip, remove_silence)

    if strategy == STRATEGY_TRIM:
        pads = [p for i in range(n) for p in (f"v{i}", f"a{i}")]
        _add_concat(graph, pads, n)
        total = sum(c.effective_duration for c in clips)
        graph.validate([VIDEO_OUT, AUDIO_OUT])
        return GraphPlan(strategy, graph, VIDEO_OUT, AUDIO_OUT, total)

    junctions = plan_junctions(clips)
    if not junctions:
        # Single clip that only declared a (meaningless) outgoing transition.
        graph.validate(["v0", "a0"])
        return GraphPlan(strategy, graph, "v0", "a0", clips[0].effective_duration)

    for j in junctions:
        last = j.index == n - 2
        v_in = "v0" if j.index == 0 else f"vt{j.index - 1}"
        a_in = "a0" if j.index == 0 else f"at{j.index - 1}"
        v_out = VIDEO_OUT if last else f"vt{j.index}"
        a_out = AUDIO_OUT if last else f"at{j.index}"

        graph.add(
            [v_in, f"v{j.index + 1}"],
            [Filter("xfade", kwargs={
                "transition": j.transition.blend,
                "duration": j.duration,
                "offset": j.offset,
            })],
            [v_out],
        )
        # Equal-power crossfade regardless of the video blend type.
        graph.add(
            [a_in, f"a{j.index + 1}"],
            [Filter("acrossfade", kwargs={"d": j.duration, "c1": "qsin", "c2": "qsin"})],
            [a_out],
        )

    graph.validate([VIDEO_OUT, AUDIO_OUT])
    return GraphPlan(
        strategy, graph, VIDEO_OUT, AUDIO_OUT,
        expected_xfade_duration(clips, junctions), junctions,
    )
