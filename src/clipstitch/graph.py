"""Typed filter graph model.

A graph is a list of chains. Each chain reads one or more labeled pads,
runs filters in sequence, and writes one or more labeled pads. Input
streams are addressed as "<index>:v" / "<index>:a". Everything stays
structured until `serialize()`, which renders ffmpeg's filtergraph text
at the engine boundary.

    [0:v]trim=start=0:end=4,setpts=PTS-STARTPTS[v0];[v0][v1]xfade=...[vfinal]
"""

import re
from dataclasses import dataclass, field

from .common import format_number
from .errors import GraphError

_INPUT_PAD = re.compile(r"^(\d+):([va])$")
_LABEL = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Characters with structural meaning in filtergraph text.
_UNSAFE = set("[];,'\\\n")


def _render_value(value) -> str:
    if isinstance(value, (int, float)):
        return format_number(value)
    text = str(value)
    if any(ch in _UNSAFE for ch in text):
        raise GraphError(f"Unsafe character in filter parameter: {text!r}")
    return text.replace(":", "\\:")


@dataclass(frozen=True)
class Filter:
    """One filter node: name, positional args, then keyword args."""

    name: str
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)

    def serialize(self) -> str:
        params = [_render_value(a) for a in self.args]
        params += [f"{k}={_render_value(v)}" for k, v in self.kwargs.items()]
        if not params:
            return self.name
        return f"{self.name}={':'.join(params)}"


@dataclass(frozen=True)
class FilterChain:
    inputs: tuple[str, ...]
    filters: tuple[Filter, ...]
    outputs: tuple[str, ...]

    def serialize(self) -> str:
        ins = "".join(f"[{p}]" for p in self.inputs)
        outs = "".join(f"[{p}]" for p in self.outputs)
        return f"{ins}{','.join(f.serialize() for f in self.filters)}{outs}"


@dataclass
class FilterGraph:
    """Ordered chains over `input_count` engine inputs."""

    input_count: int
    chains: list[FilterChain] = field(default_factory=list)

    def add(self, inputs, filters, outputs) -> FilterChain:
        chain = FilterChain(tuple(inputs), tuple(filters), tuple(outputs))
        self.chains.append(chain)
        return chain

    def labels(self) -> list[str]:
        """All labels produced by the graph, in order."""
        return [p for c in self.chains for p in c.outputs]

    def validate(self, outputs: list[str]) -> None:
        """Check wiring before anything reaches the engine.

        Every consumed pad must be an existing input stream or a label
        produced by an earlier chain. Produced labels are unique and each
        one is consumed exactly once, unless it is a requested output.

        Raises:
            GraphError: Describing the first problem found.
        """
        produced: dict[str, int] = {}
        consumed: dict[str, int] = {}

        for ci, chain in enumerate(self.chains):
            if not chain.filters:
                raise GraphError(f"Chain {ci}: no filters")
            for pad in chain.inputs:
                m = _INPUT_PAD.match(pad)
                if m:
                    if int(m.group(1)) >= self.input_count:
                        raise GraphError(
                            f"Chain {ci}: input stream [{pad}] out of range "
                            f"({self.input_count} inputs)"
                        )
                    continue
                if pad not in produced:
                    raise GraphError(f"Chain {ci}: label [{pad}] used before it is defined")
                consumed[pad] = consumed.get(pad, 0) + 1
            for pad in chain.outputs:
                if not _LABEL.match(pad):
                    raise GraphError(f"Chain {ci}: invalid label [{pad}]")
                if pad in produced:
                    raise GraphError(
                        f"Chain {ci}: label [{pad}] already produced by chain {produced[pad]}"
                    )
                produced[pad] = ci

        for pad in outputs:
            if pad not in produced:
                raise GraphError(f"Requested output [{pad}] is never produced")
            if pad in consumed:
                raise GraphError(f"Requested output [{pad}] is also consumed inside the graph")
        for pad, count in consumed.items():
            if count > 1:
                raise GraphError(f"Label [{pad}] consumed {count} times")
        dangling = [p for p in produced if p not in consumed and p not in outputs]
        if dangling:
            raise GraphError(f"Unconnected labels: {', '.join(dangling)}")

    def serialize(self) -> str:
        return ";".join(c.serialize() for c in self.chains)
