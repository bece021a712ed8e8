"""Shared test fixtures for clipstitch tests.

Real media is generated with the ffmpeg bundled by imageio-ffmpeg.
Driver tests use FakeEngine, a scripted stand-in for the engine
capability that records every call.
"""

import subprocess

import pytest
import imageio_ffmpeg

from clipstitch.errors import EngineError
from clipstitch.lifecycle import EngineManager

_FFMPEG = imageio_ffmpeg.get_ffmpeg_exe()


# ── Real media ─────────────────────────────────────────────────────


def _make_video(out, duration=3, color="blue", size="180x320", audio=True):
    cmd = [_FFMPEG, "-y", "-f", "lavfi", "-i", f"color=c={color}:s={size}:d={duration}:r=10"]
    if audio:
        cmd += ["-f", "lavfi", "-i", f"sine=frequency=440:sample_rate=44100:duration={duration}"]
        cmd += ["-shortest", "-c:a", "aac", "-b:a", "32k"]
    cmd += ["-c:v", "libx264", "-crf", "28", "-pix_fmt", "yuv420p", str(out)]
    subprocess.run(cmd, check=True, capture_output=True)
    return out


@pytest.fixture
def make_video(tmp_path):
    """Factory: make_video(name, duration=3, color="blue", audio=True) -> Path."""
    def _factory(name, duration=3, color="blue", size="180x320", audio=True):
        return _make_video(tmp_path / name, duration, color, size, audio)
    return _factory


@pytest.fixture
def source_video(make_video):
    """A 3-second vertical test video (180x320, 10fps) with a sine tone."""
    return make_video("source.mp4")


@pytest.fixture
def audio_file(tmp_path):
    """A 10-second 880 Hz tone as WAV."""
    out = tmp_path / "track.wav"
    subprocess.run(
        [
            _FFMPEG, "-y",
            "-f", "lavfi", "-i", "sine=frequency=880:sample_rate=44100:duration=10",
            str(out),
        ],
        check=True,
        capture_output=True,
    )
    return out


@pytest.fixture
def engine_manager():
    """Manager over the real ffmpeg engine, shut down after the test."""
    manager = EngineManager()
    yield manager
    manager.shutdown()


# ── Fake engine ────────────────────────────────────────────────────


def default_handler(engine, args):
    """Write the output named by the last argument.

    Stream copies pass the input through byte for byte; anything else
    produces a marker naming the kind of run.
    """
    output = args[-1]
    if "-c" in args and args[args.index("-c") + 1] == "copy" and "-f" not in args:
        engine.files[output] = engine.files[args[args.index("-i") + 1]]
    elif any("amix" in a for a in args):
        engine.files[output] = b"mixed"
    elif "concat" in args:
        engine.files[output] = b"joined"
    else:
        engine.files[output] = b"rendered"


class FakeEngine:
    def __init__(self, handler=default_handler, progress=(0.5, 1.0)):
        self.files = {}
        self.writes = []
        self.deletes = []
        self.calls = []
        self.handler = handler
        self.progress = progress
        self.closed = False

    async def write_file(self, name, data):
        self.files[name] = bytes(data)
        self.writes.append((name, bytes(data)))

    async def read_file(self, name):
        if name not in self.files:
            raise FileNotFoundError(name)
        return self.files[name]

    async def delete_file(self, name):
        self.deletes.append(name)
        if name not in self.files:
            raise FileNotFoundError(name)
        del self.files[name]

    def list_files(self):
        return sorted(self.files)

    async def exec(self, args, duration=None, on_progress=None, timeout=None):
        self.calls.append(list(args))
        if on_progress is not None:
            for ratio in self.progress:
                on_progress(ratio)
        self.handler(self, list(args))
        return ""

    def close(self):
        self.closed = True


def failing_handler(predicate, message="boom"):
    """Handler raising EngineError when predicate(args) is true."""
    def _handler(engine, args):
        if predicate(args):
            raise EngineError(message, returncode=1)
        default_handler(engine, args)
    return _handler


def manager_for(engine):
    async def _load():
        return engine
    return EngineManager(loader=_load)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_manager(fake_engine):
    return manager_for(fake_engine)
