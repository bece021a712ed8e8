"""ffmpeg plus a private working namespace.

The engine owns a temporary directory that acts as its file namespace.
Callers stage bytes in by name, run ffmpeg commands that refer to those
names, read results back and delete them. Names are flat: no directories,
no path separators. The ffmpeg executable comes from imageio-ffmpeg, so
no system install is needed.
"""

import asyncio
import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Iterable, Optional

import imageio_ffmpeg

from .common import with_timeout
from .errors import EngineError, EngineLoadError

logger = logging.getLogger(__name__)

# `-progress pipe:1` reports the output position in microseconds, under
# out_time_us on recent builds and out_time_ms on older ones.
_OUT_TIME = re.compile(r"^out_time_(?:us|ms)=(\d+)$")

STDERR_TAIL_LINES = 12


def _tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class Engine:
    """Capability over one ffmpeg executable and its working namespace.

    Created by `load_ffmpeg_engine`; callers get it from an EngineManager
    and never see the executable path or directory.
    """

    def __init__(self, executable: str, root: Path):
        self._exe = executable
        self._root = root

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"Invalid engine file name: {name!r}")
        return self._root / name

    # ── Working namespace ─────────────────────────────────────────

    async def write_file(self, name: str, data: bytes) -> None:
        await asyncio.to_thread(self._path(name).write_bytes, bytes(data))

    async def read_file(self, name: str) -> bytes:
        return await asyncio.to_thread(self._path(name).read_bytes)

    async def delete_file(self, name: str) -> None:
        """Delete `name`. Raises FileNotFoundError when it is absent."""
        self._path(name).unlink()

    def list_files(self) -> list[str]:
        return sorted(p.name for p in self._root.iterdir())

    # ── Execution ─────────────────────────────────────────────────

    async def exec(
        self,
        args: list[str],
        duration: Optional[float] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Run ffmpeg with `args` inside the working namespace.

        Args:
            args: ffmpeg arguments, without the executable. File names
                refer to the namespace.
            duration: Expected output duration in seconds, used to turn
                the reported output position into a 0..1 ratio.
            on_progress: Receives native progress in 0..1.
            timeout: Seconds before the process is killed.

        Returns:
            ffmpeg's stderr text.

        Raises:
            EngineError: Non-zero exit status, or ffmpeg could not be
                started.
            StepTimeoutError: The run exceeded `timeout`.
        """
        return await with_timeout(
            self._run(args, duration, on_progress), timeout, "running ffmpeg",
        )

    async def _run(self, args, duration, on_progress) -> str:
        cmd = [self._exe, "-hide_banner", "-nostdin", "-progress", "pipe:1", "-nostats", *args]
        logger.debug("ffmpeg %s", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self._root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EngineError(f"ffmpeg could not be started: {exc}") from exc
        # Drain stderr concurrently so a chatty ffmpeg cannot block on a
        # full pipe while we read progress lines.
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            async for raw in proc.stdout:
                if on_progress is None:
                    continue
                line = raw.decode(errors="replace").strip()
                m = _OUT_TIME.match(line)
                if m and duration:
                    on_progress(min(max(int(m.group(1)) / (duration * 1_000_000), 0.0), 1.0))
                elif line == "progress=end":
                    on_progress(1.0)
            stderr = (await stderr_task).decode(errors="replace")
            returncode = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        if returncode != 0:
            logger.debug("ffmpeg stderr:\n%s", stderr)
            raise EngineError(
                f"ffmpeg exited with status {returncode}",
                returncode=returncode,
                stderr_tail=_tail(stderr),
            )
        return stderr

    async def version(self) -> str:
        """Return the first line of `ffmpeg -version`."""
        proc = await asyncio.create_subprocess_exec(
            self._exe, "-version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise EngineError(
                "ffmpeg -version failed",
                returncode=proc.returncode,
                stderr_tail=_tail(stderr.decode(errors="replace")),
            )
        return stdout.decode(errors="replace").splitlines()[0]

    def close(self) -> None:
        shutil.rmtree(self._root, ignore_errors=True)


# ── Loading ───────────────────────────────────────────────────────


async def load_ffmpeg_engine() -> Engine:
    """Locate the bundled ffmpeg, create a namespace and check it runs.

    Raises:
        EngineLoadError: No usable ffmpeg executable.
    """
    try:
        exe = await asyncio.to_thread(imageio_ffmpeg.get_ffmpeg_exe)
    except RuntimeError as exc:
        raise EngineLoadError(f"ffmpeg executable not found: {exc}") from exc

    root = Path(tempfile.mkdtemp(prefix="clipstitch_"))
    engine = Engine(exe, root)
    try:
        banner = await engine.version()
    except (OSError, EngineError) as exc:
        engine.close()
        raise EngineLoadError(f"ffmpeg is not runnable: {exc}") from exc
    logger.info("Engine ready: %s", banner)
    return engine


# ── Cleanup ───────────────────────────────────────────────────────


async def best_effort_release(engine, names: Iterable[str]) -> None:
    """Delete every name from the engine namespace, ignoring failures.

    A missing file is the normal case after partial work, so deletion
    errors are logged at debug level and never raised.
    """
    for name in names:
        try:
            await engine.delete_file(name)
        except (OSError, ValueError) as exc:
            logger.debug("release %s skipped: %s", name, exc)
