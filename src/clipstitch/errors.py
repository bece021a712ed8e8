"""Error taxonomy for clipstitch.

ValidationError and GraphError subclass ValueError so callers that only
catch ValueError (as with manifest loading) keep working.
"""


class ClipstitchError(Exception):
    """Base class for every error raised by clipstitch."""


class ValidationError(ClipstitchError, ValueError):
    """Malformed clip, track or options. Raised before any engine work."""


class GraphError(ClipstitchError, ValueError):
    """A filter graph references undefined labels or unsafe values."""


class FetchError(ClipstitchError):
    """Retrieving a source asset failed."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Failed to load source ({source}): {reason}")


class EngineError(ClipstitchError):
    """An engine run exited with an error."""

    def __init__(self, message: str, returncode: int | None = None, stderr_tail: str = ""):
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        if stderr_tail:
            message = f"{message}\n{stderr_tail}"
        super().__init__(message)


class EngineLoadError(EngineError):
    """The engine could not be loaded."""


class MixError(ClipstitchError):
    """The auxiliary audio overlay could not be mixed."""


class StepTimeoutError(ClipstitchError, TimeoutError):
    """A single async step exceeded its time budget."""

    def __init__(self, step: str, seconds: float):
        self.step = step
        self.seconds = seconds
        super().__init__(f"Timeout {step} after {seconds:g}s")


class FrameExtractionError(ClipstitchError):
    """Both frame extraction strategies failed."""


class ExportCancelledError(ClipstitchError):
    """The caller's cancellation signal was observed."""
