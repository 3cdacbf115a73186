"""
Error taxonomy for the media pipeline.

Every failure surfaced to a caller carries a ``kind`` so the HTTP layer can
map it to a status code without parsing messages.
"""

from typing import Optional, Sequence

STDERR_TAIL_LINES = 20
STDERR_TAIL_CHARS = 2000


def stderr_tail(stderr: str, max_lines: int = STDERR_TAIL_LINES, max_chars: int = STDERR_TAIL_CHARS) -> str:
    """Return the last few lines of a process' stderr for diagnostics."""
    lines = [line for line in (stderr or "").strip().splitlines() if line.strip()]
    tail = "\n".join(lines[-max_lines:])
    return tail[-max_chars:]


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    kind = "pipeline_error"


class SpawnFailure(PipelineError):
    """The external binary is missing or cannot be executed."""

    kind = "spawn_failure"

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start {command}: {reason}")


class ProcessExitFailure(PipelineError):
    """The external process exited with a non-zero code."""

    kind = "process_exit_failure"

    def __init__(self, command: str, exit_code: Optional[int], stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail(stderr)
        message = f"{command} exited with code {exit_code}"
        if self.stderr_tail:
            message = f"{message}: {self.stderr_tail.splitlines()[-1]}"
        super().__init__(message)

    def matches(self, patterns: Sequence[str]) -> bool:
        """True if any of ``patterns`` occurs in the stderr tail (case-insensitive)."""
        haystack = self.stderr_tail.lower()
        return any(pattern.lower() in haystack for pattern in patterns)


class ParseFailure(PipelineError):
    """Malformed JSON, SRT or VTT output."""

    kind = "parse_failure"


class ValidationFailure(PipelineError):
    """Bad input rejected before any process is spawned."""

    kind = "validation_failure"


class NotFound(PipelineError):
    """Unknown or expired uploaded file."""

    kind = "not_found"


class UnsupportedOperation(PipelineError):
    """The requested operation needs a tool that is not installed."""

    kind = "unsupported_operation"


class TransformCancelled(PipelineError):
    """The transform job was cancelled by its consumer."""

    kind = "cancelled"
