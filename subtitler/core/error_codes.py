"""
Standardised error handling for VideoSubtitler.
"""

from subtitler.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a pipeline stage encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class StageTimeout(JobError):
    """A stage attempt ran past its hard timeout."""

    def __init__(self, stage: str, timeout_sec: float):
        super().__init__(ErrorCode.STAGE_TIMEOUT,
                         f"Stage {stage} timed out after {timeout_sec:g}s",
                         retryable=True)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def is_retryable_exception(exc: BaseException) -> bool:
    """JobErrors carry their own flag; anything unexpected is retried."""
    if isinstance(exc, JobError):
        return exc.retryable
    return True
