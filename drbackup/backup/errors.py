"""
Exceptions shared across pipeline stages.

Stage-specific errors (GuardBusy, ProviderError, CompressionError,
ReplicationError, RemoteTriggerError) live in their own modules and
derive from PipelineError.
"""

import time
from typing import Optional


class PipelineError(Exception):
    """Base class for expected pipeline failures."""
    pass


class StageTimeout(PipelineError):
    """Raised when an external capability exceeds its time bound."""

    def __init__(self, stage: str, timeout: float, detail: str = ''):
        self.stage = stage
        self.timeout = timeout
        message = f"{stage} exceeded timeout of {timeout}s"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class FatalStageFailure(PipelineError):
    """Raised when a capture or trigger stage fails and the run must abort."""
    pass


class PipelineInterrupted(Exception):
    """
    Raised when the operator interrupts a run (SIGINT/SIGTERM), or when the
    scheduler is shutting down (signum None).

    Not a PipelineError, so degraded-stage handlers never swallow it.
    """

    def __init__(self, signum: Optional[int] = None):
        self.signum = signum
        if signum is None:
            super().__init__("Interrupted by shutdown request")
        else:
            super().__init__(f"Interrupted by signal {signum}")


class Deadline:
    """
    Time bound for a loop of in-process work.

    Call ``check()`` between units of work; raises StageTimeout once the
    bound has passed.
    """

    def __init__(self, stage: str, timeout: float, clock=None):
        self._clock = clock or time.monotonic
        self.stage = stage
        self.timeout = timeout
        self.expires_at = self._clock() + timeout

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def check(self):
        if self._clock() >= self.expires_at:
            raise StageTimeout(self.stage, self.timeout)
