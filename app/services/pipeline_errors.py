"""Error kinds raised by the webhook → build → deploy pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base for failures that end a build attempt."""

    phase: str | None = None

    def __init__(self, message: str, phase: str | None = None):
        self.message = message
        if phase is not None:
            self.phase = phase
        super().__init__(message)


class VerificationError(PipelineError):
    """Webhook signature or token missing or wrong."""


class MalformedPayloadError(PipelineError, ValueError):
    """Webhook body could not be decoded."""


class SyncError(PipelineError):
    phase = "sync"


class BuildError(PipelineError):
    phase = "build"


class DeployError(PipelineError):
    phase = "deploy"


class PhaseTimeoutError(PipelineError, TimeoutError):
    """An external command outlived its budget. Reported as its phase's failure."""

    def __init__(self, message: str, phase: str | None = None, timeout: float | None = None):
        self.timeout = timeout
        super().__init__(message, phase=phase)


class BuildCancelled(PipelineError):
    pass


class PathTraversalError(ValueError):
    """Requested path resolves outside the working copy."""


class WorkingCopyBusyError(Exception):
    """A build is running from the working copy an operation wants to replace."""
