"""Exception taxonomy shared by the adapters and the pipeline runner.

Every message is meant to be shown to the end user verbatim, so it has to
name the failing item (file, provider, request id) without further context.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all errors raised by pipeline components."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InputValidationError(PipelineError):
    """A required field is empty or a referenced file does not exist."""


class ConfigurationError(PipelineError):
    """A provider credential or binary required by an adapter is missing."""


class AdapterTimeoutError(PipelineError):
    """An external service did not reach a terminal state in time."""


class AdapterFailureError(PipelineError):
    """An external service or tool explicitly reported a failure."""

    def __init__(self, message: str, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail


class UnexpectedResponseError(AdapterFailureError):
    """A response did not match any known shape."""


class UploadError(AdapterFailureError):
    """The video hosting platform rejected an upload call."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)
        self.status_code = status_code


class UploadAuthExpiredError(UploadError):
    """The access token is missing, expired or revoked."""


class UploadQuotaExceededError(UploadError):
    """The platform quota or rate limit has been exhausted."""


class PipelineAlreadyRunningError(PipelineError):
    """A second run was requested while another one is in flight."""


class PipelineCancelledError(PipelineError):
    """The run was cancelled between two steps."""


PIPELINE_CANCELLED_MESSAGE = "Pipeline cancelled"
