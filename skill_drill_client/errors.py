from typing import Any, Optional

from skill_drill_client.models import JobStatus

TIMEOUT_MESSAGE = "Processing is taking longer than expected. Please try again."


class SkillDrillError(Exception):
    """Base class for every error raised by the client"""


class ApiError(SkillDrillError):
    """A request failed: HTTP error, unsuccessful envelope or malformed payload"""

    def __init__(
        self,
        message: str,
        status: int = 0,
        code: Optional[str] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.data = data


class TransientNetworkError(ApiError):
    """Transport failure or request timeout, no response from the server"""


class JobFailedError(SkillDrillError):
    def __init__(self, message: str, status: Optional[JobStatus] = None):
        super().__init__(message)
        self.status = status
        self.retryable = status.retryable if status is not None else True


class ClientTimeoutError(SkillDrillError):
    """Client-side attempt cap reached before the job settled"""

    retryable = True

    def __init__(
        self, message: str = TIMEOUT_MESSAGE, last_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.last_error = last_error


class SubmitError(SkillDrillError):
    """Submitting an answer failed; the user stays on the current question"""
