import random
from enum import Enum
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for payloads exchanged with the backend (camelCase on the wire)"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobState(str, Enum):
    pending = "pending"
    running = "running"
    running_secondary = "runningSecondary"
    completed = "completed"
    failed = "failed"


class JobStatus(WireModel):
    job_id: str
    status: JobState
    message: str = ""
    attempt_count: int = 0
    max_attempts: int = 0
    completed: bool = False
    failed: bool = False
    error: Optional[str] = None
    retryable: bool = True

    @model_validator(mode="after")
    def _mirror_status(self) -> "JobStatus":
        # status wins over whatever booleans the server sent
        self.completed = self.status == JobState.completed
        self.failed = self.status == JobState.failed
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobState.completed, JobState.failed)


class AggregateStatus(WireModel):
    completed_count: int = 0
    total_jobs: int = 0
    all_completed: bool = False
    has_failed: bool = False
    failed_job_error: Optional[str] = None
    message: Optional[str] = None


class AggregateProgress(BaseModel):
    completed: int
    total: int
    message: str


class PollingConfig(BaseModel):
    initial_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=10.0, gt=0)
    backoff_factor: float = Field(default=1.5, ge=1.0)
    max_attempts: int = Field(default=0, ge=0)  # 0 = no limit, backend decides
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        delay = self.initial_delay * (self.backoff_factor**attempt)
        if self.jitter:
            delay *= 1 + 0.2 * random.random()
        return min(delay, self.max_delay)


class SessionProgress(WireModel):
    current_question: int = 0
    total_questions: int = 0
    completed_responses: int = 0
    # Any number is accepted on the wire, the value is always recomputed
    percentage: float = 0
    is_complete: bool = False

    @model_validator(mode="after")
    def _check_counts(self) -> "SessionProgress":
        if self.completed_responses > self.total_questions:
            logger.warning(
                f"completed_responses ({self.completed_responses}) exceeds "
                f"total_questions ({self.total_questions}), clamping"
            )
            self.completed_responses = self.total_questions
        ratio = 100 * self.completed_responses / max(1, self.total_questions)
        self.percentage = int(ratio + 0.5)
        return self


class SessionStart(WireModel):
    session_id: str
    question: Optional[dict[str, Any]] = None
    progress: Optional[SessionProgress] = None
    skill_name: Optional[str] = None


class SubmitAnswerResponse(WireModel):
    session_id: str
    is_complete: bool
    question: Optional[dict[str, Any]] = None
    progress: Optional[SessionProgress] = None
    scoring_job_id: Optional[str] = None


class ResultStatus(str, Enum):
    ready = "ready"
    processing = "processing"


class AssessmentResults(WireModel):
    """Final results; feedback fields vary per skill and are kept as extras"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    status: ResultStatus = ResultStatus.ready
    job_id: Optional[str] = None
    final_score: Optional[float] = None


class ApiEnvelope(BaseModel):
    success: bool
    data: Any = None
    message: str = ""
    code: Optional[str] = None
