import os
from typing import Optional

from pydantic import BaseModel, Field

from skill_drill_client.models import PollingConfig

DEFAULT_BASE_URL = "http://localhost:3000/api"


class ClientSettings(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = Field(default=10.0, gt=0)
    access_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            base_url=os.getenv("SKILL_DRILL_API_BASE_URL", DEFAULT_BASE_URL),
            request_timeout=float(os.getenv("SKILL_DRILL_API_TIMEOUT", "10.0")),
            access_token=os.getenv("SKILL_DRILL_ACCESS_TOKEN") or None,
        )


class SessionFlowConfig(BaseModel):
    # Upper bound on the pause between two questions
    next_question_max_wait: float = Field(default=5.0, gt=0)
    next_question_polling_interval: float = Field(default=1.0, gt=0)
    all_scoring_polling_interval: float = Field(default=1.5, gt=0)
    result_polling: PollingConfig = Field(default_factory=PollingConfig)
    # Re-fetches of results reported as processing without a job to follow
    results_max_attempts: int = Field(default=30, gt=0)
