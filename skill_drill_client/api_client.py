import asyncio
from typing import Any, Optional

import aiohttp
from loguru import logger
from pydantic import ValidationError

from skill_drill_client.config import ClientSettings
from skill_drill_client.errors import ApiError, TransientNetworkError
from skill_drill_client.models import (
    AggregateStatus,
    ApiEnvelope,
    AssessmentResults,
    JobStatus,
    SessionStart,
    SubmitAnswerResponse,
)


class SkillDrillApiClient:
    """Thin async wrapper over the assessment and AI job endpoints"""

    def __init__(self, settings: Optional[ClientSettings] = None):
        self.settings = settings or ClientSettings()
        self.base_url = self.settings.base_url.rstrip("/")
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "SkillDrillApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.settings.access_token:
                headers["Authorization"] = f"Bearer {self.settings.access_token}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout),
            )
        return self._session

    async def _request(
        self, method: str, path: str, payload: Optional[dict] = None
    ) -> Any:
        """Sends one request and returns the unwrapped ``data`` of the envelope"""
        url = f"{self.base_url}{path}"
        session = self._get_session()

        try:
            async with session.request(method, url, json=payload) as response:
                if response.status >= 400:
                    body = await self._read_error_body(response)
                    message = body.get("message") or response.reason or "An error occurred"
                    self.logger.error(f"HTTP error {response.status} at {url}: {message}")
                    raise ApiError(message, response.status, body.get("code"), body)

                envelope = ApiEnvelope.model_validate(await response.json())
        except aiohttp.ClientError as e:
            self.logger.error(f"Network error at {url}: {e}")
            raise TransientNetworkError("Network error - no response received") from e
        except asyncio.TimeoutError as e:
            self.logger.error(f"Request to {url} timed out")
            raise TransientNetworkError("Request timed out") from e
        except ValueError as e:
            self.logger.error(f"Malformed response from {url}: {e}")
            raise ApiError("Malformed response from server") from e

        if not envelope.success:
            raise ApiError(
                envelope.message or "Request failed", response.status, envelope.code
            )
        return envelope.data

    @staticmethod
    async def _read_error_body(response: aiohttp.ClientResponse) -> dict:
        try:
            body = await response.json(content_type=None)
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _parse(model, data: Any, what: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ApiError(f"Malformed {what} payload", data=data) from e

    async def get_job_status(self, job_id: str) -> JobStatus:
        data = await self._request("GET", f"/ai-jobs/{job_id}/status")
        return self._parse(JobStatus, data, "job status")

    async def get_aggregate_scoring_status(self, assessment_id: str) -> AggregateStatus:
        data = await self._request(
            "GET", f"/assessments/{assessment_id}/scoring-status"
        )
        return self._parse(AggregateStatus, data, "scoring status")

    async def submit_answer(self, session_id: str, answer: str) -> SubmitAnswerResponse:
        data = await self._request(
            "POST", f"/assessments/{session_id}/answers", {"answer": answer}
        )
        return self._parse(SubmitAnswerResponse, data, "submit answer")

    async def retry_scoring(self, assessment_id: str) -> None:
        await self._request("POST", f"/assessments/{assessment_id}/scoring/retry")

    async def generate_final_feedback(self, assessment_id: str) -> None:
        await self._request("POST", f"/assessments/{assessment_id}/final-feedback")

    async def get_results(self, assessment_id: str) -> AssessmentResults:
        data = await self._request("GET", f"/assessments/{assessment_id}/results")
        return self._parse(AssessmentResults, data, "results")

    async def start_assessment(self, skill_id: str) -> SessionStart:
        data = await self._request("POST", "/assessments/start", {"skillId": skill_id})
        return self._parse(SessionStart, data, "session")

    async def resume_assessment(self, skill_id: str) -> SessionStart:
        data = await self._request("POST", "/assessments/resume", {"skillId": skill_id})
        return self._parse(SessionStart, data, "session")
