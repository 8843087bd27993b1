import asyncio
from collections import defaultdict

import pytest

from skill_drill_client.models import (
    AggregateStatus,
    AssessmentResults,
    JobState,
    JobStatus,
    SessionStart,
    SubmitAnswerResponse,
)


class FakeApi:
    """Scripted stand-in for SkillDrillApiClient.

    Each script is a list of responses consumed in order; the last entry
    repeats forever. An entry may be a model, an exception instance (raised)
    or a zero-argument callable producing either.
    """

    def __init__(self):
        self.latency = 0.0
        self.job_scripts = {}
        self.aggregate_script = []
        self.submit_script = []
        self.results_script = []
        self.session = SessionStart(
            session_id="session-1",
            question={"id": "q_1", "text": "First question"},
            progress={"currentQuestion": 1, "totalQuestions": 2},
            skill_name="Negotiation",
        )
        self.retry_scoring_error = None
        self.feedback_error = None
        self.resume_error = None
        self.calls = defaultdict(int)

    async def _next(self, script):
        await asyncio.sleep(self.latency)
        item = script.pop(0) if len(script) > 1 else script[0]
        if callable(item):
            item = item()
        if isinstance(item, Exception):
            raise item
        return item

    async def get_job_status(self, job_id):
        self.calls["get_job_status"] += 1
        return await self._next(self.job_scripts[job_id])

    async def get_aggregate_scoring_status(self, assessment_id):
        self.calls["get_aggregate_scoring_status"] += 1
        return await self._next(self.aggregate_script)

    async def submit_answer(self, session_id, answer):
        self.calls["submit_answer"] += 1
        return await self._next(self.submit_script)

    async def retry_scoring(self, assessment_id):
        self.calls["retry_scoring"] += 1
        if self.retry_scoring_error is not None:
            raise self.retry_scoring_error

    async def generate_final_feedback(self, assessment_id):
        self.calls["generate_final_feedback"] += 1
        if self.feedback_error is not None:
            raise self.feedback_error

    async def get_results(self, assessment_id):
        self.calls["get_results"] += 1
        return await self._next(self.results_script)

    async def start_assessment(self, skill_id):
        self.calls["start_assessment"] += 1
        return self.session

    async def resume_assessment(self, skill_id):
        self.calls["resume_assessment"] += 1
        if self.resume_error is not None:
            raise self.resume_error
        return self.session


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def make_job():
    def _make(state: str, job_id: str = "job-1", **fields) -> JobStatus:
        return JobStatus(job_id=job_id, status=JobState(state), **fields)

    return _make


@pytest.fixture
def make_aggregate():
    def _make(completed: int, total: int, **fields) -> AggregateStatus:
        return AggregateStatus(completed_count=completed, total_jobs=total, **fields)

    return _make


@pytest.fixture
def make_submit():
    def _make(is_complete: bool = False, **fields) -> SubmitAnswerResponse:
        return SubmitAnswerResponse(
            session_id="session-1", is_complete=is_complete, **fields
        )

    return _make


@pytest.fixture
def make_results():
    def _make(**fields) -> AssessmentResults:
        return AssessmentResults(**fields)

    return _make


@pytest.fixture
def eventually():
    """Waits until ``predicate()`` holds, failing the test after ``timeout``"""

    async def _wait(predicate, timeout: float = 2.0, step: float = 0.005):
        async def _poll():
            while not predicate():
                await asyncio.sleep(step)

        await asyncio.wait_for(_poll(), timeout)

    return _wait
