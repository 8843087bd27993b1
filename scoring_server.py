import random
import uuid
from datetime import datetime
from typing import Optional

from aiohttp import web
from loguru import logger


class ScoringServer:
    """Local stand-in for the assessment backend.

    Scoring and result-generation jobs finish ``scoring_time`` /
    ``result_generation_time`` seconds after they are created. Responses with
    an index listed in ``failing_responses`` fail scoring until a retry is
    requested.
    """

    def __init__(
        self,
        total_questions: int = 3,
        scoring_time: float = 0.5,
        result_generation_time: float = 0.5,
        error_rate: float = 0.0,
        failing_responses: Optional[set] = None,
    ):
        self.total_questions = total_questions
        self.scoring_time = scoring_time
        self.result_generation_time = result_generation_time
        self.error_rate = error_rate
        self.failing_responses = set(failing_responses or ())

        self.sessions = {}
        self.jobs = {}
        self.feedback_requests = {}
        self.runner = None
        self.authorization_headers = []

        self.app = web.Application()
        self.app.router.add_post("/assessments/start", self.handle_start)
        self.app.router.add_post("/assessments/resume", self.handle_resume)
        self.app.router.add_post(
            "/assessments/{session_id}/answers", self.handle_submit_answer
        )
        self.app.router.add_get(
            "/assessments/{assessment_id}/scoring-status", self.handle_scoring_status
        )
        self.app.router.add_post(
            "/assessments/{assessment_id}/scoring/retry", self.handle_retry_scoring
        )
        self.app.router.add_post(
            "/assessments/{assessment_id}/final-feedback", self.handle_final_feedback
        )
        self.app.router.add_get(
            "/assessments/{assessment_id}/results", self.handle_results
        )
        self.app.router.add_get("/ai-jobs/{job_id}/status", self.handle_job_status)
        self.logger = logger

    @staticmethod
    def _ok(data=None, message: str = "OK"):
        return web.json_response({"success": True, "data": data, "message": message})

    @staticmethod
    def _fail(message: str, status: int = 400, code: Optional[str] = None):
        return web.json_response(
            {"success": False, "data": None, "message": message, "code": code},
            status=status,
        )

    def _flaky(self) -> bool:
        return random.random() < self.error_rate

    def _create_job(self, kind: str, fail: bool = False) -> str:
        job_id = f"{kind}_{uuid.uuid4().hex[:8]}"
        duration = (
            self.scoring_time if kind == "scoring" else self.result_generation_time
        )
        self.jobs[job_id] = {
            "created_at": datetime.now(),
            "duration": duration,
            "fail": fail,
        }
        return job_id

    def _job_state(self, job_id: str) -> str:
        job = self.jobs[job_id]
        elapsed = (datetime.now() - job["created_at"]).total_seconds()
        if elapsed < job["duration"]:
            return "running" if elapsed >= job["duration"] / 2 else "pending"
        return "failed" if job["fail"] else "completed"

    def _question(self, index: int) -> dict:
        return {"id": f"q_{index + 1}", "text": f"Scenario question {index + 1}"}

    def _progress(self, session: dict) -> dict:
        answered = len(session["answers"])
        return {
            "currentQuestion": min(answered + 1, self.total_questions),
            "totalQuestions": self.total_questions,
            "completedResponses": answered,
            "percentage": round(100 * answered / self.total_questions, 2),
            "isComplete": answered >= self.total_questions,
        }

    def _session_payload(self, session_id: str) -> dict:
        session = self.sessions[session_id]
        return {
            "sessionId": session_id,
            "question": self._question(len(session["answers"])),
            "progress": self._progress(session),
            "skillName": session["skill_name"],
        }

    async def handle_start(self, request):
        self.authorization_headers.append(request.headers.get("Authorization"))
        body = await request.json()
        session_id = f"session_{uuid.uuid4().hex[:8]}"
        self.sessions[session_id] = {
            "skill_id": body.get("skillId"),
            "skill_name": f"Skill {body.get('skillId')}",
            "answers": [],
            "scoring_jobs": [],
            "results_job": None,
        }
        self.logger.info(f"Started session {session_id}")
        return self._ok(self._session_payload(session_id))

    async def handle_resume(self, request):
        body = await request.json()
        for session_id, session in self.sessions.items():
            unfinished = len(session["answers"]) < self.total_questions
            if session["skill_id"] == body.get("skillId") and unfinished:
                return self._ok(self._session_payload(session_id))
        return self._fail("No assessment to resume", status=404, code="NOT_FOUND")

    async def handle_submit_answer(self, request):
        session_id = request.match_info["session_id"]
        session = self.sessions.get(session_id)
        if session is None:
            return self._fail("Session not found", status=404, code="NOT_FOUND")
        if self._flaky():
            self.logger.info("Returning submit error")
            return self._fail("Temporary failure", status=503)

        body = await request.json()
        index = len(session["answers"])
        session["answers"].append(body.get("answer", ""))
        job_id = self._create_job("scoring", fail=index in self.failing_responses)
        session["scoring_jobs"].append(job_id)

        is_complete = len(session["answers"]) >= self.total_questions
        data = {
            "sessionId": session_id,
            "isComplete": is_complete,
            "progress": self._progress(session),
            "scoringJobId": job_id,
        }
        if not is_complete:
            data["question"] = self._question(index + 1)
        return self._ok(data)

    async def handle_job_status(self, request):
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            return self._fail("Job not found", status=404, code="NOT_FOUND")
        if self._flaky():
            self.logger.info("Returning job status error")
            return self._fail("Temporary failure", status=503)

        state = self._job_state(job_id)
        self.logger.info(f"Job {job_id} is {state}")
        return self._ok(
            {
                "jobId": job_id,
                "status": state,
                "message": "Analyzing your response...",
                "completed": state == "completed",
                "failed": state == "failed",
                "error": "Scoring model unavailable" if state == "failed" else None,
                "retryable": True,
            }
        )

    async def handle_scoring_status(self, request):
        session = self.sessions.get(request.match_info["assessment_id"])
        if session is None:
            return self._fail("Assessment not found", status=404, code="NOT_FOUND")
        if self._flaky():
            return self._fail("Temporary failure", status=503)

        states = [self._job_state(job_id) for job_id in session["scoring_jobs"]]
        completed = states.count("completed")
        has_failed = "failed" in states
        return self._ok(
            {
                "completedCount": completed,
                "totalJobs": len(states),
                "allCompleted": completed == len(states),
                "hasFailed": has_failed,
                "failedJobError": "Scoring model unavailable" if has_failed else None,
                "message": f"Analyzed {completed} of {len(states)} responses",
            }
        )

    async def handle_retry_scoring(self, request):
        session = self.sessions.get(request.match_info["assessment_id"])
        if session is None:
            return self._fail("Assessment not found", status=404, code="NOT_FOUND")
        for job_id in session["scoring_jobs"]:
            if self._job_state(job_id) == "failed":
                self.jobs[job_id].update(created_at=datetime.now(), fail=False)
        self.failing_responses.clear()
        return self._ok(message="Scoring restarted")

    async def handle_final_feedback(self, request):
        assessment_id = request.match_info["assessment_id"]
        session = self.sessions.get(assessment_id)
        if session is None:
            return self._fail("Assessment not found", status=404, code="NOT_FOUND")
        self.feedback_requests[assessment_id] = (
            self.feedback_requests.get(assessment_id, 0) + 1
        )
        if session["results_job"] is None:
            session["results_job"] = self._create_job("results")
        return self._ok(message="Feedback generation started")

    async def handle_results(self, request):
        session = self.sessions.get(request.match_info["assessment_id"])
        if session is None:
            return self._fail("Assessment not found", status=404, code="NOT_FOUND")
        if session["results_job"] is None:
            session["results_job"] = self._create_job("results")

        job_id = session["results_job"]
        if self._job_state(job_id) != "completed":
            return self._ok({"status": "processing", "jobId": job_id})
        return self._ok(
            {
                "status": "ready",
                "finalScore": 78.5,
                "strengths": ["Structured reasoning"],
                "improvements": ["Quantify impact"],
            }
        )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
