import asyncio
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from skill_drill_client.aggregate_job_poller import AggregateJobPoller
from skill_drill_client.api_client import SkillDrillApiClient
from skill_drill_client.bounded_wait_poller import BoundedWaitPoller
from skill_drill_client.callbacks import invoke_callback, spawn_task
from skill_drill_client.config import SessionFlowConfig
from skill_drill_client.errors import ApiError, SkillDrillError, SubmitError
from skill_drill_client.job_status_poller import JobStatusPoller
from skill_drill_client.models import (
    AggregateProgress,
    AssessmentResults,
    JobStatus,
    ResultStatus,
    SessionProgress,
    SessionStart,
    SubmitAnswerResponse,
)

EMPTY_ANSWER_MESSAGE = "Please provide your response before continuing."
RESULTS_TIMED_OUT_MESSAGE = "Feedback generation timed out. Please try again."


class SessionState(str, Enum):
    idle = "idle"
    awaiting_answer = "awaiting_answer"
    submitting = "submitting"
    awaiting_next_question = "awaiting_next_question"
    awaiting_all_scoring = "awaiting_all_scoring"
    results_pending = "results_pending"
    results_ready = "results_ready"


class SessionFlowController:
    """Drives one assessment: answer, wait for scoring, next question or results.

    Intermediate answers wait on a ``BoundedWaitPoller`` so the next question
    shows up within a fixed ceiling. The final answer waits on an
    ``AggregateJobPoller`` until every response is scored, then final feedback
    is requested and results are fetched, following the result-generation job
    with a ``JobStatusPoller`` while the backend is still producing them.

    Listeners (plain or coroutine functions):

    - ``on_question(question, progress)``: a new question is ready to answer
    - ``on_submit_error(error)``: the answer was not accepted, user may resubmit
    - ``on_scoring_progress(progress)``: live count of scored responses
    - ``on_scoring_error(message, retry)``: a scoring job failed
    - ``on_assessment_complete(assessment_id)``: all responses scored
    - ``on_results(results)``: results are ready
    - ``on_results_error(message, retry)``: results could not be loaded
    """

    def __init__(
        self,
        api: SkillDrillApiClient,
        config: Optional[SessionFlowConfig] = None,
        on_question: Optional[Callable[..., Any]] = None,
        on_submit_error: Optional[Callable[[SubmitError], Any]] = None,
        on_scoring_progress: Optional[Callable[[AggregateProgress], Any]] = None,
        on_scoring_error: Optional[Callable[..., Any]] = None,
        on_assessment_complete: Optional[Callable[[str], Any]] = None,
        on_results: Optional[Callable[[AssessmentResults], Any]] = None,
        on_results_error: Optional[Callable[..., Any]] = None,
    ):
        self.api = api
        self.config = config or SessionFlowConfig()
        self.logger = logger

        self.on_question = on_question
        self.on_submit_error = on_submit_error
        self.on_scoring_progress = on_scoring_progress
        self.on_scoring_error = on_scoring_error
        self.on_assessment_complete = on_assessment_complete
        self.on_results = on_results
        self.on_results_error = on_results_error

        self.next_question_poller = BoundedWaitPoller(
            api,
            on_complete=self._reveal_pending_question,
            max_wait_time=self.config.next_question_max_wait,
            polling_interval=self.config.next_question_polling_interval,
        )
        self.all_scoring_poller = AggregateJobPoller(
            api,
            on_complete=self._handle_all_scoring_complete,
            on_error=self._handle_all_scoring_failed,
            on_progress=self._handle_scoring_progress,
            polling_interval=self.config.all_scoring_polling_interval,
        )
        self.result_poller = JobStatusPoller(
            api,
            on_complete=self._handle_result_job_complete,
            on_error=self._handle_result_job_failed,
            config=self.config.result_polling,
        )

        self._tasks: set[asyncio.Task] = set()
        self._results_timer: Optional[asyncio.TimerHandle] = None
        self._clear_session()

    def _clear_session(self) -> None:
        self.state = SessionState.idle
        self.session_id: Optional[str] = None
        self.assessment_id: Optional[str] = None
        self.skill_name: Optional[str] = None
        self.current_question: Optional[dict] = None
        self.pending_question: Optional[dict] = None
        self.questions: list[dict] = []
        self.current_question_index = 0
        self.progress: Optional[SessionProgress] = None
        self.responses: list[dict] = []
        self.error: Optional[str] = None
        self.results: Optional[AssessmentResults] = None
        self._feedback_requested = False
        self._feedback_in_flight = False
        self._results_attempt = 0
        self._cancel_results_timer()

    def _cancel_results_timer(self) -> None:
        if self._results_timer is not None:
            self._results_timer.cancel()
            self._results_timer = None

    @property
    def is_submitting(self) -> bool:
        return self.state == SessionState.submitting

    # -- session lifecycle -------------------------------------------------

    async def start_session(self, skill_id: str) -> SessionStart:
        self.teardown()
        try:
            session = await self.api.start_assessment(skill_id)
        except ApiError as e:
            self.logger.error(f"Failed to start assessment for skill {skill_id}: {e}")
            self.error = str(e)
            raise

        await self._begin(session)
        return session

    async def resume_session(self, skill_id: str) -> Optional[SessionStart]:
        """Resumes an unfinished assessment, returns None when there is none"""
        self.teardown()
        try:
            session = await self.api.resume_assessment(skill_id)
        except ApiError as e:
            self.logger.warning(f"No assessment to resume for skill {skill_id}: {e}")
            return None

        await self._begin(session)
        return session

    async def _begin(self, session: SessionStart) -> None:
        self.session_id = session.session_id
        self.assessment_id = session.session_id
        self.skill_name = session.skill_name
        self.current_question = session.question
        self.questions = [session.question] if session.question else []
        self.progress = session.progress
        self.state = SessionState.awaiting_answer
        self.logger.info(f"Assessment session {self.session_id} started")
        await invoke_callback(self.on_question, self.current_question, self.progress)

    def teardown(self) -> None:
        """Stops every poller and forgets the session"""
        self.next_question_poller.cancel_polling()
        self.all_scoring_poller.cancel_polling()
        self.result_poller.reset()
        self._clear_session()

    # -- answering ---------------------------------------------------------

    async def submit_answer(self, answer: str) -> Optional[SubmitAnswerResponse]:
        if not self.session_id:
            raise RuntimeError("No active session")

        answer = answer.strip()
        if not answer:
            await invoke_callback(self.on_submit_error, SubmitError(EMPTY_ANSWER_MESSAGE))
            return None

        if self.state != SessionState.awaiting_answer:
            self.logger.warning(f"Answer ignored while session is {self.state.value}")
            return None

        self.state = SessionState.submitting
        self.error = None
        try:
            response = await self.api.submit_answer(self.session_id, answer)
        except ApiError as e:
            self.logger.error(f"Response submission failed: {e}")
            self.error = str(e)
            self.state = SessionState.awaiting_answer
            error = SubmitError(str(e) or "Failed to submit answer")
            error.__cause__ = e
            await invoke_callback(self.on_submit_error, error)
            return None

        self._record_answer(answer)
        if response.progress is not None:
            self.progress = response.progress

        if response.is_complete:
            self.assessment_id = response.session_id or self.session_id
            self.state = SessionState.awaiting_all_scoring
            self.logger.info(
                f"Assessment {self.assessment_id} answered, waiting for all scoring"
            )
            self.all_scoring_poller.start_polling(self.assessment_id)
            return response

        self.pending_question = response.question
        self.state = SessionState.awaiting_next_question
        if response.scoring_job_id:
            self.next_question_poller.start_polling(response.scoring_job_id)
        else:
            self.logger.warning("No scoring job id in response, showing next question")
            await self._reveal_pending_question()
        return response

    def _record_answer(self, answer: str) -> None:
        question = self.current_question or {}
        question_id = question.get("id") or f"q_{len(self.responses) + 1}"
        self.responses = [r for r in self.responses if r["question_id"] != question_id]
        self.responses.append({"question_id": question_id, "answer": answer})

    async def _reveal_pending_question(self) -> None:
        if self.state != SessionState.awaiting_next_question:
            return
        self.current_question = self.pending_question
        self.pending_question = None
        if self.current_question is not None:
            self.questions.append(self.current_question)
            self.current_question_index = len(self.questions) - 1
        self.state = SessionState.awaiting_answer
        await invoke_callback(self.on_question, self.current_question, self.progress)

    # -- scoring of the whole assessment ------------------------------------

    async def _handle_scoring_progress(self, progress: AggregateProgress) -> None:
        await invoke_callback(self.on_scoring_progress, progress)

    async def _handle_all_scoring_complete(self) -> None:
        self.state = SessionState.results_pending
        self.error = None
        self._request_final_feedback()
        await invoke_callback(self.on_assessment_complete, self.assessment_id)

    async def _handle_all_scoring_failed(self, message: str) -> None:
        self.error = message
        await invoke_callback(self.on_scoring_error, message, self.retry_scoring)

    async def retry_scoring(self) -> None:
        """Asks the backend to rescore failed responses and waits again"""
        if self.state != SessionState.awaiting_all_scoring:
            self.logger.warning(f"Scoring retry ignored while session is {self.state.value}")
            return
        if self.all_scoring_poller.is_polling:
            self.logger.warning("Scoring retry ignored, scoring is still being checked")
            return

        try:
            await self.api.retry_scoring(self.assessment_id)
        except ApiError as e:
            self.logger.error(f"Retrying scoring for {self.assessment_id} failed: {e}")
            await self._handle_all_scoring_failed(str(e))
            return

        self.error = None
        self.all_scoring_poller.start_polling(self.assessment_id)

    def _request_final_feedback(self) -> None:
        if self._feedback_requested or self._feedback_in_flight:
            return
        self._feedback_in_flight = True
        spawn_task(
            self._generate_final_feedback(self.assessment_id),
            self._tasks,
            name=f"final-feedback-{self.assessment_id}",
        )

    async def _generate_final_feedback(self, assessment_id: str) -> None:
        try:
            await self.api.generate_final_feedback(assessment_id)
        except ApiError as e:
            # Results fetch asks again
            self.logger.warning(f"Final feedback request for {assessment_id} failed: {e}")
        else:
            if assessment_id == self.assessment_id:
                self._feedback_requested = True
        finally:
            if assessment_id == self.assessment_id:
                self._feedback_in_flight = False

    # -- results -----------------------------------------------------------

    async def fetch_results(self) -> Optional[AssessmentResults]:
        if self.state == SessionState.results_ready:
            return self.results
        if self.state != SessionState.results_pending:
            raise RuntimeError(f"Results are not available while {self.state.value}")

        self._results_attempt = 0
        self._cancel_results_timer()
        return await self._load_results()

    async def _load_results(self) -> Optional[AssessmentResults]:
        if not self._feedback_requested and not self._feedback_in_flight:
            await self._generate_final_feedback(self.assessment_id)

        try:
            results = await self.api.get_results(self.assessment_id)
        except ApiError as e:
            self.logger.error(f"Failed to load results for {self.assessment_id}: {e}")
            await self._fail_results(str(e) or "Failed to load assessment results")
            return None

        if results.status == ResultStatus.processing:
            if results.job_id:
                self.logger.info(
                    f"Results for {self.assessment_id} still generating, "
                    f"following job {results.job_id}"
                )
                self.result_poller.start_polling(results.job_id)
            else:
                await self._schedule_results_reload()
            return None

        self.results = results
        self.state = SessionState.results_ready
        self.error = None
        self.logger.info(f"Results ready for assessment {self.assessment_id}")
        await invoke_callback(self.on_results, results)
        return results

    async def _schedule_results_reload(self) -> None:
        # No job to follow, so ask for the results again with backoff
        self._results_attempt += 1
        if self._results_attempt >= self.config.results_max_attempts:
            self.logger.error(
                f"Results for {self.assessment_id} still processing after "
                f"{self._results_attempt} attempts"
            )
            await self._fail_results(RESULTS_TIMED_OUT_MESSAGE)
            return

        delay = self.config.result_polling.delay_for(self._results_attempt - 1)
        self.logger.info(
            f"Results for {self.assessment_id} still generating, "
            f"fetching again in {delay:.2f}s"
        )
        self._results_timer = asyncio.get_running_loop().call_later(
            delay, self._spawn_results_reload, self.assessment_id
        )

    def _spawn_results_reload(self, assessment_id: str) -> None:
        self._results_timer = None
        if self.state != SessionState.results_pending:
            return
        if assessment_id != self.assessment_id:
            return
        spawn_task(
            self._load_results(), self._tasks, name=f"results-reload-{assessment_id}"
        )

    async def _handle_result_job_complete(self, status: JobStatus) -> None:
        if self.state == SessionState.results_pending:
            await self._load_results()

    async def _handle_result_job_failed(
        self, error: SkillDrillError, status: Optional[JobStatus] = None
    ) -> None:
        await self._fail_results(str(error))

    async def _fail_results(self, message: str) -> None:
        self.error = message
        await invoke_callback(self.on_results_error, message, self.fetch_results)
