import asyncio
from typing import Any, Callable, Optional

from loguru import logger

from skill_drill_client.api_client import SkillDrillApiClient
from skill_drill_client.callbacks import invoke_callback, spawn_task
from skill_drill_client.errors import ApiError
from skill_drill_client.models import AggregateProgress

DEFAULT_FAILURE_MESSAGE = "Unable to analyze response. Please try again."
DEFAULT_PROGRESS_MESSAGE = "Processing responses..."


class AggregateJobPoller:
    """Waits until every scoring job of an assessment has completed.

    Fails fast as soon as the backend reports any failed job. There is no
    client-side cap: polling runs at a fixed interval until the backend
    reports a terminal state or ``cancel_polling`` is called.
    """

    def __init__(
        self,
        api: SkillDrillApiClient,
        on_complete: Callable[[], Any],
        on_error: Callable[[str], Any],
        on_progress: Optional[Callable[[AggregateProgress], Any]] = None,
        polling_interval: float = 1.5,
    ):
        self.api = api
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_progress = on_progress
        self.polling_interval = polling_interval
        self.logger = logger

        self.is_polling = False
        self.progress: Optional[AggregateProgress] = None
        self.assessment_id: Optional[str] = None

        self._episode = 0
        self._has_completed = True
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    def _is_stale(self, episode: int) -> bool:
        return self._has_completed or episode != self._episode

    def _cleanup(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.is_polling = False
        self.assessment_id = None

    def _claim_completion(self, episode: int) -> bool:
        if self._is_stale(episode):
            return False
        self._has_completed = True
        self._cleanup()
        return True

    def start_polling(self, assessment_id: str) -> None:
        if not assessment_id:
            self.logger.warning("No assessment id provided, cannot poll scoring status")
            return

        self._cleanup()
        self._episode += 1
        self._has_completed = False
        self.assessment_id = assessment_id
        self.progress = None
        self.is_polling = True

        self.logger.info(f"Waiting for all scoring jobs of assessment {assessment_id}")
        self._spawn_check(assessment_id, self._episode)

    def cancel_polling(self) -> None:
        self._has_completed = True
        self._cleanup()

    def _spawn_check(self, assessment_id: str, episode: int) -> None:
        self._timer = None
        if self._is_stale(episode):
            return
        spawn_task(
            self._check(assessment_id, episode),
            self._tasks,
            name=f"scoring-status-{assessment_id}",
        )

    async def _check(self, assessment_id: str, episode: int) -> None:
        try:
            aggregate = await self.api.get_aggregate_scoring_status(assessment_id)
        except ApiError as e:
            if self._is_stale(episode):
                return
            self.logger.warning(
                f"Error checking scoring status of assessment {assessment_id}: {e}"
            )
        else:
            if self._is_stale(episode):
                return

            self.progress = AggregateProgress(
                completed=aggregate.completed_count or 0,
                total=aggregate.total_jobs or 0,
                message=aggregate.message or DEFAULT_PROGRESS_MESSAGE,
            )
            await invoke_callback(self.on_progress, self.progress)
            if self._is_stale(episode):
                return

            # A failure outranks completion, the server may report both
            if aggregate.has_failed:
                if self._claim_completion(episode):
                    message = aggregate.failed_job_error or DEFAULT_FAILURE_MESSAGE
                    self.logger.error(
                        f"Scoring failed for assessment {assessment_id}: {message}"
                    )
                    await invoke_callback(self.on_error, message)
                return

            if aggregate.all_completed:
                if self._claim_completion(episode):
                    self.logger.info(
                        f"All {aggregate.total_jobs} scoring jobs of assessment "
                        f"{assessment_id} completed"
                    )
                    await invoke_callback(self.on_complete)
                return

            self.logger.debug(
                f"Scoring {self.progress.completed}/{self.progress.total} "
                f"for assessment {assessment_id}"
            )

        self._timer = asyncio.get_running_loop().call_later(
            self.polling_interval, self._spawn_check, assessment_id, episode
        )
