import asyncio
from typing import Any, Callable, Optional, Union

from loguru import logger

from skill_drill_client.api_client import SkillDrillApiClient
from skill_drill_client.callbacks import invoke_callback, spawn_task
from skill_drill_client.errors import (
    ApiError,
    ClientTimeoutError,
    JobFailedError,
    SkillDrillError,
)
from skill_drill_client.models import JobState, JobStatus, PollingConfig


class JobStatusPoller:
    """Polls one AI job with exponential backoff until it completes or fails.

    Every ``start_polling`` opens a new episode. Responses that arrive for an
    older episode, or after ``cancel_polling``/``reset``, are dropped without
    touching state or firing callbacks. ``on_complete`` and ``on_error`` fire
    at most once per episode.
    """

    def __init__(
        self,
        api: SkillDrillApiClient,
        on_complete: Optional[Callable[[JobStatus], Any]] = None,
        on_error: Optional[Callable[..., Any]] = None,
        on_progress: Optional[Callable[[JobStatus], Any]] = None,
        config: Optional[PollingConfig] = None,
    ):
        self.api = api
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_progress = on_progress
        self.default_config = config or PollingConfig()
        self.logger = logger

        self._episode = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._clear_state()

    def _clear_state(self) -> None:
        self.job_id: Optional[str] = None
        self.config = self.default_config
        self.status: Optional[JobStatus] = None
        self.progress_message = ""
        self.is_polling = False
        self.error: Optional[SkillDrillError] = None
        self.attempt_count = 0
        self.can_retry = False
        self._cancelled = True

    def _resolve_config(
        self, config: Optional[Union[PollingConfig, dict]]
    ) -> PollingConfig:
        if config is None:
            return self.default_config
        if isinstance(config, PollingConfig):
            return config
        return PollingConfig(**{**self.default_config.model_dump(), **config})

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the next poll: initial * factor**attempt, capped at max_delay"""
        return self.config.delay_for(attempt)

    def _is_stale(self, episode: int) -> bool:
        return self._cancelled or episode != self._episode

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _spawn_poll(self, episode: int) -> None:
        self._timer = None
        if self._is_stale(episode):
            return
        job_id = self.job_id
        spawn_task(
            self._poll(job_id, episode), self._tasks, name=f"job-status-poll-{job_id}"
        )

    def start_polling(
        self, job_id: str, config: Optional[Union[PollingConfig, dict]] = None
    ) -> None:
        self._clear_timer()
        self._episode += 1
        self.job_id = job_id
        self.config = self._resolve_config(config)
        self._cancelled = False
        self.attempt_count = 0
        self.status = None
        self.progress_message = "Starting..."
        self.is_polling = True
        self.error = None
        self.can_retry = False

        self.logger.info(f"Polling job {job_id}")
        self._spawn_poll(self._episode)

    def cancel_polling(self) -> None:
        self._cancelled = True
        self._clear_timer()
        self.is_polling = False
        self.progress_message = "Cancelled"

    def retry(self) -> None:
        """Restarts the current job's polling from a clean attempt count"""
        if self.is_polling:
            self.logger.warning(f"Retry ignored, job {self.job_id} is still polling")
            return
        if self.job_id is None:
            self.logger.warning("Retry ignored, no job to poll")
            return

        self._clear_timer()
        self._episode += 1
        self._cancelled = False
        self.error = None
        self.attempt_count = 0
        self.is_polling = True
        self.can_retry = False

        self.logger.info(f"Retrying job {self.job_id}")
        self._spawn_poll(self._episode)

    def reset(self) -> None:
        self._clear_timer()
        self._episode += 1
        self._clear_state()

    async def _poll(self, job_id: str, episode: int) -> None:
        if self._is_stale(episode):
            return
        try:
            status = await self.api.get_job_status(job_id)
        except ApiError as e:
            if self._is_stale(episode):
                return
            self.logger.warning(f"Error polling job {self.job_id}: {e}")
            await self._advance(episode, last_error=e)
            return

        if self._is_stale(episode):
            return

        self.status = status
        self.progress_message = status.message or "Processing..."
        await invoke_callback(self.on_progress, status)
        if self._is_stale(episode):
            return

        if status.status == JobState.completed:
            self.logger.info(f"Job {self.job_id} completed")
            self._finish(can_retry=False)
            await invoke_callback(self.on_complete, status)
            return

        if status.status == JobState.failed:
            error = JobFailedError(status.error or "Job failed", status)
            self.logger.error(f"Job {self.job_id} failed: {error}")
            self._finish(can_retry=status.retryable, error=error)
            await invoke_callback(self.on_error, error, status)
            return

        await self._advance(episode, last_status=status)

    async def _advance(
        self,
        episode: int,
        last_status: Optional[JobStatus] = None,
        last_error: Optional[Exception] = None,
    ) -> None:
        """Counts a non-terminal attempt and schedules the next poll"""
        delay = self.calculate_delay(self.attempt_count)
        self.attempt_count += 1

        max_attempts = self.config.max_attempts
        if max_attempts > 0 and self.attempt_count >= max_attempts:
            error = ClientTimeoutError(last_error=last_error)
            self.logger.error(
                f"Job {self.job_id} still unsettled after {self.attempt_count} attempts"
            )
            self._finish(can_retry=True, error=error)
            await invoke_callback(self.on_error, error, last_status)
            return

        self.logger.debug(
            f"Job {self.job_id} not settled, next poll in {delay:.2f}s "
            f"(attempt {self.attempt_count})"
        )
        self._timer = asyncio.get_running_loop().call_later(
            delay, self._spawn_poll, episode
        )

    def _finish(self, can_retry: bool, error: Optional[SkillDrillError] = None) -> None:
        self._clear_timer()
        self.is_polling = False
        self.can_retry = can_retry
        self.error = error
