import asyncio
from typing import Any, Callable, Optional

from loguru import logger

from skill_drill_client.api_client import SkillDrillApiClient
from skill_drill_client.callbacks import invoke_callback, spawn_task
from skill_drill_client.errors import ApiError


class BoundedWaitPoller:
    """Waits for a scoring job, but never longer than ``max_wait_time``.

    A deadline timer races the status checks; whichever settles first wins
    and the other becomes a no-op. ``on_complete`` takes no arguments since
    the caller already holds whatever it wants to show next.
    """

    def __init__(
        self,
        api: SkillDrillApiClient,
        on_complete: Callable[[], Any],
        max_wait_time: float = 5.0,
        polling_interval: float = 1.0,
    ):
        self.api = api
        self.on_complete = on_complete
        self.max_wait_time = max_wait_time
        self.polling_interval = polling_interval
        self.logger = logger

        self.is_polling = False
        self.scoring_completed = False
        self.completed_by: Optional[str] = None

        self._episode = 0
        self._has_completed = True
        self._cancelled = False
        self._deadline_timer: Optional[asyncio.TimerHandle] = None
        self._interval_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    def _is_stale(self, episode: int) -> bool:
        return self._has_completed or episode != self._episode

    def _clear_timers(self) -> None:
        if self._deadline_timer is not None:
            self._deadline_timer.cancel()
            self._deadline_timer = None
        if self._interval_timer is not None:
            self._interval_timer.cancel()
            self._interval_timer = None
        self.is_polling = False

    def _claim_completion(self, episode: int, reason: str) -> bool:
        """One-shot guard: only the first caller of an episode gets True"""
        if self._is_stale(episode):
            return False
        self._has_completed = True
        self.completed_by = reason
        self._clear_timers()
        return True

    def start_polling(
        self,
        job_id: str,
        max_wait_time: Optional[float] = None,
        polling_interval: Optional[float] = None,
    ) -> None:
        if not job_id:
            self.logger.warning("No scoring job id provided, nothing to wait for")
            return

        self._clear_timers()
        self._episode += 1
        episode = self._episode
        self._has_completed = False
        self._cancelled = False
        self.scoring_completed = False
        self.completed_by = None
        self.is_polling = True

        max_wait = max_wait_time if max_wait_time is not None else self.max_wait_time
        interval = (
            polling_interval if polling_interval is not None else self.polling_interval
        )

        loop = asyncio.get_running_loop()
        self._deadline_timer = loop.call_later(max_wait, self._on_deadline, episode)
        self._spawn_check(job_id, interval, episode)

    def cancel_polling(self) -> None:
        self._has_completed = True
        self._cancelled = True
        self._clear_timers()

    def _on_deadline(self, episode: int) -> None:
        self._deadline_timer = None
        if not self._claim_completion(episode, "deadline"):
            return
        self.logger.info("Max wait time reached, moving on without scoring result")
        spawn_task(
            self._deliver_deadline(episode), self._tasks, name="scoring-deadline"
        )

    async def _deliver_deadline(self, episode: int) -> None:
        # cancel_polling or a restart may land before this task runs
        if self._cancelled or episode != self._episode:
            return
        await invoke_callback(self.on_complete)

    def _spawn_check(self, job_id: str, interval: float, episode: int) -> None:
        self._interval_timer = None
        if self._is_stale(episode):
            return
        spawn_task(
            self._check(job_id, interval, episode),
            self._tasks,
            name=f"scoring-check-{job_id}",
        )

    async def _check(self, job_id: str, interval: float, episode: int) -> None:
        try:
            status = await self.api.get_job_status(job_id)
        except ApiError as e:
            if self._is_stale(episode):
                return
            self.logger.warning(f"Error checking scoring job {job_id}: {e}")
        else:
            if self._is_stale(episode):
                return
            if status.completed:
                self.scoring_completed = True
                if self._claim_completion(episode, "job"):
                    self.logger.info(f"Scoring job {job_id} completed")
                    await invoke_callback(self.on_complete)
                return

        self._interval_timer = asyncio.get_running_loop().call_later(
            interval, self._spawn_check, job_id, interval, episode
        )
