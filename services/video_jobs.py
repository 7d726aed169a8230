"""
Asynchronous video job lifecycle.

One ``AsyncJobPoller`` owns one ``VideoJob`` from submission to a terminal
state:

    IDLE -> SUBMITTED -> POLLING -> SUCCEEDED | FAILED
                     \\-> SUCCEEDED (backend returned the URL immediately)

Polling runs at a fixed interval, checks a cancellation token at the top of
every iteration, and fails the job once the attempt or wall-clock ceiling is
reached. Terminal states are immutable.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from core.config import Settings, get_settings
from core.exceptions import ErrorKind, NetworkUnreachableError, OrchestrationError

from .providers.base import (
    JobState,
    TaskInfo,
    VideoBackend,
    VideoRequest,
    normalize_status,
)
from .providers.errors import classify_error, to_orchestration_error

logger = logging.getLogger(__name__)

__all__ = [
    "AsyncJobPoller",
    "JobStateError",
    "VideoJob",
    "VideoJobHandle",
    "normalize_status",
]

ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.IDLE: {JobState.SUBMITTED, JobState.FAILED},
    JobState.SUBMITTED: {JobState.POLLING, JobState.SUCCEEDED, JobState.FAILED},
    JobState.POLLING: {JobState.SUCCEEDED, JobState.FAILED},
    JobState.SUCCEEDED: set(),
    JobState.FAILED: set(),
}


class JobStateError(RuntimeError):
    """Raised on a transition the job lifecycle does not allow."""


@dataclass
class VideoJob:
    """State of one video generation job."""

    id: str
    provider: str
    model: str
    state: JobState = JobState.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    task_id: str | None = None
    prompt: str | None = None
    result_url: str | None = None
    blob: bytes | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    content_policy: bool = False
    cancelled: bool = False
    attempts: int = 0

    def transition(self, state: JobState) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise JobStateError(f"Job {self.id}: {self.state} -> {state} not allowed")
        logger.debug(f"[VideoJob:{self.id}] {self.state} -> {state}")
        self.state = state
        if state.is_terminal:
            self.finished_at = datetime.now(UTC)

    def succeed(self, result_url: str, blob: bytes | None) -> None:
        self.transition(JobState.SUCCEEDED)
        self.result_url = result_url
        self.blob = blob

    def fail(
        self,
        kind: ErrorKind,
        detail: str,
        content_policy: bool = False,
        cancelled: bool = False,
    ) -> None:
        self.transition(JobState.FAILED)
        self.error_kind = kind
        self.error = detail
        self.content_policy = content_policy or kind is ErrorKind.CONTENT_POLICY_REJECTED
        self.cancelled = cancelled

    @property
    def is_done(self) -> bool:
        return self.state.is_terminal


class AsyncJobPoller:
    """
    Drives one job through submit, poll and download.

    Args:
        backend: Provider backend translating wire payloads
        request: The video request
        model_id: Model to submit to
        settings: Defaults for interval and ceilings
        poll_interval: Seconds between polls (default from settings)
        max_attempts: Poll attempts before the job fails
        max_wait: Wall-clock seconds before the job fails
        on_finished: Called once with the job after it reaches a terminal state
    """

    def __init__(
        self,
        backend: VideoBackend,
        request: VideoRequest,
        model_id: str,
        settings: Settings | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        max_wait: float | None = None,
        on_finished: Callable[[VideoJob], None] | None = None,
    ):
        settings = settings or get_settings()
        self.backend = backend
        self.request = request
        self.model_id = model_id
        self.poll_interval = settings.video_poll_interval if poll_interval is None else poll_interval
        self.max_attempts = settings.video_max_poll_attempts if max_attempts is None else max_attempts
        self.max_wait = settings.video_max_wait if max_wait is None else max_wait
        self._on_finished = on_finished
        self._cancel = asyncio.Event()
        self.job = VideoJob(id=uuid.uuid4().hex[:12], provider=backend.name, model=model_id)

    def cancel(self) -> None:
        """Request cancellation; honoured at the next loop iteration."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    async def _sleep(self) -> None:
        """Wait one interval, waking early on cancellation."""
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    def _fail_from(self, error: OrchestrationError) -> None:
        self.job.fail(error.kind, error.message)

    async def run(self) -> VideoJob:
        """Run the job to a terminal state and return it. Never raises for provider errors."""
        job = self.job
        job.started_at = datetime.now(UTC)
        job.prompt = self.request.prompt
        try:
            await self._run()
        finally:
            await self.backend.close()
            if not job.is_done:
                job.fail(ErrorKind.UNKNOWN, "任务意外终止 (Job ended unexpectedly)")
            logger.info(f"[VideoJob:{job.id}] Finished in state {job.state}")
            if self._on_finished:
                self._on_finished(job)
        return job

    async def _run(self) -> None:
        job = self.job
        if self.cancelled:
            job.fail(ErrorKind.UNKNOWN, "任务已取消 (Job cancelled)", cancelled=True)
            return

        try:
            submitted = await self.backend.submit(self.request, self.model_id)
        except Exception as e:
            error = to_orchestration_error(e, provider=self.backend.name, model=self.model_id)
            logger.error(f"[VideoJob:{job.id}] Submission failed: {error.message}")
            self._fail_from(error)
            return

        job.transition(JobState.SUBMITTED)
        job.task_id = submitted.task_id

        if submitted.result_url:
            await self._complete(submitted.result_url)
            return
        if not submitted.task_id:
            job.fail(ErrorKind.MALFORMED_RESPONSE, "未返回任务 ID 或视频链接 (No task id or URL returned)")
            return

        job.transition(JobState.POLLING)
        deadline = time.monotonic() + self.max_wait

        while True:
            if self.cancelled:
                job.fail(ErrorKind.UNKNOWN, "任务已取消 (Job cancelled)", cancelled=True)
                return
            if job.attempts >= self.max_attempts or time.monotonic() >= deadline:
                job.fail(
                    ErrorKind.UNKNOWN,
                    f"视频生成超时 (Timed out after {job.attempts} polls)",
                )
                return

            await self._sleep()
            if self.cancelled:
                continue

            job.attempts += 1
            try:
                info = await self.backend.poll(submitted.task_id)
            except NetworkUnreachableError as e:
                logger.warning(f"[VideoJob:{job.id}] Poll failed, will retry: {e.message[:80]}")
                continue
            except OrchestrationError as e:
                self._fail_from(e)
                return
            except Exception as e:
                error = to_orchestration_error(e, provider=self.backend.name, model=self.model_id)
                if error.kind is ErrorKind.NETWORK_UNREACHABLE:
                    logger.warning(f"[VideoJob:{job.id}] Poll failed, will retry: {e}")
                    continue
                self._fail_from(error)
                return

            if info.status is JobState.SUCCEEDED and info.result_url:
                await self._complete(info.result_url)
                return
            if info.status is JobState.FAILED:
                self._fail_from_task(info)
                return
            logger.debug(f"[VideoJob:{job.id}] Attempt {job.attempts}: still running")

    def _fail_from_task(self, info: TaskInfo) -> None:
        detail = info.error or "未知错误 (Unknown error)"
        if info.content_policy:
            self.job.fail(ErrorKind.CONTENT_POLICY_REJECTED, detail, content_policy=True)
            return
        kind = classify_error(detail, provider=self.backend.name, model=self.model_id).kind
        self.job.fail(kind, detail)

    async def _complete(self, result_url: str) -> None:
        """Download the result; on failure keep the URL without a blob."""
        url = self.backend.download_url(result_url)
        blob: bytes | None = None
        try:
            blob = await self.backend.download(url)
            logger.info(f"[VideoJob:{self.job.id}] Downloaded {len(blob)} bytes")
        except Exception as e:
            logger.warning(f"[VideoJob:{self.job.id}] Download failed, keeping raw URL: {e}")
        self.job.succeed(url, blob)


class VideoJobHandle:
    """A running poller plus its asyncio task."""

    def __init__(self, poller: AsyncJobPoller, task: asyncio.Task):
        self.poller = poller
        self.task = task

    @property
    def job(self) -> VideoJob:
        return self.poller.job

    def cancel(self) -> None:
        self.poller.cancel()

    def done(self) -> bool:
        return self.job.is_done

    async def wait(self) -> VideoJob:
        return await self.task

    @classmethod
    def start(cls, poller: AsyncJobPoller) -> "VideoJobHandle":
        return cls(poller, asyncio.create_task(poller.run()))
