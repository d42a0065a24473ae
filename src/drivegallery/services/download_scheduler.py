"""
Client-side download scheduler for gallery media.

Serializes many independent byte fetches through a bounded-concurrency
queue running on one asyncio event loop. Each task reports percentage
progress when the server declares a length, is retried with exponential
backoff on throttling and transient failures, and can be cancelled at any
point through the handle returned by ``enqueue``.

Classes
-------
TaskState
    Lifecycle states of a download task.
DownloadTask
    One queued fetch with its callbacks and retry counter.
DownloadScheduler
    The queue and its worker coroutine.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from drivegallery import __version__
from drivegallery.config.settings import Settings
from drivegallery.exceptions import InvalidTransitionError, SchedulerNotRunningError

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    """Lifecycle state of a ``DownloadTask``."""

    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.QUEUED: frozenset({TaskState.IN_FLIGHT, TaskState.CANCELLED}),
    TaskState.IN_FLIGHT: frozenset(
        {
            TaskState.QUEUED,
            TaskState.SUCCEEDED,
            TaskState.FAILED,
            TaskState.CANCELLED,
        }
    ),
    TaskState.SUCCEEDED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.CANCELLED: frozenset(),
}


class FailureReason(str, Enum):
    """Classification of a failed transfer attempt."""

    RATE_LIMITED = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    HTTP_ERROR = "http_error"
    UNEXPECTED = "unexpected"

    @property
    def retryable(self) -> bool:
        return self in (
            FailureReason.RATE_LIMITED,
            FailureReason.UPSTREAM_UNAVAILABLE,
            FailureReason.NETWORK,
        )


def classify_status(status_code: int) -> FailureReason:
    """Map a non-200 HTTP status to a ``FailureReason``."""
    if status_code == 429:
        return FailureReason.RATE_LIMITED
    if status_code in (404, 410):
        return FailureReason.NOT_FOUND
    if status_code >= 500:
        return FailureReason.UPSTREAM_UNAVAILABLE
    return FailureReason.HTTP_ERROR


@dataclass(frozen=True)
class DownloadError:
    """Terminal failure passed to ``on_error``.

    Attributes
    ----------
    reason : FailureReason
        Classification of the last attempt.
    message : str
        Human-readable description.
    status_code : int | None
        HTTP status of the last attempt, if a response was received.
    attempts : int
        Number of transfer attempts made.
    """

    reason: FailureReason
    message: str
    status_code: int | None = None
    attempts: int = 1


@dataclass(frozen=True)
class DownloadedMedia:
    """Successful transfer result passed to ``on_complete``."""

    task_id: str
    content: bytes
    content_type: str | None = None
    cache_status: str | None = None


ProgressCallback = Callable[[int], Any]
CompleteCallback = Callable[[DownloadedMedia], Any]
ErrorCallback = Callable[[DownloadError], Any]


@dataclass(eq=False)
class DownloadTask:
    """A single queued fetch.

    Tasks compare by identity: a superseding enqueue for the same
    ``task_id`` creates a new, distinct task.
    """

    task_id: str
    source_url: str
    on_progress: ProgressCallback | None = None
    on_complete: CompleteCallback | None = None
    on_error: ErrorCallback | None = None
    attempt: int = 0
    state: TaskState = field(default=TaskState.QUEUED)

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def transition(self, new_state: TaskState) -> None:
        """Move to ``new_state``.

        Raises
        ------
        InvalidTransitionError
            If the move is not allowed from the current state.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                self.task_id, self.state.value, new_state.value
            )
        self.state = new_state


class DownloadScheduler:
    """
    Bounded-concurrency download queue.

    All queue state lives on the event loop the scheduler was started on;
    ``enqueue`` and cancel handles may be called from other threads and are
    marshalled onto that loop.

    Parameters
    ----------
    max_concurrent : int
        Maximum simultaneous transfers.
    request_delay : float
        Seconds between a slot being released and the next transfer start.
    max_retries : int
        Retries allowed per task for retryable failures.
    backoff_base : float
        Backoff before retry ``n`` is ``backoff_base * 2 ** n`` seconds.
    pause_on_retry : bool
        While a retry is backing off, hold back new transfers until it is
        due so the throttled task keeps its place at the head of the queue.
    timeout : float
        Per-transfer HTTP timeout in seconds.
    client : httpx.AsyncClient | None
        HTTP client to use; one is created (and owned) when omitted.

    Examples
    --------
    >>> async with DownloadScheduler() as scheduler:
    ...     cancel = scheduler.enqueue(
    ...         "1AbC", "http://127.0.0.1:8000/api/drive-image/1AbC",
    ...         on_complete=lambda media: print(len(media.content)),
    ...     )
    ...     await scheduler.join()
    """

    def __init__(
        self,
        *,
        max_concurrent: int = 1,
        request_delay: float = 0.5,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        pause_on_retry: bool = True,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self._max_concurrent = max_concurrent
        self._request_delay = request_delay
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._pause_on_retry = pause_on_retry
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

        self._pending: deque[DownloadTask] = deque()
        self._live: dict[str, DownloadTask] = {}
        self._transferring: set[str] = set()
        self._in_flight = 0
        self._retry_timers: dict[DownloadTask, tuple[asyncio.TimerHandle, float]] = {}
        self._transfers: set[asyncio.Task[None]] = set()
        self._last_release = -math.inf

        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task[None] | None = None
        self._wakeup: asyncio.Event | None = None
        self._idle: asyncio.Event | None = None
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> DownloadScheduler:
        """Build a scheduler from the download settings."""
        options: dict[str, Any] = {
            "max_concurrent": settings.download_max_concurrent,
            "request_delay": settings.download_request_delay,
            "max_retries": settings.download_max_retries,
            "backoff_base": settings.download_backoff_base,
            "timeout": settings.download_timeout,
        }
        options.update(overrides)
        return cls(**options)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def in_flight_count(self) -> int:
        return self._in_flight

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        return self._backoff_base * (2**attempt)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind to the running loop and spawn the worker coroutine."""
        if self._worker is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": f"drivegallery/{__version__}"},
            )
        self._worker = self._loop.create_task(
            self._run(), name="drivegallery-download-scheduler"
        )
        logger.debug(
            "Download scheduler started (max_concurrent=%d, delay=%.2fs)",
            self._max_concurrent,
            self._request_delay,
        )

    async def join(self) -> None:
        """Wait until no task is queued, in flight or backing off."""
        if self._idle is None:
            raise SchedulerNotRunningError()
        await self._idle.wait()

    async def close(self) -> None:
        """Cancel outstanding work and release the HTTP client."""
        if self._closed:
            return
        self._closed = True

        for handle, _ in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()

        for task in list(self._live.values()):
            if not task.is_terminal:
                task.transition(TaskState.CANCELLED)
        self._live.clear()
        self._pending.clear()

        background = list(self._transfers)
        if self._worker is not None:
            background.append(self._worker)
        for job in background:
            job.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        if self._owns_client and self._client is not None:
            await self._client.aclose()
        if self._idle is not None:
            self._idle.set()
        logger.debug("Download scheduler closed")

    async def __aenter__(self) -> DownloadScheduler:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public queue API
    # ------------------------------------------------------------------

    def enqueue(
        self,
        task_id: str,
        url: str,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Queue a download and return a handle that cancels it.

        Enqueueing an id that already has a live task supersedes that
        task: it is cancelled and its callbacks never fire.

        Raises
        ------
        SchedulerNotRunningError
            If the scheduler has not been started or is closed.
        """
        task = DownloadTask(
            task_id=task_id,
            source_url=url,
            on_progress=on_progress,
            on_complete=on_complete,
            on_error=on_error,
        )
        self._call_in_loop(self._add, task)
        return functools.partial(self.cancel_task, task)

    def cancel_task(self, task: DownloadTask) -> None:
        """Cancel ``task``. A no-op once the task is terminal."""
        if self._loop is None or self._closed:
            return
        self._call_in_loop(self._cancel, task)

    def cancel(self, task_id: str) -> bool:
        """Cancel the live task for ``task_id``; returns whether one existed."""
        task = self._live.get(task_id)
        if task is None:
            return False
        self.cancel_task(task)
        return True

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        if self._loop is None or self._closed:
            raise SchedulerNotRunningError()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            callback(*args)
        else:
            self._loop.call_soon_threadsafe(callback, *args)

    # ------------------------------------------------------------------
    # Queue mutations (event loop only)
    # ------------------------------------------------------------------

    def _add(self, task: DownloadTask) -> None:
        previous = self._live.get(task.task_id)
        if previous is not None:
            logger.debug("Superseding queued download %s", task.task_id)
            self._cancel(previous)

        self._live[task.task_id] = task
        self._pending.append(task)
        self._mark_busy()
        logger.debug("Queued download %s (%d pending)", task.task_id, len(self._pending))

    def _cancel(self, task: DownloadTask) -> None:
        if task.is_terminal:
            return
        task.transition(TaskState.CANCELLED)
        self._forget(task)

        timer = self._retry_timers.pop(task, None)
        if timer is not None:
            timer[0].cancel()
        try:
            self._pending.remove(task)
        except ValueError:
            pass

        logger.debug("Cancelled download %s", task.task_id)
        self._mark_changed()

    def _requeue(self, task: DownloadTask) -> None:
        self._retry_timers.pop(task, None)
        if task.state is not TaskState.QUEUED:
            return
        self._pending.appendleft(task)
        self._mark_changed()

    def _forget(self, task: DownloadTask) -> None:
        if self._live.get(task.task_id) is task:
            del self._live[task.task_id]

    def _mark_busy(self) -> None:
        assert self._idle is not None and self._wakeup is not None
        self._idle.clear()
        self._wakeup.set()

    def _mark_changed(self) -> None:
        assert self._idle is not None and self._wakeup is not None
        self._wakeup.set()
        if not self._pending and not self._in_flight and not self._retry_timers:
            self._idle.set()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _next_startable(self) -> DownloadTask | None:
        if self._in_flight >= self._max_concurrent:
            return None
        for task in self._pending:
            if task.task_id not in self._transferring:
                return task
        return None

    def _pause_remaining(self) -> float:
        assert self._loop is not None
        now = self._loop.time()
        resume_at = self._last_release + self._request_delay
        if self._pause_on_retry and self._retry_timers:
            resume_at = max(resume_at, min(due for _, due in self._retry_timers.values()))
        return max(0.0, resume_at - now)

    async def _run(self) -> None:
        assert self._wakeup is not None
        while True:
            self._wakeup.clear()
            task = self._next_startable()
            if task is None:
                await self._wakeup.wait()
                continue

            pause = self._pause_remaining()
            if pause > 0:
                # Sleep without holding a slot; enqueue or cancel wakes us early
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=pause)
                except asyncio.TimeoutError:
                    pass
                continue

            self._launch(task)

    def _launch(self, task: DownloadTask) -> None:
        assert self._loop is not None
        self._pending.remove(task)
        task.transition(TaskState.IN_FLIGHT)
        self._in_flight += 1
        self._transferring.add(task.task_id)
        logger.debug("Starting download %s (attempt %d)", task.task_id, task.attempt + 1)

        job = self._loop.create_task(self._transfer(task))
        self._transfers.add(job)
        job.add_done_callback(self._transfers.discard)

    async def _transfer(self, task: DownloadTask) -> None:
        assert self._loop is not None
        try:
            outcome = await self._fetch(task)
        finally:
            self._in_flight -= 1
            self._transferring.discard(task.task_id)
            self._last_release = self._loop.time()

        self._settle(task, outcome)
        self._mark_changed()

    async def _fetch(self, task: DownloadTask) -> DownloadedMedia | DownloadError:
        assert self._client is not None
        attempts = task.attempt + 1
        try:
            async with self._client.stream("GET", task.source_url) as response:
                status = response.status_code
                if status != 200:
                    await response.aread()
                    return DownloadError(
                        reason=classify_status(status),
                        message=f"HTTP {status} from {task.source_url}",
                        status_code=status,
                        attempts=attempts,
                    )

                length_header = response.headers.get("content-length")
                total = int(length_header) if length_header and length_header.isdigit() else 0
                chunks: list[bytes] = []
                last_percent: int | None = None
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    if total and task.state is TaskState.IN_FLIGHT:
                        percent = min(100, round(response.num_bytes_downloaded / total * 100))
                        if percent != last_percent:
                            last_percent = percent
                            self._invoke(task, task.on_progress, percent)

                return DownloadedMedia(
                    task_id=task.task_id,
                    content=b"".join(chunks),
                    content_type=response.headers.get("content-type"),
                    cache_status=response.headers.get("x-cache"),
                )
        except httpx.TransportError as exc:
            return DownloadError(
                reason=FailureReason.NETWORK,
                message=f"{type(exc).__name__}: {exc}",
                attempts=attempts,
            )
        except Exception as exc:
            logger.exception("Unexpected error downloading %s", task.task_id)
            return DownloadError(
                reason=FailureReason.UNEXPECTED,
                message=f"{type(exc).__name__}: {exc}",
                attempts=attempts,
            )

    def _settle(self, task: DownloadTask, outcome: DownloadedMedia | DownloadError) -> None:
        assert self._loop is not None
        if task.state is TaskState.CANCELLED:
            logger.debug("Discarding result of cancelled download %s", task.task_id)
            return

        if isinstance(outcome, DownloadedMedia):
            task.transition(TaskState.SUCCEEDED)
            self._forget(task)
            logger.debug("Download %s complete (%d bytes)", task.task_id, len(outcome.content))
            self._invoke(task, task.on_complete, outcome)
            return

        if outcome.reason.retryable and task.attempt < self._max_retries:
            task.attempt += 1
            delay = self.backoff_delay(task.attempt)
            task.transition(TaskState.QUEUED)
            handle = self._loop.call_later(delay, self._requeue, task)
            self._retry_timers[task] = (handle, self._loop.time() + delay)
            logger.warning(
                "Download %s failed (%s); retry %d/%d in %.1fs",
                task.task_id,
                outcome.reason.value,
                task.attempt,
                self._max_retries,
                delay,
            )
            return

        task.transition(TaskState.FAILED)
        self._forget(task)
        logger.error(
            "Download %s failed after %d attempt(s): %s",
            task.task_id,
            outcome.attempts,
            outcome.message,
        )
        self._invoke(task, task.on_error, outcome)

    @staticmethod
    def _invoke(task: DownloadTask, callback: Callable[[Any], Any] | None, value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Callback for download %s raised", task.task_id)
