import asyncio
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

from loguru import logger
from job_tracking_client.errors import JobCreationError, user_message
from job_tracking_client.models import (
    CREATE_JOB,
    JobKind,
    JobLifecycleState,
    JobRecord,
    JobStatus,
    LifecyclePhase,
    job_finished,
)
from job_tracking_client.notifications import (
    LogNotifier,
    NotificationKind,
    NotificationSink,
)
from job_tracking_client.poll_engine import PollEngine
from job_tracking_client.progress import ProgressEstimator, clamp_progress


class JobStore(Protocol):
    async def create(self, payload: dict) -> JobRecord: ...

    async def fetch(
        self, job_id: str, abort: Optional[asyncio.Event] = None
    ) -> JobRecord: ...


class JobLifecycle:
    """Drives one job submission from creation through polling to completion.

    Phases: idle -> creating -> polling -> done -> idle, with creating and
    polling able to fall into error. From error the caller either cancels
    (back to idle) or retries (a fresh create with the same name).
    """

    def __init__(
        self,
        client: JobStore,
        kind: JobKind = CREATE_JOB,
        notifier: Optional[NotificationSink] = None,
        on_done: Optional[Callable[[], Any]] = None,
        on_change: Optional[Callable[[JobLifecycleState], Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.client = client
        self.kind = kind
        self.notifier = notifier or LogNotifier()
        self.on_done = on_done
        self.on_change = on_change
        self.logger = logger
        self.state = JobLifecycleState()

        self.engine: PollEngine[JobRecord] = PollEngine(
            on_result=self._on_poll_result,
            on_error=self._on_poll_error,
            on_stop=self._on_poll_stopped,
            sleep=sleep,
        )
        self.estimator = self._new_estimator()

        self._in_flight = False
        self._generation = 0
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._settled = asyncio.Event()
        self._settled.set()
        self._callback_tasks: Set[asyncio.Task] = set()

    @property
    def phase(self) -> LifecyclePhase:
        return self.state.phase

    @property
    def busy(self) -> bool:
        return self.state.phase in (LifecyclePhase.creating, LifecyclePhase.polling)

    def _new_estimator(self) -> ProgressEstimator:
        return ProgressEstimator(
            tick=self.kind.tick_interval,
            step=self.kind.tick_step,
            start_value=self.kind.optimistic_start,
            ceiling=self.kind.optimistic_ceiling,
            on_change=self._on_estimate,
        )

    def _set_phase(self, phase: LifecyclePhase) -> None:
        if self.state.phase == phase:
            return
        self.logger.info(
            f"{self.kind.name} job {self.state.job_id or '-'}: "
            f"{self.state.phase.value} -> {phase.value}"
        )
        self.state.phase = phase
        if self.busy:
            self._settled.clear()
        else:
            self._settled.set()

        if self.on_change is not None:
            try:
                result = self.on_change(self.state.model_copy())
            except Exception:
                self.logger.exception("Phase change callback failed")
                return
            if asyncio.iscoroutine(result):
                task = asyncio.create_task(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_tasks.discard)

    def _cancel_reset(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _stop_tracking(self) -> None:
        """Stops the ticker and the poll session"""
        self.estimator.stop()
        self.engine.stop()

    def _clear(self) -> None:
        self.state.job_id = None
        self.state.status = None
        self.state.error = None
        self.state.progress = 0.0
        self.state.notified_job_id = None
        self.estimator = self._new_estimator()

    async def start(self, name: Optional[str] = None) -> JobLifecycleState:
        """Creates a job and starts tracking it.

        Ignored while another submission is creating or polling.
        """
        if self._in_flight or self.busy:
            self.logger.debug(
                f"Ignoring {self.kind.name} request, one is already in flight"
            )
            return self.state

        self._cancel_reset()
        self.state.error = None

        trimmed = (name or "").strip()
        if not trimmed:
            self.state.error = "Please enter a job name."
            self.notifier.notify(self.state.error, NotificationKind.error)
            return self.state

        self._stop_tracking()
        self._clear()
        self._in_flight = True
        self._generation += 1
        generation = self._generation
        self.state.name = trimmed
        self._set_phase(LifecyclePhase.creating)

        try:
            created = await self.client.create(
                {"name": trimmed, "status": JobStatus.queued.value, "progress": 0}
            )
            if generation != self._generation:
                self.logger.info(f"Discarding job {created.id}, submission was cancelled")
                return self.state
            if created.id is None:
                raise JobCreationError(
                    f"{self.kind.name.capitalize()} succeeded but no id returned."
                )
        except Exception as exc:
            if generation != self._generation:
                return self.state
            self.logger.error(f"{self.kind.name} failed: {exc}")
            self.state.error = user_message(exc, self.kind.failure_message)
            self._set_phase(LifecyclePhase.error)
            return self.state
        finally:
            if generation == self._generation:
                self._in_flight = False

        self._begin_polling(created.id)
        return self.state

    def _begin_polling(self, job_id: str) -> None:
        self.state.job_id = job_id
        self.state.notified_job_id = None
        self.estimator.start()
        self.state.progress = max(self.state.progress, self.estimator.value)

        async def fetch_status(abort: asyncio.Event) -> JobRecord:
            return await self.client.fetch(job_id, abort=abort)

        self._set_phase(LifecyclePhase.polling)
        config = self.kind.poll.model_copy(update={"stop_when": job_finished})
        self.engine.start(fetch_status, config)

    def _on_estimate(self, value: float) -> None:
        if self.state.phase == LifecyclePhase.polling:
            self.state.progress = max(self.state.progress, value)

    def _on_poll_result(self, record: JobRecord) -> None:
        if self.state.phase != LifecyclePhase.polling:
            return
        if record.id is not None and record.id != self.state.job_id:
            self.logger.debug(f"Ignoring status of job {record.id}")
            return

        self.state.status = record.status
        server = clamp_progress(record.progress)
        self.estimator.observe(record.progress)
        self.state.progress = max(self.state.progress, self.estimator.value, server)

        if record.is_finished:
            self._complete(self.state.job_id)
        elif record.status == JobStatus.failed:
            self._fail("Job failed")

    def _on_poll_error(self, exc: BaseException) -> None:
        if self.state.phase != LifecyclePhase.polling:
            return
        self._fail(user_message(exc, "Polling failed."))

    def _on_poll_stopped(self) -> None:
        if self.state.phase != LifecyclePhase.polling:
            return
        self._fail("Status check was cancelled.")

    def _fail(self, message: str) -> None:
        self._stop_tracking()
        self.state.error = message
        self._set_phase(LifecyclePhase.error)
        self.notifier.notify(message, NotificationKind.error)

    def _complete(self, job_id: Optional[str]) -> None:
        if job_id is None or self.state.notified_job_id == job_id:
            return
        self.state.notified_job_id = job_id

        self._stop_tracking()
        self.state.progress = 100.0
        self._set_phase(LifecyclePhase.done)
        self.notifier.notify(self.kind.success_message, NotificationKind.success)

        if self.on_done is not None:
            try:
                self.on_done()
            except Exception:
                self.logger.exception("Completion callback failed")

        self._cancel_reset()
        self._reset_handle = asyncio.get_event_loop().call_later(
            self.kind.reset_delay, self._auto_reset
        )

    def _auto_reset(self) -> None:
        self._reset_handle = None
        self._clear()
        self.state.name = None
        self._set_phase(LifecyclePhase.idle)

    def cancel(self) -> JobLifecycleState:
        """Abandons the current submission without contacting the job store"""
        self._generation += 1
        self._in_flight = False
        self._cancel_reset()
        self._stop_tracking()
        self._clear()
        self._set_phase(LifecyclePhase.idle)
        return self.state

    async def retry(self) -> JobLifecycleState:
        """Submits a fresh job with the last name"""
        if self.state.phase == LifecyclePhase.creating:
            return self.state
        name = self.state.name
        self.cancel()
        return await self.start(name)

    async def wait(self, timeout: Optional[float] = None) -> JobLifecycleState:
        """Waits until the submission is no longer creating or polling"""
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.state

    def close(self) -> None:
        self._generation += 1
        self._in_flight = False
        self._cancel_reset()
        self._stop_tracking()
