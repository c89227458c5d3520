import asyncio
import random
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from loguru import logger
from job_tracking_client.errors import (
    PollTimeoutError,
    error_retry_after,
    error_status,
)
from job_tracking_client.models import PollConfig

T = TypeVar("T")

Operation = Callable[[asyncio.Event], Awaitable[T]]


class PollSession:
    """State of one polling run; never reused across restarts"""

    def __init__(self, config: PollConfig):
        self.config = config
        self.interval = config.interval
        self.override_delay: Optional[float] = None
        self.started_at = asyncio.get_event_loop().time()
        self.abort: Optional[asyncio.Event] = None
        self.task: Optional[asyncio.Task] = None
        self.closed = False

    def new_token(self) -> asyncio.Event:
        self.abort_inflight()
        self.abort = asyncio.Event()
        return self.abort

    def abort_inflight(self) -> None:
        if self.abort is not None:
            self.abort.set()

    def elapsed(self) -> float:
        return asyncio.get_event_loop().time() - self.started_at

    def reset_interval(self) -> None:
        self.interval = self.config.interval
        self.override_delay = None

    def back_off(self, retry_after: Optional[float] = None) -> None:
        self.interval = min(
            self.interval * self.config.backoff_factor, self.config.max_interval
        )
        self.override_delay = retry_after

    def next_delay(self) -> float:
        delay = self.override_delay if self.override_delay else self.interval
        self.override_delay = None

        half = self.config.jitter / 2
        if half:
            delay += random.uniform(-half, half)
        return max(0.0, delay)

    def close(self) -> None:
        self.closed = True
        self.abort_inflight()
        if self.task is not None and self.task is not asyncio.current_task():
            self.task.cancel()


class PollEngine(Generic[T]):
    """Runs `operation` over and over until a stop condition, a terminal error
    or teardown.

    `on_stop` fires when a session ends without a result or an error to report,
    which happens when the call itself reports cancellation.
    """

    def __init__(
        self,
        on_result: Optional[Callable[[T], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_stop: Optional[Callable[[], Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.on_result = on_result
        self.on_error = on_error
        self.on_stop = on_stop
        self.logger = logger
        self.result: Optional[T] = None
        self.error: Optional[BaseException] = None
        self.running = False
        self._sleep = sleep or asyncio.sleep
        self._session: Optional[PollSession] = None

    @property
    def interval(self) -> Optional[float]:
        """Current effective interval of the active session"""
        return self._session.interval if self._session is not None else None

    def start(self, operation: Operation, config: PollConfig) -> None:
        """Tears down any previous session and starts polling `operation` afresh"""
        self.stop()

        if not config.enabled:
            return

        self.result = None
        self.error = None
        self.running = True

        session = PollSession(config)
        self._session = session
        session.task = asyncio.create_task(self._run(session, operation))

    def stop(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.close()
        self.running = False

    async def wait(self) -> None:
        """Waits for the active session to finish on its own"""
        session = self._session
        if session is not None and session.task is not None:
            await asyncio.wait({session.task})

    async def __aenter__(self) -> "PollEngine[T]":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()

    def _is_retryable(self, exc: BaseException, config: PollConfig) -> bool:
        return error_status(exc) in config.retryable_statuses

    def _publish_result(self, result: T) -> None:
        self.result = result
        if self.on_result is not None:
            self.on_result(result)

    def _fail(self, session: PollSession, exc: BaseException) -> None:
        self.logger.error(f"Polling stopped: {exc}")
        self.error = exc
        self.running = False
        if self._session is session:
            self._session = None
        session.closed = True
        if self.on_error is not None:
            self.on_error(exc)

    def _finish(self, session: PollSession) -> None:
        self.running = False
        if self._session is session:
            self._session = None
        session.closed = True

    async def _run(self, session: PollSession, operation: Operation) -> None:
        config = session.config

        while not session.closed:
            token = session.new_token()
            try:
                result = await operation(token)
            except asyncio.CancelledError:
                if session.closed or asyncio.current_task().cancelling():
                    raise
                self.logger.debug("Status call cancelled, dropping cycle")
                self._finish(session)
                if self.on_stop is not None:
                    self.on_stop()
                return
            except Exception as exc:
                if session.closed:
                    return
                if not self._is_retryable(exc, config):
                    self._fail(session, exc)
                    return
                retry_after = error_retry_after(exc)
                session.back_off(retry_after)
                self.logger.debug(
                    f"Retryable failure ({error_status(exc)}), interval now "
                    f"{session.interval:.2f}s"
                    + (f", server asks for {retry_after:.2f}s" if retry_after else "")
                )
            else:
                if session.closed:
                    return
                session.reset_interval()
                self._publish_result(result)
                if session.closed:
                    return
                if config.stop_when is not None and config.stop_when(result):
                    self._finish(session)
                    return

            if session.elapsed() > config.timeout:
                self._fail(session, PollTimeoutError(config.timeout))
                return

            delay = session.next_delay()
            self.logger.debug(f"Next status check in {delay:.2f}s")
            await self._sleep(delay)
