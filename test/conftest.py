import asyncio
from typing import Dict, List, Optional, Sequence, Union

import pytest
from job_tracking_client.models import CREATE_JOB, JobKind, JobRecord, PollConfig
from job_tracking_client.notifications import NotificationKind

Step = Union[JobRecord, BaseException]


class FakeJobStore:
    """Scripted job store: each job id replays its status steps, repeating the last one"""

    def __init__(
        self,
        steps: Optional[Sequence[Step]] = None,
        ids: Optional[Sequence[Optional[str]]] = None,
    ):
        self.steps: List[Step] = list(steps or [])
        self.ids = list(ids) if ids is not None else None
        self.create_error: Optional[Exception] = None
        self.create_gate: Optional[asyncio.Future] = None
        self.fetch_gate: Optional[asyncio.Future] = None
        self.created: List[dict] = []
        self.fetched: List[str] = []
        self.aborts: List[Optional[asyncio.Event]] = []
        self._cursor: Dict[str, int] = {}

    async def create(self, payload: dict) -> JobRecord:
        self.created.append(payload)
        if self.create_gate is not None:
            await self.create_gate
        if self.create_error is not None:
            error, self.create_error = self.create_error, None
            raise error
        if self.ids is not None:
            job_id = self.ids.pop(0)
        else:
            job_id = str(len(self.created))
        return JobRecord(id=job_id, name=payload.get("name"), status="queued", progress=0)

    async def fetch(
        self, job_id: str, abort: Optional[asyncio.Event] = None
    ) -> JobRecord:
        self.fetched.append(job_id)
        self.aborts.append(abort)
        if self.fetch_gate is not None:
            await self.fetch_gate
        index = self._cursor.get(job_id, 0)
        self._cursor[job_id] = index + 1
        step = self.steps[min(index, len(self.steps) - 1)]
        if isinstance(step, BaseException):
            raise step
        return step.model_copy(update={"id": job_id})


class RecordingNotifier:
    def __init__(self):
        self.messages: List[tuple] = []

    def notify(self, message: str, kind: NotificationKind) -> None:
        self.messages.append((message, NotificationKind(kind)))

    def of_kind(self, kind: NotificationKind) -> List[str]:
        return [message for message, k in self.messages if k == kind]


class RecordingSleep:
    """Stands in for asyncio.sleep; records each delay and only yields once"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def record(status: Optional[str], progress: Optional[float]) -> JobRecord:
    return JobRecord(id="0", status=status, progress=progress)


@pytest.fixture
def fast_kind() -> JobKind:
    """Create job tuned for tests: quick polling, no ticking, short reset"""
    return CREATE_JOB.model_copy(
        update={
            "poll": PollConfig(
                interval=0.01, max_interval=0.05, jitter=0.0, timeout=5.0
            ),
            "tick_interval": 60.0,
            "reset_delay": 0.05,
        }
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
