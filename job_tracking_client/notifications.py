import time
from enum import Enum
from typing import Optional, Protocol, Tuple

from loguru import logger


class NotificationKind(str, Enum):
    info = "info"
    success = "success"
    error = "error"


class NotificationSink(Protocol):
    def notify(self, message: str, kind: NotificationKind) -> None: ...


class LogNotifier:
    """Surfaces user-facing messages through the log.

    An identical message arriving again within `dedupe_window` seconds is
    dropped.
    """

    def __init__(self, dedupe_window: float = 1.2):
        self.dedupe_window = dedupe_window
        self.logger = logger
        self._last: Optional[Tuple[str, float]] = None

    def notify(self, message: str, kind: NotificationKind = NotificationKind.info) -> None:
        now = time.monotonic()
        if self._last is not None:
            last_message, last_at = self._last
            if last_message == message and now - last_at < self.dedupe_window:
                return
        self._last = (message, now)

        kind = NotificationKind(kind)
        if kind == NotificationKind.error:
            self.logger.warning(f"[{kind.value}] {message}")
        else:
            self.logger.info(f"[{kind.value}] {message}")
