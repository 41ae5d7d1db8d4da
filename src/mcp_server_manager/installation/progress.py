"""Installation progress events and subscriptions."""

from dataclasses import dataclass
from typing import Callable, List

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification for an install or uninstall."""

    server_name: str
    status: str
    percent: int
    operation: str = "install"

    def to_dict(self) -> dict:
        return {
            "serverName": self.server_name,
            "status": self.status,
            "percent": self.percent,
            "operation": self.operation,
        }


ProgressCallback = Callable[[ProgressEvent], None]


class Subscription:
    """Handle returned by ``ProgressReporter.subscribe``."""

    def __init__(self, reporter: "ProgressReporter", callback: ProgressCallback):
        self._reporter = reporter
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._reporter._remove(self._callback)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.unsubscribe()


class ProgressReporter:
    """Fan-out of progress events to subscribed callbacks."""

    def __init__(self):
        self._callbacks: List[ProgressCallback] = []

    def subscribe(self, callback: ProgressCallback) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def _remove(self, callback: ProgressCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def emit(
        self,
        server_name: str,
        status: str,
        percent: int,
        operation: str = "install",
    ) -> ProgressEvent:
        """Deliver an event to every subscriber.

        A failing callback is logged and does not affect the others.
        """
        event = ProgressEvent(
            server_name=server_name,
            status=status,
            percent=max(0, min(100, int(percent))),
            operation=operation,
        )
        logger.debug("Progress", **event.to_dict())

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.warning("Progress callback failed", error=str(e))
        return event

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)
