"""Background loops that process pending and failed messages periodically."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Protocol

from courier.config import format_duration
from courier.logger import Logger


class SchedulerError(Exception):
    """Raised on an invalid scheduler state change."""


class PendingProcessor(Protocol):
    def process_pending_messages(self) -> None: ...

    def retry_failed_messages(self) -> None: ...


@dataclass
class SchedulerConfig:
    """Intervals of the two loops, in seconds."""

    processing_interval: float = 30.0
    retry_interval: float = 300.0


class Scheduler:
    """Runs message processing and retrying on fixed intervals in threads."""

    def __init__(
        self,
        message_service: PendingProcessor,
        logger: Logger | None = None,
        config: SchedulerConfig | None = None,
    ) -> None:
        config = config if config is not None else SchedulerConfig()
        self._service = message_service
        self._logger = (logger if logger is not None else Logger()).with_component("scheduler")
        self.processing_interval = config.processing_interval
        self.retry_interval = config.retry_interval
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._running = False

    def __enter__(self) -> Scheduler:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.is_running():
            self.stop()

    def start(self) -> None:
        """Start both loops; raise SchedulerError if already running."""
        with self._lock:
            if self._running:
                raise SchedulerError("scheduler is already running")
            self._stop_event = threading.Event()
            self._running = True
            self._logger.info(
                "Starting scheduler",
                processing_interval=format_duration(self.processing_interval),
                retry_interval=format_duration(self.retry_interval),
            )
            self._threads = [
                threading.Thread(
                    target=self._loop,
                    args=(self.processing_interval, self._process_once, "Message processing"),
                    name="scheduler-process",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._loop,
                    args=(self.retry_interval, self._retry_once, "Retry processing"),
                    name="scheduler-retry",
                    daemon=True,
                ),
            ]
            for thread in self._threads:
                thread.start()

    def stop(self) -> None:
        """Stop both loops and wait for them; raise SchedulerError if not running."""
        with self._lock:
            if not self._running:
                raise SchedulerError("scheduler is not running")
            self._logger.info("Stopping scheduler")
            self._stop_event.set()
            for thread in self._threads:
                thread.join()
            self._threads = []
            self._running = False
            self._logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "running": self._running,
                "processing_interval": format_duration(self.processing_interval),
                "retry_interval": format_duration(self.retry_interval),
            }

    def _loop(self, interval: float, work, label: str) -> None:
        stop = self._stop_event
        self._logger.info(f"{label} loop started")
        while not stop.wait(interval):
            work()
        self._logger.info(f"{label} loop stopped")

    def _process_once(self) -> None:
        self._logger.debug("Processing pending messages")
        try:
            self._service.process_pending_messages()
        except Exception as exc:
            self._logger.error("Failed to process pending messages", error=str(exc))
            return
        self._logger.debug("Pending messages processed successfully")

    def _retry_once(self) -> None:
        self._logger.debug("Retrying failed messages")
        try:
            self._service.retry_failed_messages()
        except Exception as exc:
            self._logger.error("Failed to retry failed messages", error=str(exc))
            return
        self._logger.debug("Failed messages retry completed")