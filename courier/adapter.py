"""Bridges the message service to the scheduler's expected interface."""

from __future__ import annotations

from courier.service import SCHEDULER_BATCH_SIZE, MessageService


class SchedulerAdapter:
    """Exposes the two no-argument operations the scheduler calls."""

    def __init__(self, message_service: MessageService) -> None:
        self._service = message_service

    def process_pending_messages(self) -> None:
        self._service.process_pending_messages()

    def retry_failed_messages(self) -> None:
        self._service.retry_failed_messages(SCHEDULER_BATCH_SIZE)