"""Business logic for creating, delivering and retrying messages."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol, Sequence

from courier.logger import Logger
from courier.models import CreateMessageRequest, Message, MessageMetadata

SCHEDULER_BATCH_SIZE = 10


class MessageServiceError(Exception):
    """An operation of the message service failed."""


class ValidationError(MessageServiceError):
    """A request to the message service is missing required data."""


class MessageRepository(Protocol):
    def create(self, request: CreateMessageRequest) -> Message: ...

    def select_unsent_for_update(self, limit: int) -> Sequence[Message]: ...

    def mark_sent(self, message_id: int) -> None: ...

    def mark_failed(self, message_id: int, error_message: str) -> None: ...

    def get_by_id(self, message_id: int) -> Message: ...

    def get_sent_messages(self, offset: int, limit: int) -> tuple[Sequence[Message], int]: ...

    def get_failed_messages(self, limit: int) -> Sequence[Message]: ...


class MetadataCache(Protocol):
    def cache_message_metadata(self, metadata: MessageMetadata) -> None: ...


class MessageSender(Protocol):
    def send_message(self, message: Message) -> None: ...


class MessageService:
    """Creates messages and delivers them through an optional webhook client."""

    def __init__(
        self,
        repo: MessageRepository,
        logger: Logger | None = None,
        *,
        cache: MetadataCache | None = None,
        webhook_client: MessageSender | None = None,
    ) -> None:
        self._repo = repo
        self._logger = logger if logger is not None else Logger()
        self._cache = cache
        self._webhook = webhook_client

    def create_message(self, request: CreateMessageRequest) -> Message:
        """Validate and store a new message."""
        if not request.recipient:
            raise ValidationError("recipient is required")
        if not request.content:
            raise ValidationError("content is required")
        if not request.webhook_url:
            raise ValidationError("webhook URL is required")

        self._logger.info(
            "Creating new message",
            recipient=request.recipient,
            webhook_url=request.webhook_url,
            max_retries=request.max_retries,
        )
        try:
            message = self._repo.create(request)
        except Exception as exc:
            self._logger.error(
                "Failed to create message", error=str(exc), recipient=request.recipient
            )
            raise MessageServiceError(f"failed to create message: {exc}") from exc

        self._logger.info(
            "Message created successfully",
            message_id=message.id,
            recipient=message.recipient,
        )
        return message

    def process_unsent_messages(self, batch_size: int) -> int:
        """Deliver up to ``batch_size`` unsent messages; return how many succeeded."""
        self._logger.info("Processing unsent messages", batch_size=batch_size)
        try:
            messages = list(self._repo.select_unsent_for_update(batch_size))
        except Exception as exc:
            self._logger.error("Failed to select unsent messages", error=str(exc))
            raise MessageServiceError(f"failed to select unsent messages: {exc}") from exc

        if not messages:
            self._logger.debug("No unsent messages found")
            return 0

        processed = 0
        for message in messages:
            try:
                self._process_message(message)
            except Exception as exc:
                self._logger.error(
                    "Failed to process message", message_id=message.id, error=str(exc)
                )
                continue
            processed += 1

        self._logger.info(
            "Processed unsent messages",
            total_found=len(messages),
            successfully_processed=processed,
        )
        return processed

    def _process_message(self, message: Message) -> None:
        self._logger.debug(
            "Processing message",
            message_id=message.id,
            recipient=message.recipient,
            retry_count=message.retry_count,
        )

        if self._webhook is not None:
            try:
                self._webhook.send_message(message)
            except Exception as exc:
                self._logger.error(
                    "Failed to send webhook",
                    message_id=message.id,
                    webhook_url=message.webhook_url,
                    error=str(exc),
                )
                try:
                    self._repo.mark_failed(message.id, str(exc))
                except Exception as mark_exc:
                    self._logger.error(
                        "Failed to mark message as failed",
                        message_id=message.id,
                        error=str(mark_exc),
                    )
                    raise MessageServiceError(
                        f"failed to mark message as failed: {mark_exc}"
                    ) from mark_exc
                raise MessageServiceError(f"webhook delivery failed: {exc}") from exc
        else:
            self._logger.debug(
                "No webhook client configured, skipping webhook delivery",
                message_id=message.id,
            )

        try:
            self._repo.mark_sent(message.id)
        except Exception as exc:
            raise MessageServiceError(f"failed to mark message as sent: {exc}") from exc

        if self._cache is not None:
            metadata = MessageMetadata(
                id=int(message.id),
                recipient=message.recipient,
                status="sent",
                sent_at=datetime.now(timezone.utc),
                retry_count=message.retry_count,
                max_retries=message.max_retries,
                webhook_url=message.webhook_url,
            )
            try:
                self._cache.cache_message_metadata(metadata)
            except Exception as exc:
                self._logger.warn(
                    "Failed to cache message metadata",
                    message_id=message.id,
                    error=str(exc),
                )

        self._logger.info(
            "Message processed successfully",
            message_id=message.id,
            recipient=message.recipient,
        )

    def get_message(self, message_id: int) -> Message:
        """Fetch one message by its id."""
        self._logger.debug("Getting message", message_id=message_id)
        try:
            return self._repo.get_by_id(message_id)
        except Exception as exc:
            self._logger.error("Failed to get message", message_id=message_id, error=str(exc))
            raise MessageServiceError(f"failed to get message: {exc}") from exc

    def get_sent_messages(self, offset: int, limit: int) -> tuple[list[Message], int]:
        """Return a page of sent messages and the total number of sent messages."""
        self._logger.debug("Getting sent messages", offset=offset, limit=limit)
        try:
            messages, total = self._repo.get_sent_messages(offset, limit)
        except Exception as exc:
            self._logger.error(
                "Failed to get sent messages", offset=offset, limit=limit, error=str(exc)
            )
            raise MessageServiceError(f"failed to get sent messages: {exc}") from exc

        messages = list(messages)
        self._logger.debug("Retrieved sent messages", count=len(messages), total=total)
        return messages, total

    def retry_failed_messages(self, batch_size: int) -> int:
        """Redeliver failed messages that have retries left; return how many succeeded."""
        self._logger.info("Retrying failed messages", batch_size=batch_size)
        try:
            messages = list(self._repo.get_failed_messages(batch_size))
        except Exception as exc:
            self._logger.error("Failed to get failed messages", error=str(exc))
            raise MessageServiceError(f"failed to get failed messages: {exc}") from exc

        if not messages:
            self._logger.debug("No failed messages found for retry")
            return 0

        retried = 0
        for message in messages:
            if not message.can_retry():
                self._logger.debug(
                    "Message cannot be retried",
                    message_id=message.id,
                    retry_count=message.retry_count,
                    max_retries=message.max_retries,
                )
                continue
            try:
                self._process_message(message)
            except Exception as exc:
                self._logger.error(
                    "Failed to retry message", message_id=message.id, error=str(exc)
                )
                try:
                    self._repo.mark_failed(message.id, str(exc))
                except Exception as mark_exc:
                    self._logger.error(
                        "Failed to mark message as failed",
                        message_id=message.id,
                        error=str(mark_exc),
                    )
                continue
            retried += 1

        self._logger.info(
            "Retried failed messages",
            total_found=len(messages),
            successfully_retried=retried,
        )
        return retried

    def process_pending_messages(self) -> None:
        """Process one default-sized batch of unsent messages."""
        self.process_unsent_messages(SCHEDULER_BATCH_SIZE)

    def retry_failed_messages_for_scheduler(self) -> None:
        """Retry one default-sized batch of failed messages."""
        self.retry_failed_messages(SCHEDULER_BATCH_SIZE)