import io
from datetime import datetime, timezone
from unittest.mock import Mock, call

import pytest

from courier.logger import Level, Logger
from courier.models import CreateMessageRequest, Message, MessageMetadata, MessageStatus
from courier.service import MessageService, MessageServiceError, ValidationError


@pytest.fixture
def logger():
    return Logger(level=Level.ERROR, stream=io.StringIO())


@pytest.fixture
def repo():
    return Mock()


@pytest.fixture
def service(repo, logger):
    return MessageService(repo, logger)


def _request(**overrides):
    values = dict(
        recipient="test@example.com",
        content="Test message",
        webhook_url="https://example.com/webhook",
        max_retries=3,
    )
    values.update(overrides)
    return CreateMessageRequest(**values)


def _pending(message_id, n):
    return Message(
        id=message_id,
        recipient=f"test{n}@example.com",
        content=f"Message {n}",
        webhook_url=f"https://example.com/webhook{n}",
        status=MessageStatus.PENDING,
    )


def test_create_message_success(service, repo):
    req = _request()
    now = datetime.now(timezone.utc)
    expected = Message(
        id=1,
        recipient=req.recipient,
        content=req.content,
        webhook_url=req.webhook_url,
        status=MessageStatus.PENDING,
        max_retries=req.max_retries,
        created_at=now,
        updated_at=now,
    )
    repo.create.return_value = expected

    message = service.create_message(req)

    assert message == expected
    repo.create.assert_called_once_with(req)


@pytest.mark.parametrize(
    "req, text",
    [
        (CreateMessageRequest(content="Test message", webhook_url="https://example.com/webhook"),
         "recipient is required"),
        (CreateMessageRequest(recipient="test@example.com", webhook_url="https://example.com/webhook"),
         "content is required"),
        (CreateMessageRequest(recipient="test@example.com", content="Test message"),
         "webhook URL is required"),
    ],
)
def test_create_message_validation_errors(service, repo, req, text):
    with pytest.raises(ValidationError, match=text):
        service.create_message(req)
    repo.create.assert_not_called()


def test_create_message_repository_error(service, repo):
    repo.create.side_effect = RuntimeError("database error")
    with pytest.raises(MessageServiceError, match="failed to create message"):
        service.create_message(_request(max_retries=0))


def test_process_unsent_messages_success(service, repo):
    repo.select_unsent_for_update.return_value = [_pending(1, 1), _pending(2, 2)]

    processed = service.process_unsent_messages(10)

    assert processed == 2
    repo.select_unsent_for_update.assert_called_once_with(10)
    assert repo.mark_sent.call_args_list == [call(1), call(2)]


def test_process_unsent_messages_none_found(service, repo):
    repo.select_unsent_for_update.return_value = []
    assert service.process_unsent_messages(10) == 0
    repo.mark_sent.assert_not_called()


def test_process_unsent_messages_repository_error(service, repo):
    repo.select_unsent_for_update.side_effect = RuntimeError("database error")
    with pytest.raises(MessageServiceError, match="failed to select unsent messages"):
        service.process_unsent_messages(10)


def test_process_unsent_counts_only_successful_marks(service, repo):
    repo.select_unsent_for_update.return_value = [_pending(1, 1), _pending(2, 2)]
    repo.mark_sent.side_effect = [RuntimeError("db down"), None]
    assert service.process_unsent_messages(10) == 1
    assert repo.mark_sent.call_count == 2


def test_webhook_failure_marks_message_failed(repo, logger):
    webhook = Mock()
    webhook.send_message.side_effect = RuntimeError("boom")
    svc = MessageService(repo, logger, webhook_client=webhook)
    repo.select_unsent_for_update.return_value = [_pending(7, 1)]

    assert svc.process_unsent_messages(5) == 0
    repo.mark_failed.assert_called_once_with(7, "boom")
    repo.mark_sent.assert_not_called()


def test_webhook_success_marks_sent_and_caches(repo, logger):
    webhook = Mock()
    cache = Mock()
    svc = MessageService(repo, logger, cache=cache, webhook_client=webhook)
    msg = _pending(3, 3)
    repo.select_unsent_for_update.return_value = [msg]

    assert svc.process_unsent_messages(5) == 1
    webhook.send_message.assert_called_once_with(msg)
    repo.mark_sent.assert_called_once_with(3)
    (metadata,), _ = cache.cache_message_metadata.call_args
    assert isinstance(metadata, MessageMetadata)
    assert metadata.id == 3
    assert metadata.status == "sent"
    assert metadata.recipient == msg.recipient
    assert metadata.webhook_url == msg.webhook_url


def test_cache_failure_does_not_fail_processing(repo, logger):
    cache = Mock()
    cache.cache_message_metadata.side_effect = RuntimeError("redis down")
    svc = MessageService(repo, logger, cache=cache)
    repo.select_unsent_for_update.return_value = [_pending(1, 1)]
    assert svc.process_unsent_messages(5) == 1


def test_get_message_success(service, repo):
    expected = Message(
        id=1,
        recipient="test@example.com",
        content="Test message",
        webhook_url="https://example.com/webhook",
        status=MessageStatus.SENT,
    )
    repo.get_by_id.return_value = expected
    assert service.get_message(1) == expected
    repo.get_by_id.assert_called_once_with(1)


def test_get_message_not_found(service, repo):
    repo.get_by_id.side_effect = LookupError("message not found")
    with pytest.raises(MessageServiceError, match="failed to get message"):
        service.get_message(999)


def test_get_sent_messages_success(service, repo):
    messages = [
        Message(id=1, recipient="test1@example.com", status=MessageStatus.SENT),
        Message(id=2, recipient="test2@example.com", status=MessageStatus.SENT),
    ]
    repo.get_sent_messages.return_value = (messages, 25)

    result, total = service.get_sent_messages(0, 10)

    assert result == messages
    assert total == 25
    repo.get_sent_messages.assert_called_once_with(0, 10)


def test_get_sent_messages_repository_error(service, repo):
    repo.get_sent_messages.side_effect = RuntimeError("database error")
    with pytest.raises(MessageServiceError, match="failed to get sent messages"):
        service.get_sent_messages(0, 10)


def test_retry_failed_messages_success(service, repo):
    repo.get_failed_messages.return_value = [
        Message(id=1, recipient="test1@example.com", status=MessageStatus.FAILED,
                retry_count=1, max_retries=3),
        Message(id=2, recipient="test2@example.com", status=MessageStatus.FAILED,
                retry_count=2, max_retries=3),
    ]

    assert service.retry_failed_messages(10) == 2
    repo.get_failed_messages.assert_called_once_with(10)
    assert repo.mark_sent.call_args_list == [call(1), call(2)]


def test_retry_failed_messages_none(service, repo):
    repo.get_failed_messages.return_value = []
    assert service.retry_failed_messages(10) == 0


def test_retry_failed_messages_repository_error(service, repo):
    repo.get_failed_messages.side_effect = RuntimeError("database error")
    with pytest.raises(MessageServiceError, match="failed to get failed messages"):
        service.retry_failed_messages(10)


def test_retry_skips_exhausted_messages(service, repo):
    repo.get_failed_messages.return_value = [
        Message(id=1, status=MessageStatus.FAILED, retry_count=3, max_retries=3),
        Message(id=2, status=MessageStatus.FAILED, retry_count=0, max_retries=3),
    ]
    assert service.retry_failed_messages(10) == 1
    repo.mark_sent.assert_called_once_with(2)


def test_retry_failure_marks_failed_again(repo, logger):
    webhook = Mock()
    webhook.send_message.side_effect = RuntimeError("boom")
    svc = MessageService(repo, logger, webhook_client=webhook)
    repo.get_failed_messages.return_value = [
        Message(id=4, status=MessageStatus.FAILED, retry_count=0, max_retries=3,
                webhook_url="https://example.com/webhook"),
    ]

    assert svc.retry_failed_messages(10) == 0
    assert repo.mark_failed.call_count == 2
    assert repo.mark_failed.call_args_list[0] == call(4, "boom")
    assert "webhook delivery failed" in repo.mark_failed.call_args_list[1].args[1]


def test_process_pending_messages_uses_default_batch(service, repo):
    repo.select_unsent_for_update.return_value = []
    assert service.process_pending_messages() is None
    repo.select_unsent_for_update.assert_called_once_with(10)


def test_process_pending_messages_propagates_errors(service, repo):
    repo.select_unsent_for_update.side_effect = RuntimeError("database error")
    with pytest.raises(MessageServiceError):
        service.process_pending_messages()


def test_retry_failed_messages_for_scheduler_uses_default_batch(service, repo):
    repo.get_failed_messages.return_value = []
    assert service.retry_failed_messages_for_scheduler() is None
    repo.get_failed_messages.assert_called_once_with(10)