"""Message records and the payload delivered to webhooks."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

_TIME_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


class MessageStatus(str, Enum):
    """Delivery state of a message."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """A message queued for delivery to a webhook."""

    id: int
    recipient: str = ""
    content: str = ""
    webhook_url: str = ""
    status: MessageStatus = MessageStatus.PENDING
    retry_count: int = 0
    max_retries: int = 0
    error_message: str | None = None
    sent_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def can_retry(self) -> bool:
        """True while the message has retries left."""
        return self.retry_count < self.max_retries


@dataclass
class CreateMessageRequest:
    """Input for creating a new message."""

    recipient: str = ""
    content: str = ""
    webhook_url: str = ""
    max_retries: int = 0


@dataclass
class MessageMetadata:
    """Summary of a delivered message kept in the cache."""

    id: int
    recipient: str
    status: str
    sent_at: datetime
    retry_count: int = 0
    max_retries: int = 0
    webhook_url: str = ""


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 text with trailing fractional zeros dropped and ``Z`` for UTC."""
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    frac = f"{moment.microsecond:06d}".rstrip("0")
    if frac:
        text += "." + frac
    offset = moment.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def parse_timestamp(text: str) -> datetime:
    """Parse RFC 3339 text, keeping at most microsecond precision."""
    match = _TIME_RE.fullmatch(text)
    if not match:
        raise ValueError(f"invalid timestamp {text!r}")
    base, frac, zone = match.groups()
    micro = (frac or "")[:6].ljust(6, "0")
    zone = "+00:00" if zone == "Z" else zone
    return datetime.fromisoformat(f"{base}.{micro}{zone}")


@dataclass
class WebhookPayload:
    """The JSON body posted to a message's webhook URL."""

    message_id: int
    recipient: str
    content: str
    status: str
    created_at: datetime
    sent_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "recipient": self.recipient,
            "content": self.content,
            "status": self.status,
            "created_at": format_timestamp(self.created_at),
            "sent_at": format_timestamp(self.sent_at),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json(cls, data: str | bytes) -> WebhookPayload:
        raw = json.loads(data)
        try:
            return cls(
                message_id=int(raw["message_id"]),
                recipient=str(raw["recipient"]),
                content=str(raw["content"]),
                status=str(raw["status"]),
                created_at=parse_timestamp(raw["created_at"]),
                sent_at=parse_timestamp(raw["sent_at"]),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"invalid webhook payload: {exc}") from exc