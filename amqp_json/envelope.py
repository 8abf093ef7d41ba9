"""JSON envelope codec for message bodies."""

import json
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from aio_pika.abc import AbstractIncomingMessage
from pydantic import BaseModel

from .exceptions import EnvelopeEncodeError
from .logging import get_logger
from .models import CONTENT_ENCODING, CONTENT_TYPE

logger = get_logger(__name__)

ISO_DATE_PATTERN = re.compile(
    r"^\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z$",
    re.ASCII,
)

__all__ = [
    "CONTENT_ENCODING",
    "CONTENT_TYPE",
    "ISO_DATE_PATTERN",
    "JsonMessage",
    "decode_body",
    "decode_message",
    "encode_payload",
    "format_date",
    "is_json_content_type",
]


def format_date(value: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SS.sssZ`` in UTC.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, datetime):
        return format_date(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(payload: Any) -> bytes:
    """
    Serialize a payload into a compact UTF-8 JSON body.

    Args:
        payload: JSON tree; datetimes, UUIDs, enums and pydantic models are converted

    Returns:
        Encoded message body

    Raises:
        EnvelopeEncodeError: If the payload cannot be represented as JSON
    """
    try:
        text = json.dumps(payload, default=_default, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise EnvelopeEncodeError(f"Cannot encode payload as JSON: {e}") from e
    return text.encode("utf-8")


def _revive(value: Any) -> Any:
    if isinstance(value, str) and ISO_DATE_PATTERN.match(value):
        try:
            return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f%z")
        except ValueError:
            # shaped like a date but not a real one (e.g. month 13)
            return value
    if isinstance(value, list):
        return [_revive(item) for item in value]
    return value


def _revive_object(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _revive(value) for key, value in obj.items()}


def decode_body(body: bytes, parse_dates: bool = False) -> Any:
    """
    Parse a UTF-8 JSON body.

    With ``parse_dates`` every string of the form
    ``YYYY-MM-DDTHH:MM:SS.sssZ`` becomes a timezone-aware UTC datetime.

    Raises:
        ValueError: If the body is not valid UTF-8 JSON
    """
    text = body.decode("utf-8")
    if not parse_dates:
        return json.loads(text)
    return _revive(json.loads(text, object_hook=_revive_object))


def is_json_content_type(content_type: Optional[str]) -> bool:
    """Check whether a content type denotes a JSON body."""
    return bool(content_type) and content_type.startswith(CONTENT_TYPE)


@dataclass
class JsonMessage:
    """
    Delivered message with its decoded JSON payload.

    ``decoded`` is False when the message was not JSON or its body could
    not be parsed; ``payload`` is then None and the raw body is still
    available on ``message``.
    """

    message: AbstractIncomingMessage
    payload: Any = None
    decoded: bool = False

    @property
    def body(self) -> bytes:
        return self.message.body

    @property
    def routing_key(self) -> Optional[str]:
        return self.message.routing_key

    @property
    def content_type(self) -> Optional[str]:
        return self.message.content_type

    @property
    def headers(self) -> Dict[str, Any]:
        return dict(self.message.headers or {})

    @property
    def message_id(self) -> Optional[str]:
        return self.message.message_id

    @property
    def correlation_id(self) -> Optional[str]:
        return self.message.correlation_id

    @property
    def redelivered(self) -> Optional[bool]:
        return self.message.redelivered

    async def ack(self, multiple: bool = False) -> None:
        await self.message.ack(multiple=multiple)

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        await self.message.nack(multiple=multiple, requeue=requeue)

    async def reject(self, requeue: bool = False) -> None:
        await self.message.reject(requeue=requeue)

    def process(self, requeue: bool = False, **kwargs: Any):
        """Acknowledge on exit, reject on error (see ``IncomingMessage.process``)."""
        return self.message.process(requeue=requeue, **kwargs)


def decode_message(message: AbstractIncomingMessage, parse_dates: bool = False) -> JsonMessage:
    """
    Wrap a delivered message, decoding its body when it is JSON.

    Decoding is best effort: a malformed body is logged and the message is
    returned undecoded, never raising.
    """
    if not is_json_content_type(message.content_type):
        return JsonMessage(message)

    try:
        payload = decode_body(message.body, parse_dates=parse_dates)
    except ValueError as e:
        logger.debug(
            "Could not decode JSON message body",
            routing_key=message.routing_key,
            error=str(e),
        )
        return JsonMessage(message)

    return JsonMessage(message, payload=payload, decoded=True)
