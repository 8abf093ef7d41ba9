"""Pydantic models for amqp-json topology and message options."""

from collections.abc import Mapping, Sequence
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from aio_pika import DeliveryMode, ExchangeType
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .exceptions import ExchangeSpecError

CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "UTF-8"

DEFAULT_TEMPORARY_QUEUE_EXPIRES = 60000

# QueueOptions field -> x-argument understood by RabbitMQ
_QUEUE_ARGUMENTS = {
    "expires": "x-expires",
    "message_ttl": "x-message-ttl",
    "dead_letter_exchange": "x-dead-letter-exchange",
    "dead_letter_routing_key": "x-dead-letter-routing-key",
    "max_length": "x-max-length",
    "max_priority": "x-max-priority",
}


class _Options(BaseModel):
    """Option set that can be overlaid by caller-supplied values.

    Field names are snake_case; the camelCase spelling (``autoDelete``,
    ``contentType``) is accepted as well.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    # dict fields combined key by key instead of being replaced
    merged_fields: ClassVar[Tuple[str, ...]] = ()

    def merge(self, overrides: Union["_Options", Mapping[str, Any], None] = None):
        """Return a copy with every explicitly set override applied."""
        if overrides is None:
            return self.model_copy(deep=True)
        if not isinstance(overrides, type(self)):
            overrides = type(self).model_validate(dict(overrides))

        update = overrides.model_dump(exclude_unset=True)
        for name in self.merged_fields:
            if update.get(name) is not None and getattr(self, name):
                update[name] = {**getattr(self, name), **update[name]}
        return self.model_copy(update=update, deep=True)


class QueueOptions(_Options):
    """Queue declaration options."""

    merged_fields: ClassVar[Tuple[str, ...]] = ("arguments",)

    durable: bool = False
    auto_delete: bool = False
    exclusive: bool = False
    expires: Optional[int] = Field(default=None, gt=0, description="Idle expiry in milliseconds")
    message_ttl: Optional[int] = Field(default=None, ge=0, description="Message TTL in milliseconds")
    dead_letter_exchange: Optional[str] = None
    dead_letter_routing_key: Optional[str] = None
    max_length: Optional[int] = Field(default=None, ge=0)
    max_priority: Optional[int] = Field(default=None, ge=0, le=255)
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_queue(
        cls,
        queue_name: Optional[str],
        expires: int = DEFAULT_TEMPORARY_QUEUE_EXPIRES,
    ) -> "QueueOptions":
        """
        Compute default options for a named or server-named queue.

        A named queue is durable and kept; a server-named queue is
        auto-deleted and expires after ``expires`` ms without consumers.
        """
        options = cls(durable=bool(queue_name), auto_delete=not queue_name)
        if not queue_name:
            options.expires = expires
        return options

    def declare_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``channel.declare_queue``."""
        arguments = dict(self.arguments)
        for field, key in _QUEUE_ARGUMENTS.items():
            value = getattr(self, field)
            if value is not None:
                arguments[key] = value

        return {
            "durable": self.durable,
            "auto_delete": self.auto_delete,
            "exclusive": self.exclusive,
            "arguments": arguments or None,
        }


class ExchangeSpec(_Options):
    """Exchange name, type and declaration options."""

    merged_fields: ClassVar[Tuple[str, ...]] = ("arguments",)

    name: str = Field(min_length=1)
    type: ExchangeType = ExchangeType.TOPIC
    durable: bool = True
    auto_delete: bool = False
    internal: bool = False
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def parse(
        cls,
        value: Union["ExchangeSpec", str, Sequence, Mapping[str, Any]],
        default_type: Union[ExchangeType, str] = ExchangeType.TOPIC,
    ) -> "ExchangeSpec":
        """
        Build a spec from a name, a ``(name, type)`` pair or a mapping.

        Raises:
            ExchangeSpecError: If the value has no usable exchange name.
        """
        if isinstance(value, ExchangeSpec):
            return value
        if isinstance(value, str):
            name, exchange_type = value, default_type
        elif isinstance(value, Mapping):
            data = dict(value)
            data.setdefault("type", default_type)
            name, exchange_type = data.pop("name", None), data.pop("type")
            if name:
                return cls(name=name, type=exchange_type, **data)
        elif isinstance(value, Sequence) and len(value) == 2:
            name, exchange_type = value
        else:
            raise ExchangeSpecError(f"Cannot declare exchange from {value!r}")

        if not name:
            raise ExchangeSpecError("Exchange name must not be empty")
        return cls(name=name, type=exchange_type)

    def declare_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``channel.declare_exchange``."""
        return {
            "name": self.name,
            "type": self.type,
            "durable": self.durable,
            "auto_delete": self.auto_delete,
            "internal": self.internal,
            "arguments": dict(self.arguments) or None,
        }


class PublishOptions(_Options):
    """Message properties and publish flags for outgoing JSON messages."""

    merged_fields: ClassVar[Tuple[str, ...]] = ("headers",)

    content_type: str = CONTENT_TYPE
    content_encoding: str = CONTENT_ENCODING
    headers: Dict[str, Any] = Field(default_factory=dict)
    persistent: Optional[bool] = None
    delivery_mode: Optional[DeliveryMode] = None
    priority: Optional[int] = Field(default=None, ge=0, le=255)
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    expiration: Optional[float] = Field(
        default=None,
        ge=0,
        description=(
            "Message TTL in seconds, as aio-pika takes it. amqplib-style callers "
            "passing `expiration` in milliseconds must divide by 1000."
        ),
    )
    message_id: Optional[str] = None
    timestamp: Optional[Any] = None
    type: Optional[str] = None
    user_id: Optional[str] = None
    app_id: Optional[str] = None
    mandatory: bool = False

    def message_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``aio_pika.Message`` (without the body)."""
        kwargs = self.model_dump(
            exclude={"persistent", "mandatory", "headers"},
            exclude_none=True,
        )
        if self.headers:
            kwargs["headers"] = dict(self.headers)
        if self.delivery_mode is None and self.persistent is not None:
            kwargs["delivery_mode"] = (
                DeliveryMode.PERSISTENT if self.persistent else DeliveryMode.NOT_PERSISTENT
            )
        return kwargs


class ConsumeOptions(_Options):
    """Options for ``queue.consume``."""

    no_ack: bool = False
    exclusive: bool = False
    consumer_tag: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None

    def consume_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``queue.consume`` (without the callback)."""
        return self.model_dump()


class ConsumerInfo(BaseModel):
    """Topology recorded while setting up a consumer."""

    queue: str
    exchange: Optional[str] = None
    # first binding key, kept for callers that only know a single key
    bind_key: Optional[str] = None
    bind_keys: List[str] = Field(default_factory=list)
    options: QueueOptions
    parse_dates: bool = False
    consumer_tag: Optional[str] = None
