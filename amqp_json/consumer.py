"""JSON consumer setup on top of an aio-pika channel."""

import asyncio
import functools
import inspect
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from .config import get_settings
from .envelope import JsonMessage, decode_message
from .exceptions import ConsumerStateError
from .logging import delivery_context, get_logger
from .models import ConsumeOptions, ConsumerInfo, ExchangeSpec, QueueOptions

logger = get_logger(__name__)

MessageHandler = Callable[[JsonMessage], Union[Awaitable[Any], Any]]

_PARSE_DATES_KEYS = ("parse_dates", "parseDates")


class JsonConsumer:
    """Queue consumer that hands decoded JSON messages to a handler."""

    def __init__(
        self,
        channel: AbstractChannel,
        queue: AbstractQueue,
        info: ConsumerInfo,
        exchange: Optional[AbstractExchange] = None,
    ):
        """
        Initialize consumer handle.

        Args:
            channel: Channel the topology was declared on (owned by the handle)
            queue: Declared queue
            info: Recorded topology
            exchange: Declared exchange, if any
        """
        self.channel = channel
        self.queue = queue
        self.exchange = exchange
        self.info = info
        self._consuming = False

    @property
    def queue_name(self) -> str:
        return self.info.queue

    @property
    def is_consuming(self) -> bool:
        """Check if consumer is currently consuming messages."""
        return self._consuming

    async def start_consuming(
        self,
        handler: MessageHandler,
        options: Union[ConsumeOptions, Mapping, None] = None,
    ) -> str:
        """
        Start consuming messages from the queue.

        Every delivery is wrapped in a :class:`JsonMessage` (decoded when the
        content type is JSON) and passed to ``handler``, which may be a plain
        function or a coroutine function.

        Args:
            handler: Message handler
            options: Consume options (``no_ack``, ``exclusive``, ...)

        Returns:
            Consumer tag assigned by the broker

        Raises:
            ConsumerStateError: If the consumer is already consuming
        """
        if self._consuming:
            raise ConsumerStateError(f"Already consuming from queue {self.info.queue}")

        consume_options = ConsumeOptions().merge(options)
        callback = functools.partial(self._handle_message, handler)

        try:
            consumer_tag = await self.queue.consume(callback, **consume_options.consume_kwargs())
        except Exception as e:
            logger.error(f"Failed to start consuming from queue {self.info.queue}: {e}")
            raise

        self.info.consumer_tag = consumer_tag
        self._consuming = True
        logger.info(f"Started consuming messages from queue {self.info.queue}")
        return consumer_tag

    async def _handle_message(self, handler: MessageHandler, message: AbstractIncomingMessage) -> None:
        json_message = decode_message(message, parse_dates=self.info.parse_dates)

        with delivery_context(self.info.queue, message.routing_key, self.info.consumer_tag):
            try:
                result = handler(json_message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Message handler failed on queue {self.info.queue}: {e}")
                raise

    async def stop_consuming(self) -> None:
        """Cancel the consumer; a no-op when not consuming."""
        if not self._consuming:
            return

        await self.queue.cancel(self.info.consumer_tag)
        self.info.consumer_tag = None
        self._consuming = False
        logger.info(f"Stopped consuming messages from queue {self.info.queue}")

    async def unbind(self, binding_key: Optional[str] = None) -> None:
        """
        Remove bindings from the exchange.

        Args:
            binding_key: Key to unbind; all recorded keys when None
        """
        if self.exchange is None:
            raise ConsumerStateError(f"Queue {self.info.queue} is not bound to an exchange")

        keys = [binding_key] if binding_key is not None else list(self.info.bind_keys)
        for key in keys:
            await self.queue.unbind(self.exchange, routing_key=key)
            logger.info(f"Unbound queue {self.info.queue} from {self.info.exchange} ({key})")

        self.info.bind_keys = [key for key in self.info.bind_keys if key not in keys]
        self.info.bind_key = self.info.bind_keys[0] if self.info.bind_keys else None

    async def delete_queue(self, if_unused: bool = False, if_empty: bool = False) -> None:
        await self.queue.delete(if_unused=if_unused, if_empty=if_empty)
        logger.info(f"Deleted queue {self.info.queue}")

    async def delete_exchange(self, if_unused: bool = False) -> None:
        if self.exchange is None:
            raise ConsumerStateError("Consumer has no exchange")
        await self.exchange.delete(if_unused=if_unused)
        logger.info(f"Deleted exchange {self.info.exchange}")

    async def close(self) -> None:
        """Stop consuming and close the channel."""
        await self.stop_consuming()
        if not self.channel.is_closed:
            await self.channel.close()
        logger.info(f"Consumer for queue {self.info.queue} closed")

    async def __aenter__(self) -> "JsonConsumer":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _pop_parse_dates(options: Union[QueueOptions, Mapping, None]):
    """Split the date-recognition flag from queue options."""
    if not isinstance(options, Mapping):
        return None, options

    remaining = dict(options)
    parse_dates = None
    for key in _PARSE_DATES_KEYS:
        if key in remaining:
            value = remaining.pop(key)
            if value is not None:
                parse_dates = bool(value)
    return parse_dates, remaining


def _binding_list(binding_keys: Union[str, Iterable[str], None]) -> list:
    if binding_keys is None:
        return []
    if isinstance(binding_keys, str):
        return [binding_keys]
    return list(binding_keys)


async def setup_consumer(
    channel: AbstractChannel,
    queue_name: Optional[str] = "",
    exchange: Union[ExchangeSpec, str, tuple, None] = None,
    binding_keys: Union[str, Iterable[str], None] = None,
    options: Union[QueueOptions, Mapping, None] = None,
    *,
    parse_dates: Optional[bool] = None,
    expires: Optional[int] = None,
) -> JsonConsumer:
    """
    Declare a queue (and optionally an exchange with bindings) for JSON consumption.

    Without a queue name the broker names the queue, which is then
    non-durable, auto-deleted and expires when idle. Options given by the
    caller override the computed defaults.

    Args:
        channel: aio-pika channel; the returned consumer owns it
        queue_name: Queue name, empty for a server-named temporary queue
        exchange: Exchange name, ``(name, type)`` pair or ExchangeSpec
        binding_keys: One key or a list of keys to bind with
        options: Queue options; may carry a ``parse_dates`` flag
        parse_dates: Convert ISO-8601 strings to datetimes on decode
        expires: Idle expiry of a temporary queue in milliseconds

    Returns:
        Configured JsonConsumer instance
    """
    settings = get_settings()

    flag, queue_overrides = _pop_parse_dates(options)
    if parse_dates is not None:
        flag = parse_dates

    queue_options = QueueOptions.for_queue(
        queue_name,
        expires=expires or settings.temporary_queue_expires,
    ).merge(queue_overrides)

    try:
        queue = await channel.declare_queue(queue_name or None, **queue_options.declare_kwargs())
    except Exception as e:
        logger.error(f"Failed to declare queue {queue_name!r}: {e}")
        raise
    logger.info(f"Declared queue {queue.name} (durable={queue_options.durable})")

    info = ConsumerInfo(queue=queue.name, options=queue_options, parse_dates=bool(flag))

    declared_exchange: Optional[AbstractExchange] = None
    if exchange:
        spec = ExchangeSpec.parse(exchange, default_type=settings.default_exchange_type)
        try:
            declared_exchange = await channel.declare_exchange(**spec.declare_kwargs())
        except Exception as e:
            logger.error(f"Failed to declare exchange {spec.name}: {e}")
            raise
        info.exchange = declared_exchange.name
        logger.info(f"Declared exchange {spec.name} (type={spec.type.value})")

    keys = _binding_list(binding_keys)
    if keys and declared_exchange is None:
        logger.warning(f"Ignoring binding keys for queue {info.queue}: no exchange given")
    elif keys:
        try:
            await asyncio.gather(
                *(queue.bind(declared_exchange, routing_key=key) for key in keys)
            )
        except Exception as e:
            logger.error(f"Failed to bind queue {info.queue} to {info.exchange}: {e}")
            raise
        info.bind_keys = keys
        info.bind_key = keys[0]
        logger.info(f"Bound queue {info.queue} to {info.exchange} with keys {keys}")

    return JsonConsumer(channel, queue, info, exchange=declared_exchange)
