"""JSON publisher setup on top of an aio-pika channel."""

from collections.abc import Mapping
from typing import Any, Optional, Union

from aio_pika import Message
from aio_pika.abc import AbstractChannel, AbstractExchange

from .config import get_settings
from .envelope import encode_payload
from .logging import get_logger
from .models import ExchangeSpec, PublishOptions
from .routing import RoutingKeyTemplate

logger = get_logger(__name__)


class JsonPublisher:
    """Publisher of JSON payloads with template-derived routing keys."""

    def __init__(
        self,
        channel: AbstractChannel,
        exchange: AbstractExchange,
        template: Union[RoutingKeyTemplate, str],
        options: Optional[PublishOptions] = None,
    ):
        """
        Initialize publisher handle.

        Args:
            channel: Confirm-mode channel (owned by the handle)
            exchange: Declared exchange to publish on
            template: Routing-key template
            options: Default message options
        """
        self.channel = channel
        self.exchange = exchange
        if isinstance(template, str):
            template = RoutingKeyTemplate(template)
        self.template = template
        self.options = options or PublishOptions()

    def routing_key(self, payload: Any) -> str:
        """Routing key ``payload`` would be published with."""
        return self.template.render(payload)

    async def publish_object(
        self,
        payload: Any,
        options: Union[PublishOptions, Mapping, None] = None,
    ):
        """
        Publish a payload as a JSON message.

        Args:
            payload: JSON-serializable payload
            options: Per-message overrides of the default options

        Returns:
            Broker confirmation of the publish

        Raises:
            EnvelopeEncodeError: If the payload cannot be encoded
        """
        effective = self.options.merge(options)
        routing_key = self.template.render(payload)
        message = Message(encode_payload(payload), **effective.message_kwargs())

        try:
            confirmation = await self.exchange.publish(
                message,
                routing_key=routing_key,
                mandatory=effective.mandatory,
            )
        except Exception as e:
            logger.error(f"Failed to publish to {self.exchange.name} with key {routing_key}: {e}")
            raise

        logger.debug(
            f"Published {len(message.body)} bytes to {self.exchange.name} with key {routing_key}"
        )
        return confirmation

    async def close(self) -> None:
        """Close the publisher channel."""
        if not self.channel.is_closed:
            await self.channel.close()
        logger.info(f"Publisher for exchange {self.exchange.name} closed")

    async def __aenter__(self) -> "JsonPublisher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def setup_publisher(
    channel: AbstractChannel,
    exchange: Union[ExchangeSpec, str, tuple, Mapping],
    template: str,
    options: Union[PublishOptions, Mapping, None] = None,
) -> JsonPublisher:
    """
    Declare an exchange and create a JSON publisher for it.

    Args:
        channel: Confirm-mode aio-pika channel; the returned publisher owns it
        exchange: Exchange name (topic), ``(name, type)`` pair or ExchangeSpec
        template: Routing-key template rendered against each payload
        options: Default message options, laid over the JSON envelope defaults

    Returns:
        Configured JsonPublisher instance
    """
    settings = get_settings()
    spec = ExchangeSpec.parse(exchange, default_type=settings.default_exchange_type)
    # compile before touching the broker so a bad template fails fast
    routing_template = RoutingKeyTemplate(template)

    if getattr(channel, "publisher_confirms", True) is False:
        logger.warning("Publisher channel is not in confirm mode; publishes are not acknowledged")

    try:
        declared = await channel.declare_exchange(**spec.declare_kwargs())
    except Exception as e:
        logger.error(f"Failed to declare exchange {spec.name}: {e}")
        raise
    logger.info(f"Declared exchange {spec.name} (type={spec.type.value}) for publishing")

    return JsonPublisher(
        channel,
        declared,
        routing_template,
        options=PublishOptions().merge(options),
    )
