"""JSON message conventions for RabbitMQ consumers and publishers."""

__version__ = "0.1.0"

from .client import AmqpJsonClient, close_client, get_client
from .consumer import JsonConsumer, setup_consumer
from .envelope import JsonMessage, decode_body, decode_message, encode_payload
from .exceptions import (
    AmqpJsonError,
    BrokerConnectionError,
    ConsumerStateError,
    EnvelopeEncodeError,
    ExchangeSpecError,
)
from .models import (
    ConsumeOptions,
    ConsumerInfo,
    ExchangeSpec,
    PublishOptions,
    QueueOptions,
)
from .publisher import JsonPublisher, setup_publisher
from .routing import RoutingKeyTemplate, render_routing_key

__all__ = [
    "AmqpJsonClient",
    "AmqpJsonError",
    "BrokerConnectionError",
    "ConsumeOptions",
    "ConsumerInfo",
    "ConsumerStateError",
    "EnvelopeEncodeError",
    "ExchangeSpec",
    "ExchangeSpecError",
    "JsonConsumer",
    "JsonMessage",
    "JsonPublisher",
    "PublishOptions",
    "QueueOptions",
    "RoutingKeyTemplate",
    "close_client",
    "decode_body",
    "decode_message",
    "encode_payload",
    "get_client",
    "render_routing_key",
    "setup_consumer",
    "setup_publisher",
]
