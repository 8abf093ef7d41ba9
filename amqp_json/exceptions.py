"""Exceptions raised by amqp-json.

Broker errors (declare, bind, publish failures) are raised by aio-pika and
propagate unchanged; the classes below cover failures of this library itself.
"""


class AmqpJsonError(Exception):
    """Base class for amqp-json errors."""


class BrokerConnectionError(AmqpJsonError, ConnectionError):
    """Connecting to the broker failed after all retries."""


class ExchangeSpecError(AmqpJsonError, ValueError):
    """An exchange was given in a form that cannot be declared."""


class EnvelopeEncodeError(AmqpJsonError, TypeError):
    """A payload could not be serialized as JSON."""


class ConsumerStateError(AmqpJsonError, RuntimeError):
    """A consumer operation was called in the wrong state."""
