"""RabbitMQ connection helper for amqp-json."""

import asyncio
from collections.abc import Mapping
from typing import Iterable, Optional, Union
from urllib.parse import urlparse

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection

from .config import get_settings
from .consumer import JsonConsumer, setup_consumer
from .exceptions import BrokerConnectionError
from .logging import get_logger
from .models import ExchangeSpec, PublishOptions, QueueOptions
from .publisher import JsonPublisher, setup_publisher

logger = get_logger(__name__)


class AmqpJsonClient:
    """Connection owner handing out channels and JSON consumers/publishers."""

    def __init__(
        self,
        url: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        connection_name: Optional[str] = None,
    ):
        """
        Initialize client.

        Args:
            url: RabbitMQ connection URL
            max_retries: Maximum connection attempts
            retry_delay: Delay between attempts in seconds
            connection_name: Name shown in the broker management UI
        """
        settings = get_settings()
        self.url = url or settings.rabbitmq_url
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.retry_delay
        self.connection_name = connection_name or settings.connection_name
        self.prefetch_count = settings.prefetch_count
        self.connection: Optional[AbstractConnection] = None
        self._closed = False

    async def connect(self) -> None:
        """Connect to RabbitMQ with retries."""
        if self.connection and not self.connection.is_closed:
            return

        for attempt in range(self.max_retries):
            try:
                logger.info(f"Connecting to RabbitMQ at {self._mask_url(self.url)} (attempt {attempt + 1})")
                self.connection = await aio_pika.connect_robust(
                    self.url,
                    client_properties={"connection_name": self.connection_name},
                )
                self._closed = False
                logger.info("Successfully connected to RabbitMQ")
                return

            except Exception as e:
                logger.error(f"Failed to connect to RabbitMQ (attempt {attempt + 1}): {e}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay)
                else:
                    raise BrokerConnectionError(
                        f"Failed to connect to RabbitMQ after {self.max_retries} attempts"
                    ) from e

    async def disconnect(self) -> None:
        """Disconnect from RabbitMQ."""
        if self._closed:
            return

        self._closed = True

        try:
            if self.connection and not self.connection.is_closed:
                await self.connection.close()
                logger.info("Closed RabbitMQ connection")
        except Exception as e:
            logger.error(f"Error closing RabbitMQ connection: {e}")

    async def channel(self, confirm: bool = False) -> AbstractChannel:
        """
        Open a new channel, connecting if necessary.

        Args:
            confirm: Open the channel in publisher-confirm mode

        Returns:
            New channel
        """
        if not self.connection or self.connection.is_closed:
            await self.connect()

        channel = await self.connection.channel(publisher_confirms=confirm)
        if self.prefetch_count:
            await channel.set_qos(prefetch_count=self.prefetch_count)
        return channel

    async def consumer(
        self,
        queue_name: Optional[str] = "",
        exchange: Union[ExchangeSpec, str, tuple, None] = None,
        binding_keys: Union[str, Iterable[str], None] = None,
        options: Union[QueueOptions, Mapping, None] = None,
        **kwargs,
    ) -> JsonConsumer:
        """Open a channel and set up a JSON consumer on it (see ``setup_consumer``)."""
        channel = await self.channel()
        try:
            return await setup_consumer(channel, queue_name, exchange, binding_keys, options, **kwargs)
        except Exception:
            await channel.close()
            raise

    async def publisher(
        self,
        exchange: Union[ExchangeSpec, str, tuple, Mapping],
        template: str,
        options: Union[PublishOptions, Mapping, None] = None,
    ) -> JsonPublisher:
        """Open a confirm channel and set up a JSON publisher on it (see ``setup_publisher``)."""
        channel = await self.channel(confirm=True)
        try:
            return await setup_publisher(channel, exchange, template, options)
        except Exception:
            await channel.close()
            raise

    async def health_check(self) -> bool:
        """Check RabbitMQ connection health."""
        try:
            channel = await self.channel()
            try:
                temp_queue = await channel.declare_queue(
                    name=None,
                    exclusive=True,
                    auto_delete=True,
                )
                await temp_queue.delete()
            finally:
                await channel.close()
            return True
        except Exception as e:
            logger.error(f"RabbitMQ health check failed: {e}")
            return False

    def _mask_url(self, url: str) -> str:
        """Mask credentials in URL for logging."""
        try:
            parsed = urlparse(url)
            if parsed.password:
                return url.replace(parsed.password, "****")
            return url
        except ValueError:
            return "****"

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()


_client: Optional[AmqpJsonClient] = None


async def get_client(url: Optional[str] = None, force_new: bool = False) -> AmqpJsonClient:
    """
    Get the process-wide client instance.

    Args:
        url: RabbitMQ connection URL
        force_new: Force creation of new client

    Returns:
        AmqpJsonClient instance
    """
    global _client

    if _client is None or force_new:
        _client = AmqpJsonClient(url=url)

    return _client


async def close_client() -> None:
    """Close the process-wide client."""
    global _client

    if _client:
        await _client.disconnect()
        _client = None
