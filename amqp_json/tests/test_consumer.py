"""Tests for JSON consumer setup."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from aio_pika import ExchangeType

from amqp_json.consumer import JsonConsumer, setup_consumer
from amqp_json.envelope import JsonMessage
from amqp_json.exceptions import ConsumerStateError


def make_channel(queue_name="amq.gen-test", exchange_name="Foo"):
    """Build a mock channel returning a mock queue and exchange."""
    channel = AsyncMock()
    channel.is_closed = False

    queue = AsyncMock()
    queue.name = queue_name
    queue.consume.return_value = "ctag-1"

    exchange = AsyncMock()
    exchange.name = exchange_name

    channel.declare_queue.return_value = queue
    channel.declare_exchange.return_value = exchange
    return channel, queue, exchange


def make_message(body: bytes, content_type="application/json"):
    message = MagicMock()
    message.body = body
    message.content_type = content_type
    message.routing_key = "a.bee.d"
    return message


class TestSetupConsumer:
    """Test queue, exchange and binding declaration."""

    @pytest.mark.asyncio
    async def test_temporary_queue(self):
        """Test a consumer on a server-named queue."""
        channel, queue, _ = make_channel()

        consumer = await setup_consumer(channel)

        channel.declare_queue.assert_awaited_once_with(
            None,
            durable=False,
            auto_delete=True,
            exclusive=False,
            arguments={"x-expires": 60000},
        )
        channel.declare_exchange.assert_not_called()
        assert isinstance(consumer, JsonConsumer)
        assert consumer.queue_name == "amq.gen-test"
        assert consumer.info.options.durable is False
        assert consumer.info.options.auto_delete is True
        assert consumer.info.options.expires == 60000
        assert consumer.info.exchange is None
        assert consumer.info.bind_key is None
        assert consumer.info.bind_keys == []

    @pytest.mark.asyncio
    async def test_named_queue(self):
        """Test a consumer on a named durable queue."""
        channel, _, _ = make_channel(queue_name="test-queue")

        consumer = await setup_consumer(channel, "test-queue")

        channel.declare_queue.assert_awaited_once_with(
            "test-queue",
            durable=True,
            auto_delete=False,
            exclusive=False,
            arguments=None,
        )
        assert consumer.info.queue == "test-queue"
        assert consumer.info.options.durable is True
        assert consumer.info.options.auto_delete is False
        assert consumer.info.options.expires is None

    @pytest.mark.asyncio
    async def test_explicit_options_override(self):
        """Test caller options override computed defaults."""
        channel, _, _ = make_channel(queue_name="test-queue")

        consumer = await setup_consumer(
            channel,
            "test-queue",
            options={"durable": False, "auto_delete": True, "expires": 5000},
        )

        options = consumer.info.options
        assert options.durable is False
        assert options.auto_delete is True
        assert options.expires == 5000
        kwargs = channel.declare_queue.call_args.kwargs
        assert kwargs["arguments"] == {"x-expires": 5000}

    @pytest.mark.asyncio
    async def test_parse_dates_extracted_from_options(self):
        """Test the date flag is split off the queue options."""
        channel, _, _ = make_channel()
        options = {"parseDates": True, "exclusive": True}

        consumer = await setup_consumer(channel, options=options)

        assert consumer.info.parse_dates is True
        assert consumer.info.options.exclusive is True
        # the caller's mapping is left untouched
        assert options == {"parseDates": True, "exclusive": True}

    @pytest.mark.asyncio
    async def test_parse_dates_keyword(self):
        channel, _, _ = make_channel()
        consumer = await setup_consumer(channel, options={"parse_dates": True}, parse_dates=False)
        assert consumer.info.parse_dates is False

    @pytest.mark.asyncio
    async def test_custom_expiry(self):
        channel, _, _ = make_channel()
        consumer = await setup_consumer(channel, expires=1000)
        assert consumer.info.options.expires == 1000

    @pytest.mark.asyncio
    async def test_exchange_and_single_binding(self):
        """Test a single binding key is treated as a one-element list."""
        channel, queue, exchange = make_channel()

        consumer = await setup_consumer(channel, "", "Foo", "foo")

        channel.declare_exchange.assert_awaited_once_with(
            name="Foo",
            type=ExchangeType.TOPIC,
            durable=True,
            auto_delete=False,
            internal=False,
            arguments=None,
        )
        queue.bind.assert_awaited_once_with(exchange, routing_key="foo")
        assert consumer.info.exchange == "Foo"
        assert consumer.info.bind_key == "foo"
        assert consumer.info.bind_keys == ["foo"]

    @pytest.mark.asyncio
    async def test_multiple_bindings(self):
        """Test every key is bound and the order is recorded."""
        channel, queue, exchange = make_channel()

        consumer = await setup_consumer(channel, "", "Foo", ["foo", "bar"])

        assert queue.bind.await_count == 2
        bound = [call.kwargs["routing_key"] for call in queue.bind.await_args_list]
        assert sorted(bound) == ["bar", "foo"]
        assert consumer.info.bind_key == "foo"
        assert consumer.info.bind_keys == ["foo", "bar"]

    @pytest.mark.asyncio
    async def test_explicit_exchange_type(self):
        channel, _, _ = make_channel()
        await setup_consumer(channel, "", ("Foo", "fanout"))
        assert channel.declare_exchange.call_args.kwargs["type"] == ExchangeType.FANOUT

    @pytest.mark.asyncio
    async def test_bindings_without_exchange_ignored(self):
        channel, queue, _ = make_channel()
        consumer = await setup_consumer(channel, "", None, ["foo"])
        queue.bind.assert_not_called()
        assert consumer.info.bind_keys == []

    @pytest.mark.asyncio
    async def test_empty_binding_list(self):
        channel, queue, _ = make_channel()
        consumer = await setup_consumer(channel, "", "Foo", [])
        queue.bind.assert_not_called()
        assert consumer.info.bind_key is None

    @pytest.mark.asyncio
    async def test_declare_failure_propagates(self):
        """Test broker errors fail the setup without retry."""
        channel, _, _ = make_channel()
        channel.declare_queue.side_effect = RuntimeError("channel closed")

        with pytest.raises(RuntimeError, match="channel closed"):
            await setup_consumer(channel, "test-queue")
        assert channel.declare_queue.await_count == 1

    @pytest.mark.asyncio
    async def test_bind_failure_propagates(self):
        channel, queue, _ = make_channel()
        queue.bind.side_effect = RuntimeError("access refused")

        with pytest.raises(RuntimeError, match="access refused"):
            await setup_consumer(channel, "", "Foo", "foo")


class TestJsonConsumer:
    """Test consumption through the decoding wrapper."""

    async def _start(self, handler, parse_dates=False, **kwargs):
        channel, queue, exchange = make_channel()
        consumer = await setup_consumer(channel, "", "Foo", "foo", parse_dates=parse_dates)
        tag = await consumer.start_consuming(handler, **kwargs)
        callback = queue.consume.call_args.args[0]
        return consumer, queue, tag, callback

    @pytest.mark.asyncio
    async def test_start_consuming(self):
        """Test the consumer tag is returned and recorded."""
        consumer, queue, tag, _ = await self._start(lambda message: None)

        assert tag == "ctag-1"
        assert consumer.info.consumer_tag == "ctag-1"
        assert consumer.is_consuming is True
        assert queue.consume.call_args.kwargs == {
            "no_ack": False,
            "exclusive": False,
            "consumer_tag": None,
            "arguments": None,
        }

    @pytest.mark.asyncio
    async def test_consume_options(self):
        _, queue, _, _ = await self._start(lambda message: None, options={"no_ack": True})
        assert queue.consume.call_args.kwargs["no_ack"] is True

    @pytest.mark.asyncio
    async def test_start_twice(self):
        consumer, _, _, _ = await self._start(lambda message: None)
        with pytest.raises(ConsumerStateError):
            await consumer.start_consuming(lambda message: None)

    @pytest.mark.asyncio
    async def test_sync_handler_receives_payload(self):
        """Test a plain function handler gets the decoded payload."""
        received = []
        _, _, _, callback = await self._start(received.append)

        await callback(make_message(b'{"b":{"c":"bee"},"c":"sea","d":"die"}'))

        assert len(received) == 1
        assert isinstance(received[0], JsonMessage)
        assert received[0].decoded is True
        assert received[0].payload == {"b": {"c": "bee"}, "c": "sea", "d": "die"}

    @pytest.mark.asyncio
    async def test_async_handler(self):
        handler = AsyncMock()
        _, _, _, callback = await self._start(handler)

        await callback(make_message(b"[1]"))

        handler.assert_awaited_once()
        assert handler.call_args.args[0].payload == [1]

    @pytest.mark.asyncio
    async def test_dates_recognized_when_enabled(self):
        """Test date recognition follows the consumer flag."""
        received = []
        _, _, _, callback = await self._start(received.append, parse_dates=True)

        await callback(make_message(b'{"sDate":"2017-07-10T10:54:26.578Z"}'))

        assert received[0].payload["sDate"] == datetime(2017, 7, 10, 10, 54, 26, 578000, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_dates_kept_when_disabled(self):
        received = []
        _, _, _, callback = await self._start(received.append)

        await callback(make_message(b'{"sDate":"2017-07-10T10:54:26.578Z"}'))

        assert received[0].payload["sDate"] == "2017-07-10T10:54:26.578Z"

    @pytest.mark.asyncio
    async def test_non_json_message(self):
        """Test non-JSON messages reach the handler undecoded."""
        received = []
        _, _, _, callback = await self._start(received.append)

        await callback(make_message(b"hello", content_type="text/plain"))

        assert received[0].decoded is False
        assert received[0].payload is None
        assert received[0].body == b"hello"

    @pytest.mark.asyncio
    async def test_malformed_json_message(self):
        """Test decode failures are swallowed and the handler still runs."""
        received = []
        _, _, _, callback = await self._start(received.append)

        await callback(make_message(b"{oops"))

        assert len(received) == 1
        assert received[0].decoded is False

    @pytest.mark.asyncio
    async def test_handler_error_propagates(self):
        def failing_handler(message):
            raise ValueError("boom")

        _, _, _, callback = await self._start(failing_handler)

        with pytest.raises(ValueError, match="boom"):
            await callback(make_message(b"{}"))

    @pytest.mark.asyncio
    async def test_stop_consuming(self):
        consumer, queue, _, _ = await self._start(lambda message: None)

        await consumer.stop_consuming()

        queue.cancel.assert_awaited_once_with("ctag-1")
        assert consumer.is_consuming is False
        assert consumer.info.consumer_tag is None

    @pytest.mark.asyncio
    async def test_stop_when_idle(self):
        channel, queue, _ = make_channel()
        consumer = await setup_consumer(channel)
        await consumer.stop_consuming()
        queue.cancel.assert_not_called()


class TestConsumerCleanup:
    """Test unbinding, deletion and closing."""

    @pytest.mark.asyncio
    async def test_unbind_single_key(self):
        channel, queue, exchange = make_channel()
        consumer = await setup_consumer(channel, "", "Foo", ["foo", "bar"])

        await consumer.unbind("foo")

        queue.unbind.assert_awaited_once_with(exchange, routing_key="foo")
        assert consumer.info.bind_keys == ["bar"]
        assert consumer.info.bind_key == "bar"

    @pytest.mark.asyncio
    async def test_unbind_all(self):
        channel, queue, _ = make_channel()
        consumer = await setup_consumer(channel, "", "Foo", ["foo", "bar"])

        await consumer.unbind()

        assert queue.unbind.await_count == 2
        assert consumer.info.bind_keys == []
        assert consumer.info.bind_key is None

    @pytest.mark.asyncio
    async def test_unbind_without_exchange(self):
        channel, _, _ = make_channel()
        consumer = await setup_consumer(channel)
        with pytest.raises(ConsumerStateError):
            await consumer.unbind()

    @pytest.mark.asyncio
    async def test_delete_queue_and_exchange(self):
        channel, queue, exchange = make_channel()
        consumer = await setup_consumer(channel, "", "Foo", "foo")

        await consumer.delete_queue()
        await consumer.delete_exchange()

        queue.delete.assert_awaited_once_with(if_unused=False, if_empty=False)
        exchange.delete.assert_awaited_once_with(if_unused=False)

    @pytest.mark.asyncio
    async def test_delete_exchange_without_exchange(self):
        channel, _, _ = make_channel()
        consumer = await setup_consumer(channel)
        with pytest.raises(ConsumerStateError):
            await consumer.delete_exchange()

    @pytest.mark.asyncio
    async def test_context_manager_closes(self):
        """Test leaving the context cancels consumption and closes the channel."""
        channel, queue, _ = make_channel()

        async with await setup_consumer(channel) as consumer:
            await consumer.start_consuming(lambda message: None)

        queue.cancel.assert_awaited_once_with("ctag-1")
        channel.close.assert_awaited_once()
