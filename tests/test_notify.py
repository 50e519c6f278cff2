"""Tests for notification sinks and the bus-driven notifier."""

import httpx
import orjson
import pytest

from agentworld.events.bus import EventBus
from agentworld.notify import LogSink, NotificationSink, Notifier, WebhookSink


class _Recorder(NotificationSink):
    def __init__(self):
        self.messages = []

    async def publish(self, message, data=None):
        self.messages.append((message, data))


class _Broken(NotificationSink):
    async def publish(self, message, data=None):
        raise httpx.ConnectError("unreachable")


@pytest.mark.asyncio
async def test_webhook_posts_content():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = WebhookSink("https://hooks.example/world", client=client)
        await sink.publish("x" * 2500)

    assert len(requests) == 1
    assert requests[0].url == "https://hooks.example/world"
    assert len(orjson.loads(requests[0].content)["content"]) == 2000


@pytest.mark.asyncio
async def test_webhook_error_status_raises():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    async with httpx.AsyncClient(transport=transport) as client:
        sink = WebhookSink("https://hooks.example/world", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await sink.publish("hello")


@pytest.mark.asyncio
async def test_notifier_swallows_failures():
    recorder = _Recorder()
    notifier = Notifier([_Broken(), recorder])
    await notifier.notify("Round 3 won")
    assert notifier.failures == 1
    assert recorder.messages == [("Round 3 won", None)]


@pytest.mark.asyncio
async def test_attach_forwards_announced_topics():
    bus = EventBus()
    recorder = _Recorder()
    notifier = Notifier()
    notifier.add_sink(recorder)
    notifier.attach(bus)

    await bus.emit("agent.entered", description="Ada entered the world")
    await bus.emit("agent.action", description="Ada performed tip_artist")
    await bus.emit("lottery.winner_drawn", {"round_id": 1}, description="Ada won round 1")

    assert [m for m, _ in recorder.messages] == ["Ada entered the world", "Ada won round 1"]
    assert recorder.messages[1][1] == {"topic": "lottery.winner_drawn", "round_id": 1}


@pytest.mark.asyncio
async def test_failing_sink_does_not_break_emit():
    bus = EventBus()
    notifier = Notifier([_Broken()])
    notifier.attach(bus)
    event = await bus.emit("agent.entered", description="Ada entered the world")
    assert event.topic == "agent.entered"
    assert notifier.failures == 1


@pytest.mark.asyncio
async def test_log_sink(caplog):
    with caplog.at_level("INFO", logger="agentworld.notify"):
        await LogSink().publish("hello world")
    assert "hello world" in caplog.text
