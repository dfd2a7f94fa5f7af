"""Shared fakes: an in-memory adapter and a scripted reply service."""

from typing import Any

import pytest

from omnirouter.channels.base import ChannelAdapter, NormalizedMessage


def ok(reply):
    """Successful reply service envelope."""
    return {"response": {"chat": {"reply": reply}}}


class FakeReplyService:
    """Replays scripted outcomes; an Exception instance is raised instead."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests: list[dict] = []

    async def chat(self, request: dict[str, Any]) -> dict[str, Any]:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeAdapter(ChannelAdapter):
    """Adapter whose events are dicts and whose deliveries land in `sent`."""

    def __init__(self, channel_name="fake", start_error=None, stop_error=None,
                 fail_delivery=False, **base_options):
        super().__init__(channel_name=channel_name, **base_options)
        self.start_error = start_error
        self.stop_error = stop_error
        self.fail_delivery = fail_delivery
        self.start_calls = 0
        self.stop_calls = 0
        self.sent: list[tuple[Any, str]] = []

    async def start(self):
        self.start_calls += 1
        if self.start_error:
            raise self.start_error
        self.is_started = True

    async def stop(self):
        self.stop_calls += 1
        if self.stop_error:
            raise self.stop_error
        await super().stop()

    def normalize(self, event):
        if event.get("bot"):
            return None
        return NormalizedMessage(
            content=event.get("text", ""),
            user_id=event.get("user", "u1"),
            user_name=event.get("name"),
        )

    async def receive(self, event, **extras):
        """Simulate an inbound platform event."""
        user = event.get("user", "u1")

        async def deliver(text):
            if self.fail_delivery:
                raise ConnectionError("platform down")
            self.sent.append((user, text))

        return await self._dispatch(event, deliver, **extras)

    async def send_message(self, recipient, message):
        self.sent.append((recipient, message))
        return {"recipient": recipient}


class BroadcastingAdapter(FakeAdapter):
    def __init__(self, channel_name="broadcaster", broadcast_error=None, **kwargs):
        super().__init__(channel_name=channel_name, **kwargs)
        self.broadcast_error = broadcast_error
        self.broadcasts: list[str] = []

    async def broadcast(self, message):
        if self.broadcast_error:
            raise self.broadcast_error
        self.broadcasts.append(message)


@pytest.fixture
def reply_service():
    return FakeReplyService(ok("Hello from the bot"))


@pytest.fixture
def no_sleep(monkeypatch):
    """Replace the retry backoff sleep and record the requested delays."""
    delays: list[float] = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr("omnirouter.channels.base._sleep", fake_sleep)
    return delays
