"""Tests for NormalizedMessage and the ChannelAdapter contract."""

import logging
from dataclasses import FrozenInstanceError

import pytest

from conftest import FakeAdapter, FakeReplyService, ok
from omnirouter.channels.base import (
    DEFAULT_ERROR_MESSAGE,
    NormalizedMessage,
    extract_reply,
    split_message,
)
from omnirouter.errors import ConfigurationError, InvalidResponseError, ReplyServiceError


def _adapter(*outcomes, **kwargs):
    service = FakeReplyService(*outcomes) if outcomes else FakeReplyService(ok("hi"))
    kwargs.setdefault("bot_id", "bot-1")
    return FakeAdapter(reply_service=service, **kwargs), service


class TestNormalizedMessage:
    def test_user_name_defaults_to_user_id(self):
        msg = NormalizedMessage(content="hello", user_id="42")
        assert msg.user_name == "42"

    def test_explicit_user_name(self):
        msg = NormalizedMessage(content="hello", user_id="42", user_name="Ada")
        assert msg.user_name == "Ada"

    def test_frozen(self):
        msg = NormalizedMessage(content="hello", user_id="42")
        with pytest.raises(FrozenInstanceError):
            msg.content = "changed"

    def test_metadata_is_read_only_copy(self):
        meta = {"chat_id": 7}
        msg = NormalizedMessage(content="hi", user_id="42", metadata=meta)
        meta["chat_id"] = 8
        assert msg.metadata["chat_id"] == 7
        with pytest.raises(TypeError):
            msg.metadata["chat_id"] = 9

    def test_metadata_defaults_empty(self):
        assert dict(NormalizedMessage(content="hi", user_id="1").metadata) == {}


class TestSplitMessage:
    def test_short_text_untouched(self):
        assert split_message("hello", 10) == ["hello"]

    def test_splits_on_newline(self):
        assert split_message("aaaa\nbbbb", 6) == ["aaaa", "bbbb"]

    def test_hard_split_without_newline(self):
        chunks = split_message("x" * 25, 10)
        assert chunks == ["x" * 10, "x" * 10, "x" * 5]


class TestExtractReply:
    def test_success(self):
        assert extract_reply(ok("Hello")) == "Hello"

    def test_empty_string_reply_is_valid(self):
        assert extract_reply(ok("")) == ""

    @pytest.mark.parametrize("response", [{}, {"response": {}}, {"response": {"chat": {}}}, None, "text"])
    def test_malformed(self, response):
        with pytest.raises(InvalidResponseError):
            extract_reply(response)


class TestBuildRequest:
    def test_defaults_and_dropped_fields(self):
        adapter, _ = _adapter(model="gpt-4o", tags=["support"])
        request = adapter.build_request("hello", "fake-u1")
        assert request == {
            "bot_id": "bot-1",
            "model": "gpt-4o",
            "message": "hello",
            "tags": ["support"],
            "chat_id": "fake-u1",
            "channel": "fake",
            "stream": False,
        }

    def test_overrides_win(self):
        adapter, _ = _adapter(model="gpt-4o", top=3)
        request = adapter.build_request("hello", "c", model="claude", top=5, source_ids=["kb"])
        assert request["model"] == "claude"
        assert request["top"] == 5
        assert request["source_ids"] == ["kb"]


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_success_first_try(self, no_sleep):
        adapter, service = _adapter(ok("Hi there"))
        assert await adapter.process_message("hello", "fake-u1") == "Hi there"
        assert len(service.requests) == 1
        assert no_sleep == []

    @pytest.mark.asyncio
    async def test_retries_transport_failures_with_backoff(self, no_sleep):
        adapter, service = _adapter(ConnectionError("down"), ConnectionError("down"), ok("finally"))
        assert await adapter.process_message("hello", "fake-u1") == "finally"
        assert len(service.requests) == 3
        assert no_sleep == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, no_sleep):
        adapter, service = _adapter(ConnectionError("down"))
        with pytest.raises(ConnectionError):
            await adapter.process_message("hello", "fake-u1")
        assert len(service.requests) == 3
        assert no_sleep == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_err_response_is_retried(self, no_sleep):
        adapter, service = _adapter({"err": "busy"}, ok("recovered"))
        assert await adapter.process_message("hello", "c") == "recovered"
        assert len(service.requests) == 2
        assert no_sleep == [1.0]

    @pytest.mark.asyncio
    async def test_persistent_err_raises_reply_service_error(self, no_sleep):
        adapter, service = _adapter({"err": "quota exceeded"})
        with pytest.raises(ReplyServiceError) as exc_info:
            await adapter.process_message("hello", "c")
        assert exc_info.value.err == "quota exceeded"
        assert len(service.requests) == 3

    @pytest.mark.asyncio
    async def test_malformed_response_is_not_retried(self, no_sleep):
        adapter, service = _adapter({"response": {}})
        with pytest.raises(InvalidResponseError):
            await adapter.process_message("hello", "c")
        assert len(service.requests) == 1
        assert no_sleep == []

    @pytest.mark.asyncio
    async def test_without_reply_service(self):
        adapter = FakeAdapter(bot_id="bot-1")
        with pytest.raises(ConfigurationError):
            await adapter.process_message("hello", "c")


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_default_path_uses_reply_service(self):
        adapter, service = _adapter(ok("from service"))
        reply = await adapter.handle_message(NormalizedMessage(content="hello", user_id="u1"))
        assert reply == "from service"
        assert service.requests[0]["message"] == "hello"
        assert service.requests[0]["chat_id"] == "fake-u1"

    @pytest.mark.asyncio
    async def test_chat_id_is_stable_per_sender(self):
        adapter, service = _adapter(ok("a"))
        await adapter.handle_message(NormalizedMessage(content="one", user_id="u1"))
        await adapter.handle_message(NormalizedMessage(content="two", user_id="u1"))
        await adapter.handle_message(NormalizedMessage(content="three", user_id="u2"))
        assert [r["chat_id"] for r in service.requests] == ["fake-u1", "fake-u1", "fake-u2"]

    @pytest.mark.asyncio
    async def test_custom_handler_gets_channel_and_adapter(self):
        adapter, service = _adapter()
        seen = {}

        async def handler(message, context):
            seen.update(context)
            return f"echo: {message.content}"

        adapter.set_message_handler(handler)
        original = {"platform_event": "evt"}
        reply = await adapter.handle_message(NormalizedMessage(content="hi", user_id="u1"), original)

        assert reply == "echo: hi"
        assert seen["channel"] == "fake"
        assert seen["adapter"] is adapter
        assert seen["platform_event"] == "evt"
        assert original == {"platform_event": "evt"}
        assert service.requests == []

    @pytest.mark.asyncio
    async def test_handler_can_delegate_to_default_reply(self):
        adapter, service = _adapter(ok("service says hi"))

        async def handler(message, context):
            if message.content == "/ping":
                return "Pong!"
            return await context["adapter"].default_reply(message)

        adapter.set_message_handler(handler)
        assert await adapter.handle_message(NormalizedMessage(content="/ping", user_id="u1")) == "Pong!"
        assert await adapter.handle_message(NormalizedMessage(content="hey", user_id="u1")) == "service says hi"
        assert len(service.requests) == 1


class TestDispatch:
    @pytest.mark.asyncio
    async def test_reply_is_delivered(self):
        adapter, _ = _adapter(ok("Hello!"))
        assert await adapter.receive({"text": "hi", "user": "u1"}) == "Hello!"
        assert adapter.sent == [("u1", "Hello!")]

    @pytest.mark.asyncio
    async def test_ignored_events_send_nothing(self):
        adapter, service = _adapter()
        await adapter.receive({"text": "hi", "bot": True})
        await adapter.receive({"text": "   "})
        assert adapter.sent == []
        assert service.requests == []

    @pytest.mark.asyncio
    async def test_none_reply_sends_nothing(self):
        adapter, _ = _adapter()

        async def handler(message, context):
            return None

        adapter.set_message_handler(handler)
        assert await adapter.receive({"text": "hi"}) is None
        assert adapter.sent == []

    @pytest.mark.asyncio
    async def test_extras_reach_the_handler(self):
        adapter, _ = _adapter()
        seen = {}

        async def handler(message, context):
            seen.update(context)
            return "ok"

        adapter.set_message_handler(handler)
        await adapter.receive({"text": "hi"}, raw="payload")
        assert seen["raw"] == "payload"

    @pytest.mark.asyncio
    async def test_failure_sends_error_message_once(self, no_sleep):
        adapter, service = _adapter(ConnectionError("down"))
        assert await adapter.receive({"text": "hi", "user": "u1"}) is None
        assert adapter.sent == [("u1", DEFAULT_ERROR_MESSAGE)]
        assert len(service.requests) == 3

    @pytest.mark.asyncio
    async def test_custom_error_message(self):
        adapter, _ = _adapter(error_message="Oops, try later.")

        async def handler(message, context):
            raise RuntimeError("boom")

        adapter.set_message_handler(handler)
        await adapter.receive({"text": "hi", "user": "u1"})
        assert adapter.sent == [("u1", "Oops, try later.")]

    @pytest.mark.asyncio
    async def test_failed_fallback_is_swallowed(self, caplog):
        adapter, _ = _adapter(fail_delivery=True)

        async def handler(message, context):
            raise RuntimeError("boom")

        adapter.set_message_handler(handler)
        with caplog.at_level(logging.ERROR):
            assert await adapter.receive({"text": "hi"}) is None
        assert "Failed to send error message" in caplog.text


class TestAdapterLifecycle:
    @pytest.mark.asyncio
    async def test_stop_resets_started(self):
        adapter, _ = _adapter()
        await adapter.start()
        assert adapter.is_started is True
        await adapter.stop()
        assert adapter.is_started is False

    def test_status(self):
        adapter, _ = _adapter(model="gpt-4o")
        assert adapter.get_status() == {
            "channel": "fake",
            "is_started": False,
            "bot_id": "bot-1",
            "model": "gpt-4o",
        }

    def test_logging_can_be_disabled(self, caplog):
        adapter, _ = _adapter(enable_logging=False)
        with caplog.at_level(logging.DEBUG):
            adapter.logger.error("should not appear")
        assert "should not appear" not in caplog.text

    def test_injected_logger(self):
        custom = logging.getLogger("tests.custom")
        adapter, _ = _adapter(logger=custom)
        assert adapter.logger is custom
