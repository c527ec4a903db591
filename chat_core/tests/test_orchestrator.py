import asyncio

import httpx
import pytest

from chat_core.application.commands import RegenerateCommand, SendMessageCommand
from chat_core.application.orchestrator import CompletionOrchestrator, trim_last_turn
from chat_core.domain.context_builder import ContextBuilder
from chat_core.domain.conversation import Message, Session
from chat_core.domain.emotion import Emotion
from chat_core.domain.exceptions import (
    NetworkError,
    ProviderNotAvailableError,
    SessionNotFoundError,
    StorageError,
    ValidationError,
)
from chat_core.domain.models import ProviderConfig, ProviderKind, StreamChunk
from chat_core.infrastructure.storage.memory_store import InMemoryMessageRepository, InMemorySessionRepository
from chat_core.providers.mock_client import MockProvider, mock_reply
from chat_core.providers.registry import AdapterRegistry


MOCK_CONFIG = ProviderConfig(id="mock", name="Mock", kind=ProviderKind.CUSTOM, default_model="mock-model")


class RecordingProvider(MockProvider):
    def __init__(self):
        super().__init__(chunk_size=5)
        self.requests = []

    async def complete_stream(self, request):
        self.requests.append(request)
        async for chunk in super().complete_stream(request):
            yield chunk


class FailingProvider(MockProvider):
    async def complete_stream(self, request):
        yield StreamChunk(content="partial")
        raise NetworkError("connection reset")


class FailingAssistantRepository(InMemoryMessageRepository):
    async def save(self, message):
        if message.role == "assistant":
            raise StorageError("disk full")
        await super().save(message)


class BrokenAssistantRepository(InMemoryMessageRepository):
    async def save(self, message):
        if message.role == "assistant":
            raise RuntimeError("database is locked")
        await super().save(message)


async def _setup(provider=None, messages=None, system_prompt=None):
    sessions = InMemorySessionRepository()
    messages = messages or InMemoryMessageRepository()
    registry = AdapterRegistry()
    await registry.register_adapter(provider or MockProvider(chunk_size=5), MOCK_CONFIG)
    session = Session.new("test")
    await sessions.save(session)
    orchestrator = CompletionOrchestrator(
        sessions,
        messages,
        registry,
        context_builder=ContextBuilder(max_messages=50, system_prompt=system_prompt),
        default_provider_id="mock",
    )
    return orchestrator, sessions, messages, session


async def _drain(response):
    return [event async for event in response.events]


def test_send_hello_with_mock_persists_both_turns():
    async def scenario():
        orchestrator, _, messages, session = await _setup()
        response = await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content="Hello"))
        assert response.assistant_message.content == ""
        events = await _drain(response)
        stored = (await messages.find_by_session(session.id)).items
        return response, events, stored

    response, events, stored = asyncio.run(scenario())

    assert [m.role for m in stored] == ["user", "assistant"]
    assert stored[0].content == "Hello"
    assistant = stored[1]
    assert assistant.id == response.assistant_message.id
    assert assistant.content == mock_reply("Hello")
    assert assistant.emotion is Emotion.NEUTRAL
    assert assistant.tokens == 60

    assert [e.kind for e in events[:-1]] == ["chunk"] * (len(events) - 1)
    done = events[-1]
    assert done.kind == "done"
    assert done.full_content == assistant.content
    assert "".join(e.content for e in events[:-1]) == done.full_content
    assert done.tokens_used == 60


@pytest.mark.parametrize("content", ["", "   ", "\n\t"])
def test_send_empty_content_is_rejected(content):
    async def scenario():
        orchestrator, _, messages, session = await _setup()
        with pytest.raises(ValidationError):
            await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content=content))
        return await messages.count_by_session(session.id)

    assert asyncio.run(scenario()) == 0


def test_send_to_missing_session_is_rejected():
    async def scenario():
        orchestrator, _, messages, _ = await _setup()
        with pytest.raises(SessionNotFoundError):
            await orchestrator.send_stream(SendMessageCommand(session_id="s-missing", content="Hello"))
        return await messages.count_by_session("s-missing")

    assert asyncio.run(scenario()) == 0


def test_unknown_provider_persists_nothing():
    async def scenario():
        orchestrator, _, messages, session = await _setup()
        with pytest.raises(ProviderNotAvailableError):
            await orchestrator.send_stream(
                SendMessageCommand(session_id=session.id, content="Hello", provider_id="nope")
            )
        return await messages.count_by_session(session.id)

    assert asyncio.run(scenario()) == 0


def test_regenerate_replaces_trailing_turn():
    provider = RecordingProvider()

    async def scenario():
        orchestrator, _, messages, session = await _setup(provider=provider)
        await messages.save(Message.user(session.id, "hi"))
        await messages.save(Message.assistant(session.id, "hello"))
        response = await orchestrator.regenerate_stream(
            RegenerateCommand(session_id=session.id, user_content="hi again")
        )
        events = await _drain(response)
        return events, await messages.count_by_session(session.id)

    events, count = asyncio.run(scenario())

    sent = provider.requests[0].messages
    assert [(m.role, m.content) for m in sent] == [("user", "hi again")]
    assert events[-1].kind == "done"
    # 原有两条 + 新的助手回复；用户消息不重复持久化
    assert count == 3


def test_trim_last_turn():
    history = [
        Message.user("s", "q1"),
        Message.assistant("s", "a1"),
        Message.user("s", "q2"),
        Message.assistant("s", "a2"),
        Message.assistant("s", "a2-bis"),
    ]
    assert [m.content for m in trim_last_turn(history)] == ["q1", "a1"]
    assert trim_last_turn([]) == []


def test_send_context_includes_history_once():
    provider = RecordingProvider()

    async def scenario():
        orchestrator, _, messages, session = await _setup(provider=provider, system_prompt="sys")
        await messages.save(Message.user(session.id, "first"))
        await messages.save(Message.assistant(session.id, "reply"))
        response = await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content="second"))
        await _drain(response)

    asyncio.run(scenario())

    sent = provider.requests[0].messages
    assert [(m.role, m.content) for m in sent] == [
        ("system", "sys"),
        ("user", "first"),
        ("assistant", "reply"),
        ("user", "second"),
    ]
    assert provider.requests[0].model == "mock-model"
    assert provider.requests[0].request_id


def test_adapter_error_becomes_error_event_without_persisting():
    async def scenario():
        orchestrator, _, messages, session = await _setup(provider=FailingProvider())
        response = await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content="Hello"))
        events = await _drain(response)
        stored = (await messages.find_by_session(session.id)).items
        return events, stored

    events, stored = asyncio.run(scenario())

    assert [e.kind for e in events] == ["chunk", "error"]
    assert events[-1].message == "connection reset"
    assert [m.role for m in stored] == ["user"]


def test_persistence_failure_reports_error_instead_of_done():
    async def scenario():
        orchestrator, _, _, session = await _setup(messages=FailingAssistantRepository())
        response = await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content="Hello"))
        return await _drain(response)

    events = asyncio.run(scenario())

    assert events[-1].kind == "error"
    assert events[-1].message.startswith("Failed to save message:")
    assert all(e.kind != "done" for e in events)


def test_cancel_stops_stream_without_terminal_event():
    async def scenario():
        gate = asyncio.Event()

        async def body():
            yield b'data: {"choices":[{"delta":{"content":"one"}}]}\n\n'
            await gate.wait()
            yield b'data: {"choices":[{"delta":{"content":"two"}}]}\n\n'
            yield b"data: [DONE]\n\n"

        registry = AdapterRegistry(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body())))
        await registry.get_or_create(
            ProviderConfig(id="live", name="Live", kind=ProviderKind.OPENAI, api_key="k", default_model="gpt-4o")
        )
        sessions, messages = InMemorySessionRepository(), InMemoryMessageRepository()
        session = Session.new("t")
        await sessions.save(session)
        orchestrator = CompletionOrchestrator(sessions, messages, registry, default_provider_id="live")

        response = await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content="Hello"))
        first = await response.events.recv()
        cancelled = await orchestrator.cancel(response.request_id)
        gate.set()
        rest = await _drain(response)
        stored = (await messages.find_by_session(session.id)).items
        return first, cancelled, rest, stored, orchestrator.active_requests()

    first, cancelled, rest, stored, active = asyncio.run(scenario())

    assert first.kind == "chunk" and first.content == "one"
    assert cancelled is True
    assert rest == []
    assert [m.role for m in stored] == ["user"]
    assert active == []


def test_send_message_blocking():
    async def scenario():
        orchestrator, sessions, messages, session = await _setup()
        before = session.updated_at
        result = await orchestrator.send_message(SendMessageCommand(session_id=session.id, content="Hello"))
        stored = await messages.count_by_session(session.id)
        touched = (await sessions.get(session.id)).updated_at
        return result, stored, before, touched

    result, stored, before, touched = asyncio.run(scenario())

    assert result.user_message.content == "Hello"
    assert result.assistant_message.content == mock_reply("Hello")
    assert result.assistant_message.tokens == 60
    assert stored == 2
    assert touched >= before


def test_send_keeps_original_whitespace():
    provider = RecordingProvider()
    code = "    def f():\n        return 1\n"

    async def scenario():
        orchestrator, _, messages, session = await _setup(provider=provider)
        response = await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content=code))
        await _drain(response)
        return (await messages.find_by_session(session.id)).items

    stored = asyncio.run(scenario())

    assert stored[0].content == code
    assert provider.requests[0].messages[-1].content == code


def test_regenerate_keeps_original_whitespace():
    provider = RecordingProvider()

    async def scenario():
        orchestrator, _, _, session = await _setup(provider=provider)
        response = await orchestrator.regenerate_stream(
            RegenerateCommand(session_id=session.id, user_content="  indented\n")
        )
        await _drain(response)

    asyncio.run(scenario())

    assert provider.requests[0].messages[-1].content == "  indented\n"


def test_unexpected_save_failure_still_ends_with_error():
    async def scenario():
        orchestrator, _, _, session = await _setup(messages=BrokenAssistantRepository())
        response = await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content="Hello"))
        events = await _drain(response)
        return events, orchestrator.active_requests()

    events, active = asyncio.run(scenario())

    assert [e.kind for e in events if e.kind != "chunk"] == ["error"]
    assert events[-1].message == "Failed to save message: database is locked"
    assert active == []


def test_cancel_on_adapter_without_cancellation_still_completes():
    async def scenario():
        orchestrator, _, messages, session = await _setup()
        response = await orchestrator.send_stream(SendMessageCommand(session_id=session.id, content="Hello"))
        cancelled = await orchestrator.cancel(response.request_id)
        events = await _drain(response)
        return cancelled, events, await messages.count_by_session(session.id)

    cancelled, events, count = asyncio.run(scenario())

    assert cancelled is True
    assert events[-1].kind == "done"
    assert events[-1].full_content == mock_reply("Hello")
    assert count == 2
