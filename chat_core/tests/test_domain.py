import pytest

from chat_core.domain.context_builder import ContextBuilder
from chat_core.domain.conversation import Message, PaginatedResult, Pagination
from chat_core.domain.emotion import Emotion, detect
from chat_core.domain.events import MessageCompleteEvent, StreamEvent
from chat_core.domain.exceptions import ApiError, InvalidRequestError, RateLimitError
from chat_core.domain.models import ChatMessage, CompletionRequest, ProviderConfig, ProviderKind


def _history(n):
    items = []
    for i in range(n):
        if i % 2 == 0:
            items.append(Message.user("s1", f"u{i}"))
        else:
            items.append(Message.assistant("s1", f"a{i}"))
    return items


@pytest.mark.parametrize("history_len", [0, 1, 3, 10, 11])
@pytest.mark.parametrize("prompt", [None, "You are a helpful AI assistant."])
def test_context_length(history_len, prompt):
    builder = ContextBuilder(max_messages=10, system_prompt=prompt)
    out = builder.build(_history(history_len), "now")
    assert len(out) == (1 if prompt else 0) + min(history_len, 10) + 1
    assert out[-1].role == "user" and out[-1].content == "now"
    if prompt:
        assert out[0].role == "system"


def test_context_keeps_most_recent_window():
    out = ContextBuilder(max_messages=2).build(_history(5), "now")
    assert [m.content for m in out] == ["a3", "u4", "now"]


def test_estimate_tokens():
    msgs = [ChatMessage.user("x" * 8), ChatMessage.assistant("")]
    assert ContextBuilder.estimate_tokens(msgs) == (2 + 4) + (0 + 4)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("太好了，哈哈", Emotion.HAPPY),
        ("I'm so HAPPY for you", Emotion.HAPPY),
        ("抱歉，我做不到", Emotion.SAD),
        ("这让我很生气", Emotion.ANGRY),
        ("天哪，居然是这样", Emotion.SURPRISED),
        ("让我想想 🤔", Emotion.THINKING),
        ("The capital of France is Paris.", Emotion.NEUTRAL),
        ("I am unhappy about it", Emotion.NEUTRAL),
        ("Enjoy the trip", Emotion.NEUTRAL),
        ("Glad it worked!", Emotion.HAPPY),
        ("", Emotion.NEUTRAL),
    ],
)
def test_detect_emotion(text, expected):
    assert detect(text) is expected


def test_emotion_priority_and_expression():
    # 同时命中时按优先级取 happy
    assert detect("抱歉…不过太好了") is Emotion.HAPPY
    assert Emotion.HAPPY.to_expression_name() == "smile"
    assert Emotion.NEUTRAL.to_expression_name() == "neutral"


def test_provider_config_equality_by_id():
    a = ProviderConfig(id="x", name="A", kind=ProviderKind.OPENAI, default_model="m1")
    b = ProviderConfig(id="x", name="B", kind=ProviderKind.CLAUDE, default_model="m2")
    assert a == b
    assert len({a, b}) == 1


def test_provider_config_from_frontend():
    cfg = ProviderConfig.from_frontend(
        {
            "id": "p",
            "name": "My Provider",
            "provider_type": "Claude",
            "base_url": "https://x",
            "api_key": "k",
            "models": ["claude-3-opus-20240229", "other"],
            "is_default": True,
        }
    )
    assert cfg.kind is ProviderKind.CLAUDE
    assert cfg.default_model == "claude-3-opus-20240229"
    assert (cfg.timeout_seconds, cfg.max_retries) == (60.0, 3)

    fallback = ProviderConfig.from_frontend({"id": "q", "provider_type": "weird", "models": []})
    assert fallback.kind is ProviderKind.CUSTOM
    assert fallback.default_model == "gpt-3.5-turbo"
    assert fallback.has_credential is False


def test_completion_request_requires_messages():
    with pytest.raises(InvalidRequestError):
        CompletionRequest(messages=[], model="m")


def test_message_finish_overwrites_in_place():
    msg = Message.assistant("s1")
    assert msg.content == ""
    msg.finish("done", Emotion.HAPPY, 12)
    assert (msg.content, msg.emotion, msg.tokens) == ("done", Emotion.HAPPY, 12)


def test_pagination():
    assert Pagination(page=3, limit=10).offset == 20
    assert PaginatedResult(items=[], total=25, page=2, limit=10).has_more is True
    assert PaginatedResult(items=[], total=20, page=2, limit=10).has_more is False


def test_events_and_errors_render():
    assert StreamEvent.chunk("a").is_terminal is False
    assert StreamEvent.done("abc", 3).is_terminal is True
    payload = MessageCompleteEvent(session_id="s", message_id="m", emotion=Emotion.SAD).to_dict()
    assert payload == {"session_id": "s", "message_id": "m", "emotion": "sad", "name": "message_complete"}
    assert RateLimitError().retry_after_seconds == 60
    assert str(ApiError(code="500", message="boom")) == "API error (500): boom"
