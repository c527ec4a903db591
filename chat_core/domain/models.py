"""统一的补全请求与结果数据模型。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- ProviderConfig: 一个 Provider 实例的连接配置（不可变，按 id 判等）。
- CompletionRequest: 发给底层 LLM Provider 的完整请求。
- CompletionResponse / StreamChunk: 从 Provider 解析后的统一结果。
- ProviderInfo / ModelInfo / HealthStatus: Provider 的自描述与健康检查结果。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional

from chat_core.domain.exceptions import InvalidRequestError


# 消息角色（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant"]


class ProviderKind(str, Enum):
    """Provider 协议类型。"""

    OPENAI = "openai"
    CLAUDE = "claude"
    OLLAMA = "ollama"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str) -> "ProviderKind":
        """解析前端传来的类型字符串，未知类型按 custom 处理。"""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.CUSTOM


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    FUNCTION_CALL = "function_call"


@dataclass(frozen=True, eq=False)
class ProviderConfig:
    """Provider 连接配置。

    缓存以 id 作为唯一标识，因此相等性与哈希只看 id。
    """

    id: str
    name: str
    kind: ProviderKind
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    default_model: str = "gpt-3.5-turbo"
    timeout_seconds: float = 60.0
    max_retries: int = 3

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProviderConfig):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @classmethod
    def from_frontend(cls, data: Mapping[str, Any]) -> "ProviderConfig":
        """把前端保存的 Provider 记录转换为 ProviderConfig。

        前端字段：id, name, provider_type, base_url, api_key, models[], is_default。
        默认模型取 models 的第一个，为空时使用 gpt-3.5-turbo。
        """
        models = list(data.get("models") or [])
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            kind=ProviderKind.parse(data.get("provider_type") or "custom"),
            base_url=str(data.get("base_url") or ""),
            api_key=data.get("api_key") or None,
            default_model=models[0] if models else "gpt-3.5-turbo",
            timeout_seconds=60.0,
            max_retries=3,
        )


@dataclass(frozen=True)
class DynamicLLMConfig:
    """运行时由调用方提供的 OpenAI 兼容端点配置。"""

    base_url: str
    api_key: str
    model: str
    stream: bool = True


@dataclass
class ChatMessage:
    """一条发给 Provider 的对话消息。"""

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role="assistant", content=content)

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class CompletionRequest:
    """一次补全请求。

    messages 不能为空，最后一条即本次要问 Provider 的内容。
    request_id 用于取消时关联正在进行的流。
    """

    messages: List[ChatMessage]
    model: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    stop: Optional[List[str]] = None
    request_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.messages:
            raise InvalidRequestError("CompletionRequest.messages must not be empty")


@dataclass
class TokenUsage:
    """Token 统计（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> "TokenUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


@dataclass
class CompletionResponse:
    content: str
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class StreamChunk:
    """流式返回的一个增量片段。

    finish_reason 与 usage 只在流的最后一个片段上出现。
    """

    content: str = ""
    finish_reason: Optional[FinishReason] = None
    usage: Optional[TokenUsage] = None


@dataclass
class ModelInfo:
    id: str
    name: str
    context_length: int
    supports_vision: bool = False
    supports_functions: bool = False


@dataclass
class ProviderInfo:
    id: str
    name: str
    kind: ProviderKind
    models: List[ModelInfo] = field(default_factory=list)


@dataclass
class HealthStatus:
    """健康检查结果，错误被收敛到 error_message 中而不是抛出。"""

    is_healthy: bool
    latency_ms: Optional[int] = None
    error_message: Optional[str] = None
