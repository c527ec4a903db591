"""Dynamic Provider 适配器。

使用 OpenAI 兼容协议，但配置由调用方在运行时提供（DynamicLLMConfig），
而不是在注册表创建适配器时确定。固定 provider_id 为 "dynamic"，超时 120 秒。
HTTP 429 归类为 RateLimitError（默认 60 秒），401 归类为 AuthenticationError。
"""

import logging
from typing import AsyncIterator, List, Optional

import httpx

from chat_core.domain.models import (
    CompletionRequest,
    CompletionResponse,
    DynamicLLMConfig,
    HealthStatus,
    ModelInfo,
    ProviderInfo,
    ProviderKind,
    StreamChunk,
)
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers import openai_wire
from chat_core.providers.http import new_client, open_stream, post_json, with_retries
from chat_core.providers.openai_compat import ping_completion
from chat_core.providers.streaming import LINE, iter_frames


DYNAMIC_PROVIDER_ID = "dynamic"
DYNAMIC_TIMEOUT = 120.0
DYNAMIC_CONTEXT_LENGTH = 128000


class DynamicProvider:
    """运行时配置的 OpenAI 兼容客户端。"""

    def __init__(
        self,
        config: DynamicLLMConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = 1,
    ):
        self._config = config
        self._transport = transport
        self._max_retries = max_retries

    @property
    def config(self) -> DynamicLLMConfig:
        return self._config

    def provider_id(self) -> str:
        return DYNAMIC_PROVIDER_ID

    def _model_info(self) -> ModelInfo:
        return ModelInfo(self._config.model, self._config.model, DYNAMIC_CONTEXT_LENGTH)

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            id=DYNAMIC_PROVIDER_ID,
            name="Dynamic",
            kind=ProviderKind.CUSTOM,
            models=[self._model_info()],
        )

    async def list_models(self) -> List[ModelInfo]:
        return [self._model_info()]

    def _url(self) -> str:
        return f"{self._config.base_url.rstrip('/')}/chat/completions"

    def _headers(self):
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or self._config.model
        payload = openai_wire.build_payload(request, model, stream=False)

        async def call() -> CompletionResponse:
            async with new_client(DYNAMIC_TIMEOUT, self._transport) as client:
                data = await post_json(client, self._url(), payload, self._headers())
            return openai_wire.parse_response(data)

        log_event(
            logging.DEBUG,
            "Dynamic completion",
            {"provider_id": DYNAMIC_PROVIDER_ID, "model": model, "request_id": request.request_id},
        )
        return await with_retries(self._max_retries, call)

    async def complete_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        model = request.model or self._config.model
        payload = openai_wire.build_payload(request, model, stream=True)
        async with new_client(DYNAMIC_TIMEOUT, self._transport) as client:
            async with open_stream(client, self._url(), payload, self._headers()) as resp:
                async for line in iter_frames(resp, LINE):
                    parsed = openai_wire.parse_sse_line(line)
                    if parsed is openai_wire.DONE:
                        return
                    if parsed is not None:
                        yield parsed

    async def cancel(self, request_id: str) -> None:
        return None

    async def health_check(self) -> HealthStatus:
        return await ping_completion(self, self._config.model)
