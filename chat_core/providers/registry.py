"""适配器注册表。

按 ProviderConfig.id 缓存适配器实例及其配置快照：

- 两张表由同一把读写锁保护，重复注册同一 id 时实例与快照一起替换，
  不存在只更新了一半的中间状态。
- 首次创建时并发的调用方可能各自构造一个适配器，后写入者生效；
  适配器对单次请求无状态，因此可以接受。
- 注册表拥有适配器的生命周期，调用方只在一次请求期间借用引用。

注册表在进程启动时构造一次，通过依赖注入传递，不使用全局单例。
"""

import logging
from typing import Dict, List, Optional

import httpx

from chat_core.domain.exceptions import ProviderNotAvailableError
from chat_core.domain.models import ProviderConfig, ProviderInfo, ProviderKind
from chat_core.infrastructure.locks import AsyncRWLock
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import LLMProvider
from chat_core.providers.claude_client import ClaudeProvider
from chat_core.providers.ollama_client import OllamaProvider
from chat_core.providers.openai_compat import OpenAICompatibleProvider


def create_adapter(
    config: ProviderConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMProvider:
    """按 ProviderKind 构造适配器，custom 使用 OpenAI 兼容协议。"""
    kind = config.kind
    if kind is ProviderKind.OPENAI or kind is ProviderKind.CUSTOM:
        return OpenAICompatibleProvider(config, transport=transport)
    if kind is ProviderKind.CLAUDE:
        return ClaudeProvider(config, transport=transport)
    if kind is ProviderKind.OLLAMA:
        return OllamaProvider(config, transport=transport)
    raise ValueError(f"Unsupported provider kind: {kind!r}")


class AdapterRegistry:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._lock = AsyncRWLock()
        self._adapters: Dict[str, LLMProvider] = {}
        self._configs: Dict[str, ProviderConfig] = {}
        self._transport = transport

    def build(self, config: ProviderConfig) -> LLMProvider:
        """构造一个不进入缓存的临时适配器。"""
        return create_adapter(config, self._transport)

    async def get_or_create(self, config: ProviderConfig) -> LLMProvider:
        async with self._lock.read():
            cached = self._adapters.get(config.id)
        if cached is not None:
            return cached
        adapter = create_adapter(config, self._transport)
        async with self._lock.write():
            self._adapters[config.id] = adapter
            self._configs[config.id] = config
        log_event(logging.INFO, "Provider adapter created", {"provider_id": config.id, "kind": config.kind.value})
        return adapter

    async def register(self, config: ProviderConfig) -> LLMProvider:
        """用新配置构造适配器并替换同 id 的缓存。"""
        adapter = create_adapter(config, self._transport)
        await self.register_adapter(adapter, config)
        return adapter

    async def register_adapter(self, adapter: LLMProvider, config: ProviderConfig) -> None:
        """直接登记一个已构造的适配器（Mock、Dynamic 等）。"""
        async with self._lock.write():
            self._adapters[config.id] = adapter
            self._configs[config.id] = config

    async def get(self, provider_id: str) -> Optional[LLMProvider]:
        async with self._lock.read():
            return self._adapters.get(provider_id)

    async def require(self, provider_id: str) -> LLMProvider:
        adapter = await self.get(provider_id)
        if adapter is None:
            raise ProviderNotAvailableError(provider_id)
        return adapter

    def get_default_model(self, provider_id: str) -> Optional[str]:
        """非阻塞读取缓存配置的默认模型；有写者活动或不存在时返回 None。"""
        if self._lock.write_pending:
            return None
        config = self._configs.get(provider_id)
        return config.default_model if config else None

    async def get_config(self, provider_id: str) -> Optional[ProviderConfig]:
        async with self._lock.read():
            return self._configs.get(provider_id)

    async def invalidate(self, provider_id: str) -> bool:
        async with self._lock.write():
            removed = self._adapters.pop(provider_id, None)
            self._configs.pop(provider_id, None)
        if removed is not None:
            log_event(logging.INFO, "Provider adapter invalidated", {"provider_id": provider_id})
        return removed is not None

    async def invalidate_all(self) -> None:
        async with self._lock.write():
            self._adapters.clear()
            self._configs.clear()

    async def count(self) -> int:
        async with self._lock.read():
            return len(self._adapters)

    async def list_providers(self) -> List[ProviderInfo]:
        async with self._lock.read():
            adapters = list(self._adapters.values())
        return [a.provider_info() for a in adapters]
