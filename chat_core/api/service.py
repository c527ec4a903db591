"""对外 API 服务模块。

UI 桥接层：接收前端命令，注册/查找调用方给出的 Provider 配置，
启动补全并把事件通道里的事件转换为 MessageChunk / MessageComplete / MessageError
推送给 sink 回调。send / regenerate 立即返回预分配的助手消息 id，
实际内容通过事件送达。
"""

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from chat_core.application.commands import RegenerateCommand, SendMessageCommand, StreamingResponse
from chat_core.application.orchestrator import CompletionOrchestrator
from chat_core.config.settings import settings
from chat_core.domain.conversation import Message, MessageRepository, Session, SessionRepository
from chat_core.domain.events import MessageChunkEvent, MessageCompleteEvent, MessageErrorEvent
from chat_core.domain.models import DynamicLLMConfig, ModelInfo, ProviderConfig, ProviderKind
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.dynamic_client import DYNAMIC_PROVIDER_ID, DynamicProvider
from chat_core.providers.mock_client import MOCK_MODEL, MOCK_PROVIDER_ID, MockProvider
from chat_core.providers.registry import AdapterRegistry


OutboundEvent = Union[MessageChunkEvent, MessageCompleteEvent, MessageErrorEvent]
EventSink = Callable[[OutboundEvent], Any]
PhonemeMapper = Callable[[str], List[Any]]
ProviderConfigLike = Union[ProviderConfig, Mapping[str, Any], None]


class ChatService:
    def __init__(
        self,
        sessions: SessionRepository,
        messages: MessageRepository,
        registry: AdapterRegistry,
        sink: EventSink,
        phoneme_mapper: Optional[PhonemeMapper] = None,
        orchestrator: Optional[CompletionOrchestrator] = None,
    ):
        self._sessions = sessions
        self._messages = messages
        self._registry = registry
        self._sink = sink
        self._phoneme_mapper = phoneme_mapper
        self._orchestrator = orchestrator or CompletionOrchestrator(sessions, messages, registry)
        self._forwarders: Set["asyncio.Task[None]"] = set()
        self._requests: Dict[str, str] = {}
        self._mock = MockProvider()

    # ---- 会话 ----

    async def create_session(self, title: str, preset_id: Optional[str] = None) -> Session:
        session = Session.new(title, preset_id)
        await self._sessions.save(session)
        return session

    async def list_messages(self, session_id: str) -> List[Message]:
        return list((await self._messages.find_by_session(session_id)).items)

    # ---- Provider ----

    @staticmethod
    def _coerce(provider_config: ProviderConfigLike) -> ProviderConfig:
        if provider_config is None:
            return settings.default_provider_config()
        if isinstance(provider_config, ProviderConfig):
            return provider_config
        return ProviderConfig.from_frontend(provider_config)

    async def _provider_id_for(self, provider_config: ProviderConfigLike) -> str:
        """登记调用方给出的配置（缺省取全局配置）；没有凭据的远程 Provider 改用 Mock。"""
        config = self._coerce(provider_config)
        if not config.has_credential and config.kind is not ProviderKind.OLLAMA:
            mock_config = ProviderConfig(
                id=MOCK_PROVIDER_ID,
                name="Mock Provider",
                kind=ProviderKind.CUSTOM,
                default_model=MOCK_MODEL.id,
            )
            await self._registry.register_adapter(self._mock, mock_config)
            log_event(logging.INFO, "No credential configured, using mock provider", {"provider_id": config.id})
            return MOCK_PROVIDER_ID
        cached = await self._registry.get_config(config.id)
        if cached is None or asdict(cached) != asdict(config):
            await self._registry.register(config)
        return config.id

    async def fetch_models(self, provider_config: ProviderConfigLike) -> List[ModelInfo]:
        """按调用方给出的配置实时获取模型列表，不登记该配置。"""
        config = self._coerce(provider_config)
        models = await self._registry.build(config).list_models()
        log_event(logging.INFO, "Models fetched", {"provider_id": config.id}, count=len(models))
        return models

    async def use_dynamic(self, config: DynamicLLMConfig) -> str:
        """登记运行时配置的 Dynamic Provider，返回其 provider id。"""
        snapshot = ProviderConfig(
            id=DYNAMIC_PROVIDER_ID,
            name="Dynamic",
            kind=ProviderKind.CUSTOM,
            base_url=config.base_url,
            api_key=config.api_key,
            default_model=config.model,
            timeout_seconds=120.0,
        )
        await self._registry.register_adapter(DynamicProvider(config), snapshot)
        return DYNAMIC_PROVIDER_ID

    # ---- 补全 ----

    async def send(self, session_id: str, text: str, provider_config: ProviderConfigLike = None) -> str:
        provider_id = await self._provider_id_for(provider_config)
        response = await self._orchestrator.send_stream(
            SendMessageCommand(session_id=session_id, content=text, provider_id=provider_id)
        )
        return self._forward(session_id, response)

    async def regenerate(
        self, session_id: str, last_user_text: str, provider_config: ProviderConfigLike = None
    ) -> str:
        provider_id = await self._provider_id_for(provider_config)
        response = await self._orchestrator.regenerate_stream(
            RegenerateCommand(session_id=session_id, user_content=last_user_text, provider_id=provider_id)
        )
        return self._forward(session_id, response)

    async def stop(self, message_id: str) -> bool:
        """按助手消息 id 取消对应的流。"""
        request_id = self._requests.get(message_id)
        if request_id is None:
            return False
        return await self._orchestrator.cancel(request_id)

    async def wait_idle(self) -> None:
        """等待所有事件转发任务结束。"""
        if self._forwarders:
            await asyncio.gather(*list(self._forwarders))

    def _forward(self, session_id: str, response: StreamingResponse) -> str:
        message_id = response.assistant_message.id
        self._requests[message_id] = response.request_id
        task = asyncio.create_task(self._pump(session_id, response))
        self._forwarders.add(task)
        task.add_done_callback(self._forwarders.discard)
        task.add_done_callback(lambda _t: self._requests.pop(message_id, None))
        return message_id

    async def _pump(self, session_id: str, response: StreamingResponse) -> None:
        message_id = response.assistant_message.id
        async for event in response.events:
            if event.kind == "chunk":
                phonemes = self._phoneme_mapper(event.content) if self._phoneme_mapper else None
                await self._emit(MessageChunkEvent(session_id=session_id, content=event.content, phonemes=phonemes))
            elif event.kind == "done":
                saved = await self._messages.get(message_id)
                await self._emit(
                    MessageCompleteEvent(
                        session_id=session_id,
                        message_id=message_id,
                        emotion=saved.emotion if saved else None,
                    )
                )
            else:
                await self._emit(MessageErrorEvent(session_id=session_id, error=event.message))

    async def _emit(self, event: OutboundEvent) -> None:
        result = self._sink(event)
        if asyncio.iscoroutine(result):
            await result

