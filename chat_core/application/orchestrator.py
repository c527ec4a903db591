"""补全编排。

把一条用户消息变成一条已持久化的助手回复：

1. 校验输入、查找会话、从注册表解析适配器与模型。
2. 发送：持久化用户消息；重新生成：丢弃历史末尾的回复与用户消息。
3. 组装上下文，预分配助手消息 id，发起流式调用。
4. 后台任务读取适配器的片段序列，逐段转发 chunk 事件到有界通道；
   序列正常结束后识别情绪、覆盖并持久化助手消息，然后才发出 done。
   任一错误转为 error 事件且不持久化；被取消的请求静默结束。

编排层不做重试，遇到的第一个错误直接交给调用方。
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from chat_core.application.commands import (
    EventReceiver,
    RegenerateCommand,
    SendMessageCommand,
    SendMessageResponse,
    StreamingResponse,
)
from chat_core.config.settings import settings
from chat_core.domain import emotion as emotion_analyzer
from chat_core.domain.context_builder import ContextBuilder
from chat_core.domain.conversation import Message, MessageRepository, Session, SessionRepository
from chat_core.domain.events import StreamEvent
from chat_core.domain.exceptions import (
    BusinessError,
    RequestCancelledError,
    SessionNotFoundError,
    ValidationError,
)
from chat_core.domain.models import ChatMessage, CompletionRequest
from chat_core.infrastructure.logging.logger import log_event, logger
from chat_core.providers.base import LLMProvider
from chat_core.providers.registry import AdapterRegistry


class CompletionOrchestrator:
    def __init__(
        self,
        sessions: SessionRepository,
        messages: MessageRepository,
        registry: AdapterRegistry,
        context_builder: Optional[ContextBuilder] = None,
        default_provider_id: Optional[str] = None,
        default_model: Optional[str] = None,
        channel_capacity: Optional[int] = None,
    ):
        self._sessions = sessions
        self._messages = messages
        self._registry = registry
        self._context = context_builder or ContextBuilder(
            max_messages=settings.max_context_messages,
            system_prompt=settings.system_prompt,
        )
        self._default_provider_id = default_provider_id or settings.default_provider_id
        self._default_model = default_model or settings.default_model
        self._capacity = channel_capacity or settings.stream_channel_capacity
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._request_adapters: Dict[str, LLMProvider] = {}

    # ---- 公共入口 ----

    async def send_stream(self, cmd: SendMessageCommand) -> StreamingResponse:
        self._validate(cmd.content)
        content = cmd.content
        session = await self._require_session(cmd.session_id)
        provider_id, adapter, model = await self._resolve(cmd.provider_id, cmd.model)

        history = await self._history(session.id)
        user_msg = Message.user(session.id, content)
        await self._messages.save(user_msg)
        session.touch()
        await self._sessions.save(session)

        messages = self._context.build(history, content)
        return self._start(session, adapter, provider_id, model, messages, cmd.temperature, cmd.max_tokens)

    async def regenerate_stream(self, cmd: RegenerateCommand) -> StreamingResponse:
        self._validate(cmd.user_content)
        content = cmd.user_content
        session = await self._require_session(cmd.session_id)
        provider_id, adapter, model = await self._resolve(cmd.provider_id, cmd.model)

        history = trim_last_turn(await self._history(session.id))
        messages = self._context.build(history, content)
        return self._start(session, adapter, provider_id, model, messages, cmd.temperature, cmd.max_tokens)

    async def send_message(self, cmd: SendMessageCommand) -> SendMessageResponse:
        """非流式发送：等待完整回复后一次性持久化并返回。"""
        self._validate(cmd.content)
        content = cmd.content
        session = await self._require_session(cmd.session_id)
        provider_id, adapter, model = await self._resolve(cmd.provider_id, cmd.model)

        history = await self._history(session.id)
        user_msg = Message.user(session.id, content)
        await self._messages.save(user_msg)

        request = CompletionRequest(
            messages=self._context.build(history, content),
            model=model,
            temperature=cmd.temperature,
            max_tokens=cmd.max_tokens,
            request_id=f"req-{uuid4().hex}",
        )
        log_ctx = self._log_ctx(request.request_id, session.id, provider_id, model)
        log_event(logging.INFO, "Completion started", log_ctx)
        response = await adapter.complete(request)

        assistant = Message.assistant(session.id)
        assistant.finish(
            response.content,
            emotion_analyzer.detect(response.content),
            response.usage.total_tokens,
        )
        await self._messages.save(assistant)
        session.touch()
        await self._sessions.save(session)
        log_event(logging.INFO, "Completion finished", log_ctx, tokens=response.usage.total_tokens)
        return SendMessageResponse(user_message=user_msg, assistant_message=assistant)

    async def cancel(self, request_id: str) -> bool:
        """请求取消；适配器不支持时无效果。返回是否找到该请求。"""
        adapter = self._request_adapters.get(request_id)
        if adapter is None:
            return False
        await adapter.cancel(request_id)
        log_event(logging.INFO, "Cancellation requested", {"request_id": request_id})
        return True

    def active_requests(self) -> List[str]:
        return list(self._tasks)

    # ---- 内部步骤 ----

    @staticmethod
    def _validate(content: str) -> None:
        """只校验去空白后的内容，原文照常持久化与发送。"""
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")

    async def _require_session(self, session_id: str) -> Session:
        session = await self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _resolve(
        self, provider_id: Optional[str], model: Optional[str]
    ) -> Tuple[str, LLMProvider, str]:
        pid = provider_id or self._default_provider_id
        adapter = await self._registry.require(pid)
        resolved = model or self._registry.get_default_model(pid) or self._default_model
        return pid, adapter, resolved

    async def _history(self, session_id: str) -> List[Message]:
        return list((await self._messages.find_by_session(session_id)).items)

    @staticmethod
    def _log_ctx(request_id: Optional[str], session_id: str, provider_id: str, model: str) -> Dict[str, Any]:
        return {
            "request_id": request_id,
            "session_id": session_id,
            "provider_id": provider_id,
            "model": model,
        }

    def _start(
        self,
        session: Session,
        adapter: LLMProvider,
        provider_id: str,
        model: str,
        messages: List[ChatMessage],
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> StreamingResponse:
        request_id = f"req-{uuid4().hex}"
        assistant = Message.assistant(session.id)
        request = CompletionRequest(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            request_id=request_id,
        )
        log_ctx = self._log_ctx(request_id, session.id, provider_id, model)
        log_event(logging.INFO, "Stream started", log_ctx, messages=len(messages))

        queue: "asyncio.Queue[StreamEvent]" = asyncio.Queue(maxsize=self._capacity)
        receiver = EventReceiver(queue)
        task = asyncio.create_task(self._drain(adapter, request, session, assistant, queue, log_ctx))
        receiver.attach(task)
        self._tasks[request_id] = task
        self._request_adapters[request_id] = adapter
        return StreamingResponse(assistant_message=replace(assistant), request_id=request_id, events=receiver)

    def _forget(self, request_id: str) -> None:
        self._tasks.pop(request_id, None)
        self._request_adapters.pop(request_id, None)

    async def _drain(
        self,
        adapter: LLMProvider,
        request: CompletionRequest,
        session: Session,
        assistant: Message,
        queue: "asyncio.Queue[StreamEvent]",
        log_ctx: Dict[str, Any],
    ) -> None:
        try:
            await self._run_stream(adapter, request, session, assistant, queue, log_ctx)
        finally:
            self._forget(request.request_id or "")

    async def _run_stream(
        self,
        adapter: LLMProvider,
        request: CompletionRequest,
        session: Session,
        assistant: Message,
        queue: "asyncio.Queue[StreamEvent]",
        log_ctx: Dict[str, Any],
    ) -> None:
        pieces: List[str] = []
        tokens_used: Optional[int] = None
        try:
            async with aclosing(adapter.complete_stream(request)) as stream:
                async for chunk in stream:
                    if chunk.content:
                        pieces.append(chunk.content)
                        await queue.put(StreamEvent.chunk(chunk.content))
                    if chunk.usage is not None:
                        tokens_used = chunk.usage.total_tokens
        except RequestCancelledError:
            log_event(logging.INFO, "Stream cancelled", log_ctx, chars=sum(len(p) for p in pieces))
            return
        except BusinessError as e:
            log_event(logging.WARNING, "Stream failed", log_ctx, code=e.code, error=str(e))
            await queue.put(StreamEvent.error(str(e)))
            return
        except Exception as e:
            logger.exception("Unexpected stream failure", extra={"extra": log_ctx})
            await queue.put(StreamEvent.error(str(e) or type(e).__name__))
            return

        full_text = "".join(pieces)
        assistant.finish(full_text, emotion_analyzer.detect(full_text), tokens_used)
        try:
            await self._messages.save(assistant)
            session.touch()
            await self._sessions.save(session)
        except BusinessError as e:
            log_event(logging.ERROR, "Failed to save assistant message", log_ctx, error=str(e))
            await queue.put(StreamEvent.error(f"Failed to save message: {e}"))
            return
        except Exception as e:
            logger.exception("Unexpected failure saving assistant message", extra={"extra": log_ctx})
            await queue.put(StreamEvent.error(f"Failed to save message: {str(e) or type(e).__name__}"))
            return

        log_event(logging.INFO, "Stream finished", log_ctx, tokens=tokens_used, chars=len(full_text))
        await queue.put(StreamEvent.done(full_text, tokens_used))


def trim_last_turn(history: List[Message]) -> List[Message]:
    """去掉末尾连续的助手消息，再去掉一条用户消息。"""
    items = list(history)
    while items and items[-1].role == "assistant":
        items.pop()
    if items and items[-1].role == "user":
        items.pop()
    return items
