"""流式对话中继核心模块。

一次对话轮次（ChatTurn）的完整编排：持久化用户消息、构建上下文、
调用 provider 的流式接口、把增量原样转发给 HTTP 响应，
并在响应结束后把完整回复持久化为 assistant 消息。
"""

import asyncio
import enum
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Set
from uuid import uuid4

from chat_core.domain.exceptions import PersistenceError, ProviderError, ValidationError
from chat_core.domain.messages import Message, MessageStore
from chat_core.domain.models import ChatMessage, ChatRequest, ChatStreamChunk
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ProviderClient


class TurnState(str, enum.Enum):
    PENDING = "pending"
    PERSISTED_USER = "persisted_user"
    STREAMING = "streaming"
    DRAINING = "draining"
    COMPLETED = "completed"
    FAILED_BEFORE_STREAM = "failed_before_stream"
    FAILED_DURING_STREAM = "failed_during_stream"


async def _anext(it: AsyncIterator[ChatStreamChunk]) -> Optional[ChatStreamChunk]:
    try:
        return await it.__anext__()
    except StopAsyncIteration:
        return None


def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})


class ChatTurn:
    """单次对话轮次的流式会话，只在一次请求内存在。

    - 迭代 ChatTurn 得到按顺序到达的原始文本片段。
    - 迭代正常结束后状态为 COMPLETED，finalize() 才会写入 assistant 消息。
    - 迭代过程中 provider 出错则状态为 FAILED_DURING_STREAM，异常继续向上抛出，
      由服务器直接中断分块响应。
    - 客户端断开（迭代被取消或关闭）时状态为 DRAINING：后台任务继续读完
      provider 流，完成后照常持久化 assistant 消息。
    """

    def __init__(
        self,
        store: MessageStore,
        idle_timeout: float,
        log_ctx: Dict[str, Any],
        background: Optional[Set[asyncio.Task]] = None,
    ):
        self._store = store
        self._idle_timeout = idle_timeout
        self._log_ctx = log_ctx
        self._background = background if background is not None else set()
        self._stream: Optional[AsyncIterator[ChatStreamChunk]] = None
        # 正在进行的 provider 读取；调用方被取消时保留给后台任务继续等待
        self._pending: Optional[asyncio.Future] = None
        self._first: Optional[str] = None
        self._pieces: List[str] = []
        self._started_at = time.time()
        self._iterated = False
        self.state = TurnState.PENDING
        self.user_message: Optional[Message] = None
        self.assistant_message: Optional[Message] = None
        self.drain_task: Optional[asyncio.Task] = None

    @property
    def trace_id(self) -> str:
        return self._log_ctx["trace_id"]

    @property
    def accumulated(self) -> str:
        return "".join(self._pieces)

    async def prime(self, stream: AsyncIterator[ChatStreamChunk]) -> None:
        """拉取第一段非空文本，此时 HTTP 响应尚未开始发送。"""

        self._stream = stream
        self._first = await self._next_fragment()

    async def __aiter__(self) -> AsyncIterator[str]:
        if self._iterated:
            raise RuntimeError("ChatTurn can only be iterated once")
        self._iterated = True
        self.state = TurnState.STREAMING
        _log(logging.INFO, "Streaming started", self._log_ctx)
        try:
            text = self._first
            while text is not None:
                self._pieces.append(text)
                yield text
                text = await self._next_fragment()
        except (asyncio.CancelledError, GeneratorExit):
            # 客户端已断开，不能在这里 await
            self._detach()
            raise
        except Exception as e:
            self.state = TurnState.FAILED_DURING_STREAM
            _log(
                logging.ERROR,
                "Stream aborted",
                self._log_ctx,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                streamed_chars=len(self.accumulated),
            )
            await self.close_stream()
            raise
        await self.close_stream()
        self.state = TurnState.COMPLETED
        _log(
            logging.INFO,
            "Streaming completed",
            self._log_ctx,
            fragments=len(self._pieces),
            streamed_chars=len(self.accumulated),
        )

    async def finalize(self) -> Optional[Message]:
        """响应关闭后调用：只有正常完成的轮次才持久化 assistant 消息。"""

        if self.assistant_message is not None:
            return self.assistant_message
        elapsed = round(time.time() - self._started_at, 2)
        if self.state is not TurnState.COMPLETED:
            _log(
                logging.WARNING,
                "Skipped assistant persistence",
                self._log_ctx,
                state=self.state.value,
                elapsed_seconds=elapsed,
            )
            return None
        try:
            self.assistant_message = await asyncio.to_thread(
                self._store.create_message, "assistant", self.accumulated
            )
        except Exception as e:
            _log(logging.ERROR, "Failed to store assistant message", self._log_ctx, error=str(e))
            raise
        _log(
            logging.INFO,
            "Completed chat turn",
            self._log_ctx,
            elapsed_seconds=elapsed,
            user_message_id=self.user_message.id if self.user_message else None,
            assistant_message_id=self.assistant_message.id,
        )
        return self.assistant_message

    async def close_stream(self) -> None:
        """撤销进行中的读取并关闭 provider 流。"""

        pending, self._pending = self._pending, None
        if pending is not None:
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        stream, self._stream = self._stream, None
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    def _detach(self) -> None:
        self.state = TurnState.DRAINING
        _log(
            logging.INFO,
            "Client disconnected, draining provider stream",
            self._log_ctx,
            streamed_chars=len(self.accumulated),
        )
        task = asyncio.ensure_future(self._drain())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        self.drain_task = task

    async def _drain(self) -> Optional[Message]:
        try:
            text = await self._next_fragment()
            while text is not None:
                self._pieces.append(text)
                text = await self._next_fragment()
        except Exception as e:
            self.state = TurnState.FAILED_DURING_STREAM
            _log(
                logging.ERROR,
                "Stream aborted while draining",
                self._log_ctx,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            return None
        finally:
            await self.close_stream()
        self.state = TurnState.COMPLETED
        try:
            return await self.finalize()
        except PersistenceError:
            # finalize 已记录日志，后台任务没有可以上报的调用方
            return None

    async def _next_fragment(self) -> Optional[str]:
        """返回下一段非空文本；provider 流结束时返回 None。"""

        if self._stream is None:
            return None
        while True:
            if self._pending is None:
                self._pending = asyncio.ensure_future(_anext(self._stream))
            try:
                chunk = await asyncio.wait_for(asyncio.shield(self._pending), timeout=self._idle_timeout)
            except asyncio.TimeoutError:
                raise ProviderError(
                    code="STREAM_IDLE_TIMEOUT",
                    message=f"No output from provider for {self._idle_timeout:g}s",
                )
            self._pending = None
            if chunk is None:
                return None
            if chunk.usage:
                _log(
                    logging.INFO,
                    "Token usage",
                    self._log_ctx,
                    prompt_tokens=chunk.usage.prompt_tokens,
                    completion_tokens=chunk.usage.completion_tokens,
                    total_tokens=chunk.usage.total_tokens,
                )
            if chunk.text:
                return chunk.text


class StreamRelay:
    """把一次聊天请求编排为 provider 流 → HTTP 响应流。

    store 与 provider 由调用方显式注入；不同请求之间除 store 外没有共享的可变状态。
    """

    def __init__(
        self,
        store: MessageStore,
        provider_client: ProviderClient,
        system_prompt: str,
        model: str = "chat",
        temperature: float = 0.7,
        idle_timeout: float = 60.0,
    ):
        self._store = store
        self._provider_client = provider_client
        self._system_prompt = system_prompt
        self._model = model
        self._temperature = temperature
        self._idle_timeout = idle_timeout
        # 客户端断开后仍在读取 provider 的后台任务
        self._background: Set[asyncio.Task] = set()

    async def open_turn(self, message: str) -> ChatTurn:
        """执行第一个字节发出之前的全部步骤。

        返回的 ChatTurn 已经拿到第一段输出；在此之前的任何失败都会直接抛出，
        由 API 层转成结构化错误响应，且不会写入 assistant 消息。
        """

        if not isinstance(message, str) or not message.strip():
            raise ValidationError(code="INVALID_MESSAGE", message="message must be a non-empty string")

        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "provider": self._provider_client.name,
            "model": self._model,
        }
        turn = ChatTurn(self._store, self._idle_timeout, log_ctx, self._background)
        try:
            turn.user_message = await asyncio.to_thread(self._store.create_message, "user", message)
            turn.state = TurnState.PERSISTED_USER
            _log(logging.INFO, "Stored user message", log_ctx, message_id=turn.user_message.id)

            history = await asyncio.to_thread(self._store.list_messages)
            chat_messages = [ChatMessage(role="system", content=self._system_prompt)]
            for m in history:
                chat_messages.append(ChatMessage(role=m.role, content=m.content))

            req = ChatRequest(
                provider=self._provider_client.name,
                model=self._model,
                messages=chat_messages,
                temperature=self._temperature,
            )
            _log(
                logging.INFO,
                "Calling provider (stream)",
                log_ctx,
                message_count=len(chat_messages),
            )
            await turn.prime(self._provider_client.chat_stream(req))
        except Exception as e:
            turn.state = TurnState.FAILED_BEFORE_STREAM
            await turn.close_stream()
            _log(
                logging.ERROR,
                "Chat turn failed before streaming",
                log_ctx,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        return turn

    async def shutdown(self) -> None:
        """等待所有后台读取完成，在关闭存储之前调用。"""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
