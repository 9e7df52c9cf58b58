"""流式对话的客户端驱动。

StreamConsumer 负责一次对话交换的完整生命周期：
乐观追加用户消息 → 发起可取消的 /api/chat 请求 → 增量解码响应体并实时发布
partial_content → 结束后让 HistoryCache 用服务端持久化结果整体替换本地视图。

服务端在流式开始后出错时只会提前断开连接，因此除用户主动 stop() 之外，
任何读取失败都按错误处理并提示用户。
"""

import asyncio
import codecs
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, List, Optional

import httpx

from chat_core.client.api_client import ChatApiClient
from chat_core.client.cancellation import CancellationToken
from chat_core.client.history_cache import HistoryCache
from chat_core.client.notifications import Notification, Notifier, resolve_notifier
from chat_core.domain.exceptions import BusinessError, NetworkError, StreamCancelled
from chat_core.domain.messages import Message
from chat_core.infrastructure.logging.logger import logger


STREAM_FAILURE_DESCRIPTION = "Failed to receive response from AI."


@dataclass(frozen=True)
class ExchangeState:
    is_streaming: bool
    partial_content: str


ExchangeListener = Callable[[ExchangeState], None]


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class StreamConsumer:
    """驱动单个对话交换，并向 UI 暴露 is_streaming / partial_content。

    假定 UI 串行调用 send()；旧交换的收尾不会覆盖新交换的状态。
    """

    def __init__(
        self,
        api: ChatApiClient,
        history: HistoryCache,
        notifier: Optional[Notifier] = None,
    ):
        self._api = api
        self._history = history
        self._notify = resolve_notifier(notifier)
        self._token: Optional[CancellationToken] = None
        self._is_streaming = False
        self._partial = ""
        self._listeners: List[ExchangeListener] = []

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    @property
    def partial_content(self) -> str:
        return self._partial

    @property
    def state(self) -> ExchangeState:
        return ExchangeState(self._is_streaming, self._partial)

    def subscribe(self, listener: ExchangeListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def send(self, content: str) -> None:
        self._history.optimistic_append(
            Message(
                id=int(time.time() * 1000),
                role="user",
                content=content,
                created_at=datetime.now(timezone.utc),
            )
        )
        token = CancellationToken()
        self._token = token
        self._set_state(True, "")
        try:
            resp = await token.race(self._api.open_chat(content))
            try:
                await self._read_loop(resp, token)
            finally:
                await resp.aclose()
            # 用服务端持久化的消息替换乐观追加的消息与 partial 内容
            await asyncio.wait({self._history.invalidate()})
        except StreamCancelled:
            logger.info("Chat stream cancelled by user")
        except BusinessError as e:
            self._on_failure(e, token)
        finally:
            if self._token is token:
                self._token = None
                self._set_state(False, "")

    def stop(self) -> None:
        """取消进行中的交换；没有进行中的交换时什么也不做。"""

        token = self._token
        if token is None:
            return
        token.cancel()
        self._token = None
        self._set_state(False, "")
        self._history.invalidate()

    async def _read_loop(self, resp: httpx.Response, token: CancellationToken) -> None:
        # 多字节字符可能被拆在两个分块之间，解码器必须跨读取保留状态
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        chunks = resp.aiter_bytes().__aiter__()
        while True:
            try:
                raw = await token.race(_next_chunk(chunks))
            except httpx.HTTPError as e:
                raise NetworkError(code="STREAM_READ_FAILED", message=str(e) or type(e).__name__)
            token.raise_if_cancelled()
            if raw is None:
                break
            text = decoder.decode(raw)
            if text:
                self._set_state(True, self._partial + text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._set_state(True, self._partial + tail)

    def _on_failure(self, error: BusinessError, token: CancellationToken) -> None:
        if token.cancelled:
            # stop() 与传输层错误同时发生时，以用户取消为准，不提示
            return
        logger.error(
            f"Stream error: {error.message}",
            extra={"extra": {"code": error.code, "received_chars": len(self._partial)}},
        )
        description = STREAM_FAILURE_DESCRIPTION
        if error.code == "CHAT_REQUEST_FAILED":
            # 流式开始之前的失败，服务端给出了结构化提示
            description = error.message
        self._notify(Notification("Error", description, "destructive"))
        self._history.invalidate()

    def _set_state(self, is_streaming: bool, partial: str) -> None:
        self._is_streaming = is_streaming
        self._partial = partial
        state = self.state
        for listener in list(self._listeners):
            listener(state)
