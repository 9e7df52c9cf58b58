"""客户端消息历史缓存。

以单一固定 key（/api/messages）缓存 list 结果：
- 首次读取或失效后重新拉取；
- 发送时可乐观追加本地构造的消息；
- 重新拉取成功后整体替换缓存，不按 id 合并，避免临时 id 与服务端 id 冲突。
"""

import asyncio
from typing import Callable, List, Optional

from chat_core.client.api_client import MESSAGES_PATH, ChatApiClient
from chat_core.client.notifications import Notification, Notifier, resolve_notifier
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.messages import Message
from chat_core.infrastructure.logging.logger import logger


HistoryListener = Callable[[List[Message]], None]


class HistoryCache:
    key = MESSAGES_PATH

    def __init__(self, api: ChatApiClient, notifier: Optional[Notifier] = None):
        self._api = api
        self._notify = resolve_notifier(notifier)
        self._value: Optional[List[Message]] = None
        self._stale = True
        # 每次 invalidate/clear 递增；只有最新一代的拉取结果会写入缓存
        self._generation = 0
        self._refetch_task: Optional[asyncio.Task] = None
        self._listeners: List[HistoryListener] = []

    @property
    def is_stale(self) -> bool:
        return self._stale

    def snapshot(self) -> List[Message]:
        return list(self._value or [])

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def read(self) -> List[Message]:
        while self._value is None or self._stale:
            task = self._refetch_task
            if task is None or task.done():
                task = self.invalidate()
            await task
        return self.snapshot()

    def invalidate(self) -> asyncio.Task:
        """标记缓存过期并在后台重新拉取，返回对应的任务。"""

        self._stale = True
        self._generation += 1
        task = asyncio.ensure_future(self._refetch(self._generation))
        task.add_done_callback(self._log_refetch_failure)
        self._refetch_task = task
        return task

    def optimistic_append(self, message: Message) -> None:
        self._value = [*(self._value or []), message]
        self._publish()

    async def clear(self) -> bool:
        """清空历史：先同步清空本地缓存，再请求服务端清空。"""

        self._generation += 1
        self._value = []
        self._stale = False
        self._publish()
        try:
            await self._api.clear_messages()
        except BusinessError as e:
            logger.error(f"Failed to clear history: {e.message}", extra={"extra": {"code": e.code}})
            self._notify(Notification("Error", "Failed to clear chat history.", "destructive"))
            self.invalidate()
            return False
        self._notify(Notification("History Cleared", "Your chat history has been reset."))
        return True

    async def _refetch(self, generation: int) -> bool:
        messages = await self._api.list_messages()
        if generation != self._generation:
            return False
        self._value = messages
        self._stale = False
        self._publish()
        return True

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    @staticmethod
    def _log_refetch_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                f"History refetch failed: {exc}",
                extra={"extra": {"error_type": type(exc).__name__}},
            )
