"""协作式取消令牌。

同一个 CancellationToken 同时传给网络请求与读取循环，
每个挂起点都通过 race() 与取消信号竞争，先到者胜出。
"""

import asyncio
from typing import Awaitable, TypeVar

from chat_core.domain.exceptions import StreamCancelled

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelled()

    async def race(self, aw: Awaitable[T]) -> T:
        """等待 aw 完成；若期间被取消，则撤销 aw 并抛出 StreamCancelled。"""

        task = asyncio.ensure_future(aw)
        if self._event.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise StreamCancelled()
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise StreamCancelled()
        return task.result()
