"""在真实 uvicorn 服务上跑完整的客户端交换。

TestClient 不会真正中断分块响应，截断与断开只能在真实连接上观察。
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
import pytest
import uvicorn

from chat_core.api.app import create_app
from chat_core.client.api_client import ChatApiClient
from chat_core.client.history_cache import HistoryCache
from chat_core.client.stream_consumer import STREAM_FAILURE_DESCRIPTION, StreamConsumer
from chat_core.domain.exceptions import ProviderError
from chat_core.domain.models import ChatMessage, ChatStreamChoice, ChatStreamChunk
from chat_core.infrastructure.storage.json_store import JsonMessageStore


def _chunk(text):
    return ChatStreamChunk(
        provider="fake",
        model="chat",
        choices=[ChatStreamChoice(index=0, delta=ChatMessage(role="assistant", content=text))],
    )


class FailingProvider:
    name = "fake"

    async def chat_stream(self, req):
        yield _chunk("partial")
        await asyncio.sleep(0.05)
        raise ProviderError(code="API_ERROR", message="upstream dropped")


class SlowProvider:
    name = "fake"

    async def chat_stream(self, req):
        yield _chunk("a")
        await asyncio.sleep(0.3)
        yield _chunk("b")
        await asyncio.sleep(0.1)
        yield _chunk("c")


@asynccontextmanager
async def _serve(app):
    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=0, log_level="warning", lifespan="on"))
    task = asyncio.create_task(server.serve())
    while not server.started:
        if task.done():
            task.result()
        await asyncio.sleep(0.01)
    port = server.servers[0].sockets[0].getsockname()[1]
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        server.should_exit = True
        await task


@asynccontextmanager
async def _client(base_url):
    async with httpx.AsyncClient(base_url=base_url, trust_env=False, timeout=5.0) as http:
        api = ChatApiClient(client=http)
        notes = []
        history = HistoryCache(api, notifier=notes.append)
        consumer = StreamConsumer(api, history, notifier=notes.append)
        yield consumer, history, notes


async def _wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        assert asyncio.get_running_loop().time() < deadline
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_provider_failure_mid_stream_reaches_client_as_error(tmp_path):
    store = JsonMessageStore(root=tmp_path / ".storage")
    app = create_app(store=store, provider_client=FailingProvider(), system_prompt="sys")
    async with _serve(app) as base_url:
        async with _client(base_url) as (consumer, history, notes):
            partials = []
            consumer.subscribe(lambda s: partials.append(s.partial_content))

            await consumer.send("hello")

            assert "partial" in partials
            assert not consumer.is_streaming
            assert consumer.partial_content == ""
            assert [(n.title, n.description, n.variant) for n in notes] == [
                ("Error", STREAM_FAILURE_DESCRIPTION, "destructive")
            ]
            assert [(m.role, m.content) for m in await history.read()] == [("user", "hello")]
    assert [(m.role, m.content) for m in store.list_messages()] == [("user", "hello")]


@pytest.mark.asyncio
async def test_stop_mid_stream_still_persists_full_reply(tmp_path):
    store = JsonMessageStore(root=tmp_path / ".storage")
    app = create_app(store=store, provider_client=SlowProvider(), system_prompt="sys")
    async with _serve(app) as base_url:
        async with _client(base_url) as (consumer, history, notes):
            task = asyncio.create_task(consumer.send("hello"))
            await _wait_until(lambda: consumer.partial_content == "a")
            consumer.stop()
            await asyncio.wait_for(task, timeout=5)

            assert notes == []
            assert not consumer.is_streaming
            await _wait_until(lambda: len(store.list_messages()) == 2)
    assert [(m.role, m.content) for m in store.list_messages()] == [("user", "hello"), ("assistant", "abc")]
