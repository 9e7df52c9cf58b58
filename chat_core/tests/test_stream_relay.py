import asyncio

import pytest

from chat_core.domain.exceptions import ProviderError, ValidationError
from chat_core.domain.models import ChatMessage, ChatStreamChoice, ChatStreamChunk, ChatUsage
from chat_core.infrastructure.storage.json_store import JsonMessageStore
from chat_core.relay.stream_relay import StreamRelay, TurnState


def _chunk(text, usage=None):
    return ChatStreamChunk(
        provider="fake",
        model="chat",
        choices=[ChatStreamChoice(index=0, delta=ChatMessage(role="assistant", content=text))],
        usage=usage,
        raw={},
    )


class FakeProvider:
    """按脚本产出增量；脚本项为异常时在该位置抛出，为 Event 时等待其触发，为 None 时一直挂起。"""

    name = "fake"

    def __init__(self, script):
        self.script = list(script)
        self.requests = []
        self.closed = False

    async def chat_stream(self, req):
        self.requests.append(req)
        try:
            for item in self.script:
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, asyncio.Event):
                    await item.wait()
                    continue
                if item is None:
                    await asyncio.sleep(30)
                yield item if isinstance(item, ChatStreamChunk) else _chunk(item)
        finally:
            self.closed = True


def _relay(tmp_path, provider, idle_timeout=5.0):
    store = JsonMessageStore(root=tmp_path / ".storage")
    return store, StreamRelay(
        store=store,
        provider_client=provider,
        system_prompt="You are a helpful AI assistant.",
        idle_timeout=idle_timeout,
    )


async def _drain(turn):
    return [piece async for piece in turn]


@pytest.mark.asyncio
async def test_turn_streams_fragments_and_persists_reply(tmp_path):
    provider = FakeProvider(["Hi", " there", "!"])
    store, relay = _relay(tmp_path, provider)

    turn = await relay.open_turn("hello")
    assert turn.state is TurnState.PERSISTED_USER
    assert await _drain(turn) == ["Hi", " there", "!"]
    assert turn.state is TurnState.COMPLETED

    # 响应关闭前不写入 assistant 消息
    assert [m.role for m in store.list_messages()] == ["user"]
    assistant = await turn.finalize()
    assert assistant.content == "Hi there!"

    msgs = store.list_messages()
    assert [(m.role, m.content) for m in msgs] == [("user", "hello"), ("assistant", "Hi there!")]
    assert msgs[0].id < msgs[1].id


@pytest.mark.asyncio
async def test_request_carries_system_prompt_and_history(tmp_path):
    provider = FakeProvider(["ok"])
    store, relay = _relay(tmp_path, provider)
    store.create_message("user", "earlier")
    store.create_message("assistant", "reply")

    turn = await relay.open_turn("now")
    await _drain(turn)

    req = provider.requests[0]
    assert [(m.role, m.content) for m in req.messages] == [
        ("system", "You are a helpful AI assistant."),
        ("user", "earlier"),
        ("assistant", "reply"),
        ("user", "now"),
    ]
    assert req.model == "chat"


@pytest.mark.asyncio
async def test_empty_and_usage_chunks_are_not_forwarded(tmp_path):
    usage = ChatUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5)
    provider = FakeProvider(["", "a", _chunk("", usage=usage), "b"])
    _, relay = _relay(tmp_path, provider)

    turn = await relay.open_turn("x")
    assert await _drain(turn) == ["a", "b"]


@pytest.mark.asyncio
async def test_failure_before_first_fragment(tmp_path):
    provider = FakeProvider([ProviderError(code="API_ERROR", message="boom")])
    store, relay = _relay(tmp_path, provider)

    with pytest.raises(ProviderError):
        await relay.open_turn("hello")
    assert [(m.role, m.content) for m in store.list_messages()] == [("user", "hello")]


@pytest.mark.asyncio
async def test_failure_during_stream_persists_no_reply(tmp_path):
    provider = FakeProvider(["partial", ProviderError(code="API_ERROR", message="boom")])
    store, relay = _relay(tmp_path, provider)

    turn = await relay.open_turn("hello")
    received = []
    with pytest.raises(ProviderError):
        async for piece in turn:
            received.append(piece)
    assert received == ["partial"]
    assert turn.state is TurnState.FAILED_DURING_STREAM
    assert await turn.finalize() is None
    assert [m.role for m in store.list_messages()] == ["user"]
    assert provider.closed


@pytest.mark.asyncio
async def test_idle_timeout_during_stream(tmp_path):
    provider = FakeProvider(["first", None, "never"])
    store, relay = _relay(tmp_path, provider, idle_timeout=0.05)

    turn = await relay.open_turn("hello")
    with pytest.raises(ProviderError) as ei:
        await _drain(turn)
    assert ei.value.code == "STREAM_IDLE_TIMEOUT"
    assert turn.state is TurnState.FAILED_DURING_STREAM
    assert await turn.finalize() is None
    assert [m.role for m in store.list_messages()] == ["user"]


@pytest.mark.asyncio
async def test_idle_timeout_before_first_fragment(tmp_path):
    provider = FakeProvider([None, "never"])
    _, relay = _relay(tmp_path, provider, idle_timeout=0.05)

    with pytest.raises(ProviderError) as ei:
        await relay.open_turn("hello")
    assert ei.value.code == "STREAM_IDLE_TIMEOUT"


@pytest.mark.asyncio
async def test_blank_message_is_rejected_without_side_effects(tmp_path):
    provider = FakeProvider(["unused"])
    store, relay = _relay(tmp_path, provider)

    with pytest.raises(ValidationError) as ei:
        await relay.open_turn("   ")
    assert ei.value.code == "INVALID_MESSAGE"
    assert store.list_messages() == []
    assert provider.requests == []


@pytest.mark.asyncio
async def test_turn_can_only_be_iterated_once(tmp_path):
    _, relay = _relay(tmp_path, FakeProvider(["a"]))
    turn = await relay.open_turn("x")
    await _drain(turn)
    with pytest.raises(RuntimeError):
        await _drain(turn)


@pytest.mark.asyncio
async def test_client_cancel_mid_stream_drains_and_persists(tmp_path):
    gate = asyncio.Event()
    provider = FakeProvider(["a", gate, "b", "c"])
    store, relay = _relay(tmp_path, provider)

    turn = await relay.open_turn("hello")
    first = asyncio.Event()

    async def consume():
        async for _ in turn:
            first.set()

    reader = asyncio.create_task(consume())
    await first.wait()
    await asyncio.sleep(0.01)
    reader.cancel()
    with pytest.raises(asyncio.CancelledError):
        await reader
    assert turn.state is TurnState.DRAINING

    gate.set()
    assistant = await turn.drain_task
    assert assistant.content == "abc"
    assert turn.state is TurnState.COMPLETED
    assert [(m.role, m.content) for m in store.list_messages()] == [("user", "hello"), ("assistant", "abc")]
    assert provider.closed


@pytest.mark.asyncio
async def test_closed_response_iterator_drains_before_shutdown(tmp_path):
    gate = asyncio.Event()
    provider = FakeProvider(["a", gate, "b"])
    store, relay = _relay(tmp_path, provider)

    turn = await relay.open_turn("hello")
    it = turn.__aiter__()
    assert await it.__anext__() == "a"
    await it.aclose()
    assert turn.state is TurnState.DRAINING

    gate.set()
    await relay.shutdown()
    assert [(m.role, m.content) for m in store.list_messages()] == [("user", "hello"), ("assistant", "ab")]
    # 后台持久化之后再调用 finalize 不会重复写入
    await turn.finalize()
    assert len(store.list_messages()) == 2


@pytest.mark.asyncio
async def test_drain_after_disconnect_respects_idle_timeout(tmp_path):
    provider = FakeProvider(["a", None, "never"])
    store, relay = _relay(tmp_path, provider, idle_timeout=0.05)

    turn = await relay.open_turn("hello")
    it = turn.__aiter__()
    await it.__anext__()
    await it.aclose()

    assert await turn.drain_task is None
    assert turn.state is TurnState.FAILED_DURING_STREAM
    assert [m.role for m in store.list_messages()] == ["user"]
