"""Minimal terminal demonstration of the streaming chat client.

Start the server first (``chat-server``), then run this script.
Ctrl-C while a reply is streaming stops it; ``/clear`` resets the history.
"""

import asyncio
import sys

from chat_core.client.api_client import ChatApiClient
from chat_core.client.history_cache import HistoryCache
from chat_core.client.stream_consumer import StreamConsumer


async def main():
    async with ChatApiClient() as api:
        history = HistoryCache(api, notifier=lambda n: print(f"\n[{n.title}] {n.description}"))
        consumer = StreamConsumer(api, history, notifier=lambda n: print(f"\n[{n.title}] {n.description}"))
        printed = 0

        def on_state(state):
            nonlocal printed
            sys.stdout.write(state.partial_content[printed:])
            sys.stdout.flush()
            printed = len(state.partial_content)

        consumer.subscribe(on_state)
        for m in await history.read():
            print(f"{m.role}: {m.content}")

        loop = asyncio.get_running_loop()
        while True:
            text = (await loop.run_in_executor(None, input, "\nUser: ")).strip()
            if not text:
                continue
            if text == "/clear":
                await history.clear()
                continue
            printed = 0
            sys.stdout.write("Assistant: ")
            task = asyncio.create_task(consumer.send(text))
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                # Ctrl-C 只停止当前回复
                asyncio.current_task().uncancel()
                consumer.stop()
                await task


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, EOFError):
        pass
