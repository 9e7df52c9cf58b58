import asyncio
import threading
import tkinter as tk
from tkinter import scrolledtext

from chat_core.client.api_client import ChatApiClient
from chat_core.client.history_cache import HistoryCache
from chat_core.client.notifications import Notification
from chat_core.client.stream_consumer import ExchangeState, StreamConsumer


class App:
    """聊天控制台：渲染历史缓存与实时 partial 内容。

    asyncio 事件循环运行在后台线程，所有界面更新都通过 root.after 切回 Tk 线程。
    """

    def __init__(self, root):
        self.root = root
        self.root.title("Chat Console")
        self.loop = asyncio.new_event_loop()
        threading.Thread(target=self.loop.run_forever, daemon=True).start()
        self.api = ChatApiClient()
        self.history = HistoryCache(self.api, notifier=self.on_notify)
        self.consumer = StreamConsumer(self.api, self.history, notifier=self.on_notify)
        self.history.subscribe(lambda msgs: self.root.after(0, lambda: self.render(msgs)))
        self.consumer.subscribe(lambda state: self.root.after(0, lambda: self.render_state(state)))

        self.chat = scrolledtext.ScrolledText(root, width=80, height=24)
        self.chat.pack(fill=tk.BOTH, expand=True)
        self.chat.tag_config("user", foreground="#1a73e8")
        self.chat.tag_config("assistant", foreground="#34a853")
        self.chat.tag_config("system", foreground="#5f6368")
        self.chat.tag_config("streaming", foreground="#34a853", font=("TkDefaultFont", 10, "italic"))
        rt_in = tk.Frame(root)
        rt_in.pack(fill=tk.X)
        self.entry = tk.Entry(rt_in)
        self.entry.pack(side=tk.LEFT, fill=tk.X, expand=True)
        self.entry.bind("<Return>", self.on_send_event)
        self.send_btn = tk.Button(rt_in, text="发送", command=self.on_send)
        self.send_btn.pack(side=tk.LEFT)
        self.stop_btn = tk.Button(rt_in, text="停止", command=self.on_stop, state=tk.DISABLED)
        self.stop_btn.pack(side=tk.LEFT)
        tk.Button(rt_in, text="清空", command=self.on_clear).pack(side=tk.LEFT)
        self.status = tk.Label(root, text="准备就绪", anchor=tk.W)
        self.status.pack(fill=tk.X)
        self.messages = []
        self.partial = ""
        self.submit(self.history.read())
        self.root.protocol("WM_DELETE_WINDOW", self.on_close)

    def submit(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def render(self, msgs):
        self.messages = msgs
        self.redraw()

    def render_state(self, state: ExchangeState):
        self.partial = state.partial_content
        self.send_btn.config(state=tk.DISABLED if state.is_streaming else tk.NORMAL)
        self.stop_btn.config(state=tk.NORMAL if state.is_streaming else tk.DISABLED)
        self.status.config(text="接收中..." if state.is_streaming else "准备就绪")
        self.redraw()

    def redraw(self):
        self.chat.delete(1.0, tk.END)
        for m in self.messages:
            tag = m.role if m.role in ("user", "assistant") else "system"
            self.chat.insert(tk.END, f"{m.role}: {m.content}\n", tag)
        if self.partial:
            self.chat.insert(tk.END, f"assistant: {self.partial}\n", "streaming")
        self.chat.see(tk.END)

    def on_notify(self, notification: Notification):
        self.root.after(0, lambda: self.status.config(text=f"{notification.title}: {notification.description}"))

    def on_send(self):
        if self.consumer.is_streaming:
            return
        text = self.entry.get().strip()
        if not text:
            return
        self.entry.delete(0, tk.END)
        self.submit(self.consumer.send(text))

    def on_send_event(self, event):
        self.on_send()
        return "break"

    def on_stop(self):
        self.loop.call_soon_threadsafe(self.consumer.stop)

    def on_clear(self):
        self.submit(self.history.clear())

    def on_close(self):
        self.submit(self.api.aclose()).result(timeout=5)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.root.destroy()


def main():
    root = tk.Tk()
    App(root)
    root.mainloop()


if __name__ == "__main__":
    main()
