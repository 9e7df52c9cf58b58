"""Chat Core 顶层包。

该包提供一个流式聊天服务及其客户端，
包括配置加载、领域模型、Provider 适配、消息持久化、
流式中继、HTTP 接口与客户端流消费等能力。
"""

from chat_core.domain.messages import Message
from chat_core.relay.stream_relay import ChatTurn, StreamRelay

__all__ = ["Message", "ChatTurn", "StreamRelay"]
