"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatStreamChunk 模型。
- messages: 持久化消息 Message 及 MessageStore 抽象。
- exceptions: 业务异常类型定义。
"""
