"""统一的对话数据模型。

本模块定义了服务端与 Provider 之间共享的标准数据结构：

- ChatMessage: 一条发给模型的对话消息（system/user/assistant）。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatStreamChunk: 从 Provider 流式响应中解析出的单条增量。

所有 Provider 适配器都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass
from typing import Literal, Optional, List


# LLM 消息角色类型（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant"]

ROLES = ("system", "user", "assistant")


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于流式增量。"""

    role: Role
    content: str


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    Relay 会把持久化的历史消息加上系统提示词生成 ChatRequest，再交给具体 ProviderClient。
    """

    provider: str  # 逻辑 Provider 名，如 "openai"
    model: str  # 逻辑模型名，如 "chat"（再由 registry 映射为真实模型名）
    messages: List[ChatMessage]
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: Optional[int] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果。

    每次流式回调由若干 choice 组成，choice.delta 代表本次增量内容。
    """

    provider: str
    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        """第一个候选的增量文本，没有内容时返回空串。"""
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""
