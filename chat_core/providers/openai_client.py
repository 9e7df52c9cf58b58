"""OpenAI 兼容协议的 Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 OpenAI /chat/completions 的流式请求格式。
3. 调用 HTTP 接口并处理网络/超时/API 异常。
4. 将 SSE 响应中的每一行解析为统一的 ChatStreamChunk。

OpenAI 官方接口、AI_INTEGRATIONS 代理以及 Kimi 等兼容厂商都走这一个实现，
差异只体现在 registry 中的 ProviderConfig。
"""

import httpx
import json
from typing import Any, AsyncIterator, Dict, Optional

from chat_core.domain.models import (
    ChatRequest,
    ChatMessage,
    ChatUsage,
    ChatStreamChunk,
    ChatStreamChoice,
)
from chat_core.domain.exceptions import ApiError, ProviderError, RateLimitError
from chat_core.providers.registry import OPENAI_CONFIG, ModelConfig, ProviderConfig


class OpenAICompatibleClient:
    """OpenAI 兼容提供方客户端实现。

    - name: Provider 名称（供日志/调试使用），取自 ProviderConfig。
    - chat_stream: 对外统一调用入口，异步产出 ChatStreamChunk。
    """

    def __init__(self, settings, config: ProviderConfig = OPENAI_CONFIG):
        # Settings 里包含 api_key、base_url、超时等配置，字段名以 provider 名为前缀
        self._settings = settings
        self._config = config
        self.name = config.name

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐步 yield ChatStreamChunk。

        读取超时使用 stream_idle_timeout：两个 SSE 行之间等待过久视为失败。
        """

        api_key = self._api_key()
        if not api_key:
            # 配置缺失属于服务端问题，按 ProviderError 处理
            raise ProviderError(
                code="MISSING_API_KEY",
                message=f"{self.name.upper()}_API_KEY not set",
            )
        model_cfg = self._model_config(req.model)
        payload = self._build_payload(req, model_cfg)
        payload["stream"] = True
        timeout = httpx.Timeout(
            self._settings.http_timeout,
            read=getattr(self._settings, "stream_idle_timeout", self._settings.http_timeout),
        )
        try:
            async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit")
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise ApiError(
                            code="API_ERROR",
                            message=body.decode("utf-8", errors="replace"),
                            http_status=resp.status_code,
                        )
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str:
                            continue
                        if data_str == "[DONE]":
                            break
                        try:
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        yield self._parse_stream_chunk(payload_chunk, req)
        except httpx.TimeoutException as e:
            raise ProviderError(code="PROVIDER_TIMEOUT", message=str(e) or "provider timed out")
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接中断等
            raise ProviderError(code="NETWORK_ERROR", message=str(e))

    def _api_key(self) -> Optional[str]:
        return getattr(self._settings, f"{self.name}_api_key", None)

    def _base_url(self) -> str:
        base = getattr(self._settings, f"{self.name}_base_url", None) or self._config.base_url
        return base.rstrip("/")

    def _model_config(self, logical_name: str) -> ModelConfig:
        try:
            return self._config.models[logical_name]
        except KeyError:
            raise ProviderError(
                code="UNKNOWN_MODEL",
                message=f"Model {logical_name!r} is not configured for provider {self.name!r}",
            )

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        """将 ChatRequest 转成 OpenAI 所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "temperature": req.temperature if req.temperature is not None else model_cfg.default_temperature,
            "top_p": req.top_p,
        }
        max_tokens = req.max_tokens or model_cfg.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量。"""

        choices: list[ChatStreamChoice] = []
        for i, ch in enumerate(data.get("choices") or []):
            delta_payload = ch.get("delta") or {}
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=ChatMessage(
                        role=delta_payload.get("role") or "assistant",
                        content=delta_payload.get("content") or "",
                    ),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=usage,
            raw=data,
        )
