"""聊天服务的 HTTP 客户端。

对应服务端的三个接口：读取历史、清空历史、发起流式聊天。
所有传输层异常统一包装为 NetworkError。
"""

import json
from typing import List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import NetworkError
from chat_core.domain.messages import Message


MESSAGES_PATH = "/api/messages"
CLEAR_PATH = "/api/messages/clear"
CHAT_PATH = "/api/chat"


def _error_message(body: bytes) -> Optional[str]:
    """从结构化错误响应 {"message": ...} 中取出提示文本。"""
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return None


class ChatApiClient:
    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        if client is None:
            client = httpx.AsyncClient(
                base_url=base_url or settings.api_base_url,
                timeout=httpx.Timeout(settings.http_timeout, read=settings.stream_idle_timeout),
            )
            self._owns_client = True
        else:
            self._owns_client = False
        self._client = client

    async def list_messages(self) -> List[Message]:
        try:
            resp = await self._client.get(MESSAGES_PATH)
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.is_error:
            raise NetworkError(
                code="FETCH_FAILED",
                message=_error_message(resp.content) or "Failed to fetch messages",
                http_status=resp.status_code,
            )
        return [Message.from_json(item) for item in resp.json()]

    async def clear_messages(self) -> None:
        try:
            resp = await self._client.post(CLEAR_PATH)
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.is_error:
            raise NetworkError(
                code="CLEAR_FAILED",
                message=_error_message(resp.content) or "Failed to clear history",
                http_status=resp.status_code,
            )

    async def open_chat(self, message: str) -> httpx.Response:
        """发起 /api/chat 请求并返回尚未读取响应体的流式 Response。

        调用方负责 aclose()。非 2xx 响应在这里读取结构化错误并抛出 NetworkError。
        """

        request = self._client.build_request("POST", CHAT_PATH, json={"message": message})
        try:
            resp = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.is_error:
            try:
                body = await resp.aread()
            except httpx.HTTPError:
                body = b""
            finally:
                await resp.aclose()
            raise NetworkError(
                code="CHAT_REQUEST_FAILED",
                message=_error_message(body) or "Failed to send message",
                http_status=resp.status_code,
            )
        return resp

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
