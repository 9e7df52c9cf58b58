"""对外 HTTP 服务模块。

提供消息历史的读取/创建/清空接口，以及流式聊天接口 /api/chat：
回复以原始 UTF-8 文本分块返回，没有任何帧格式，连接关闭即表示结束。
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator
from starlette.background import BackgroundTask

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.messages import MessageStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonMessageStore
from chat_core.prompts import load_system_prompt
from chat_core.providers import create_provider
from chat_core.providers.base import ProviderClient
from chat_core.relay.stream_relay import StreamRelay


INTERNAL_ERROR_MESSAGE = "Internal server error"


class ChatBody(BaseModel):
    message: str = Field(..., description="用户本轮输入")

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be empty")
        return v


class CreateMessageBody(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


router = APIRouter()


def _store(request: Request) -> MessageStore:
    return request.app.state.store


def _relay(request: Request) -> StreamRelay:
    return request.app.state.relay


@router.get("/api/messages")
async def list_messages(request: Request) -> List[Dict[str, Any]]:
    msgs = await asyncio.to_thread(_store(request).list_messages)
    return [m.to_json() for m in msgs]


@router.post("/api/messages", status_code=status.HTTP_201_CREATED)
async def create_message(body: CreateMessageBody, request: Request) -> Dict[str, Any]:
    msg = await asyncio.to_thread(_store(request).create_message, body.role, body.content)
    return msg.to_json()


@router.post("/api/messages/clear", status_code=status.HTTP_204_NO_CONTENT)
async def clear_messages(request: Request) -> Response:
    await asyncio.to_thread(_store(request).clear_messages)
    logger.info("Cleared message history")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/api/chat")
async def chat(body: ChatBody, request: Request):
    try:
        turn = await _relay(request).open_turn(body.message)
    except BusinessError:
        raise
    except Exception:
        # 尚未发送任何字节，仍然可以返回结构化错误
        logger.exception("Unexpected error before streaming")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": INTERNAL_ERROR_MESSAGE},
        )
    return StreamingResponse(
        turn,
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Trace-Id": turn.trace_id,
        },
        # 响应流关闭之后再持久化 assistant 消息
        background=BackgroundTask(turn.finalize),
    )


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


async def _handle_business_error(request: Request, exc: BusinessError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(
            f"Request failed: {exc.message}",
            extra={"extra": {"path": request.url.path, "code": exc.code}},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": INTERNAL_ERROR_MESSAGE, "code": exc.code},
        )
    return JSONResponse(status_code=exc.http_status, content={"message": exc.message, "code": exc.code})


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = errors[0].get("msg") if errors else "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": detail, "code": "INVALID_REQUEST"},
    )


def create_app(
    store: Optional[MessageStore] = None,
    provider_client: Optional[ProviderClient] = None,
    system_prompt: Optional[str] = None,
) -> FastAPI:
    """创建 FastAPI 应用。

    store / provider_client 可由调用方注入（测试时使用桩实现）；
    未注入时在应用启动阶段按配置创建，并在关闭阶段释放存储。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_store = store or JsonMessageStore(root=settings.storage_root)
        provider = provider_client or create_provider()
        app.state.store = app_store
        relay = StreamRelay(
            store=app_store,
            provider_client=provider,
            system_prompt=system_prompt if system_prompt is not None else load_system_prompt(),
            model=settings.default_model,
            temperature=settings.temperature,
            idle_timeout=settings.stream_idle_timeout,
        )
        app.state.relay = relay
        logger.info(
            "Chat service started",
            extra={"extra": {"provider": provider.name, "model": settings.default_model}},
        )
        try:
            yield
        finally:
            await relay.shutdown()
            app_store.close()
            logger.info("Chat service stopped")

    app = FastAPI(title="Chat Stream Service", version="0.1.0", lifespan=lifespan)
    app.add_exception_handler(BusinessError, _handle_business_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.include_router(router)
    return app


app = create_app()
