"""HTTP 服务启动入口。"""

import argparse

import uvicorn

from chat_core.config.settings import settings


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Run the chat stream service")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--reload", action="store_true", help="开发模式下自动重载")
    args = parser.parse_args(argv)
    uvicorn.run("chat_core.api.app:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
