"""面向用户的通知（类似前端的 toast）。

客户端核心逻辑只负责产生 Notification，如何展示由注入的 notifier 决定；
未注入时写入日志。
"""

from dataclasses import dataclass
from typing import Callable, Literal, Optional

from chat_core.infrastructure.logging.logger import logger


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: Literal["default", "destructive"] = "default"


Notifier = Callable[[Notification], None]


def log_notifier(notification: Notification) -> None:
    logger.info(
        f"{notification.title}: {notification.description}",
        extra={"extra": {"variant": notification.variant}},
    )


def resolve_notifier(notifier: Optional[Notifier]) -> Notifier:
    return notifier or log_notifier
