import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional

from chat_core.config.settings import settings

# 脱敏模式下保留的最大字符数
REDACT_LIMIT = 64


class JsonFormatter(logging.Formatter):
    """每条日志输出为一行 JSON，extra={"extra": {...}} 中的字段平铺到顶层。"""

    def __init__(self, redact: bool = False):
        super().__init__()
        self.redact = redact

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self.redact:
            msg = (msg or "")[:REDACT_LIMIT]
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(log_dir: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger("chat_core")
    logger.setLevel((level or settings.log_level).upper())
    # 重复调用（例如 uvicorn --reload 重新导入）时不重复添加 handler
    if any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        return logger
    path = Path(log_dir or settings.log_dir)
    path.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(path / "chat.log", encoding="utf-8")
    fh.setFormatter(JsonFormatter(redact=settings.log_redact_content))
    logger.addHandler(fh)
    return logger


logger = setup_logger()
