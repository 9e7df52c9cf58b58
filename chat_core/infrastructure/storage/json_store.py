import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.messages import MessageStore, Message, format_timestamp
from chat_core.domain.models import ROLES, Role
from chat_core.domain.exceptions import PersistenceError, ValidationError
from chat_core.infrastructure.logging.logger import logger


class JsonMessageStore(MessageStore):
    """基于 JSON Lines 文件的消息存储。

    - messages.jsonl: 每行一条消息，按追加顺序写入。
    - meta.json: 记录下一个可用的消息 ID，清空历史后 ID 仍继续递增。

    ID 分配与追加写入在同一把锁内完成，并发 create 不会打乱顺序。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._lock = threading.Lock()
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(code="STORE_INIT_ERROR", message=str(e))
        self._msgs_path = self._root / "messages.jsonl"
        self._meta_path = self._root / "meta.json"
        self._next_id = self._recover_next_id()

    def list_messages(self) -> List[Message]:
        with self._lock:
            items = self._read_all()
        items.sort(key=lambda m: m.id)
        return items

    def create_message(self, role: Role, content: str) -> Message:
        if role not in ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"Unknown role: {role!r}")
        with self._lock:
            record = {
                "id": self._next_id,
                "role": role,
                "content": content,
                "createdAt": format_timestamp(datetime.now(timezone.utc)),
            }
            line = json.dumps(record, ensure_ascii=False)
            # 计数器先于数据行落盘
            self._write_meta(self._next_id + 1)
            self._next_id += 1
            try:
                with self._msgs_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
        # 返回按持久化格式解析后的记录，而不是调用方参数的回显
        return Message.from_json(json.loads(line))

    def clear_messages(self) -> None:
        with self._lock:
            tmp_path = self._root / f"messages.{uuid4().hex}.jsonl.tmp"
            try:
                tmp_path.write_text("", encoding="utf-8")
                os.replace(tmp_path, self._msgs_path)
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                raise PersistenceError(code="STORE_DELETE_ERROR", message=str(e))

    def close(self) -> None:
        with self._lock:
            self._write_meta(self._next_id)

    def _read_all(self) -> List[Message]:
        items: List[Message] = []
        if not self._msgs_path.exists():
            return items
        try:
            text = self._msgs_path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                items.append(Message.from_json(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(
                    "Skipped malformed message line",
                    extra={"extra": {"path": str(self._msgs_path), "line": lineno, "error": str(e)}},
                )
        return items

    def _recover_next_id(self) -> int:
        next_id = 1
        if self._meta_path.exists():
            try:
                data = json.loads(self._meta_path.read_text(encoding="utf-8"))
                next_id = max(next_id, int(data.get("next_id", 1)))
            except (OSError, ValueError, TypeError) as e:
                raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        # meta.json 落后于数据文件时（例如写入中途崩溃），以数据文件为准
        existing = self._read_all()
        if existing:
            next_id = max(next_id, max(m.id for m in existing) + 1)
        return next_id

    def _write_meta(self, next_id: int) -> None:
        tmp_path = self._root / f"meta.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps({"next_id": next_id}), encoding="utf-8")
            os.replace(tmp_path, self._meta_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
