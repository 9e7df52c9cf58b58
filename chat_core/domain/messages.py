from dataclasses import dataclass
from typing import Any, Dict, List, Protocol
from datetime import datetime, timezone
from .models import Role


@dataclass(frozen=True)
class Message:
    """已持久化的消息记录，一经写入不可修改。"""

    id: int
    role: Role
    content: str
    created_at: datetime

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=int(data["id"]),
            role=data["role"],
            content=data.get("content") or "",
            created_at=parse_timestamp(data["createdAt"]),
        )


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class MessageStore(Protocol):
    def list_messages(self) -> List[Message]:
        ...

    def create_message(self, role: Role, content: str) -> Message:
        ...

    def clear_messages(self) -> None:
        ...

    def close(self) -> None:
        ...
