"""会话与消息的存储模型及 ConversationStore 抽象。"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Literal, Optional, Protocol
from uuid import uuid4

from .exceptions import ValidationError


# 会话日志中的消息角色，封闭枚举
Role = Literal["user", "assistant", "error"]
MESSAGE_ROLES = ("user", "assistant", "error")


def new_message_id() -> str:
    """生成按时间有序的消息 ID。"""

    return f"m-{time.time_ns():020d}-{uuid4().hex[:8]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_title(first_message: str, max_chars: int = 30) -> str:
    """由第一条用户消息截取会话标题，超长时追加省略号。"""

    text = first_message.strip()
    if len(text) > max_chars:
        return text[:max_chars] + "..."
    return text


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: Any) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class Message:
    id: str
    role: Role
    text: str
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, role: Role, text: str) -> "Message":
        return cls(id=new_message_id(), role=role, text=text, created_at=utcnow())

    def validate(self) -> "Message":
        """存储边界校验：角色必须合法、文本非空。"""

        if self.role not in MESSAGE_ROLES:
            raise ValidationError(code="INVALID_MESSAGE", message=f"unknown role: {self.role!r}")
        if not self.id:
            raise ValidationError(code="INVALID_MESSAGE", message="message id is empty")
        if not (self.text or "").strip():
            raise ValidationError(code="INVALID_MESSAGE", message=f"message {self.id} has empty text")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        try:
            msg = cls(
                id=str(data["id"]),
                role=data["role"],
                text=data.get("text") or "",
                created_at=parse_ts(data["created_at"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(code="INVALID_MESSAGE", message=str(e))
        return msg.validate()


@dataclass
class Conversation:
    id: str
    owner_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[Message] = field(default_factory=list)


@dataclass
class ConversationSummary:
    """会话列表订阅推送的摘要项。"""

    id: str
    title: str
    updated_at: datetime


def merge_messages(
    authoritative: Iterable[Message],
    local: Iterable[Message],
    keep_ids: Iterable[str] = (),
) -> List[Message]:
    """把远端快照与本地乐观消息按 id 合并。

    远端快照决定顺序；本地消息中尚未出现在快照里、且 id 在 keep_ids 中的
    （进行中的用户消息、未能落盘的 error 消息）按原顺序追加在末尾。
    """

    merged = list(authoritative)
    seen = {m.id for m in merged}
    keep = set(keep_ids)
    for m in local:
        if m.id not in seen and m.id in keep:
            merged.append(m)
            seen.add(m.id)
    return merged


class ConversationStore(Protocol):
    async def create_conversation(self, owner_id: str, first_message: Message) -> str:
        ...

    async def append_message(self, owner_id: str, conversation_id: str, message: Message) -> None:
        ...

    def subscribe_conversation_list(self, owner_id: str) -> AsyncIterator[List[ConversationSummary]]:
        ...

    def subscribe_conversation(self, owner_id: str, conversation_id: str) -> AsyncIterator[List[Message]]:
        ...

    async def delete_conversation(self, owner_id: str, conversation_id: str) -> None:
        ...

    async def get_conversation(self, owner_id: str, conversation_id: str) -> Optional[Conversation]:
        ...
