from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal, Protocol
from uuid import uuid4


MessageRole = Literal["user", "assistant"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConversationKey:
    """注册表中一段对话的唯一键：(用户, 会话)。"""

    user_id: str
    session_id: str


@dataclass(frozen=True)
class Message:
    """对话中的一条消息，不可变。"""

    role: MessageRole
    content: str
    session_id: str
    created_at: datetime = field(default_factory=_utcnow)
    user_id: str = ""
    id: str = field(default_factory=lambda: f"m-{uuid4().hex}")

    @classmethod
    def user(cls, session_id: str, content: str, user_id: str = "") -> "Message":
        return cls(role="user", content=content, session_id=session_id, user_id=user_id)

    @classmethod
    def assistant(cls, session_id: str, content: str, user_id: str = "") -> "Message":
        return cls(role="assistant", content=content, session_id=session_id, user_id=user_id)

    def copy(self) -> "Message":
        return replace(self)


@dataclass(frozen=True)
class HistoryEntry:
    """返回给前端的历史记录视图。"""

    is_user: bool
    content: str


class MessageSink(Protocol):
    """消息持久化协作方。

    由调用方在 add_message 之后调用，编排层本身从不调用。
    实现可以同步写库，也可以投递到队列异步落盘；失败时抛出 BusinessError。
    同一条消息（相同 id）重复保存应当是幂等的。
    """

    def save(self, message: Message) -> Message:
        ...
