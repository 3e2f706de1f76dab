"""(用户, 会话) -> ConversationHelper 的并发注册表。

读操作（查找、列举）共享读锁，写操作（创建、删除）独占写锁。
首次访问同一个键的并发调用只会构造一个 ModelProvider，所有调用方拿到同一个实例。
注册表只管理结构，不持有任何会话级别的锁，生成调用不会阻塞其他会话。
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from chat_core.agents.conversation_helper import ConversationHelper
from chat_core.agents.factory import ModelFactory
from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationKey
from chat_core.domain.exceptions import SessionNotFoundError, ValidationError
from chat_core.infrastructure.logging.logger import logger


class ReadWriteLock:
    """读写锁：多个读者并发，写者独占；有写者等待时新的读者让行。"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class SessionRegistry:
    def __init__(self, factory: ModelFactory, serialize_generation: Optional[bool] = None):
        self._factory = factory
        self._serialize = settings.serialize_generation if serialize_generation is None else serialize_generation
        self._lock = ReadWriteLock()
        self._users: Dict[str, Dict[str, ConversationHelper]] = {}

    @property
    def factory(self) -> ModelFactory:
        return self._factory

    def _lookup(self, user_id: str, session_id: str) -> Optional[ConversationHelper]:
        sessions = self._users.get(user_id)
        if sessions is None:
            return None
        return sessions.get(session_id)

    def get_or_create(
        self,
        user_id: str,
        session_id: str,
        provider_kind: str,
        provider_config: Optional[Mapping[str, Any]] = None,
    ) -> ConversationHelper:
        """获取或创建会话。

        已存在时直接返回，不校验 provider_kind 是否一致；
        构造失败时抛出 ConfigurationError，注册表中不会留下任何条目。
        """

        if not user_id or not session_id:
            raise ValidationError(message="user_id and session_id are required")
        with self._lock.read():
            helper = self._lookup(user_id, session_id)
        if helper is not None:
            return helper

        with self._lock.write():
            # 拿到写锁前可能已有其他线程创建
            helper = self._lookup(user_id, session_id)
            if helper is not None:
                return helper
            provider = self._factory.create(provider_kind, provider_config)
            helper = ConversationHelper(
                ConversationKey(user_id=user_id, session_id=session_id),
                provider,
                serialize_generation=self._serialize,
            )
            self._users.setdefault(user_id, {})[session_id] = helper
        logger.info(
            "session_registry.created",
            extra={"extra": {"user_id": user_id, "session_id": session_id, "kind": provider.kind}},
        )
        return helper

    def find(self, user_id: str, session_id: str) -> Optional[ConversationHelper]:
        with self._lock.read():
            return self._lookup(user_id, session_id)

    def get(self, user_id: str, session_id: str) -> ConversationHelper:
        helper = self.find(user_id, session_id)
        if helper is None:
            raise SessionNotFoundError(
                message=f"session {session_id!r} not found for user {user_id!r}",
                user_id=user_id,
                session_id=session_id,
            )
        return helper

    def remove(self, user_id: str, session_id: str) -> bool:
        """删除会话；删除用户的最后一个会话时一并删除该用户的条目。"""

        with self._lock.write():
            sessions = self._users.get(user_id)
            if sessions is None or session_id not in sessions:
                return False
            helper = sessions.pop(session_id)
            if not sessions:
                del self._users[user_id]
        helper.close()
        logger.info("session_registry.removed", extra={"extra": {"user_id": user_id, "session_id": session_id}})
        return True

    def list_sessions(self, user_id: str) -> FrozenSet[str]:
        with self._lock.read():
            return frozenset(self._users.get(user_id, ()))

    def users(self) -> List[str]:
        with self._lock.read():
            return sorted(self._users)

    def __len__(self) -> int:
        with self._lock.read():
            return sum(len(sessions) for sessions in self._users.values())
