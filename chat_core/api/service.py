"""对外 API 服务模块。

ChatService 是编排层的调用方：从注册表取得（或创建）会话，
追加并保存用户消息，调用生成，再追加并保存回答。
持久化通过注入的 MessageSink 完成，可以是同步写文件，也可以是异步队列。
"""

import threading
from collections import OrderedDict
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from chat_core.agents.conversation_helper import ConversationHelper
from chat_core.agents.session_registry import SessionRegistry
from chat_core.agents.stream_relay import SSE_DONE, format_sse
from chat_core.config.settings import settings
from chat_core.domain.conversation import HistoryEntry, Message, MessageSink
from chat_core.domain.exceptions import (
    BusinessError,
    ConfigurationError,
    SessionNotFoundError,
    ValidationError,
)
from chat_core.infrastructure.logging.logger import logger

# 旧 HTTP 接口的响应码
CODE_SUCCESS = 1000
CODE_INVALID_PARAMS = 2001
CODE_RECORD_NOT_FOUND = 2009
CODE_SERVER_BUSY = 4001


def response_code(exc: Optional[BaseException] = None) -> int:
    """把异常映射为接口响应码，没有异常即成功。"""

    if exc is None:
        return CODE_SUCCESS
    if isinstance(exc, (ValidationError, ConfigurationError)):
        return CODE_INVALID_PARAMS
    if isinstance(exc, SessionNotFoundError):
        return CODE_RECORD_NOT_FOUND
    return CODE_SERVER_BUSY


class ChatService:
    def __init__(
        self,
        registry: SessionRegistry,
        sink: MessageSink,
        default_kind: Optional[str] = None,
        stream_timeout: Optional[float] = None,
    ):
        self._registry = registry
        self._sink = sink
        self._default_kind = default_kind or settings.default_provider
        self._stream_timeout = stream_timeout if stream_timeout is not None else settings.stream_timeout

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def create_session_and_send(
        self,
        user_id: str,
        question: str,
        kind: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[str, str]:
        """新建会话并发送第一条消息，返回 (会话ID, 回答)。"""

        session_id = uuid4().hex
        answer = self.chat_send(user_id, session_id, question, kind=kind, config=config)
        return session_id, answer

    def chat_send(
        self,
        user_id: str,
        session_id: str,
        question: str,
        kind: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> str:
        ctx = {"user_id": user_id, "session_id": session_id}
        try:
            helper = self._prepare(user_id, session_id, question, kind, config)
            answer = helper.generate(question)
            self._record(helper, Message.assistant(session_id, answer, user_id=user_id))
            return answer
        except BusinessError as e:
            logger.error(f"Chat failed: {e.message}", extra={"extra": {**ctx, "code": e.code}})
            raise

    def chat_stream(
        self,
        user_id: str,
        session_id: str,
        question: str,
        write: Callable[[str], None],
        kind: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """流式对话，每个增量经 write 写出一帧 SSE，成功结束时写出一次 [DONE]。

        出错时不写 [DONE]，异常抛给调用方映射成错误响应。
        """

        ctx = {"user_id": user_id, "session_id": session_id}
        try:
            helper = self._prepare(user_id, session_id, question, kind, config)
            answer = helper.stream(
                question,
                lambda chunk: write(format_sse(chunk)),
                timeout=timeout if timeout is not None else self._stream_timeout,
                cancel=cancel,
            )
            self._record(helper, Message.assistant(session_id, answer, user_id=user_id))
        except BusinessError as e:
            logger.error(f"Chat stream failed: {e.message}", extra={"extra": {**ctx, "code": e.code}})
            raise
        write(SSE_DONE)
        return answer

    def chat_history(self, user_id: str, session_id: str) -> List[HistoryEntry]:
        helper = self._registry.get(user_id, session_id)
        return [HistoryEntry(is_user=m.role == "user", content=m.content) for m in helper.get_messages()]

    def list_sessions(self, user_id: str) -> List[str]:
        return sorted(self._registry.list_sessions(user_id))

    def remove_session(self, user_id: str, session_id: str) -> bool:
        return self._registry.remove(user_id, session_id)

    def restore(
        self,
        messages: Iterable[Message],
        kind: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """把持久化的消息按会话回放进注册表（进程启动时调用），返回恢复的消息数。

        回放不会再次调用 MessageSink。
        """

        grouped: "OrderedDict[Tuple[str, str], List[Message]]" = OrderedDict()
        skipped = 0
        for message in messages:
            if not message.user_id or not message.session_id:
                skipped += 1
                continue
            grouped.setdefault((message.user_id, message.session_id), []).append(message)

        restored = 0
        for (user_id, session_id), items in grouped.items():
            helper = self._registry.get_or_create(user_id, session_id, kind or self._default_kind, config)
            for message in items:
                helper.add_message(message)
                restored += 1
        logger.info(
            "chat_service.restored",
            extra={"extra": {"sessions": len(grouped), "messages": restored, "skipped": skipped}},
        )
        return restored

    def _prepare(
        self,
        user_id: str,
        session_id: str,
        question: str,
        kind: Optional[str],
        config: Optional[Mapping[str, Any]],
    ) -> ConversationHelper:
        if not question or not question.strip():
            raise ValidationError(message="question must not be empty")
        helper = self._registry.get_or_create(user_id, session_id, kind or self._default_kind, config)
        self._record(helper, Message.user(session_id, question, user_id=user_id))
        return helper

    def _record(self, helper: ConversationHelper, message: Message) -> None:
        helper.add_message(message)
        self._sink.save(message)

