"""对单个模型后端的同步 / 流式调用封装，以及对话消息的转换工具。"""

from typing import Iterable, List, Optional, Sequence
import threading
import time

from chat_core.agents.stream_relay import StreamRelay, TokenCallback, text_deltas
from chat_core.domain.conversation import Message
from chat_core.domain.exceptions import NetworkError, ProviderError, StreamInterruptedError
from chat_core.domain.models import ChatMessage, ChatRequest, ChatResult
from chat_core.providers.base import ChatBackend


def to_chat_messages(history: Sequence[Message], question: str) -> List[ChatMessage]:
    """历史消息转为后端消息；最后一条不是本次问题时把问题追加为 user 消息。"""

    msgs = [ChatMessage(role=m.role, content=m.content) for m in history]
    if not msgs or msgs[-1].role != "user" or msgs[-1].content != question:
        msgs.append(ChatMessage(role="user", content=question))
    return msgs


def with_last_replaced(messages: Sequence[ChatMessage], content: str) -> List[ChatMessage]:
    """返回副本，只把最后一条替换为给定内容的 user 消息。"""

    out = list(messages)
    out[-1] = ChatMessage(role="user", content=content)
    return out


class BackendCaller:
    def __init__(
        self,
        backend: ChatBackend,
        model_name: str,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ):
        self._backend = backend
        self._model_name = model_name
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def backend(self) -> ChatBackend:
        return self._backend

    def _request(self, messages: Iterable[ChatMessage], deadline: Optional[float] = None) -> ChatRequest:
        return ChatRequest(
            provider=self._backend.name,
            model=self._model_name,
            messages=list(messages),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            timeout=remaining_time(deadline),
        )

    def complete(self, messages: Sequence[ChatMessage], deadline: Optional[float] = None) -> str:
        req = self._request(messages, deadline)
        try:
            result: ChatResult = self._backend.chat(req)
        except NetworkError as e:
            # 截止时间已过时，后端读超时按截止处理
            if _past(deadline):
                raise StreamInterruptedError(code="STREAM_DEADLINE_EXCEEDED", message=f"deadline exceeded: {e.message}") from e
            raise
        if not result.choices:
            raise ProviderError(code="EMPTY_RESPONSE", message=f"{self._backend.name} returned no choices")
        return result.text

    def stream(
        self,
        messages: Sequence[ChatMessage],
        on_token: TokenCallback,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        req = self._request(messages, deadline)
        relay = StreamRelay(on_token, deadline=deadline, cancel=cancel)
        try:
            return relay.relay(text_deltas(self._backend.chat_stream(req)))
        except NetworkError as e:
            # 截止时间已过时，后端读超时按截止处理
            if _past(deadline):
                raise StreamInterruptedError(code="STREAM_DEADLINE_EXCEEDED", message=f"deadline exceeded: {e.message}") from e
            raise

    def close(self) -> None:
        close = getattr(self._backend, "close", None)
        if callable(close):
            close()


def remaining_time(deadline: Optional[float]) -> Optional[float]:
    """距截止时间的剩余秒数；已经到期时直接抛出 StreamInterruptedError。"""

    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise StreamInterruptedError(code="STREAM_DEADLINE_EXCEEDED", message="deadline exceeded before backend call")
    return remaining


def _past(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline
