"""单个会话的内存状态与生成入口。"""

import threading
from contextlib import nullcontext
from typing import List, Optional

from chat_core.agents.model_provider import ModelProvider
from chat_core.agents.stream_relay import TokenCallback, deadline_after
from chat_core.domain.conversation import ConversationKey, Message
from chat_core.infrastructure.logging.logger import logger


class ConversationHelper:
    """持有一个会话按插入顺序排列的消息，并把生成请求转给绑定的 ModelProvider。

    - add_message 只修改内存，不做持久化；持久化由调用方通过 MessageSink 完成。
    - generate / stream 不会把问题或回答写回历史，调用方负责前后各调用一次 add_message。
    - 消息锁只保护历史列表；网络调用在释放锁之后进行。
    - serialize_generation 为 True 时，同一会话的生成调用串行执行，
      不同会话之间互不阻塞。
    """

    def __init__(self, key: ConversationKey, provider: ModelProvider, serialize_generation: bool = True):
        self.key = key
        self._provider = provider
        self._messages: List[Message] = []
        self._lock = threading.Lock()
        self._generation_lock = threading.Lock() if serialize_generation else None

    @property
    def provider(self) -> ModelProvider:
        return self._provider

    def provider_kind(self) -> str:
        return self._provider.kind

    def add_message(self, message: Message) -> None:
        stored = message.copy()
        with self._lock:
            self._messages.append(stored)

    def get_messages(self) -> List[Message]:
        with self._lock:
            return list(self._messages)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def _guard(self):
        return self._generation_lock if self._generation_lock is not None else nullcontext()

    def generate(self, question: str) -> str:
        with self._guard():
            # 在锁内取快照，串行的下一轮能看到上一轮的回答
            history = self.get_messages()
            answer = self._provider.generate(history, question)
        logger.info(
            "conversation.generated",
            extra={
                "extra": {
                    "user_id": self.key.user_id,
                    "session_id": self.key.session_id,
                    "kind": self.provider_kind(),
                    "history": len(history),
                    "answer_chars": len(answer),
                }
            },
        )
        return answer

    def stream(
        self,
        question: str,
        on_token: TokenCallback,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """流式生成，timeout 为整次输出的截止时间（秒）。"""

        # 排队等待生成锁的时间也计入截止时间
        deadline = deadline_after(timeout)
        with self._guard():
            history = self.get_messages()
            answer = self._provider.stream(history, question, on_token, deadline=deadline, cancel=cancel)
        logger.info(
            "conversation.streamed",
            extra={
                "extra": {
                    "user_id": self.key.user_id,
                    "session_id": self.key.session_id,
                    "kind": self.provider_kind(),
                    "answer_chars": len(answer),
                }
            },
        )
        return answer

    def close(self) -> None:
        self._provider.close()
