"""ModelProvider 的三种变体。

- DirectModel: 历史消息原样转发给后端。
- RetrievalAugmentedModel: 先按用户检索文档，把片段嵌入最新一条消息后再生成。
- ToolCallingModel: 交给 ToolNegotiator 做两阶段工具协商。

三者都只接受调用方传入的历史快照，不持有对话状态。
"""

import threading
from typing import List, Optional, Protocol, Sequence

from chat_core.agents.backend_caller import BackendCaller, to_chat_messages, with_last_replaced
from chat_core.agents.stream_relay import TokenCallback
from chat_core.domain.conversation import Message
from chat_core.domain.models import ChatMessage
from chat_core.flows.negotiator import ToolNegotiator
from chat_core.infrastructure.logging.logger import logger
from chat_core.retrieval.base import Document, PromptBuilder, RetrieverFactory, build_rag_prompt


class ModelProvider(Protocol):
    kind: str

    def generate(self, history: Sequence[Message], question: str) -> str:
        ...

    def stream(
        self,
        history: Sequence[Message],
        question: str,
        on_token: TokenCallback,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        ...

    def close(self) -> None:
        ...


class DirectModel:
    def __init__(self, caller: BackendCaller, kind: str = "openai"):
        self.kind = kind
        self._caller = caller

    def generate(self, history: Sequence[Message], question: str) -> str:
        return self._caller.complete(to_chat_messages(history, question))

    def stream(
        self,
        history: Sequence[Message],
        question: str,
        on_token: TokenCallback,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        return self._caller.stream(to_chat_messages(history, question), on_token, deadline=deadline, cancel=cancel)

    def close(self) -> None:
        self._caller.close()


class RetrievalAugmentedModel:
    """检索增强生成。

    检索器按用户名构建；构建失败、检索失败或没有命中片段时，
    记录告警并退化为对原始消息的直接生成，不会向调用方抛错。
    """

    kind = "rag"

    def __init__(
        self,
        caller: BackendCaller,
        username: str,
        retriever_factory: RetrieverFactory,
        prompt_builder: PromptBuilder = build_rag_prompt,
    ):
        self._caller = caller
        self._username = username
        self._retriever_factory = retriever_factory
        self._prompt_builder = prompt_builder

    @property
    def username(self) -> str:
        return self._username

    def _retrieve(self, question: str) -> List[Document]:
        try:
            retriever = self._retriever_factory(self._username)
            docs = list(retriever.retrieve_documents(question) or [])
        except Exception as exc:
            logger.warning(
                "rag.retrieval_failed",
                extra={
                    "extra": {
                        "username": self._username,
                        "code": getattr(exc, "code", type(exc).__name__),
                        "error": str(exc),
                    }
                },
            )
            return []
        if not docs:
            logger.warning("rag.no_documents", extra={"extra": {"username": self._username}})
        return docs

    def _messages(self, history: Sequence[Message], question: str) -> List[ChatMessage]:
        messages = to_chat_messages(history, question)
        docs = self._retrieve(question)
        if not docs:
            return messages
        logger.info("rag.augmented", extra={"extra": {"username": self._username, "documents": len(docs)}})
        return with_last_replaced(messages, self._prompt_builder(question, docs))

    def generate(self, history: Sequence[Message], question: str) -> str:
        return self._caller.complete(self._messages(history, question))

    def stream(
        self,
        history: Sequence[Message],
        question: str,
        on_token: TokenCallback,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        return self._caller.stream(self._messages(history, question), on_token, deadline=deadline, cancel=cancel)

    def close(self) -> None:
        self._caller.close()


class ToolCallingModel:
    kind = "mcp"

    def __init__(self, caller: BackendCaller, negotiator: ToolNegotiator):
        self._caller = caller
        self._negotiator = negotiator

    @property
    def negotiator(self) -> ToolNegotiator:
        return self._negotiator

    def generate(self, history: Sequence[Message], question: str) -> str:
        return self._negotiator.generate(to_chat_messages(history, question))

    def stream(
        self,
        history: Sequence[Message],
        question: str,
        on_token: TokenCallback,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        return self._negotiator.stream(to_chat_messages(history, question), on_token, deadline=deadline, cancel=cancel)

    def close(self) -> None:
        try:
            self._negotiator.close()
        finally:
            self._caller.close()
