import time

import pytest

from chat_core.agents.backend_caller import BackendCaller, to_chat_messages
from chat_core.agents.model_provider import DirectModel, RetrievalAugmentedModel, ToolCallingModel
from chat_core.agents.stream_relay import deadline_after
from chat_core.domain.conversation import Message
from chat_core.domain.exceptions import NetworkError, RetrievalUnavailableError, StreamInterruptedError
from chat_core.domain.models import ChatChoice, ChatMessage, ChatResult, ChatStreamChoice, ChatStreamChunk
from chat_core.flows.negotiator import ToolNegotiator
from chat_core.retrieval.base import Document


class FakeBackend:
    name = "fake"

    def __init__(self, chunks=()):
        self.chunks = list(chunks)
        self.requests = []
        self.closed = False

    def chat(self, req):
        self.requests.append(req)
        # 回答与最后一条消息绑定，便于比较不同变体的输出
        answer = f"answer to: {req.messages[-1].content}"
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=[ChatChoice(index=0, message=ChatMessage(role="assistant", content=answer))],
        )

    def chat_stream(self, req):
        self.requests.append(req)
        for c in self.chunks:
            delta = ChatMessage(role="assistant", content=c)
            yield ChatStreamChunk(provider=self.name, model=req.model, choices=[ChatStreamChoice(index=0, delta=delta)])

    def close(self):
        self.closed = True


class FakeRetriever:
    def __init__(self, docs):
        self.docs = docs
        self.queries = []

    def retrieve_documents(self, query):
        self.queries.append(query)
        return self.docs


def _history(question="退货政策是什么？"):
    return [
        Message.user("s1", "你好", user_id="alice"),
        Message.assistant("s1", "你好！", user_id="alice"),
        Message.user("s1", question, user_id="alice"),
    ]


def _contents(req):
    return [(m.role, m.content) for m in req.messages]


def test_to_chat_messages_appends_missing_question():
    history = _history()[:2]
    msgs = to_chat_messages(history, "新问题")
    assert [m.content for m in msgs] == ["你好", "你好！", "新问题"]
    assert len(to_chat_messages(_history(), "退货政策是什么？")) == 3


def test_direct_model_forwards_history_verbatim():
    backend = FakeBackend()
    model = DirectModel(BackendCaller(backend, "m"))
    assert model.generate(_history(), "退货政策是什么？") == "answer to: 退货政策是什么？"
    assert _contents(backend.requests[0]) == [("user", "你好"), ("assistant", "你好！"), ("user", "退货政策是什么？")]
    assert model.kind == "openai"


def test_direct_model_stream_hello():
    backend = FakeBackend(chunks=["Hel", "lo"])
    seen = []
    answer = DirectModel(BackendCaller(backend, "m")).stream(_history(), "退货政策是什么？", seen.append)
    assert answer == "Hello"
    assert seen == ["Hel", "lo"]


def test_rag_retrieval_failure_matches_direct():
    def no_documents(username):
        raise RetrievalUnavailableError(message=f"{username} has no indexed document")

    direct_backend, rag_backend = FakeBackend(), FakeBackend()
    direct = DirectModel(BackendCaller(direct_backend, "m"))
    rag = RetrievalAugmentedModel(BackendCaller(rag_backend, "m"), "alice", no_documents)
    assert rag.generate(_history(), "退货政策是什么？") == direct.generate(_history(), "退货政策是什么？")
    assert _contents(rag_backend.requests[0]) == _contents(direct_backend.requests[0])


def test_rag_unexpected_retriever_error_falls_back():
    class Broken:
        def retrieve_documents(self, query):
            raise RuntimeError("index corrupted")

    backend = FakeBackend()
    rag = RetrievalAugmentedModel(BackendCaller(backend, "m"), "alice", lambda username: Broken())
    assert rag.generate(_history(), "退货政策是什么？") == "answer to: 退货政策是什么？"


def test_rag_empty_result_falls_back():
    backend = FakeBackend()
    rag = RetrievalAugmentedModel(BackendCaller(backend, "m"), "alice", lambda username: FakeRetriever([]))
    rag.generate(_history(), "退货政策是什么？")
    assert backend.requests[0].messages[-1].content == "退货政策是什么？"


def test_rag_success_replaces_only_last_message():
    retriever = FakeRetriever([Document(content="七天无理由退货。", metadata={"source": "policy.md"})])
    users = []

    def factory(username):
        users.append(username)
        return retriever

    backend = FakeBackend()
    rag = RetrievalAugmentedModel(BackendCaller(backend, "m"), "alice", factory)
    rag.generate(_history(), "退货政策是什么？")
    sent = backend.requests[0].messages
    assert users == ["alice"]
    assert retriever.queries == ["退货政策是什么？"]
    assert [m.content for m in sent[:2]] == ["你好", "你好！"]
    assert "七天无理由退货。" in sent[-1].content
    assert "policy.md" in sent[-1].content
    assert "退货政策是什么？" in sent[-1].content
    assert rag.kind == "rag"


def test_rag_stream_with_custom_prompt_builder():
    backend = FakeBackend(chunks=["好"])
    rag = RetrievalAugmentedModel(
        BackendCaller(backend, "m"),
        "alice",
        lambda username: FakeRetriever([Document(content="doc")]),
        prompt_builder=lambda query, docs: f"{len(docs)}|{query}",
    )
    seen = []
    assert rag.stream(_history(), "q", seen.append) == "好"
    assert backend.requests[0].messages[-1].content == "1|q"


def test_tool_calling_model_delegates_and_closes():
    class Client:
        closed = False

        def call_tool(self, name, args):
            return "sunny"

        def close(self):
            Client.closed = True

    backend = FakeBackend()
    caller = BackendCaller(backend, "m")
    model = ToolCallingModel(caller, ToolNegotiator(caller, Client))
    # 回答不是 JSON，按不调用工具处理
    answer = model.generate(_history("你好"), "你好")
    assert answer.startswith("answer to: ")
    assert model.kind == "mcp"
    model.close()
    assert backend.closed
    assert Client.closed is False


class StalledBackend(FakeBackend):
    """首个增量前卡住的后端，按请求携带的超时放弃读取。"""

    def __init__(self, stall=1.0):
        super().__init__(chunks=["late"])
        self.stall = stall

    def chat_stream(self, req):
        self.requests.append(req)
        wait = self.stall if req.timeout is None else min(self.stall, req.timeout)
        time.sleep(wait)
        if wait < self.stall:
            raise NetworkError(code="NETWORK_ERROR", message="read timed out")
        yield from super().chat_stream(req)


def test_stalled_backend_stops_at_deadline():
    backend = StalledBackend(stall=1.0)
    model = DirectModel(BackendCaller(backend, "m"))
    seen = []
    start = time.monotonic()
    with pytest.raises(StreamInterruptedError) as ei:
        model.stream(_history(), "退货政策是什么？", seen.append, deadline=deadline_after(0.1))
    assert time.monotonic() - start < 0.5
    assert ei.value.code == "STREAM_DEADLINE_EXCEEDED"
    assert seen == []


def test_expired_deadline_skips_backend_call():
    backend = FakeBackend(chunks=["never"])
    model = DirectModel(BackendCaller(backend, "m"))
    with pytest.raises(StreamInterruptedError):
        model.stream(_history(), "退货政策是什么？", lambda _: None, deadline=time.monotonic() - 1)
    assert backend.requests == []
