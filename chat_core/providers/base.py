"""模型后端抽象接口。

编排层不直接依赖具体厂商的 HTTP API，而是依赖此协议：

- 每个厂商实现一个 ChatBackend（如 OpenAICompatibleClient、OllamaClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult。

这样可以在不改编排代码的前提下接入更多后端。
"""

from typing import Protocol, Iterable
from chat_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk


class ChatBackend(Protocol):
    """模型后端客户端协议。

    实现者需要提供：
    - name: 后端名称，用于日志/统计。
    - chat(req): 执行一次非流式对话调用，返回统一的 ChatResult。
    - chat_stream(req): 执行一次流式对话调用，按到达顺序产出增量。
    """

    name: str

    def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def chat_stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        ...
