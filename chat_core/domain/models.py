"""统一的对话与结果数据模型。

本模块定义了编排层与各模型后端之间共享的标准数据结构：

- ChatMessage: 发给后端的一条消息（system/user/assistant）。
- ChatRequest: 发给底层模型后端的完整请求。
- ChatResult: 从后端解析后的统一响应结果。
- ChatStreamChunk: 流式响应的单个增量。

所有后端适配器（如 OpenAICompatibleClient）都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List


# LLM 消息角色类型（与 OpenAI / Ollama 的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    - role: 消息角色，如 system/user/assistant。
    - content: 纯文本内容。
    - meta: 附加元数据，不直接发给后端，主要用于日志。
    """

    role: Role
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    后端适配层负责把本结构转换成各家 API 的 JSON 请求体。
    """

    provider: str  # 后端名，如 "openai"、"ollama"
    model: str  # 后端实际的模型 ID
    messages: List[ChatMessage]
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: Optional[int] = None
    timeout: Optional[float] = None  # 距截止时间的剩余秒数，后端取它与自身超时的较小值


@dataclass
class ChatUsage:
    """后端返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前通常只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次对话调用的最终结果。

    - provider: 后端名。
    - model: 模型 ID。
    - choices: 一个或多个候选回答。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        """第一个候选回答的文本，没有候选时为空串。"""

        if not self.choices:
            return ""
        return self.choices[0].message.content or ""


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果，结构与 ChatResult 类似。

    每次流式回调由若干 choice 组成，choice.delta 代表本次增量内容。
    """

    provider: str
    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None
