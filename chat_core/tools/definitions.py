"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 在第一阶段提示词中向模型描述可用工具（ToolDef / ToolParam）。
- 在工具协商中保存模型的调用意图与执行结果（ToolCallIntent / ToolResult）。
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Protocol


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供模型调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam]

    def params_text(self) -> str:
        """参数的一行文字描述，用于拼进提示词。"""

        parts = []
        for param in self.params.values():
            suffix = "" if param.required else "，可选"
            parts.append(f"{param.name}（{param.description}{suffix}）")
        return "、".join(parts) or "无"


@dataclass
class ToolCallIntent:
    """第一阶段回答解析出的调用意图，只在一次请求内存在。"""

    is_tool_call: bool
    tool_name: str = ""
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """工具执行结果的封装（文本形式）。"""

    tool_name: str
    content: str


class ToolClient(Protocol):
    """工具执行协作方。失败时抛出 ToolUnavailableError。"""

    def call_tool(self, name: str, args: Dict[str, Any]) -> str:
        ...

    def close(self) -> None:
        ...


# 创建并完成握手的工具客户端；失败时抛出 ToolUnavailableError
ToolClientFactory = Callable[[], ToolClient]


def weather_tool_def() -> ToolDef:
    return ToolDef(
        name="get_weather",
        description="获取指定城市的天气信息",
        params={
            "city": ToolParam(
                name="city",
                description="城市名称，支持中文和英文，如北京、Shanghai",
                required=True,
                schema={"type": "string"},
            )
        },
    )
