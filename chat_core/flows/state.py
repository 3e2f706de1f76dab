"""State definition for the tool negotiation graph."""

from __future__ import annotations

from typing import List, Literal, Optional, TypedDict

from chat_core.domain.models import ChatMessage
from chat_core.tools.definitions import ToolCallIntent, ToolResult


# no_tool / tool_failed / phase1_failed / tool_executed
Outcome = Literal["no_tool", "tool_failed", "phase1_failed", "tool_executed"]


class NegotiationState(TypedDict, total=False):
    """State shared across negotiation nodes."""

    messages: List[ChatMessage]
    query: str
    deadline: Optional[float]  # time.monotonic() 下的截止时间，None 表示不限
    phase1_text: str
    intent: Optional[ToolCallIntent]
    tool_result: Optional[ToolResult]
    phase2_messages: Optional[List[ChatMessage]]
    outcome: Outcome
    error: Optional[str]
