"""LangGraph construction and node implementations for tool negotiation.

phase1 -> parse -> execute_tool -> compose_phase2, each step may end the
graph early with an outcome the negotiator turns into the final answer.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, Iterable, Optional

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from chat_core.agents.backend_caller import BackendCaller, with_last_replaced
from chat_core.domain.exceptions import ParseError, ProviderError
from chat_core.flows.state import NegotiationState
from chat_core.infrastructure.logging.logger import logger
from chat_core.prompts import render_prompt
from chat_core.tools.definitions import ToolCallIntent, ToolDef, ToolResult

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.S)


def build_decision_prompt(tool: ToolDef, query: str) -> str:
    return render_prompt(
        "tool_decision",
        tool_name=tool.name,
        tool_description=tool.description,
        tool_params=tool.params_text(),
        query=query,
    )


def build_answer_prompt(query: str, tool_name: str, args: Dict[str, Any], tool_result: str) -> str:
    return render_prompt(
        "tool_answer",
        tool_name=tool_name,
        tool_args=json.dumps(args, ensure_ascii=False),
        tool_result=tool_result.strip(),
        query=query,
    )


def parse_tool_intent(text: str, allowed_tools: Optional[Iterable[str]] = None) -> ToolCallIntent:
    """解析第一阶段回答，期望形如 {"isToolCall", "toolName", "args"} 的 JSON。

    允许外层包一层 ```json 代码块；其余任何不符合约定的内容都抛出 ParseError。
    """

    raw = (text or "").strip()
    fenced = _FENCE.match(raw)
    if fenced:
        raw = fenced.group(1)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(message=f"not a JSON tool call: {e}")
    if not isinstance(payload, dict):
        raise ParseError(message="tool call must be a JSON object")
    is_tool_call = payload.get("isToolCall")
    if not isinstance(is_tool_call, bool):
        raise ParseError(message="isToolCall must be a boolean")
    if not is_tool_call:
        return ToolCallIntent(is_tool_call=False)
    tool_name = payload.get("toolName")
    if not isinstance(tool_name, str) or not tool_name.strip():
        raise ParseError(message="toolName is required when isToolCall is true")
    args = payload.get("args")
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise ParseError(message="args must be an object")
    allowed = set(allowed_tools or ())
    if allowed and tool_name not in allowed:
        raise ParseError(code="UNKNOWN_TOOL", message=f"tool {tool_name!r} was not offered")
    return ToolCallIntent(is_tool_call=True, tool_name=tool_name.strip(), args=args)


def phase1_node(state: NegotiationState, caller: BackendCaller, tool: ToolDef) -> Dict[str, Any]:
    prompt = build_decision_prompt(tool, state["query"])
    try:
        text = caller.complete(with_last_replaced(state["messages"], prompt), deadline=state.get("deadline"))
    except ProviderError as exc:
        logger.warning("phase1_node.failed", extra={"extra": {"code": exc.code, "error": exc.message}})
        return {"outcome": "phase1_failed", "error": exc.code}
    logger.info("phase1_node.end", extra={"extra": {"chars": len(text)}})
    return {"phase1_text": text}


def parse_node(state: NegotiationState, tool: ToolDef) -> Dict[str, Any]:
    try:
        intent = parse_tool_intent(state["phase1_text"], allowed_tools=[tool.name])
    except ParseError as exc:
        logger.warning("parse_node.no_tool", extra={"extra": {"code": exc.code, "reason": exc.message}})
        return {"intent": None, "outcome": "no_tool", "error": exc.code}
    if not intent.is_tool_call:
        logger.info("parse_node.no_tool", extra={"extra": {"reason": "isToolCall=false"}})
        return {"intent": intent, "outcome": "no_tool"}
    logger.info("parse_node.tool_detected", extra={"extra": {"tool": intent.tool_name, "args": intent.args}})
    return {"intent": intent}


def execute_tool_node(state: NegotiationState, call_tool: Callable[[str, Dict[str, Any]], str]) -> Dict[str, Any]:
    intent = state["intent"]
    try:
        text = call_tool(intent.tool_name, intent.args)
    except Exception as exc:
        # 工具尚未执行成功，降级为第一阶段回答
        code = getattr(exc, "code", type(exc).__name__)
        logger.warning(
            "execute_tool_node.failed",
            extra={"extra": {"tool": intent.tool_name, "code": code, "error": str(exc)}},
        )
        return {"outcome": "tool_failed", "error": code}
    logger.info("execute_tool_node.end", extra={"extra": {"tool": intent.tool_name, "preview": text[:200]}})
    return {"tool_result": ToolResult(tool_name=intent.tool_name, content=text)}


def compose_phase2_node(state: NegotiationState) -> Dict[str, Any]:
    intent = state["intent"]
    prompt = build_answer_prompt(state["query"], intent.tool_name, intent.args, state["tool_result"].content)
    return {
        "phase2_messages": with_last_replaced(state["messages"], prompt),
        "outcome": "tool_executed",
    }


def _after_phase1(state: NegotiationState) -> str:
    return "end" if state.get("outcome") else "parse"


def _after_parse(state: NegotiationState) -> str:
    intent = state.get("intent")
    if state.get("outcome") or intent is None or not intent.is_tool_call:
        return "end"
    return "execute_tool"


def _after_execute(state: NegotiationState) -> str:
    return "compose_phase2" if state.get("tool_result") is not None else "end"


def build_negotiation_graph(
    caller: BackendCaller,
    tool: ToolDef,
    call_tool: Callable[[str, Dict[str, Any]], str],
) -> CompiledStateGraph:
    graph = StateGraph(NegotiationState)
    graph.add_node("phase1", lambda s: phase1_node(s, caller, tool))
    graph.add_node("parse", lambda s: parse_node(s, tool))
    graph.add_node("execute_tool", lambda s: execute_tool_node(s, call_tool))
    graph.add_node("compose_phase2", compose_phase2_node)
    graph.set_entry_point("phase1")
    graph.add_conditional_edges("phase1", _after_phase1, {"parse": "parse", "end": END})
    graph.add_conditional_edges("parse", _after_parse, {"execute_tool": "execute_tool", "end": END})
    graph.add_conditional_edges("execute_tool", _after_execute, {"compose_phase2": "compose_phase2", "end": END})
    graph.add_edge("compose_phase2", END)
    return graph.compile()
