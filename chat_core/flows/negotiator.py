"""两阶段工具协商。

第一阶段让模型只回答“是否需要调用工具”的 JSON；需要时执行工具，
第二阶段把工具结果连同问题再交给模型生成最终回答。
第一阶段从不流式输出，第二阶段（或直接回答的降级分支）才对调用方流式输出。
"""

import threading
from typing import Any, Dict, List, Optional, Sequence

from chat_core.agents.backend_caller import BackendCaller
from chat_core.agents.stream_relay import StreamRelay, TokenCallback
from chat_core.domain.exceptions import ToolUnavailableError, ValidationError
from chat_core.domain.models import ChatMessage
from chat_core.flows.graph import build_negotiation_graph
from chat_core.flows.state import NegotiationState
from chat_core.infrastructure.logging.logger import logger
from chat_core.tools.definitions import ToolClient, ToolClientFactory, ToolDef, weather_tool_def


class ToolNegotiator:
    def __init__(
        self,
        caller: BackendCaller,
        tool_client_factory: ToolClientFactory,
        tool: Optional[ToolDef] = None,
    ):
        self._caller = caller
        self._factory = tool_client_factory
        self._tool = tool or weather_tool_def()
        self._client: Optional[ToolClient] = None
        self._client_lock = threading.Lock()
        self._graph = build_negotiation_graph(caller, self._tool, self._call_tool)

    @property
    def tool(self) -> ToolDef:
        return self._tool

    def _get_client(self) -> ToolClient:
        """按需创建工具客户端，握手成功后才缓存，失败的下次重试。"""

        with self._client_lock:
            if self._client is not None:
                return self._client
            try:
                client = self._factory()
            except ToolUnavailableError:
                raise
            except Exception as e:
                raise ToolUnavailableError(code="TOOL_CLIENT_INIT_FAILED", message=str(e))
            self._client = client
            return client

    def _call_tool(self, name: str, args: Dict[str, Any]) -> str:
        client = self._get_client()
        try:
            return client.call_tool(name, args)
        except ToolUnavailableError as e:
            if _is_stale(e):
                self._drop_client(client, e)
            raise

    def _drop_client(self, client: ToolClient, cause: ToolUnavailableError) -> None:
        """丢弃失效的客户端，下一次工具调用重新握手。"""

        with self._client_lock:
            if self._client is not client:
                return
            self._client = None
        logger.warning(
            "tool_negotiation.client_dropped",
            extra={"extra": {"tool": self._tool.name, "code": cause.code, "error": cause.message}},
        )
        try:
            client.close()
        except Exception as e:
            logger.warning("tool_negotiation.client_close_failed", extra={"extra": {"error": str(e)}})

    def negotiate(self, messages: Sequence[ChatMessage], deadline: Optional[float] = None) -> NegotiationState:
        """运行协商图直到第二阶段之前，返回最终状态。"""

        if not messages:
            raise ValidationError(message="messages must not be empty")
        state: NegotiationState = {"messages": list(messages), "query": messages[-1].content, "deadline": deadline}
        result: Dict[str, Any] = self._graph.invoke(state)
        logger.info(
            "tool_negotiation.outcome",
            extra={"extra": {"outcome": result.get("outcome"), "error": result.get("error")}},
        )
        return result

    def generate(self, messages: Sequence[ChatMessage]) -> str:
        state = self.negotiate(messages)
        outcome = state.get("outcome")
        if outcome == "tool_executed":
            return self._caller.complete(state["phase2_messages"])
        if outcome == "phase1_failed":
            return self._caller.complete(list(messages))
        return state.get("phase1_text", "")

    def stream(
        self,
        messages: Sequence[ChatMessage],
        on_token: TokenCallback,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        state = self.negotiate(messages, deadline=deadline)
        outcome = state.get("outcome")
        if outcome == "tool_executed":
            return self._caller.stream(state["phase2_messages"], on_token, deadline=deadline, cancel=cancel)
        if outcome == "phase1_failed":
            return self._caller.stream(list(messages), on_token, deadline=deadline, cancel=cancel)
        # 第一阶段的文本就是最终回答，整体作为一个增量发出
        chunks: List[str] = [state.get("phase1_text", "")]
        return StreamRelay(on_token, deadline=deadline, cancel=cancel).relay(chunks)

    def close(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()


def _is_stale(exc: ToolUnavailableError) -> bool:
    # 连接断开或服务端已不认识这个会话（重启、会话过期）
    if exc.code in ("MCP_NETWORK_ERROR", "MCP_NOT_INITIALIZED"):
        return True
    return exc.code == "MCP_HTTP_ERROR" and exc.extra.get("status_code") == 404
