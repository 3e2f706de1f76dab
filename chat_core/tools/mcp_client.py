"""MCP 工具客户端（streamable HTTP 传输）。

MCP 使用 JSON-RPC 2.0：
- 首次使用前必须完成 initialize 握手，随后发送 notifications/initialized。
- 服务端可能在握手响应头中下发 Mcp-Session-Id，之后的每个请求都要带上。
- 单个 POST 的响应既可能是 application/json，也可能是 text/event-stream，
  后者需要从 data: 行里找到与请求 id 匹配的那条消息。

所有失败都包装为 ToolUnavailableError，交给工具协商做降级。
"""

import itertools
import json
import threading
from typing import Any, Dict, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ToolUnavailableError
from chat_core.infrastructure.logging.logger import logger
from chat_core.tools.definitions import ToolClientFactory, ToolDef, ToolParam

SESSION_HEADER = "Mcp-Session-Id"


class McpToolClient:
    """通过 streamable HTTP 与 MCP 服务交互的同步客户端。"""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client_name: str = "chat-core tool client",
        client_version: str = "1.0.0",
        protocol_version: str = "2025-03-26",
    ):
        self._url = url
        self._timeout = timeout
        self._client_name = client_name
        self._client_version = client_version
        self._protocol_version = protocol_version
        self._client: Optional[httpx.Client] = None
        self._session_id: Optional[str] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.server_info: Dict[str, Any] = {}

    @property
    def initialized(self) -> bool:
        return self._client is not None

    def initialize(self) -> Dict[str, Any]:
        """完成 initialize 握手，返回服务端的 InitializeResult。"""

        self._client = httpx.Client(timeout=self._timeout, trust_env=False)
        try:
            result = self._request(
                "initialize",
                {
                    "protocolVersion": self._protocol_version,
                    "capabilities": {},
                    "clientInfo": {"name": self._client_name, "version": self._client_version},
                },
            )
            self._notify("notifications/initialized")
        except ToolUnavailableError:
            self.close()
            raise
        self.server_info = result.get("serverInfo") or {}
        negotiated = result.get("protocolVersion")
        if negotiated:
            self._protocol_version = negotiated
        logger.info(
            "MCP client initialized",
            extra={"extra": {"url": self._url, "server": self.server_info, "protocol": self._protocol_version}},
        )
        return result

    def list_tools(self) -> List[ToolDef]:
        """列出服务端注册的工具。"""

        result = self._request("tools/list", {})
        tools: List[ToolDef] = []
        for raw in result.get("tools") or []:
            schema = raw.get("inputSchema") or {}
            required = set(schema.get("required") or [])
            params = {
                name: ToolParam(
                    name=name,
                    description=str(prop.get("description") or ""),
                    required=name in required,
                    schema=prop,
                )
                for name, prop in (schema.get("properties") or {}).items()
            }
            tools.append(ToolDef(name=raw.get("name") or "", description=raw.get("description") or "", params=params))
        return tools

    def call_tool(self, name: str, args: Dict[str, Any]) -> str:
        """调用工具，返回所有文本内容拼接后的结果。"""

        result = self._request("tools/call", {"name": name, "arguments": args})
        text = ""
        for content in result.get("content") or []:
            if content.get("type") == "text":
                text += str(content.get("text") or "") + "\n"
        if result.get("isError"):
            raise ToolUnavailableError(code="MCP_TOOL_ERROR", message=text.strip() or f"tool {name} failed")
        return text

    def ping(self) -> None:
        self._request("ping", {})

    def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            if self._session_id:
                client.delete(self._url, headers={SESSION_HEADER: self._session_id})
        except httpx.HTTPError as exc:
            logger.warning("MCP session termination failed", extra={"extra": {"url": self._url, "error": str(exc)}})
        finally:
            self._session_id = None
            client.close()

    # ---- JSON-RPC ----

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "MCP-Protocol-Version": self._protocol_version,
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    def _post(self, body: Dict[str, Any]) -> httpx.Response:
        if self._client is None:
            raise ToolUnavailableError(code="MCP_NOT_INITIALIZED", message="MCP client is not initialized")
        try:
            resp = self._client.post(self._url, json=body, headers=self._headers())
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ToolUnavailableError(code="MCP_NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            raise ToolUnavailableError(
                code="MCP_HTTP_ERROR",
                message=resp.text,
                status_code=resp.status_code,
            )
        session_id = resp.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id
        return resp

    def _request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            request_id = next(self._ids)
            resp = self._post({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            message = self._decode(resp, request_id)
        if message.get("error"):
            err = message["error"]
            raise ToolUnavailableError(
                code="MCP_RPC_ERROR",
                message=str(err.get("message") or err),
                rpc_code=err.get("code"),
            )
        return message.get("result") or {}

    def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        body: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            body["params"] = params
        with self._lock:
            self._post(body)

    @staticmethod
    def _decode(resp: httpx.Response, request_id: int) -> Dict[str, Any]:
        content_type = resp.headers.get("content-type", "")
        if content_type.startswith("text/event-stream"):
            for message in _iter_sse_messages(resp.text):
                if message.get("id") == request_id:
                    return message
            raise ToolUnavailableError(code="MCP_NO_RESPONSE", message=f"no response for request {request_id}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ToolUnavailableError(code="MCP_BAD_RESPONSE", message=str(e))
        if isinstance(data, list):
            # 批量响应
            for message in data:
                if isinstance(message, dict) and message.get("id") == request_id:
                    return message
            raise ToolUnavailableError(code="MCP_NO_RESPONSE", message=f"no response for request {request_id}")
        if not isinstance(data, dict):
            raise ToolUnavailableError(code="MCP_BAD_RESPONSE", message="response is not a JSON object")
        return data


def _iter_sse_messages(text: str):
    """把 SSE 文本拆成事件，逐个产出 data 字段解析出的 JSON。"""

    data_lines: List[str] = []
    for line in text.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
            continue
        if line.strip() or not data_lines:
            continue
        raw = "\n".join(data_lines)
        data_lines = []
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(message, dict):
            yield message


def mcp_client_factory(cfg=settings, url: Optional[str] = None) -> ToolClientFactory:
    """返回一个按配置创建并完成握手的 McpToolClient 工厂。"""

    def _create() -> McpToolClient:
        client = McpToolClient(
            url=url or cfg.mcp_url,
            timeout=cfg.http_timeout,
            client_name=cfg.mcp_client_name,
            client_version=cfg.mcp_client_version,
            protocol_version=cfg.mcp_protocol_version,
        )
        client.initialize()
        return client

    return _create
