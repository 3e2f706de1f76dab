"""OpenAI 兼容接口适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 OpenAI chat/completions 的 HTTP 请求格式。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应 JSON（或 SSE 流）解析为统一的 ChatResult / ChatStreamChunk。

阿里百炼、Moonshot、GLM 等兼容 OpenAI 协议的服务都走这个客户端，
只需要换 base_url 与模型名。
"""

import httpx
import json
from typing import Any, Dict, Iterable, Iterator

from chat_core.domain.models import (
    ChatRequest,
    ChatResult,
    ChatMessage,
    ChatChoice,
    ChatUsage,
    ChatStreamChunk,
    ChatStreamChoice,
)
from chat_core.domain.exceptions import ApiError, ConfigurationError, NetworkError, RateLimitError
from chat_core.providers.registry import BackendConfig, request_timeout


class OpenAICompatibleClient:
    """OpenAI 兼容后端客户端实现。

    - name: 后端名称（供日志/调试使用）。
    - chat: 非流式调用，返回 ChatResult。
    - chat_stream: 流式调用，逐个 yield ChatStreamChunk。
    """

    name = "openai"

    def __init__(self, config: BackendConfig):
        if not config.api_key:
            # 缺少密钥在构造时就失败，而不是等到第一次调用
            raise ConfigurationError(code="MISSING_API_KEY", message=f"{config.name} backend requires apiKey")
        self._config = config

    @property
    def model_name(self) -> str:
        return self._config.model_name

    def chat(self, req: ChatRequest) -> ChatResult:
        """执行一次非流式对话调用。"""

        payload = self._build_payload(req, stream=False)
        try:
            with httpx.Client(timeout=request_timeout(self._config, req.timeout), trust_env=False) as client:
                resp = client.post(
                    self._endpoint(),
                    json=payload,
                    headers=self._headers(),
                )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # 网络错误：DNS 失败、连接超时、地址非法等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self._config.name} rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            raise ApiError(code="BAD_RESPONSE", message=f"{self._config.name} returned non-JSON body: {resp.text[:200]}")
        if not isinstance(data, dict):
            raise ApiError(code="BAD_RESPONSE", message=f"{self._config.name} returned {type(data).__name__}, expected object")
        return self._parse_response(data, req)

    def chat_stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        """执行一次流式对话调用，逐步 yield ChatStreamChunk。"""

        payload = self._build_payload(req, stream=True)
        try:
            with httpx.Client(timeout=request_timeout(self._config, req.timeout), trust_env=False) as client:
                with client.stream(
                    "POST",
                    self._endpoint(),
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message=f"{self._config.name} rate limit")
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    for payload_chunk in self._iter_sse_payloads(resp.iter_lines()):
                        yield self._parse_stream_chunk(payload_chunk, req)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _endpoint(self) -> str:
        return f"{self._config.base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        payload: Dict[str, Any] = {
            "model": req.model or self._config.model_name,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "temperature": req.temperature,
            "top_p": req.top_p,
            "stream": stream,
        }
        max_tokens = req.max_tokens or self._config.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    @staticmethod
    def _iter_sse_payloads(lines: Iterable[str]) -> Iterator[dict]:
        """把 SSE 文本行解析为 JSON 对象，遇到 [DONE] 即结束。"""

        for line in lines:
            if not line:
                continue
            data_str = line
            if data_str.startswith("data:"):
                data_str = data_str[5:].strip()
            else:
                data_str = data_str.strip()
            if not data_str:
                continue
            if data_str == "[DONE]":
                return
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                yield data

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        """将原始响应 JSON 解析为统一的 ChatResult。"""

        choices: list[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            cm = ChatMessage(role=msg.get("role") or "assistant", content=msg.get("content") or "")
            choices.append(ChatChoice(index=i, message=cm, finish_reason=ch.get("finish_reason")))
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量。"""

        choices: list[ChatStreamChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            delta_payload = ch.get("delta") or {}
            delta_msg = ChatMessage(
                role=delta_payload.get("role") or "assistant",
                content=delta_payload.get("content") or "",
            )
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=delta_msg,
                    finish_reason=ch.get("finish_reason"),
                )
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    @staticmethod
    def _parse_usage(usage_raw: Any) -> ChatUsage | None:
        if not usage_raw:
            return None
        return ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )
