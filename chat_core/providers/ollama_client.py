"""Ollama 本地模型适配器。

- URL: {base_url}/api/chat
- 无需认证。
- 流式响应是 NDJSON：每行一个 JSON 对象，最后一行 done=true。
"""

import json
from typing import Any, Dict, Iterable

import httpx

from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError
from chat_core.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChunk,
    ChatStreamChoice,
    ChatUsage,
)
from chat_core.providers.registry import BackendConfig, request_timeout


class OllamaClient:
    """Ollama 后端客户端实现。"""

    name = "ollama"

    def __init__(self, config: BackendConfig):
        self._config = config

    @property
    def model_name(self) -> str:
        return self._config.model_name

    # ---- 非流式 ----

    def chat(self, req: ChatRequest) -> ChatResult:
        payload = self._build_payload(req, stream=False)
        try:
            with httpx.Client(timeout=request_timeout(self._config, req.timeout), trust_env=False) as client:
                resp = client.post(self._endpoint(), json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="ollama rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            raise ApiError(code="BAD_RESPONSE", message=f"ollama returned non-JSON body: {resp.text[:200]}")
        if not isinstance(data, dict):
            raise ApiError(code="BAD_RESPONSE", message=f"ollama returned {type(data).__name__}, expected object")
        msg = data.get("message") or {}
        choice = ChatChoice(
            index=0,
            message=ChatMessage(role=msg.get("role") or "assistant", content=msg.get("content") or ""),
            finish_reason=data.get("done_reason"),
        )
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=[choice],
            usage=self._parse_usage(data),
            raw=data,
        )

    # ---- 流式 ----

    def chat_stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        payload = self._build_payload(req, stream=True)
        try:
            with httpx.Client(timeout=request_timeout(self._config, req.timeout), trust_env=False) as client:
                with client.stream("POST", self._endpoint(), json=payload) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="ollama rate limit")
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    for line in resp.iter_lines():
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(data, dict):
                            continue
                        if data.get("error"):
                            raise ApiError(code="API_ERROR", message=str(data["error"]))
                        yield self._parse_stream_chunk(data, req)
                        if data.get("done"):
                            return
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _endpoint(self) -> str:
        return f"{self._config.base_url.rstrip('/')}/api/chat"

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        options: Dict[str, Any] = {"temperature": req.temperature, "top_p": req.top_p}
        max_tokens = req.max_tokens or self._config.max_tokens
        if max_tokens:
            options["num_predict"] = max_tokens
        return {
            "model": req.model or self._config.model_name,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "stream": stream,
            "options": options,
        }

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        msg = data.get("message") or {}
        choice = ChatStreamChoice(
            index=0,
            delta=ChatMessage(role=msg.get("role") or "assistant", content=msg.get("content") or ""),
            finish_reason=data.get("done_reason") if data.get("done") else None,
        )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=[choice],
            usage=self._parse_usage(data) if data.get("done") else None,
            raw=data,
        )

    @staticmethod
    def _parse_usage(data: dict) -> ChatUsage | None:
        if "prompt_eval_count" not in data and "eval_count" not in data:
            return None
        prompt = int(data.get("prompt_eval_count") or 0)
        completion = int(data.get("eval_count") or 0)
        return ChatUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
