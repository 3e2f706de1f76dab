import httpx
import pytest

from chat_core.domain.exceptions import ApiError, ConfigurationError, NetworkError, RateLimitError
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.providers.openai_client import OpenAICompatibleClient
from chat_core.providers.registry import BackendConfig


def _client(**kw):
    cfg = dict(name="openai", base_url="https://example.com/v1/", model_name="qwen-plus", api_key="sk-test-123456")
    cfg.update(kw)
    return OpenAICompatibleClient(BackendConfig(**cfg))


def _req():
    return ChatRequest(provider="openai", model="qwen-plus", messages=[ChatMessage(role="user", content="hi")])


class Resp:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data or {}
        self.text = text

    def json(self):
        return self._data


def _fake_client(resp=None, captured=None, error=None, stream_resp=None):
    class Client:
        def __init__(self, *a, **kw):
            if captured is not None:
                captured["client_kwargs"] = kw

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            if error is not None:
                raise error
            if captured is not None:
                captured.update(url=url, payload=json, headers=headers)
            return resp

        def stream(self, method, url, json=None, headers=None, **_):
            if captured is not None:
                captured.update(url=url, payload=json, headers=headers)
            return stream_resp

    return Client


class StreamResp:
    def __init__(self, lines, status_code=200, text=""):
        self._lines = lines
        self.status_code = status_code
        self.text = text
        self.read_called = False

    def __enter__(self):
        return self

    def __exit__(self, *a):
        return False

    def read(self):
        self.read_called = True

    def iter_lines(self):
        return iter(self._lines)


def test_openai_client_requires_api_key():
    with pytest.raises(ConfigurationError) as ei:
        _client(api_key=None)
    assert ei.value.code == "MISSING_API_KEY"


def test_openai_client_parse_basic(monkeypatch):
    captured = {}
    data = {
        "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }
    monkeypatch.setattr("httpx.Client", _fake_client(Resp(data=data), captured))
    res = _client().chat(_req())
    assert res.text == "ok"
    assert res.usage.total_tokens == 2
    assert captured["url"] == "https://example.com/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-test-123456"
    assert captured["payload"]["stream"] is False
    assert captured["payload"]["messages"] == [{"role": "user", "content": "hi"}]
    assert captured["client_kwargs"]["trust_env"] is False


def test_openai_client_status_errors(monkeypatch):
    monkeypatch.setattr("httpx.Client", _fake_client(Resp(status_code=429)))
    with pytest.raises(RateLimitError):
        _client().chat(_req())

    monkeypatch.setattr("httpx.Client", _fake_client(Resp(status_code=500, text="boom")))
    with pytest.raises(ApiError) as ei:
        _client().chat(_req())
    assert ei.value.http_status == 500
    assert ei.value.message == "boom"


def test_openai_client_network_error(monkeypatch):
    monkeypatch.setattr("httpx.Client", _fake_client(error=httpx.ConnectError("refused")))
    with pytest.raises(NetworkError) as ei:
        _client().chat(_req())
    assert ei.value.code == "NETWORK_ERROR"


def test_openai_client_stream_stops_at_done(monkeypatch):
    lines = [
        'data: {"choices": [{"delta": {"role": "assistant", "content": "Hel"}}]}',
        "",
        'data: {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]}',
        "data: [DONE]",
        'data: {"choices": [{"delta": {"content": "ignored"}}]}',
    ]
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured=captured, stream_resp=StreamResp(lines)))
    chunks = list(_client().chat_stream(_req()))
    assert [c.choices[0].delta.content for c in chunks] == ["Hel", "lo"]
    assert chunks[-1].choices[0].finish_reason == "stop"
    assert captured["payload"]["stream"] is True


def test_openai_client_stream_error_reads_body(monkeypatch):
    resp = StreamResp([], status_code=401, text="unauthorized")
    monkeypatch.setattr("httpx.Client", _fake_client(stream_resp=resp))
    with pytest.raises(ApiError) as ei:
        list(_client().chat_stream(_req()))
    assert resp.read_called
    assert ei.value.message == "unauthorized"


def test_openai_client_non_json_body_is_bad_response(monkeypatch):
    monkeypatch.setattr("httpx.Client", _fake_client(httpx.Response(200, text="<html>gateway</html>")))
    with pytest.raises(ApiError) as ei:
        _client().chat(_req())
    assert ei.value.code == "BAD_RESPONSE"
    assert "<html>gateway</html>" in ei.value.message

    monkeypatch.setattr("httpx.Client", _fake_client(httpx.Response(200, json=[{"choices": []}])))
    with pytest.raises(ApiError) as ei:
        _client().chat(_req())
    assert ei.value.code == "BAD_RESPONSE"


def test_openai_client_invalid_url_is_network_error(monkeypatch):
    monkeypatch.setattr("httpx.Client", _fake_client(error=httpx.InvalidURL("No scheme included in URL.")))
    with pytest.raises(NetworkError):
        _client().chat(_req())


def test_openai_client_timeout_capped_by_request(monkeypatch):
    captured = {}
    data = {"choices": [{"message": {"role": "assistant", "content": "ok"}}]}
    monkeypatch.setattr("httpx.Client", _fake_client(Resp(data=data), captured))
    req = _req()
    req.timeout = 0.5
    _client().chat(req)
    assert captured["client_kwargs"]["timeout"] == 0.5

    req.timeout = 120
    _client().chat(req)
    assert captured["client_kwargs"]["timeout"] == 30.0

    _client().chat(_req())
    assert captured["client_kwargs"]["timeout"] == 30.0
