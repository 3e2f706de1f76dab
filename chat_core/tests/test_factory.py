import pytest

from chat_core.agents.factory import (
    LEGACY_MODEL_TYPES,
    McpModelConfig,
    ModelFactory,
    OllamaModelConfig,
    OpenAIModelConfig,
    RagModelConfig,
)
from chat_core.agents.model_provider import DirectModel, RetrievalAugmentedModel, ToolCallingModel
from chat_core.domain.exceptions import ConfigurationError
from chat_core.providers.openai_client import OpenAICompatibleClient


class SettingsStub:
    openai_api_key = None
    openai_base_url = "https://api.openai.com/v1"
    openai_model_name = None
    ollama_base_url = "http://localhost:11434"
    ollama_model_name = None
    rag_base_url = None
    rag_model_name = None
    mcp_url = "http://localhost:8081/mcp"
    mcp_client_name = "test"
    mcp_client_version = "0.0.1"
    mcp_protocol_version = "2025-03-26"
    http_timeout = 1.0
    temperature = 0.2


class FakeBackend:
    def __init__(self, config):
        self.config = config
        self.name = config.name


def _factory(**kw):
    built = []

    def backend_factory(config):
        backend = FakeBackend(config)
        built.append(backend)
        return backend

    kw.setdefault("backend_factory", backend_factory)
    return ModelFactory(cfg=SettingsStub(), **kw), built


OPENAI = {"apiKey": "sk-test-123456", "baseURL": "https://dashscope.example/v1", "modelName": "qwen-plus"}


def test_openai_config_from_mapping_accepts_legacy_keys():
    cfg = OpenAIModelConfig.from_mapping(OPENAI, SettingsStub())
    assert cfg.api_key == "sk-test-123456"
    assert cfg.base_url == "https://dashscope.example/v1"
    assert cfg.model_name == "qwen-plus"


def test_config_missing_required_fields():
    with pytest.raises(ConfigurationError) as ei:
        OpenAIModelConfig.from_mapping({"modelName": "qwen-plus"}, SettingsStub())
    assert ei.value.code == "MISSING_CONFIG"
    assert ei.value.extra["missing"] == ["api_key"]

    with pytest.raises(ConfigurationError):
        RagModelConfig.from_mapping(OPENAI, SettingsStub())
    with pytest.raises(ConfigurationError):
        OllamaModelConfig(model_name="", base_url="http://h")


def test_settings_provide_defaults():
    stub = SettingsStub()
    stub.ollama_model_name = "qwen2.5"
    cfg = OllamaModelConfig.from_mapping({}, stub)
    assert cfg.base_url == "http://localhost:11434"
    mcp = McpModelConfig.from_mapping(OPENAI, stub)
    assert mcp.mcp_url == "http://localhost:8081/mcp"
    assert mcp.username == ""


def test_create_openai_passes_backend_config():
    factory, built = _factory()
    provider = factory.create("openai", OPENAI)
    assert isinstance(provider, DirectModel)
    assert provider.kind == "openai"
    config = built[0].config
    assert config.api_key == "sk-test-123456"
    assert config.timeout == 1.0
    assert config.temperature == 0.2


def test_legacy_model_type_codes():
    assert LEGACY_MODEL_TYPES["4"] == "ollama"
    factory, built = _factory()
    provider = factory.create("4", {"modelName": "qwen2.5"})
    assert provider.kind == "ollama"
    assert built[0].config.name == "ollama"
    assert factory.create(" OpenAI ", OPENAI).kind == "openai"


def test_unknown_kind_is_configuration_error():
    factory, built = _factory()
    with pytest.raises(ConfigurationError) as ei:
        factory.create("5", OPENAI)
    assert ei.value.code == "UNSUPPORTED_MODEL_TYPE"
    assert built == []


def test_rag_requires_retriever_factory():
    factory, _ = _factory()
    with pytest.raises(ConfigurationError):
        factory.create("rag", dict(OPENAI, username="alice"))

    factory, _ = _factory(retriever_factory=lambda username: None)
    provider = factory.create("2", dict(OPENAI, username="alice"))
    assert isinstance(provider, RetrievalAugmentedModel)
    assert provider.username == "alice"


def test_mcp_uses_injected_tool_client_factory():
    tool_factory = object()
    factory, _ = _factory(tool_client_factory=tool_factory)
    provider = factory.create("mcp", OPENAI)
    assert isinstance(provider, ToolCallingModel)
    assert provider.negotiator.tool.name == "get_weather"


def test_explicit_config_object_and_real_backend():
    factory = ModelFactory(cfg=SettingsStub())
    provider = factory.create("openai", OpenAIModelConfig(api_key="sk-test-123456", model_name="m", base_url="http://h"))
    assert isinstance(provider, DirectModel)
    assert isinstance(provider._caller.backend, OpenAICompatibleClient)

    with pytest.raises(ConfigurationError) as ei:
        factory.create("openai", ["not", "a", "mapping"])
    assert ei.value.code == "INVALID_CONFIG"


def test_register_extends_closed_set():
    factory, _ = _factory()
    sentinel = object()
    factory.register("Echo", lambda config: sentinel)
    assert "echo" in factory.kinds()
    assert factory.create("echo") is sentinel
    with pytest.raises(ConfigurationError):
        factory.register("1", lambda config: sentinel)
