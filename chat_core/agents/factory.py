"""按模型类型构造 ModelProvider。

每种模型类型都有显式的配置结构，构造时逐项校验，缺失必填项直接抛出
ConfigurationError，而不是等到第一次调用后端时才失败。

支持的模型类型是一个封闭集合：openai、rag、mcp、ollama，
以及旧接口使用的数字编码 "1"~"4"。需要扩展时通过 register 显式注册。
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from chat_core.agents.backend_caller import BackendCaller
from chat_core.agents.model_provider import DirectModel, ModelProvider, RetrievalAugmentedModel, ToolCallingModel
from chat_core.config.settings import Settings, settings
from chat_core.domain.exceptions import ConfigurationError
from chat_core.flows.negotiator import ToolNegotiator
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers import create_backend
from chat_core.providers.base import ChatBackend
from chat_core.providers.registry import BackendConfig
from chat_core.retrieval.base import RetrieverFactory
from chat_core.tools.definitions import ToolClientFactory
from chat_core.tools.mcp_client import mcp_client_factory

# 旧接口中的 modelType 编码
LEGACY_MODEL_TYPES: Mapping[str, str] = {
    "1": "openai",
    "2": "rag",
    "3": "mcp",
    "4": "ollama",
}


def _pick(mapping: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _require(kind: str, **fields: Optional[str]) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise ConfigurationError(
            code="MISSING_CONFIG",
            message=f"{kind} model config missing: {', '.join(missing)}",
            kind=kind,
            missing=missing,
        )


@dataclass
class OpenAIModelConfig:
    api_key: str
    model_name: str
    base_url: str

    def __post_init__(self):
        _require("openai", api_key=self.api_key, model_name=self.model_name, base_url=self.base_url)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], cfg: Settings = settings) -> "OpenAIModelConfig":
        return cls(
            api_key=_pick(mapping, "apiKey", "api_key") or cfg.openai_api_key,
            model_name=_pick(mapping, "modelName", "model_name") or cfg.openai_model_name,
            base_url=_pick(mapping, "baseURL", "base_url") or cfg.openai_base_url,
        )


@dataclass
class OllamaModelConfig:
    model_name: str
    base_url: str

    def __post_init__(self):
        _require("ollama", model_name=self.model_name, base_url=self.base_url)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], cfg: Settings = settings) -> "OllamaModelConfig":
        return cls(
            model_name=_pick(mapping, "modelName", "model_name") or cfg.ollama_model_name,
            base_url=_pick(mapping, "baseURL", "base_url") or cfg.ollama_base_url,
        )


@dataclass
class RagModelConfig:
    username: str
    api_key: str
    model_name: str
    base_url: str

    def __post_init__(self):
        _require(
            "rag",
            username=self.username,
            api_key=self.api_key,
            model_name=self.model_name,
            base_url=self.base_url,
        )

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], cfg: Settings = settings) -> "RagModelConfig":
        return cls(
            username=_pick(mapping, "username"),
            api_key=_pick(mapping, "apiKey", "api_key") or cfg.openai_api_key,
            model_name=_pick(mapping, "modelName", "model_name") or cfg.rag_model_name or cfg.openai_model_name,
            base_url=_pick(mapping, "baseURL", "base_url") or cfg.rag_base_url or cfg.openai_base_url,
        )


@dataclass
class McpModelConfig:
    api_key: str
    model_name: str
    base_url: str
    mcp_url: str
    username: str = ""

    def __post_init__(self):
        _require(
            "mcp",
            api_key=self.api_key,
            model_name=self.model_name,
            base_url=self.base_url,
            mcp_url=self.mcp_url,
        )

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], cfg: Settings = settings) -> "McpModelConfig":
        return cls(
            username=_pick(mapping, "username") or "",
            api_key=_pick(mapping, "apiKey", "api_key") or cfg.openai_api_key,
            model_name=_pick(mapping, "modelName", "model_name") or cfg.rag_model_name or cfg.openai_model_name,
            base_url=_pick(mapping, "baseURL", "base_url") or cfg.rag_base_url or cfg.openai_base_url,
            mcp_url=_pick(mapping, "mcpURL", "mcp_url") or cfg.mcp_url,
        )


ModelConfig = Union[OpenAIModelConfig, OllamaModelConfig, RagModelConfig, McpModelConfig]
ProviderCreator = Callable[[Any], ModelProvider]


class ModelFactory:
    """ModelProvider 工厂，由调用方构造后注入 SessionRegistry，不做全局单例。"""

    def __init__(
        self,
        cfg: Settings = settings,
        retriever_factory: Optional[RetrieverFactory] = None,
        tool_client_factory: Optional[ToolClientFactory] = None,
        backend_factory: Callable[[BackendConfig], ChatBackend] = create_backend,
    ):
        self._cfg = cfg
        self._retriever_factory = retriever_factory
        self._tool_client_factory = tool_client_factory
        self._backend_factory = backend_factory
        self._creators: Dict[str, ProviderCreator] = {
            "openai": self._create_openai,
            "ollama": self._create_ollama,
            "rag": self._create_rag,
            "mcp": self._create_mcp,
        }

    def kinds(self) -> List[str]:
        return sorted(self._creators)

    def register(self, kind: str, creator: ProviderCreator) -> None:
        """显式注册新的模型类型；creator 接收原始配置并返回 ModelProvider。"""

        key = kind.strip().lower()
        if not key:
            raise ConfigurationError(code="UNSUPPORTED_MODEL_TYPE", message="model type must not be empty")
        if key in LEGACY_MODEL_TYPES:
            raise ConfigurationError(code="UNSUPPORTED_MODEL_TYPE", message=f"{kind!r} is a reserved model type code")
        self._creators[key] = creator
        logger.info("model_factory.registered", extra={"extra": {"kind": key}})

    def normalize_kind(self, kind: str) -> str:
        key = (kind or "").strip().lower()
        key = LEGACY_MODEL_TYPES.get(key, key)
        if key not in self._creators:
            raise ConfigurationError(
                code="UNSUPPORTED_MODEL_TYPE",
                message=f"unsupported model type: {kind!r}",
                supported=self.kinds(),
            )
        return key

    def create(self, kind: str, config: Union[ModelConfig, Mapping[str, Any], None] = None) -> ModelProvider:
        key = self.normalize_kind(kind)
        provider = self._creators[key](config)
        logger.info("model_factory.created", extra={"extra": {"kind": key}})
        return provider

    def _caller(self, name: str, base_url: str, model_name: str, api_key: Optional[str] = None) -> BackendCaller:
        backend = self._backend_factory(
            BackendConfig(
                name=name,
                base_url=base_url,
                model_name=model_name,
                api_key=api_key,
                timeout=self._cfg.http_timeout,
                temperature=self._cfg.temperature,
            )
        )
        return BackendCaller(backend, model_name, temperature=self._cfg.temperature)

    def _config(self, config_cls, config):
        if isinstance(config, config_cls):
            return config
        if config is None:
            config = {}
        if not isinstance(config, Mapping):
            raise ConfigurationError(
                code="INVALID_CONFIG",
                message=f"expected {config_cls.__name__} or mapping, got {type(config).__name__}",
            )
        return config_cls.from_mapping(config, self._cfg)

    def _create_openai(self, config) -> ModelProvider:
        c: OpenAIModelConfig = self._config(OpenAIModelConfig, config)
        return DirectModel(self._caller("openai", c.base_url, c.model_name, c.api_key), kind="openai")

    def _create_ollama(self, config) -> ModelProvider:
        c: OllamaModelConfig = self._config(OllamaModelConfig, config)
        return DirectModel(self._caller("ollama", c.base_url, c.model_name), kind="ollama")

    def _create_rag(self, config) -> ModelProvider:
        c: RagModelConfig = self._config(RagModelConfig, config)
        if self._retriever_factory is None:
            raise ConfigurationError(code="MISSING_CONFIG", message="rag model requires a retriever factory")
        caller = self._caller("openai", c.base_url, c.model_name, c.api_key)
        return RetrievalAugmentedModel(caller, c.username, self._retriever_factory)

    def _create_mcp(self, config) -> ModelProvider:
        c: McpModelConfig = self._config(McpModelConfig, config)
        tool_factory = self._tool_client_factory or mcp_client_factory(self._cfg, url=c.mcp_url)
        caller = self._caller("openai", c.base_url, c.model_name, c.api_key)
        return ToolCallingModel(caller, ToolNegotiator(caller, tool_factory))
