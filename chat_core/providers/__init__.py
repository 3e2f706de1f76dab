"""模型后端集成层。

该包下的模块负责：
- 定义后端抽象接口 (base)。
- 维护后端连接配置与默认值 (registry)。
- 提供各后端的具体实现 (openai_client、ollama_client)。
"""

from dataclasses import replace

from chat_core.domain.exceptions import ConfigurationError
from chat_core.providers.base import ChatBackend
from chat_core.providers.registry import BackendConfig, get_backend_defaults
from chat_core.providers.openai_client import OpenAICompatibleClient
from chat_core.providers.ollama_client import OllamaClient


def create_backend(config: BackendConfig) -> ChatBackend:
    """根据 config.name 创建后端客户端实例，未填写的 base_url 取该后端的默认地址。"""

    try:
        defaults = get_backend_defaults(config.name)
    except KeyError:
        raise ConfigurationError(code="UNSUPPORTED_BACKEND", message=f"unsupported backend: {config.name}")
    if not config.base_url:
        config = replace(config, base_url=defaults.base_url)
    if defaults.requires_api_key and not config.api_key:
        raise ConfigurationError(code="MISSING_API_KEY", message=f"{defaults.name} backend requires apiKey")
    if defaults.name == "ollama":
        return OllamaClient(config)
    return OpenAICompatibleClient(config)


__all__ = ["ChatBackend", "BackendConfig", "OpenAICompatibleClient", "OllamaClient", "create_backend"]
