"""后端连接配置。

BackendConfig 描述“连哪个后端、用哪个模型”，由 agents.factory 中
按模型类型校验过的配置结构生成；BACKEND_DEFAULTS 集中维护各后端的默认地址。"""

from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass
class BackendConfig:
    """单个后端连接的配置。"""

    name: str
    base_url: str
    model_name: str
    api_key: Optional[str] = None
    timeout: float = 30.0
    temperature: float = 0.7
    max_tokens: Optional[int] = None


@dataclass
class BackendDefaults:
    """某个后端的默认值。"""

    name: str
    base_url: str
    requires_api_key: bool


OPENAI_DEFAULTS = BackendDefaults(
    name="openai",
    base_url="https://api.openai.com/v1",
    requires_api_key=True,
)

# 本地 Ollama 不需要密钥
OLLAMA_DEFAULTS = BackendDefaults(
    name="ollama",
    base_url="http://localhost:11434",
    requires_api_key=False,
)


BACKEND_DEFAULTS: Mapping[str, BackendDefaults] = {
    "openai": OPENAI_DEFAULTS,
    "ollama": OLLAMA_DEFAULTS,
}


def request_timeout(config: BackendConfig, req_timeout: Optional[float]) -> float:
    """单次 HTTP 调用的超时：配置超时与请求剩余时间取较小值。"""

    if req_timeout is None:
        return config.timeout
    return max(0.001, min(config.timeout, req_timeout))


def get_backend_defaults(name: str) -> BackendDefaults:
    """根据名称获取 BackendDefaults，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in BACKEND_DEFAULTS.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown backend: {name!r}")
