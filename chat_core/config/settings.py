"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。

这里的字段只是各类模型的默认值；真正的 Provider 配置在构造时
由 agents.factory 中的配置结构逐项校验。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CORE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 默认模型类型 ----
    default_provider: str = Field(
        default="openai",
        description="未指定模型类型时使用的 Provider，例如 openai、rag、mcp、ollama",
    )

    # OpenAI 兼容接口
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI 兼容接口的 API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容接口基础URL",
    )
    openai_model_name: Optional[str] = Field(default=None, description="默认对话模型 ID")

    # Ollama 本地模型
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama 服务地址")
    ollama_model_name: Optional[str] = Field(default=None, description="Ollama 模型名")

    # RAG / MCP 模型共用的对话模型
    rag_base_url: Optional[str] = Field(default=None, description="RAG 对话模型基础URL，缺省沿用 openai_base_url")
    rag_model_name: Optional[str] = Field(default=None, description="RAG 对话模型 ID，缺省沿用 openai_model_name")

    # MCP 工具服务
    mcp_url: str = Field(default="http://localhost:8081/mcp", description="MCP streamable HTTP 端点")
    mcp_client_name: str = Field(default="chat-core tool client", description="initialize 握手时上报的客户端名")
    mcp_client_version: str = Field(default="1.0.0", description="initialize 握手时上报的客户端版本")
    mcp_protocol_version: str = Field(default="2025-03-26", description="MCP 协议版本")

    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="单次流式输出的截止时间（秒），为空表示不限制",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    serialize_generation: bool = Field(
        default=True,
        description="同一会话内是否串行化 generate/stream 调用",
    )
    storage_root: str = Field(default=".storage", description="消息存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
