"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置，优先级：
初始化参数 > 环境变量 > .env > config.yaml > secrets。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chat_core.domain.models import ProviderConfig, ProviderKind


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
        if path in seen:
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
    """全局配置。"""

    # ---- 默认 Provider ----
    default_provider_id: str = Field(default="openai", description="默认 Provider 配置 ID")
    default_provider_kind: ProviderKind = Field(
        default=ProviderKind.OPENAI,
        description="默认 Provider 协议类型：openai / claude / ollama / custom",
    )
    default_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="默认 Provider 的 API 基础URL",
    )
    default_api_key: Optional[str] = Field(default=None, description="默认 Provider 的 API 密钥")
    default_model: str = Field(default="gpt-3.5-turbo", description="未指定模型时使用的模型 ID")

    # ---- HTTP / 重试 ----
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    max_retries: int = Field(default=3, ge=0, description="非流式调用失败后的最大重试次数（总尝试次数为该值 + 1）")
    retry_min_seconds: float = Field(default=0.5, ge=0.0, description="指数退避的基数（秒）")
    retry_max_seconds: float = Field(default=8.0, ge=0.0, description="单次退避的上限（秒）")

    # ---- 存储 / 日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 对话 ----
    max_context_messages: int = Field(default=50, ge=1, le=500, description="最大上下文消息数")
    system_prompt: str = Field(
        default="You are a helpful AI assistant.",
        description="每次请求前置的系统提示词，留空则不发送",
    )
    stream_channel_capacity: int = Field(default=32, ge=1, description="流式事件通道容量")
    mock_chunk_size: int = Field(default=5, ge=1, description="Mock Provider 流式分片大小（字符）")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("default_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
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

    def default_provider_config(self) -> ProviderConfig:
        """根据配置构造默认 ProviderConfig。"""
        return ProviderConfig(
            id=self.default_provider_id,
            name=self.default_provider_id,
            kind=self.default_provider_kind,
            base_url=self.default_base_url,
            api_key=self.default_api_key,
            default_model=self.default_model,
            timeout_seconds=self.http_timeout,
            max_retries=self.max_retries,
        )


settings = Settings()
