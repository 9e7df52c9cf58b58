"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
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

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称，例如 openai、kimi",
    )
    default_model: str = Field(
        default="chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )

    # OpenAI（兼容 AI_INTEGRATIONS_* 环境变量）
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("openai_api_key", "ai_integrations_openai_api_key"),
        description="OpenAI API 密钥",
    )
    openai_base_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("openai_base_url", "ai_integrations_openai_base_url"),
        description="OpenAI API 基础URL，为空时使用 registry 中的默认值",
    )
    # Kimi（OpenAI 兼容协议）
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: Optional[str] = Field(default=None, description="Kimi API 基础URL")

    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 连接/写入超时时间（秒）")
    stream_idle_timeout: float = Field(
        default=60.0,
        ge=1.0,
        description="流式读取时两个增量之间允许的最长等待时间（秒）",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    system_prompt: str = Field(
        default="You are a helpful AI assistant.",
        description="每次对话前置的系统提示词",
    )
    system_prompt_file: Optional[str] = Field(
        default=None,
        description="系统提示词文件路径，设置后优先于 system_prompt",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别，如 DEBUG、INFO、WARNING")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 服务端 / 客户端 ----
    host: str = Field(default="127.0.0.1", description="HTTP 服务监听地址")
    port: int = Field(default=5000, ge=1, le=65535, description="HTTP 服务端口")
    api_base_url: str = Field(
        default="http://127.0.0.1:5000",
        description="客户端访问服务端时使用的基础URL",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "kimi_api_key")
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
