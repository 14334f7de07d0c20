"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
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


FramingModeName = Literal["accumulate", "per_line", "raw"]


class ChatSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 聊天接口 ----
    base_url: str = Field(default="http://localhost:8080/api", description="后端 API 基础URL")
    chat_path: str = Field(default="/v1/ai/rag", description="流式聊天接口路径")
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    api_token: Optional[str] = Field(default=None, description="Bearer 凭证，缺省时不发送 Authorization")
    user_id: int = Field(default=1, ge=1, description="请求体中的用户ID")

    # ---- 流式帧格式（按部署固定，不做自动探测） ----
    framing_mode: FramingModeName = Field(
        default="accumulate",
        description="accumulate: 空行结束事件；per_line: 每个 data 行独立；raw: 整块 JSON 信封",
    )

    # ---- 本地持久化 ----
    persist_debounce_ms: int = Field(default=1000, ge=0, description="流式片段写盘的防抖窗口（毫秒）")
    storage_root: str = Field(default=".storage", description="存储根目录")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("chat_path")
    @classmethod
    def validate_chat_path(cls, v: str) -> str:
        if not v.startswith("/"):
            return "/" + v
        return v

    @field_validator("api_token")
    @classmethod
    def validate_api_token(cls, v: Optional[str]) -> Optional[str]:
        # 空字符串等价于未配置，避免发送 "Bearer "
        return v or None

    @property
    def chat_url(self) -> str:
        return self.base_url.rstrip("/") + self.chat_path

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


settings = ChatSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = ChatSettings
