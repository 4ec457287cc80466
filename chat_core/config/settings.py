"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
Provider 客户端、编排器与节流器都通过构造参数接收配置对象（默认为本模块的
``settings``），测试中可以直接传入一个简单的 stub 对象。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFIG_ENV_VAR = "CHAT_CORE_CONFIG_FILE"


def _config_candidates() -> List[Path]:
    """按优先级列出 config.yaml 的候选路径：环境变量指定 > 当前目录 > 项目根目录。"""
    found: List[Path] = []
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        found.append(Path(override).expanduser())
    for candidate in (Path.cwd() / "config.yaml", Path(__file__).resolve().parents[2] / "config.yaml"):
        if candidate not in found:
            found.append(candidate)
    return found


def _load_config_from_yaml() -> Dict[str, Any]:
    """读取第一个存在的 config.yaml。

    顶层允许包一层 ``chat_core:``，便于与其他工具共用同一个配置文件。
    """
    for candidate in _config_candidates():
        if not candidate.is_file():
            continue
        try:
            loaded = yaml.safe_load(candidate.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"config file {candidate} unreadable: {exc}")
            continue
        if loaded is None:
            return {}
        if not isinstance(loaded, dict):
            warnings.warn(f"config file {candidate} must contain a mapping, skipped")
            continue
        section = loaded.get("chat_core")
        return section if isinstance(section, dict) else loaded
    return {}


class Settings(BaseSettings):
    """全局配置。"""

    # ---- 通用 ----
    default_provider: str = Field(
        default="qwen",
        description="未指定模型时使用的 Provider 名称，例如 qwen、glm、kimi",
    )
    storage_root: str = Field(default=".storage", description="会话状态、凭证与模型目录缓存的存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否截断日志正文")
    workspace_root: str = Field(
        default_factory=lambda: str(Path.cwd()),
        description="默认工具可访问的项目根目录",
    )

    # ---- 传输 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="连接/写入超时时间（秒）")
    stream_read_timeout: float = Field(
        default=60.0,
        ge=1.0,
        description="流式读取单次阻塞的超时时间（秒），超时视为流结束",
    )

    # ---- 重试与续写 ----
    max_attempts: int = Field(default=2, ge=1, le=5, description="单次 Provider 调用的最大尝试次数（含首次）")
    max_tool_rounds: int = Field(
        default=5,
        ge=0,
        le=20,
        description="单轮对话内工具调用续写的最大往返次数",
    )

    # ---- 增量输出节流 ----
    throttle_interval_ms: float = Field(default=40.0, ge=0.0, description="两次增量回调之间的最小时间间隔（毫秒）")
    throttle_min_chars: int = Field(default=24, ge=1, description="累计多少新字符后立即回调")
    throttle_emit_on_newline: bool = Field(default=True, description="缓冲区以换行结尾时是否立即回调")

    # ---- Qwen（midtoken 会话凭证） ----
    qwen_base_url: str = Field(default="https://chat.qwen.ai/api/v2", description="Qwen Web API 基础URL")
    qwen_midtoken_url: str = Field(
        default="https://sg-wum.alibaba.com/w/wu.json",
        description="获取 bx-umidtoken 的脚本地址",
    )
    qwen_midtoken_max_uses: int = Field(default=20, ge=1, description="midtoken 最多复用次数")
    qwen_midtoken_max_age_seconds: float = Field(default=300.0, ge=1.0, description="midtoken 最长存活时间（秒）")

    # ---- Kimi（设备注册 token） ----
    kimi_base_url: str = Field(default="https://www.kimi.com/api", description="Kimi Web API 基础URL")

    # ---- GLM / BigModel ----
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="GLM API 基础URL",
    )

    # ---- 无需密钥的 Provider ----
    pollinations_url: str = Field(default="https://text.pollinations.ai", description="Pollinations 文本接口地址")
    cloudflare_base_url: str = Field(
        default="https://playground.ai.cloudflare.com/api",
        description="Cloudflare Playground 接口地址",
    )

    # ---- OpenRouter ----
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API 密钥")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1", description="OpenRouter API 基础URL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("glm_api_key", "openrouter_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("api key looks truncated (fewer than 10 chars)")
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
