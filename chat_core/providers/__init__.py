"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型目录配置 (registry)。
- 提供各厂商的具体实现 (qwen_client、kimi_client、glm_client 等)。

Provider 是一个封闭集合，按 Model.provider 选择实现，不做动态加载。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.infrastructure.storage.json_store import JsonStateStore
from chat_core.providers.base import ProviderBackend, TurnRequest
from chat_core.providers.cloudflare_client import CloudflareBackend
from chat_core.providers.glm_client import GlmBackend
from chat_core.providers.kimi_client import KimiBackend
from chat_core.providers.openrouter_client import OpenRouterBackend
from chat_core.providers.pollinations_client import PollinationsBackend
from chat_core.providers.qwen_client import QwenBackend


def create_backend(
    name: Optional[str] = None,
    cfg=None,
    store: Optional[JsonStateStore] = None,
) -> ProviderBackend:
    """根据名称创建 Provider 实例，默认取配置中的 default_provider。

    store 用于持久化会话凭证（仅 Qwen / Kimi 使用）。
    """

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "qwen")).lower()
    if provider_name == "qwen":
        return QwenBackend(cfg, store=store)
    if provider_name == "kimi":
        return KimiBackend(cfg, store=store)
    if provider_name == "glm":
        return GlmBackend(cfg)
    if provider_name == "pollinations":
        return PollinationsBackend(cfg)
    if provider_name == "cloudflare":
        return CloudflareBackend(cfg)
    if provider_name == "openrouter":
        return OpenRouterBackend(cfg)
    raise KeyError(f"Unknown provider: {provider_name!r}")


__all__ = ["ProviderBackend", "TurnRequest", "create_backend"]
