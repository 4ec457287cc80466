"""Provider 与模型目录配置。

本模块集中维护：

- 每个 Provider 的整体配置（ProviderConfig）：名称、展示名、基础 URL、认证方式；
- 每个 Provider 的静态模型表：在模型列表接口不可用时作为降级目录，
  也用于把远端返回的模型 ID 映射到已知的能力集。

上层通过 find_model / models_for 查询，不直接依赖具体表结构。
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from chat_core.domain.models import Model, ModelCapabilities


def _caps(
    thinking: bool,
    web_search: bool,
    vision: bool,
    document: bool,
    video: bool,
    audio: bool,
    citations: bool,
    max_context: int,
    max_generation: int,
) -> ModelCapabilities:
    return ModelCapabilities(
        thinking=thinking,
        web_search=web_search,
        vision=vision,
        document=document,
        video=video,
        audio=audio,
        citations=citations,
        max_context_length=max_context,
        max_generation_length=max_generation,
    )


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。

    - auth: "none" 无需认证；"api_key" 静态密钥；"session" 轮换会话凭证。
    """

    name: str
    display_name: str
    base_url: str
    auth: str = "none"
    streaming: bool = True
    models: List[Model] = field(default_factory=list)

    @property
    def credentialed(self) -> bool:
        return self.auth == "session"


QWEN_MODELS: List[Model] = [
    Model("qwen3-coder-plus", "Qwen3-Coder", "qwen", _caps(False, False, True, True, True, True, True, 1048576, 65536)),
    Model("qwen3-235b-a22b", "Qwen3-235B-A22B-2507", "qwen", _caps(True, True, True, True, True, True, True, 131072, 38912)),
    Model("qwen3-30b-a3b", "Qwen3-30B-A3B", "qwen", _caps(True, True, True, True, True, True, True, 131072, 38912)),
    Model("qwen3-32b", "Qwen3-32B", "qwen", _caps(True, True, True, True, True, True, True, 131072, 38912)),
    Model("qwen-max-latest", "Qwen2.5-Max", "qwen", _caps(True, True, True, True, True, True, True, 131072, 8192)),
    Model("qwen-plus-2025-01-25", "Qwen2.5-Plus", "qwen", _caps(True, True, True, True, True, True, True, 131072, 8192)),
    Model("qwq-32b", "QwQ-32B", "qwen", _caps(True, False, False, True, False, False, False, 131072, 8192)),
    Model("qwen-turbo-2025-02-11", "Qwen2.5-Turbo", "qwen", _caps(True, True, True, True, True, True, True, 1000000, 8192)),
    Model("qwen2.5-omni-7b", "Qwen2.5-Omni-7B", "qwen", _caps(False, False, True, True, True, True, True, 30720, 2048)),
    Model("qvq-72b-preview-0310", "QVQ-Max", "qwen", _caps(True, False, True, True, True, False, True, 131072, 8192)),
    Model("qwen2.5-vl-32b-instruct", "Qwen2.5-VL-32B-Instruct", "qwen", _caps(True, False, True, True, True, False, True, 131072, 8192)),
    Model("qwen2.5-14b-instruct-1m", "Qwen2.5-14B-Instruct-1M", "qwen", _caps(True, False, True, True, True, False, True, 1000000, 8192)),
    Model("qwen2.5-coder-32b-instruct", "Qwen2.5-Coder-32B-Instruct", "qwen", _caps(True, False, True, True, True, False, True, 131072, 8192)),
    Model("qwen2.5-72b-instruct", "Qwen2.5-72B-Instruct", "qwen", _caps(True, False, True, True, True, False, True, 131072, 8192)),
]

GLM_MODELS: List[Model] = [
    Model("glm-4-plus", "GLM-4-Plus", "glm", _caps(True, False, True, True, False, False, True, 128000, 4096)),
    Model("glm-4-0520", "GLM-4-0520", "glm", _caps(True, False, True, True, False, False, True, 128000, 4096)),
    Model("glm-4-long", "GLM-4-Long", "glm", _caps(False, False, False, True, False, False, False, 1000000, 4096)),
    Model("glm-4-airx", "GLM-4-AirX", "glm", _caps(False, False, True, True, False, False, True, 128000, 4096)),
    Model("glm-4-air", "GLM-4-Air", "glm", _caps(False, False, True, True, False, False, True, 128000, 4096)),
    Model("glm-4-flash", "GLM-4-Flash", "glm", _caps(False, False, True, True, False, False, True, 128000, 4096)),
    Model("glm-4v-plus", "GLM-4V-Plus", "glm", _caps(True, False, True, True, True, False, True, 128000, 4096)),
    Model("glm-4v", "GLM-4V", "glm", _caps(False, False, True, True, True, False, True, 128000, 4096)),
    Model("cogview-3-plus", "CogView-3-Plus", "glm", _caps(False, False, False, False, False, False, False, 0, 0)),
    Model("cogvideox", "CogVideoX", "glm", _caps(False, False, False, False, False, True, False, 0, 0)),
    Model("glm-4-alltools", "GLM-4-AllTools", "glm", _caps(False, False, True, True, False, False, True, 128000, 4096)),
]

KIMI_MODELS: List[Model] = [
    Model("k2", "Kimi K2", "kimi", ModelCapabilities(web_search=True)),
]


def _cf(model_id: str, display_name: str, vision: bool = False) -> Model:
    return Model(
        model_id,
        display_name,
        "cloudflare",
        _caps(True, vision, vision, True, False, False, False, 131072, 8192),
    )


CLOUDFLARE_MODELS: List[Model] = [
    _cf("@hf/thebloke/deepseek-coder-6.7b-instruct-awq", "deepseek-coder-6.7b"),
    _cf("@cf/deepseek-ai/deepseek-math-7b-instruct", "deepseek-math-7b"),
    _cf("@cf/deepseek-ai/deepseek-r1-distill-qwen-32b", "deepseek-distill-qwen-32b"),
    _cf("@cf/google/gemma-3-12b-it", "gemma-3-12b"),
    _cf("@hf/google/gemma-7b-it", "gemma-7b"),
    _cf("@hf/nousresearch/hermes-2-pro-mistral-7b", "hermes-2-pro-mistral-7b"),
    _cf("@hf/meta-llama/meta-llama-3-8b-instruct", "llama-3-8b"),
    _cf("@cf/meta/llama-3.1-8b-instruct-fp8", "llama-3.1-8b"),
    _cf("@cf/meta/llama-3.2-11b-vision-instruct", "llama-3.2-11b-vision", vision=True),
    _cf("@cf/meta/llama-3.2-1b-instruct", "llama-3.2-1b"),
    _cf("@cf/meta/llama-3.2-3b-instruct", "llama-3.2-3b"),
    _cf("@cf/meta/llama-3.3-70b-instruct-fp8-fast", "llama-3.3-70b"),
    _cf("@cf/meta/llama-4-scout-17b-16e-instruct", "llama-4-scout"),
    _cf("@hf/mistral/mistral-7b-instruct-v0.2", "mistral-7b-v0.2"),
    _cf("@cf/mistralai/mistral-small-3.1-24b-instruct", "mistral-small-3.1-24b"),
    _cf("@cf/openchat/openchat-3.5-0106", "openchat-3.5-0106"),
    _cf("@cf/microsoft/phi-2", "phi-2"),
    _cf("@cf/qwen/qwen2.5-coder-32b-instruct", "qwen-2.5-coder-32b"),
    _cf("@cf/qwen/qwq-32b", "qwq-32b"),
    _cf("@cf/defog/sqlcoder-7b-2", "sqlcoder-7b-2"),
    _cf("@cf/tinyllama/tinyllama-1.1b-chat-v1.0", "tinyllama-1.1b-v1.0"),
    _cf("@hf/thebloke/zephyr-7b-beta-awq", "zephyr-7b-beta"),
]

POLLINATIONS_MODELS: List[Model] = [
    Model("openai", "OpenAI", "pollinations", _caps(False, False, False, True, False, False, False, 128000, 8192)),
    Model("openai-fast", "OpenAI fast", "pollinations", _caps(False, False, False, True, False, False, False, 128000, 8192)),
    Model("mistral", "Mistral", "pollinations", _caps(False, False, False, True, False, False, False, 32768, 8192)),
    Model("qwen-coder", "Qwen coder", "pollinations", _caps(False, False, False, True, False, False, False, 32768, 8192)),
    Model("deepseek-reasoning", "Deepseek reasoning", "pollinations", _caps(True, False, False, True, False, False, False, 65536, 8192)),
]

# OpenRouter 的免费模型随时变化，静态表只保留一个稳定可用的默认项
OPENROUTER_MODELS: List[Model] = [
    Model(
        "deepseek/deepseek-chat-v3-0324:free",
        "DeepSeek V3 0324 (free)",
        "openrouter",
        _caps(True, False, False, True, False, False, False, 0, 0),
    ),
]


QWEN_CONFIG = ProviderConfig(
    name="qwen",
    display_name="Alibaba Qwen",
    base_url="https://chat.qwen.ai/api/v2",
    auth="session",
    models=QWEN_MODELS,
)

KIMI_CONFIG = ProviderConfig(
    name="kimi",
    display_name="Kimi",
    base_url="https://www.kimi.com/api",
    auth="session",
    models=KIMI_MODELS,
)

GLM_CONFIG = ProviderConfig(
    name="glm",
    display_name="Zhipu GLM",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    auth="api_key",
    models=GLM_MODELS,
)

POLLINATIONS_CONFIG = ProviderConfig(
    name="pollinations",
    display_name="Pollinations",
    base_url="https://text.pollinations.ai",
    models=POLLINATIONS_MODELS,
)

CLOUDFLARE_CONFIG = ProviderConfig(
    name="cloudflare",
    display_name="Cloudflare AI",
    base_url="https://playground.ai.cloudflare.com/api",
    models=CLOUDFLARE_MODELS,
)

OPENROUTER_CONFIG = ProviderConfig(
    name="openrouter",
    display_name="OpenRouter",
    base_url="https://openrouter.ai/api/v1",
    auth="api_key",
    streaming=False,
    models=OPENROUTER_MODELS,
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "qwen": QWEN_CONFIG,
    "kimi": KIMI_CONFIG,
    "glm": GLM_CONFIG,
    "pollinations": POLLINATIONS_CONFIG,
    "cloudflare": CLOUDFLARE_CONFIG,
    "openrouter": OPENROUTER_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def models_for(provider: str) -> List[Model]:
    return list(get_provider_config(provider).models)


def fallback_models(provider: str) -> List[Model]:
    """模型列表接口不可用时返回的最小内置目录。"""

    try:
        return models_for(provider)
    except KeyError:
        return []


def all_models() -> List[Model]:
    out: List[Model] = []
    for cfg in PROVIDER_REGISTRY.values():
        out.extend(cfg.models)
    return out


def find_model(model_id: str, provider: Optional[str] = None) -> Optional[Model]:
    """按模型 ID 查找静态表中的模型，可限定 Provider。"""

    pool = models_for(provider) if provider else all_models()
    for model in pool:
        if model.model_id == model_id:
            return model
    return None


def index_by_id(models: List[Model]) -> Dict[str, Model]:
    return {m.model_id: m for m in models}
