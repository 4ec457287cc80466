"""GLM / BigModel Provider 适配器。

接口风格与 OpenAI 类似，均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

推理与联网搜索只在模型支持时才写入请求；流中 ``reasoning_content`` 或带 ``thinking``
标记的增量进入推理通道，``web_search`` 字段中的结果作为联网来源收集。
"""

from typing import Any, Dict, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import Model, ModelCapabilities
from chat_core.providers.base import TurnRequest, build_timeout, json_body, network_error, raise_for_status
from chat_core.providers.openai_stream import build_openai_messages, consume_openai_stream
from chat_core.providers.registry import GLM_CONFIG, GLM_MODELS, index_by_id
from chat_core.streaming.sink import StreamSink
from chat_core.tools.definitions import specs_to_json


class GlmBackend:
    """GLM / BigModel Provider 客户端实现。"""

    name = "glm"
    display_name = GLM_CONFIG.display_name
    credentials = None

    def __init__(self, cfg=settings):
        self._settings = cfg
        self.last_catalog_raw: Optional[Any] = None

    @property
    def _base(self) -> str:
        return getattr(self._settings, "glm_base_url", None) or GLM_CONFIG.base_url

    def _api_key(self) -> str:
        key = getattr(self._settings, "glm_api_key", None)
        if not key:
            raise ValidationError(code="MISSING_API_KEY", message="GLM_API_KEY not set")
        return key

    def _headers(self, accept: str = "application/json") -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key()}",
            "Content-Type": "application/json",
            "Accept": accept,
        }

    # ---- 模型目录 ----

    def fetch_models(self) -> List[Model]:
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.get(f"{self._base}/models", headers=self._headers())
        except httpx.RequestError as e:
            raise network_error(self.name, e)
        raise_for_status(resp, self.name)
        data = json_body(resp, self.name)
        self.last_catalog_raw = data
        return self.parse_models(data)

    @staticmethod
    def parse_models(data: Any) -> List[Model]:
        """把远端模型 ID 映射到静态能力表；结构无法识别时返回完整静态表。"""

        known = index_by_id(GLM_MODELS)
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return list(GLM_MODELS)
        models: List[Model] = []
        for item in items:
            model_id = item.get("id") if isinstance(item, dict) else None
            if not model_id:
                continue
            models.append(known.get(model_id) or Model(str(model_id), str(model_id), "glm", ModelCapabilities(document=True)))
        return models or list(GLM_MODELS)

    # ---- 一次尝试 ----

    def stream_turn(self, request: TurnRequest, sink: StreamSink) -> None:
        payload = self.build_payload(request)
        headers = self._headers(accept="text/event-stream")
        try:
            with httpx.Client(timeout=build_timeout(self._settings), trust_env=False) as client:
                with client.stream("POST", f"{self._base}/chat/completions", json=payload, headers=headers) as resp:
                    raise_for_status(resp, self.name)
                    consume_openai_stream(resp.iter_lines(), sink, request.log_ctx)
        except httpx.RequestError as e:
            raise network_error(self.name, e)

    def build_payload(self, request: TurnRequest) -> Dict[str, Any]:
        model = request.model
        payload: Dict[str, Any] = {
            "model": model.model_id,
            "messages": build_openai_messages(request.history, request.outgoing_text(), request.system_prompt),
            "temperature": 0.7,
            "stream": True,
        }
        if model.capabilities.max_generation_length > 0:
            payload["max_tokens"] = model.capabilities.max_generation_length
        if request.thinking:
            payload["thinking"] = {"type": "enabled"}
        tools: List[Dict[str, Any]] = []
        if request.enabled_tools and not request.is_continuation:
            tools.extend(specs_to_json(request.enabled_tools))
        if request.web_search:
            tools.append({"type": "web_search", "web_search": {"enable": True, "search_result": True}})
        if tools:
            payload["tools"] = tools
        return payload
