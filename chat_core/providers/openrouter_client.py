"""OpenRouter Provider 适配器。

使用非流式 chat/completions：整段回答在响应中一次给出，作为单个增量写入 StreamSink，
之后仍由节流器做最终回调。模型目录只保留免费模型（prompt/completion 价格均为 0）。
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import Model, ModelCapabilities
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import TurnRequest, build_timeout, json_body, network_error, raise_for_status
from chat_core.providers.openai_stream import apply_openai_chunk, build_openai_messages
from chat_core.providers.registry import OPENROUTER_CONFIG
from chat_core.streaming.sink import StreamSink
from chat_core.tools.definitions import specs_to_json

_ZERO_PRICES = {"0", "0.0"}


def is_free(item: Dict[str, Any]) -> bool:
    pricing = item.get("pricing")
    if not isinstance(pricing, dict):
        return False
    return str(pricing.get("prompt", "1")) in _ZERO_PRICES and str(pricing.get("completion", "1")) in _ZERO_PRICES


class OpenRouterBackend:
    name = "openrouter"
    display_name = OPENROUTER_CONFIG.display_name
    credentials = None

    def __init__(self, cfg=settings):
        self._settings = cfg
        self.last_catalog_raw: Optional[Any] = None

    @property
    def _base(self) -> str:
        return (getattr(self._settings, "openrouter_base_url", None) or OPENROUTER_CONFIG.base_url).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        key = getattr(self._settings, "openrouter_api_key", None)
        if not key:
            raise ValidationError(code="MISSING_API_KEY", message="OPENROUTER_API_KEY not set")
        return {
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "X-Title": "chat-core",
        }

    def fetch_models(self) -> List[Model]:
        headers = self._headers()
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.get(f"{self._base}/models", headers=headers)
        except httpx.RequestError as e:
            raise network_error(self.name, e)
        raise_for_status(resp, self.name)
        data = json_body(resp, self.name)
        self.last_catalog_raw = data
        models: List[Model] = []
        for item in (data.get("data") if isinstance(data, dict) else None) or []:
            if not isinstance(item, dict) or not item.get("id") or not is_free(item):
                continue
            model_id = str(item["id"])
            models.append(
                Model(
                    model_id,
                    str(item.get("name") or model_id),
                    self.name,
                    ModelCapabilities(
                        thinking=True,
                        document=True,
                        max_context_length=int(item.get("context_length") or 0),
                    ),
                )
            )
        return models

    def stream_turn(self, request: TurnRequest, sink: StreamSink) -> None:
        headers = self._headers()
        try:
            with httpx.Client(timeout=build_timeout(self._settings), trust_env=False) as client:
                resp = client.post(f"{self._base}/chat/completions", json=self.build_payload(request), headers=headers)
        except httpx.RequestError as e:
            raise network_error(self.name, e)
        raise_for_status(resp, self.name)
        sink.record_raw(resp.text)
        try:
            payload = resp.json()
        except ValueError:
            # 非 JSON 正文（网关错误页等）按空结果处理
            log_event(logging.WARNING, "openrouter.bad_payload", request.log_ctx, body=(resp.text or "")[:400])
            return
        apply_openai_chunk(payload, sink)

    def build_payload(self, request: TurnRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model.model_id,
            "messages": build_openai_messages(request.history, request.outgoing_text(), request.system_prompt),
            "stream": False,
        }
        if request.enabled_tools and not request.is_continuation:
            payload["tools"] = specs_to_json(request.enabled_tools)
        return payload
