"""Pollinations 免费文本接口适配器。

无需认证，请求 {pollinations_url}/openai，请求体为 OpenAI 格式，额外带随机 seed
（避免命中缓存）和 referrer。响应为 OpenAI 风格的事件流。
"""

import random
from typing import Any, Dict, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.models import Model, ModelCapabilities
from chat_core.providers.base import TurnRequest, build_timeout, json_body, network_error, raise_for_status
from chat_core.providers.openai_stream import build_openai_messages, consume_openai_stream
from chat_core.providers.registry import POLLINATIONS_CONFIG
from chat_core.streaming.sink import StreamSink

REFERRER = "https://github.com/chat-core/chat-core"
USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) chat-core/0.1"


def to_display(model_id: str) -> str:
    """"qwen-coder" -> "Qwen coder"."""

    if not model_id:
        return "Unnamed Model"
    s = model_id.replace("-", " ").strip()
    return s[:1].upper() + s[1:] if s else model_id


class PollinationsBackend:
    name = "pollinations"
    display_name = POLLINATIONS_CONFIG.display_name
    credentials = None

    def __init__(self, cfg=settings, rng: Optional[random.Random] = None):
        self._settings = cfg
        self._rng = rng or random.Random()
        self.last_catalog_raw: Optional[Any] = None

    @property
    def _base(self) -> str:
        return (getattr(self._settings, "pollinations_url", None) or POLLINATIONS_CONFIG.base_url).rstrip("/")

    def fetch_models(self) -> List[Model]:
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.get(f"{self._base}/models", headers={"Accept": "application/json"})
        except httpx.RequestError as e:
            raise network_error(self.name, e)
        raise_for_status(resp, self.name)
        data = json_body(resp, self.name)
        self.last_catalog_raw = data
        models: List[Model] = []
        for item in data if isinstance(data, list) else []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            model_id = str(item["name"])
            modalities = tuple(str(m) for m in item.get("input_modalities") or ["text"])
            models.append(
                Model(
                    model_id,
                    to_display(model_id),
                    self.name,
                    ModelCapabilities(
                        thinking=bool(item.get("reasoning")),
                        vision=bool(item.get("vision")) or "image" in modalities,
                        audio=bool(item.get("audio")) or "audio" in modalities,
                        document=True,
                        modalities=modalities,
                    ),
                )
            )
        return models

    def stream_turn(self, request: TurnRequest, sink: StreamSink) -> None:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "User-Agent": USER_AGENT,
            "Origin": "https://pollinations.ai",
            "Referer": "https://pollinations.ai/",
            "Cache-Control": "no-cache",
            "Accept-Encoding": "identity",
        }
        try:
            with httpx.Client(timeout=build_timeout(self._settings), trust_env=False) as client:
                with client.stream("POST", f"{self._base}/openai", json=self.build_payload(request), headers=headers) as resp:
                    raise_for_status(resp, self.name)
                    consume_openai_stream(resp.iter_lines(), sink, request.log_ctx)
        except httpx.RequestError as e:
            raise network_error(self.name, e)

    def build_payload(self, request: TurnRequest) -> Dict[str, Any]:
        return {
            "model": (request.model.model_id or "openai").lower(),
            "messages": build_openai_messages(request.history, request.outgoing_text(), request.system_prompt),
            "stream": True,
            "seed": self._rng.randint(0, 2**31 - 1),
            "referrer": REFERRER,
        }
