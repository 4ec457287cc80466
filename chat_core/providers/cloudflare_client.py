"""Cloudflare AI Playground 适配器（免费，无需 API Key）。

- 推理: {cloudflare_base_url}/inference
- 消息使用 ``parts`` 数组；请求体固定带 system_message 与 max_tokens。

响应不是标准 SSE，而是逐行的数据流：``0:`` 前缀的行携带 JSON（字符串或对象），
``e:`` / ``d:`` 前缀的行是结束标记。每行即一个事件，中间没有空行。
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.models import Message, Model
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import TurnRequest, build_timeout, network_error, raise_for_status
from chat_core.providers.registry import CLOUDFLARE_CONFIG, CLOUDFLARE_MODELS
from chat_core.streaming.sink import StreamSink
from chat_core.streaming.sse import SseDecoder

DEFAULT_SYSTEM_MESSAGE = "You are a helpful assistant"
MAX_TOKENS = 2048
TEXT_PREFIX = "0:"
END_PREFIXES = ("e:", "d:")


def _parts_message(role: str, text: str) -> Dict[str, Any]:
    return {"role": role, "parts": [{"type": "text", "text": text}]}


def build_parts_messages(history: Sequence[Message], user_text: str) -> List[Dict[str, Any]]:
    msgs = [_parts_message(m.role, m.content) for m in history if m.content]
    msgs.append(_parts_message("user", user_text))
    return msgs


def extract_text(value: Any) -> Optional[str]:
    """``0:`` 行的负载可能是字符串，或带 text / delta.content / content 的对象。"""

    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return None
    if isinstance(value.get("text"), str):
        return value["text"]
    delta = value.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        return delta["content"]
    if isinstance(value.get("content"), str):
        return value["content"]
    return None


class CloudflareBackend:
    name = "cloudflare"
    display_name = CLOUDFLARE_CONFIG.display_name
    credentials = None

    def __init__(self, cfg=settings):
        self._settings = cfg
        self.last_catalog_raw: Optional[Any] = None

    @property
    def _base(self) -> str:
        return (getattr(self._settings, "cloudflare_base_url", None) or CLOUDFLARE_CONFIG.base_url).rstrip("/")

    def fetch_models(self) -> List[Model]:
        # playground 的模型接口需要浏览器会话，直接使用内置列表
        return list(CLOUDFLARE_MODELS)

    def stream_turn(self, request: TurnRequest, sink: StreamSink) -> None:
        headers = {
            "Content-Type": "application/json",
            "user-agent": "Mozilla/5.0 (X11; Linux x86_64) chat-core/0.1",
            "origin": "https://playground.ai.cloudflare.com",
            "referer": "https://playground.ai.cloudflare.com/",
        }
        try:
            with httpx.Client(timeout=build_timeout(self._settings), trust_env=False) as client:
                with client.stream("POST", f"{self._base}/inference", json=self.build_payload(request), headers=headers) as resp:
                    raise_for_status(resp, self.name)
                    self.consume_stream(resp.iter_lines(), sink, request.log_ctx)
        except httpx.RequestError as e:
            raise network_error(self.name, e)

    def build_payload(self, request: TurnRequest) -> Dict[str, Any]:
        return {
            "messages": build_parts_messages(request.history, request.outgoing_text()),
            "lora": None,
            "model": request.model.model_id,
            "max_tokens": MAX_TOKENS,
            "stream": True,
            "system_message": request.system_prompt or DEFAULT_SYSTEM_MESSAGE,
            "tools": [],
        }

    def consume_stream(self, lines: Iterable[str], sink: StreamSink, log_ctx: Optional[Dict[str, Any]] = None) -> None:
        decoder = SseDecoder(line_delimited=True)
        for event in decoder.iter_events(lines):
            line = event.raw
            sink.record_raw(line)
            if line.startswith(END_PREFIXES):
                sink.finish_reason = "end"
                break
            if not line.startswith(TEXT_PREFIX):
                continue
            try:
                value = json.loads(line[len(TEXT_PREFIX):])
            except json.JSONDecodeError as exc:
                log_event(logging.WARNING, "stream.payload_skipped", log_ctx or {}, error=str(exc), payload=line[:200])
                continue
            text = extract_text(value)
            if text:
                sink.append_answer(text)
