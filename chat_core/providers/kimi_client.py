"""Kimi Web Provider 适配器。

Kimi 网页端的匿名访问流程：

1. POST /device/register 注册一个随机设备 ID，拿到 access_token（会话凭证）；
2. 会话状态为 NEW 时 POST /chat 创建会话，返回的 id 写回 ConversationState；
3. POST /chat/{id}/completion/stream 流式获取回答。

流中每个 data 负载带 ``event`` 字段：``cmpl`` 携带增量文本，``rename`` 是标题生成（忽略），
``all_done`` 表示本轮结束。
"""

import logging
import random
from typing import Any, Dict, Iterable, List, Optional

import httpx

from chat_core.auth.credential_manager import SessionCredentialManager
from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError
from chat_core.domain.models import Model
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.json_store import JsonStateStore
from chat_core.providers.base import (
    TurnRequest,
    build_timeout,
    json_body,
    network_error,
    raise_for_status,
    response_text,
)
from chat_core.providers.registry import KIMI_CONFIG, KIMI_MODELS
from chat_core.streaming.sink import StreamSink
from chat_core.streaming.sse import iter_json_payloads

ANONYMOUS_LIMIT_MARKER = "匿名聊天使用次数超过"


class KimiBackend:
    """Kimi 网页端协议实现。"""

    name = "kimi"
    display_name = KIMI_CONFIG.display_name

    def __init__(
        self,
        cfg=settings,
        credentials: Optional[SessionCredentialManager] = None,
        store: Optional[JsonStateStore] = None,
        device_id: Optional[str] = None,
    ):
        self._settings = cfg
        self.device_id = device_id or str(random.getrandbits(63))
        self.credentials = credentials or SessionCredentialManager("kimi", self.register_device, store=store)
        self.last_catalog_raw: Optional[Any] = None

    @property
    def _base(self) -> str:
        return getattr(self._settings, "kimi_base_url", None) or KIMI_CONFIG.base_url

    def fetch_models(self) -> List[Model]:
        # Kimi 没有公开的模型列表接口
        return list(KIMI_MODELS)

    def register_device(self) -> str:
        """注册设备并返回 access_token。"""

        headers = {
            "Content-Type": "application/json",
            "x-msh-device-id": self.device_id,
            "x-msh-platform": "web",
            "x-traffic-id": self.device_id,
        }
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(f"{self._base}/device/register", json={}, headers=headers)
        except httpx.RequestError as e:
            raise network_error(self.name, e)
        raise_for_status(resp, self.name)
        data = json_body(resp, self.name)
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise ApiError(code="NO_ACCESS_TOKEN", message="No access token received", http_status=502, provider=self.name)
        return str(token)

    def stream_turn(self, request: TurnRequest, sink: StreamSink) -> None:
        token = self.credentials.ensure_credential()
        state = request.state
        if state.is_new:
            chat_id = self._create_chat(token)
            state.activate(chat_id, self.name)
            log_event(logging.INFO, "kimi.chat_created", request.log_ctx, conversation_id=chat_id)
            sink.state_changed()

        body = self.build_completion_body(request)
        try:
            with httpx.Client(timeout=build_timeout(self._settings), trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self._base}/chat/{state.conversation_id}/completion/stream",
                    json=body,
                    headers=self._auth_headers(token),
                ) as resp:
                    raise_for_status(resp, self.name)
                    self.consume_stream(resp.iter_lines(), sink, request.log_ctx)
        except httpx.RequestError as e:
            raise network_error(self.name, e)

    def consume_stream(self, lines: Iterable[str], sink: StreamSink, log_ctx: Optional[Dict[str, Any]] = None) -> None:
        for data in iter_json_payloads(lines, on_raw=sink.record_raw, log_ctx=log_ctx):
            if not isinstance(data, dict):
                continue
            event = data.get("event")
            if event == "cmpl":
                text = data.get("text")
                if isinstance(text, str):
                    sink.append_answer(text)
            elif event == "all_done":
                sink.finish_reason = "all_done"
                break

    def build_completion_body(self, request: TurnRequest) -> Dict[str, Any]:
        return {
            "kimiplus_id": "kimi",
            "extend": {"sidebar": True},
            "model": request.model.model_id or "k2",
            "use_search": request.web_search,
            "messages": [{"role": "user", "content": request.outgoing_text()}],
            "refs": [],
            "history": [],
            "scene_labels": [],
            "use_semantic_memory": False,
            "use_deep_research": False,
        }

    def _create_chat(self, token: str) -> str:
        body = {
            "name": "Untitled Conversation",
            "born_from": "home",
            "kimiplus_id": "kimi",
            "is_example": False,
            "source": "web",
            "tags": [],
        }
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(f"{self._base}/chat", json=body, headers=self._auth_headers(token))
        except httpx.RequestError as e:
            raise network_error(self.name, e)
        if resp.status_code >= 400:
            text = response_text(resp)
            if ANONYMOUS_LIMIT_MARKER in text:
                raise ApiError(
                    code="ANONYMOUS_LIMIT",
                    message="Anonymous chat usage limit exceeded",
                    http_status=resp.status_code,
                    provider=self.name,
                )
            raise_for_status(resp, self.name)
        data = json_body(resp, self.name)
        chat_id = data.get("id") if isinstance(data, dict) else None
        if not chat_id:
            raise ApiError(code="CREATE_CHAT_FAILED", message="Failed to create conversation", http_status=502, provider=self.name)
        return str(chat_id)

    @staticmethod
    def _auth_headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
