"""Qwen Web Provider 适配器。

Qwen 网页端接口不使用静态 API Key，而是依赖两样会话信息：

1. bx-umidtoken（midtoken）：从阿里的风控脚本页面中用正则提取，作为轮换会话凭证，
   由 SessionCredentialManager 缓存、按次数/时间轮换、认证失败时强制刷新；
2. 会话 cookie：创建会话时由服务端下发，后续请求需要带上才能命中同一后端。

一轮对话的请求顺序：

- 会话状态为 NEW 时先 POST /chats/new 拿到 chat_id；
- 然后 POST /chat/completions?chat_id=...，parent_id 取上一条回复的 response_id；
- 流中的 ``response.created`` 事件写回 chat_id/response_id，
  ``choices[0].delta.phase`` 区分 think / answer / web_search，``status: finished`` 结束本轮。
"""

import logging
import re
import threading
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

import httpx

from chat_core.auth.credential_manager import SessionCredentialManager
from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationState
from chat_core.domain.exceptions import ApiError
from chat_core.domain.models import Model, ModelCapabilities, WebSource
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.json_store import JsonStateStore
from chat_core.providers.base import TurnRequest, build_timeout, json_body, network_error, raise_for_status
from chat_core.providers.registry import QWEN_CONFIG
from chat_core.streaming.sink import StreamSink
from chat_core.streaming.sse import iter_json_payloads
from chat_core.tools.definitions import specs_to_json

QWEN_BX_V = "2.5.31"
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)
MIDTOKEN_PATTERN = re.compile(r"(?:umx\.wu|__fycb)\('([^']+)'\)")
THINKING_BUDGET = 38912


def _now_ms() -> int:
    return int(time.time() * 1000)


def fetch_midtoken(cfg=settings) -> str:
    """获取新的 bx-umidtoken：请求脚本页面并提取内嵌 token。"""

    url = getattr(cfg, "qwen_midtoken_url", None) or "https://sg-wum.alibaba.com/w/wu.json"
    try:
        with httpx.Client(timeout=cfg.http_timeout, trust_env=False) as client:
            resp = client.get(url, headers={"User-Agent": USER_AGENT, "Accept": "*/*"})
    except httpx.RequestError as e:
        raise network_error("qwen", e)
    raise_for_status(resp, "qwen")
    match = MIDTOKEN_PATTERN.search(resp.text or "")
    if not match:
        raise ApiError(code="MIDTOKEN_NOT_FOUND", message="Failed to extract bx-umidtoken", http_status=502)
    return match.group(1)


def parse_model_data(item: Dict[str, Any]) -> Optional[Model]:
    """解析 /models 返回的单个模型条目，结构不完整时返回 None。"""

    model_id = item.get("id")
    if not model_id:
        return None
    meta = ((item.get("info") or {}).get("meta")) or {}
    caps = meta.get("capabilities") or {}
    if not isinstance(meta, dict) or not isinstance(caps, dict):
        return None
    chat_types = tuple(str(t) for t in meta.get("chat_type") or [])
    mcp_tools = tuple(str(t) for t in meta.get("mcp") or [])
    file_limits = meta.get("file_limits") or {}
    abilities = meta.get("abilities") or {}
    try:
        capabilities = ModelCapabilities(
            thinking=bool(caps.get("thinking")),
            web_search="search" in chat_types,
            vision=bool(caps.get("vision")),
            document=bool(caps.get("document")),
            video=bool(caps.get("video")),
            audio=bool(caps.get("audio")),
            citations=bool(caps.get("citations")),
            thinking_budget=bool(caps.get("thinking_budget")),
            mcp=bool(mcp_tools),
            single_round=int(meta.get("is_single_round") or 0) == 1,
            max_context_length=int(meta.get("max_context_length") or 0),
            max_generation_length=int(meta.get("max_generation_length") or 0),
            max_thinking_generation_length=int(meta.get("max_thinking_generation_length") or 0),
            max_summary_generation_length=int(meta.get("max_summary_generation_length") or 0),
            file_limits=tuple(sorted((str(k), int(v)) for k, v in file_limits.items())),
            modalities=tuple(str(m) for m in meta.get("modality") or []),
            chat_types=chat_types,
            mcp_tools=mcp_tools,
            abilities=tuple(sorted((str(k), int(v)) for k, v in abilities.items())),
        )
    except (TypeError, ValueError, AttributeError):
        return None
    return Model(str(model_id), str(item.get("name") or model_id), "qwen", capabilities)


class QwenBackend:
    """Qwen 网页端协议实现。"""

    name = "qwen"
    display_name = QWEN_CONFIG.display_name

    def __init__(
        self,
        cfg=settings,
        credentials: Optional[SessionCredentialManager] = None,
        store: Optional[JsonStateStore] = None,
    ):
        self._settings = cfg
        # 进程级 cookie（风控相关），强制刷新凭证时一并清空。多个工作线程共享，读写都在锁内
        self._jar: Dict[str, str] = {}
        self._jar_lock = threading.Lock()
        self.credentials = credentials or SessionCredentialManager(
            "qwen",
            lambda: fetch_midtoken(cfg),
            max_uses=getattr(cfg, "qwen_midtoken_max_uses", None),
            max_age_seconds=getattr(cfg, "qwen_midtoken_max_age_seconds", None),
            store=store,
            on_invalidate=self._clear_jar,
        )
        self.last_catalog_raw: Optional[Any] = None

    @property
    def _base(self) -> str:
        return getattr(self._settings, "qwen_base_url", None) or QWEN_CONFIG.base_url

    # ---- 模型目录 ----

    def fetch_models(self) -> List[Model]:
        token = self.credentials.ensure_credential()
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False, cookies=self._jar_snapshot()) as client:
                resp = client.get(f"{self._base}/models", headers=self.build_headers(token, None))
        except httpx.RequestError as e:
            raise network_error(self.name, e)
        raise_for_status(resp, self.name)
        data = json_body(resp, self.name)
        self.last_catalog_raw = data
        items = data.get("data") if isinstance(data, dict) else None
        if isinstance(items, dict):
            items = [items]
        models: List[Model] = []
        for item in items or []:
            if isinstance(item, dict):
                model = parse_model_data(item)
                if model is not None:
                    models.append(model)
        return models

    # ---- 一次尝试 ----

    def stream_turn(self, request: TurnRequest, sink: StreamSink) -> None:
        token = self.credentials.ensure_credential()
        state = request.state
        if state.is_new:
            chat_id = self._create_chat(token, request)
            state.activate(chat_id, self.name)
            log_event(logging.INFO, "qwen.chat_created", request.log_ctx, conversation_id=chat_id)
            sink.state_changed()

        body = self.build_completion_body(request)
        try:
            with httpx.Client(timeout=build_timeout(self._settings), trust_env=False, cookies=self._cookies_for(state)) as client:
                with client.stream(
                    "POST",
                    f"{self._base}/chat/completions",
                    params={"chat_id": state.conversation_id},
                    json=body,
                    headers=self.build_headers(token, state.conversation_id),
                ) as resp:
                    raise_for_status(resp, self.name)
                    self._absorb_cookies(resp)
                    self.consume_stream(resp.iter_lines(), state, sink, request.log_ctx)
        except httpx.RequestError as e:
            raise network_error(self.name, e)

    def consume_stream(
        self,
        lines: Iterable[str],
        state: ConversationState,
        sink: StreamSink,
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> None:
        """处理 Qwen 事件流，直到 answer 阶段 finished 或 [DONE]。"""

        for data in iter_json_payloads(lines, on_raw=sink.record_raw, log_ctx=log_ctx):
            if not isinstance(data, dict):
                continue
            created = data.get("response.created")
            if isinstance(created, dict):
                changed = False
                if created.get("chat_id"):
                    changed = state.activate(str(created["chat_id"]), self.name) or changed
                if created.get("response_id"):
                    changed = state.advance(str(created["response_id"])) or changed
                if changed:
                    sink.state_changed()
                continue

            choices = data.get("choices")
            if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                continue
            delta = choices[0].get("delta") or {}
            if not isinstance(delta, dict):
                continue
            phase = delta.get("phase") or ""
            content = delta.get("content")
            content = content if isinstance(content, str) else ""
            if phase == "think":
                sink.append_thinking(content)
            elif phase == "web_search":
                self._collect_web_sources(delta, sink)
            else:
                sink.append_answer(content)
            # think / web_search 阶段也会带 finished，只有回答阶段的 finished 才结束本轮
            if delta.get("status") == "finished" and phase not in ("think", "web_search"):
                sink.finish_reason = "finished"
                break

    # ---- 请求构造 ----

    def build_headers(self, midtoken: str, conversation_id: Optional[str]) -> Dict[str, str]:
        return {
            "Authorization": "Bearer",
            "Content-Type": "application/json",
            "Accept": "*/*",
            "bx-umidtoken": midtoken,
            "bx-v": QWEN_BX_V,
            "Accept-Language": "en-US,en;q=0.9",
            "Origin": "https://chat.qwen.ai",
            "Referer": f"https://chat.qwen.ai/c/{conversation_id}" if conversation_id else "https://chat.qwen.ai/",
            "Sec-Fetch-Dest": "empty",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "same-origin",
            "User-Agent": USER_AGENT,
            "Source": "web",
        }

    def build_completion_body(self, request: TurnRequest) -> Dict[str, Any]:
        state = request.state
        model_id = request.model.model_id
        messages: List[Dict[str, Any]] = []
        # system prompt 只在会话的第一条消息中发送
        if state.last_parent_id is None and request.system_prompt and not request.is_continuation:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append(self._user_message(request))
        body: Dict[str, Any] = {
            "stream": True,
            "incremental_output": True,
            "chat_id": state.conversation_id,
            "chat_mode": "normal",
            "model": model_id,
            "parent_id": state.last_parent_id,
            "timestamp": _now_ms(),
            "messages": messages,
        }
        if request.enabled_tools and not request.is_continuation:
            body["tools"] = specs_to_json(request.enabled_tools)
            body["tool_choice"] = {"type": "auto"}
        return body

    def _user_message(self, request: TurnRequest) -> Dict[str, Any]:
        search = request.web_search and not request.is_continuation
        thinking = request.thinking
        feature_config: Dict[str, Any] = {"thinking_enabled": thinking, "output_schema": "phase"}
        if search:
            feature_config["search_version"] = "v2"
        if thinking:
            feature_config["thinking_budget"] = THINKING_BUDGET
        msg: Dict[str, Any] = {
            "role": "user",
            "content": request.outgoing_text(),
            "user_action": "chat",
            "files": [],
            "timestamp": _now_ms(),
            "models": [request.model.model_id],
            "chat_type": "search" if search else "t2t",
            "feature_config": feature_config,
            "fid": str(uuid.uuid4()),
            "childrenIds": [],
        }
        if not request.is_continuation:
            msg["parentId"] = None
        return msg

    def _create_chat(self, token: str, request: TurnRequest) -> str:
        body = {
            "title": "New Chat",
            "models": [request.model.model_id],
            "chat_mode": "normal",
            "chat_type": "search" if request.web_search else "t2t",
            "timestamp": _now_ms(),
        }
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False, cookies=self._jar_snapshot()) as client:
                resp = client.post(f"{self._base}/chats/new", json=body, headers=self.build_headers(token, None))
        except httpx.RequestError as e:
            raise network_error(self.name, e)
        raise_for_status(resp, self.name)
        data = json_body(resp, self.name)
        chat_id = ((data.get("data") or {}).get("id")) if isinstance(data, dict) and data.get("success") else None
        if not chat_id:
            raise ApiError(
                code="CREATE_CHAT_FAILED",
                message="Failed to create conversation",
                http_status=502,
                provider=self.name,
            )
        request.state.capture_cookies(self._response_cookies(resp))
        return str(chat_id)

    # ---- cookie ----

    def _jar_snapshot(self) -> Dict[str, str]:
        with self._jar_lock:
            return dict(self._jar)

    def _cookies_for(self, state: ConversationState) -> Dict[str, str]:
        cookies = self._jar_snapshot()
        cookies.update(state.session_cookies)
        return cookies

    def _absorb_cookies(self, resp) -> None:
        fresh = self._response_cookies(resp)
        with self._jar_lock:
            self._jar.update(fresh)

    def _clear_jar(self) -> None:
        with self._jar_lock:
            self._jar.clear()

    @staticmethod
    def _response_cookies(resp) -> Dict[str, str]:
        cookies = getattr(resp, "cookies", None)
        return {str(k): str(v) for k, v in dict(cookies or {}).items() if v}

    @staticmethod
    def _collect_web_sources(delta: Dict[str, Any], sink: StreamSink) -> None:
        extra = delta.get("extra")
        infos = extra.get("web_search_info") if isinstance(extra, dict) else None
        if not isinstance(infos, list):
            return
        for info in infos:
            if not isinstance(info, dict) or not info.get("url"):
                continue
            url = str(info["url"])
            sink.add_web_source(
                WebSource(
                    url=url,
                    title=str(info.get("title") or url),
                    snippet=str(info.get("snippet") or ""),
                    favicon=info.get("hostlogo"),
                )
            )
