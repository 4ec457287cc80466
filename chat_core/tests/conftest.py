import json
from typing import Any, Dict, List, Optional

import pytest

from chat_core.domain.conversation import ConversationState


class SettingsStub:
    http_timeout = 1.0
    stream_read_timeout = 1.0
    max_attempts = 2
    max_tool_rounds = 3
    throttle_interval_ms = 40.0
    throttle_min_chars = 24
    throttle_emit_on_newline = True
    default_provider = "qwen"
    qwen_base_url = "https://chat.qwen.ai/api/v2"
    qwen_midtoken_url = "https://sg-wum.alibaba.com/w/wu.json"
    qwen_midtoken_max_uses = 20
    qwen_midtoken_max_age_seconds = 300.0
    kimi_base_url = "https://www.kimi.com/api"
    glm_api_key = "glm-key-123456"
    glm_base_url = "https://open.bigmodel.cn/api/paas/v4"
    pollinations_url = "https://text.pollinations.ai"
    cloudflare_base_url = "https://playground.ai.cloudflare.com/api"
    openrouter_api_key = "or-key-123456"
    openrouter_base_url = "https://openrouter.ai/api/v1"


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        json_data: Any = None,
        text: str = "",
        lines: Optional[List[str]] = None,
        cookies: Optional[Dict[str, str]] = None,
    ):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self._lines = lines or []
        self.cookies = cookies or {}

    def json(self):
        # 与 httpx 一致：没有给定 json_data 时按正文解析，非 JSON 正文抛 ValueError
        if self._json is None and self.text:
            return json.loads(self.text)
        return self._json

    def read(self):
        return self.text.encode("utf-8")

    def iter_lines(self):
        for line in self._lines:
            yield line


class StreamContext:
    def __init__(self, resp: FakeResponse):
        self._resp = resp

    def __enter__(self):
        return self._resp

    def __exit__(self, *a):
        return False


class FakeClientFactory:
    """按 (method, url 片段) 路由的 httpx.Client 替身，记录所有请求。"""

    def __init__(self):
        self.routes: List[tuple] = []
        self.calls: List[Dict[str, Any]] = []
        self.clients: List[Dict[str, Any]] = []

    def route(self, method: str, fragment: str, *responses: FakeResponse) -> None:
        self.routes.append((method, fragment, list(responses)))

    def _respond(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        for m, fragment, queue in self.routes:
            if m == method and fragment in url:
                # 队列里最后一个响应会被重复使用
                return queue.pop(0) if len(queue) > 1 else queue[0]
        raise AssertionError(f"unexpected request {method} {url}")

    def calls_to(self, fragment: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if fragment in c["url"]]

    def __call__(self, *a, **kw):
        factory = self
        self.clients.append(kw)

        class Client:
            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def get(self, url, **kwargs):
                return factory._respond("GET", url, kwargs)

            def post(self, url, **kwargs):
                return factory._respond("POST", url, kwargs)

            def stream(self, method, url, **kwargs):
                return StreamContext(factory._respond(method, url, kwargs))

        return Client()


def sse(*payloads: str) -> List[str]:
    """把若干 data 负载排成事件流行（每个事件后跟一个空行）。"""

    lines: List[str] = []
    for p in payloads:
        lines.extend([f"data: {p}", ""])
    return lines


class RecordingListener:
    def __init__(self):
        self.events: List[tuple] = []
        self.updates: List[tuple] = []
        self.errors: List[str] = []
        self.actions: List[tuple] = []
        self.states: List[tuple] = []

    def on_request_started(self) -> None:
        self.events.append(("started",))

    def on_request_completed(self) -> None:
        self.events.append(("completed",))

    def on_stream_update(self, partial_text: str, is_thinking: bool) -> None:
        self.updates.append((partial_text, is_thinking))
        self.events.append(("update", partial_text, is_thinking))

    def on_actions_processed(self, raw_payload, final_text, suggestions, file_actions, model_display_name) -> None:
        self.actions.append((raw_payload, final_text, suggestions, file_actions, model_display_name))
        self.events.append(("actions", final_text))

    def on_error(self, message: str) -> None:
        self.errors.append(message)
        self.events.append(("error", message))

    def on_conversation_state_updated(self, state: ConversationState) -> None:
        self.states.append(state.snapshot())
        self.events.append(("state", state.conversation_id, state.last_parent_id))

    def kinds(self) -> List[str]:
        return [e[0] for e in self.events]


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def fake_http(monkeypatch):
    factory = FakeClientFactory()
    monkeypatch.setattr("httpx.Client", factory)
    return factory
