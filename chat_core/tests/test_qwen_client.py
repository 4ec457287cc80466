import threading

import pytest

from chat_core.auth.credential_manager import SessionCredentialManager
from chat_core.domain.conversation import ConversationState
from chat_core.domain.exceptions import ApiError, AuthorizationError, CredentialUnavailableError
from chat_core.domain.models import ToolCallResult
from chat_core.providers.base import TurnRequest
from chat_core.providers.qwen_client import QwenBackend, fetch_midtoken, parse_model_data
from chat_core.providers.registry import find_model
from chat_core.streaming.sink import StreamSink

from conftest import FakeResponse, SettingsStub, sse

MODEL = find_model("qwen3-235b-a22b", "qwen")

STREAM = sse(
    '{"response.created": {"chat_id": "chat-1", "response_id": "resp-1"}}',
    '{"choices": [{"delta": {"phase": "think", "content": "hmm", "status": "typing"}}]}',
    '{"choices": [{"delta": {"phase": "think", "content": "", "status": "finished"}}]}',
    '{"choices": [{"delta": {"phase": "web_search", "status": "finished", "extra": {"web_search_info": [{"url": "https://a.example", "title": "A"}]}}}]}',
    '{"choices": [{"delta": {"phase": "answer", "content": "Hello", "status": "typing"}}]}',
    '{"choices": [{"delta": {"phase": "answer", "content": " world", "status": "finished"}}]}',
    '{"choices": [{"delta": {"phase": "answer", "content": "IGNORED"}}]}',
)


def _backend():
    return QwenBackend(SettingsStub(), credentials=SessionCredentialManager("qwen", lambda: "MID123"))


def test_first_turn_creates_chat_then_streams(fake_http):
    fake_http.route("POST", "/chats/new", FakeResponse(json_data={"success": True, "data": {"id": "chat-1"}}, cookies={"ssxmod": "v1"}))
    fake_http.route("POST", "/chat/completions", FakeResponse(lines=STREAM))
    backend = _backend()
    state = ConversationState()
    changes = []
    sink = StreamSink(lambda *a: None, on_state_changed=lambda: changes.append(1))

    backend.stream_turn(TurnRequest(message="hi", model=MODEL, state=state, system_prompt="SYS"), sink)
    result = sink.close()

    assert result.thinking == "hmm"
    assert result.answer == "Hello world"
    assert [s.url for s in result.web_sources] == ["https://a.example"]
    assert state.conversation_id == "chat-1"
    assert state.last_parent_id == "resp-1"
    assert state.session_cookies == {"ssxmod": "v1"}
    assert len(changes) == 2

    call = fake_http.calls_to("/chat/completions")[0]
    assert call["params"] == {"chat_id": "chat-1"}
    assert call["headers"]["bx-umidtoken"] == "MID123"
    body = call["json"]
    assert body["parent_id"] is None
    assert body["messages"][0] == {"role": "system", "content": "SYS"}
    assert body["messages"][1]["content"] == "hi"
    assert body["messages"][1]["parentId"] is None


def test_active_conversation_continues_without_create(fake_http):
    fake_http.route("POST", "/chat/completions", FakeResponse(lines=STREAM))
    state = ConversationState(conversation_id="chat-1", last_parent_id="resp-0")
    sink = StreamSink(lambda *a: None)

    _backend().stream_turn(TurnRequest(message="again", model=MODEL, state=state, system_prompt="SYS"), sink)

    assert fake_http.calls_to("/chats/new") == []
    body = fake_http.calls_to("/chat/completions")[0]["json"]
    assert body["parent_id"] == "resp-0"
    assert [m["role"] for m in body["messages"]] == ["user"]
    assert state.last_parent_id == "resp-1"


def test_thinking_and_search_feature_config():
    state = ConversationState(conversation_id="c")
    request = TurnRequest(message="q", model=MODEL, state=state, thinking_enabled=True, web_search_enabled=True)
    msg = _backend().build_completion_body(request)["messages"][-1]
    assert msg["chat_type"] == "search"
    assert msg["feature_config"]["thinking_enabled"] is True
    assert msg["feature_config"]["thinking_budget"] == 38912
    assert msg["feature_config"]["search_version"] == "v2"


def test_continuation_body_disables_thinking_and_sends_tool_result():
    state = ConversationState(conversation_id="c", last_parent_id="r1")
    request = TurnRequest(
        message="q",
        model=MODEL,
        state=state,
        thinking_enabled=True,
        tool_results=[ToolCallResult("listFiles", {"path": "."}, {"ok": True}, "r1")],
    )
    msg = _backend().build_completion_body(request)["messages"][-1]
    assert msg["feature_config"]["thinking_enabled"] is False
    assert "tool_result" in msg["content"]
    assert "parentId" not in msg


def test_create_chat_failure(fake_http):
    fake_http.route("POST", "/chats/new", FakeResponse(json_data={"success": False}))
    with pytest.raises(ApiError) as exc:
        _backend().stream_turn(TurnRequest(message="hi", model=MODEL), StreamSink(lambda *a: None))
    assert exc.value.code == "CREATE_CHAT_FAILED"


def test_unauthorized_completion_maps_to_authorization_error(fake_http):
    fake_http.route("POST", "/chat/completions", FakeResponse(status_code=401, text="denied"))
    state = ConversationState(conversation_id="c")
    with pytest.raises(AuthorizationError) as exc:
        _backend().stream_turn(TurnRequest(message="hi", model=MODEL, state=state), StreamSink(lambda *a: None))
    assert exc.value.http_status == 401


def test_fetch_midtoken(fake_http):
    fake_http.route("GET", "wu.json", FakeResponse(text="var a=1;umx.wu('TOKEN-9');"))
    assert fetch_midtoken(SettingsStub()) == "TOKEN-9"


def test_missing_midtoken_is_credential_unavailable(fake_http):
    fake_http.route("GET", "wu.json", FakeResponse(text="nothing here"))
    backend = QwenBackend(SettingsStub())
    with pytest.raises(CredentialUnavailableError):
        backend.credentials.ensure_credential()


def test_fetch_models_parses_catalog(fake_http):
    fake_http.route(
        "GET",
        "/models",
        FakeResponse(
            json_data={
                "data": [
                    {
                        "id": "qwen3-max",
                        "name": "Qwen3-Max",
                        "info": {
                            "meta": {
                                "capabilities": {"thinking": True, "vision": True},
                                "chat_type": ["t2t", "search"],
                                "max_context_length": 262144,
                                "abilities": {"vision": 1, "audio": 0},
                            }
                        },
                    },
                    {"name": "no id"},
                ]
            }
        ),
    )
    backend = _backend()
    models = backend.fetch_models()
    assert [m.model_id for m in models] == ["qwen3-max"]
    caps = models[0].capabilities
    assert caps.thinking and caps.web_search and caps.vision
    assert caps.has_ability("vision") and not caps.has_ability("audio")
    assert caps.context_length_display() == "262K"
    assert backend.last_catalog_raw["data"][0]["id"] == "qwen3-max"


def test_parse_model_data_rejects_malformed_entries():
    assert parse_model_data({}) is None
    assert parse_model_data({"id": "x", "info": {"meta": {"max_context_length": "lots"}}}) is None


def test_forced_refresh_clears_shared_cookie_jar(fake_http):
    fake_http.route("GET", "wu.json", FakeResponse(text="umx.wu('TOKEN-1');"))
    backend = QwenBackend(SettingsStub())
    backend.credentials.ensure_credential()
    backend._absorb_cookies(FakeResponse(cookies={"acw_tc": "abc"}))
    state = ConversationState(conversation_id="c", session_cookies={"ssxmod": "v1"})
    assert backend._cookies_for(state) == {"acw_tc": "abc", "ssxmod": "v1"}

    backend.credentials.ensure_credential(force_refresh=True)
    assert backend._cookies_for(state) == {"ssxmod": "v1"}


def test_cookie_jar_survives_concurrent_workers():
    backend = _backend()
    state = ConversationState(conversation_id="c")
    errors = []

    def worker(n):
        try:
            for i in range(300):
                backend._absorb_cookies(FakeResponse(cookies={f"k{n}-{i}": "v"}))
                backend._cookies_for(state)
                if i % 50 == 0:
                    backend._clear_jar()
        except RuntimeError as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert errors == []
