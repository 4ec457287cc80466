import json

from chat_core.agents.orchestrator import TurnOrchestrator
from chat_core.auth.credential_manager import SessionCredentialManager
from chat_core.domain.conversation import ConversationState
from chat_core.domain.exceptions import (
    ApiError,
    AuthorizationError,
    NetworkError,
    RateLimitError,
)
from chat_core.domain.models import Message, Model, ModelCapabilities
from chat_core.providers.base import TurnRequest
from chat_core.providers.kimi_client import KimiBackend
from chat_core.providers.openrouter_client import OpenRouterBackend
from chat_core.providers.pollinations_client import PollinationsBackend
from chat_core.providers.qwen_client import QwenBackend
from chat_core.providers.registry import OPENROUTER_MODELS, POLLINATIONS_MODELS, find_model
from chat_core.tools.executor import ToolExecutor

from conftest import FakeResponse, SettingsStub, sse

MODEL = Model("fake-1", "Fake One", "fake", ModelCapabilities(thinking=True))


class ScriptedBackend:
    """每次 stream_turn 依次执行脚本中的一个步骤。"""

    name = "fake"
    display_name = "Fake"

    def __init__(self, *steps, credentials=None):
        self.steps = list(steps)
        self.credentials = credentials
        self.requests = []

    def fetch_models(self):
        return [MODEL]

    def stream_turn(self, request, sink):
        if self.credentials is not None:
            self.credentials.ensure_credential()
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        step(request, sink)


def answer(*chunks, thinking=None, conversation_id=None, parent_id=None):
    def step(request, sink):
        changed = False
        if conversation_id and request.state.is_new:
            changed = request.state.activate(conversation_id, "fake") or changed
        if parent_id:
            changed = request.state.advance(parent_id) or changed
        if changed:
            sink.state_changed()
        if thinking:
            sink.append_thinking(thinking)
        for c in chunks:
            sink.record_raw(c)
            sink.append_answer(c)

    return step


def empty(request, sink):
    sink.record_raw('data: {"choices": []}')


def fail(exc, partial=None):
    def step(request, sink):
        if partial:
            sink.append_answer(partial)
        raise exc

    return step


def tool_call(name, args):
    envelope = {"action": "tool_call", "tool_calls": [{"name": name, "args": args}]}
    return "```json\n" + json.dumps(envelope) + "\n```"


def unauthorized():
    return AuthorizationError(code="UNAUTHORIZED", message="fake rejected credentials (HTTP 401)", http_status=401)


def make(backend, listener, executor=None):
    return TurnOrchestrator(backend, listener, tool_executor=executor, cfg=SettingsStub(), clock=lambda: 0.0)


def counting_credentials():
    counter = {"n": 0}

    def acquire():
        counter["n"] += 1
        return f"tok-{counter['n']}"

    return SessionCredentialManager("fake", acquire)


def test_successful_turn_brackets_callbacks(listener):
    backend = ScriptedBackend(answer("Hello ", "world"))
    report = make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL))

    assert report.success
    assert report.attempts == 1
    kinds = listener.kinds()
    assert kinds[0] == "started"
    assert kinds[-1] == "completed"
    assert kinds.count("completed") == 1
    assert listener.errors == []
    raw, final_text, suggestions, file_actions, display = listener.actions[0]
    assert final_text == "Hello world"
    assert raw == "Hello \nworld"
    assert (suggestions, file_actions, display) == ([], [], "Fake One")
    assert listener.updates[-1] == ("Hello world", False)


def test_empty_stream_is_retried_once_then_reported(listener):
    backend = ScriptedBackend(empty)
    report = make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL))

    assert len(backend.requests) == 2
    assert report.attempts == 2
    assert report.error_code == "EMPTY_STREAM"
    assert listener.errors == ["No response from provider"]
    assert listener.actions == []
    assert listener.kinds()[-1] == "completed"


def test_empty_then_success_does_not_refresh_credentials(listener):
    creds = counting_credentials()
    backend = ScriptedBackend(empty, answer("ok"), credentials=creds)
    report = make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL))

    assert report.success
    assert report.attempts == 2
    assert creds.forced_refreshes == 0
    assert creds.acquisitions == 1


def test_second_auth_failure_reports_without_another_refresh(listener):
    creds = counting_credentials()
    backend = ScriptedBackend(fail(unauthorized()), credentials=creds)
    report = make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL))

    assert len(backend.requests) == 2
    assert creds.forced_refreshes == 1
    assert creds.acquisitions == 2
    assert report.credential_refreshes == 1
    assert listener.errors == ["fake rejected credentials (HTTP 401)"]
    assert listener.kinds().count("error") == 1
    assert listener.kinds()[-1] == "completed"


def test_rate_limit_refreshes_credential_and_succeeds(listener):
    creds = counting_credentials()
    state = ConversationState(conversation_id="c1", session_cookies={"sid": "old"})
    backend = ScriptedBackend(
        fail(RateLimitError(code="RATE_LIMIT", message="fake rate limit (HTTP 429)", http_status=429)),
        answer("after refresh"),
        credentials=creds,
    )
    report = make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL, state=state))

    assert report.success
    assert report.credential_refreshes == 1
    assert creds.peek().token == "tok-2"
    assert state.session_cookies == {}
    assert state.conversation_id == "c1"
    assert listener.errors == []
    assert [a[1] for a in listener.actions] == ["after refresh"]


def test_http_error_without_refreshable_credential_is_not_retried(listener):
    backend = ScriptedBackend(fail(ApiError(code="API_ERROR", message="fake request failed: HTTP 500", http_status=500)))
    report = make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL))

    assert len(backend.requests) == 1
    assert report.error_code == "API_ERROR"
    assert listener.errors == ["fake request failed: HTTP 500"]


def test_credential_unavailable_is_a_hard_error(listener):
    creds = SessionCredentialManager("fake", lambda: "")
    backend = ScriptedBackend(answer("never"), credentials=creds)
    report = make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL))

    assert report.attempts == 1
    assert report.error_code == "AUTH_UNAVAILABLE"
    assert len(listener.errors) == 1
    assert backend.requests == []


def test_network_error_retried_only_before_any_output(listener):
    backend = ScriptedBackend(fail(NetworkError(code="NETWORK_ERROR", message="boom")), answer("recovered"))
    assert make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL)).success

    partial_listener = type(listener)()
    backend = ScriptedBackend(fail(NetworkError(code="NETWORK_ERROR", message="cut"), partial="half an ans"), answer("x"))
    report = make(backend, partial_listener).run_turn(TurnRequest(message="hi", model=MODEL))
    assert not report.success
    assert len(backend.requests) == 1
    assert partial_listener.updates[-1] == ("half an ans", False)
    assert partial_listener.errors == ["cut"]


def test_new_conversation_publishes_state_before_actions(listener):
    state = ConversationState()
    backend = ScriptedBackend(answer("hi there", conversation_id="conv-1", parent_id="r1"))
    make(backend, listener).run_turn(TurnRequest(message="hi", model=MODEL, state=state))

    assert listener.states == [("conv-1", "r1", None)]
    kinds = listener.kinds()
    assert kinds.index("state") < kinds.index("actions")

    # 下一轮状态不变时不再重复通知
    again = type(listener)()
    make(ScriptedBackend(answer("more")), again).run_turn(TurnRequest(message="next", model=MODEL, state=state))
    assert again.states == []


def test_state_published_even_when_turn_fails(listener):
    state = ConversationState()

    def create_then_fail(request, sink):
        request.state.activate("conv-9", "fake")
        sink.state_changed()
        raise ApiError(code="API_ERROR", message="fake request failed: HTTP 502", http_status=502)

    make(ScriptedBackend(create_then_fail), listener).run_turn(TurnRequest(message="hi", model=MODEL, state=state))
    assert listener.states == [("conv-9", None, None)]
    assert listener.kinds()[-2:] == ["state", "completed"]


def test_tool_call_continuation_round(listener):
    state = ConversationState()
    seen_args = []

    def list_files(args):
        seen_args.append(args)
        return {"ok": True, "files": [{"name": "a.py", "type": "file", "size": 1}]}

    backend = ScriptedBackend(
        answer(tool_call("listFiles", {"path": "."}), conversation_id="conv-7", parent_id="resp-1"),
        answer("Done"),
    )
    request = TurnRequest(message="what files?", model=MODEL, state=state, thinking_enabled=True)
    report = make(backend, listener, ToolExecutor({"listFiles": list_files})).run_turn(request)

    assert report.success
    assert report.tool_rounds == 1
    assert seen_args == [{"path": "."}]
    first, second = backend.requests
    assert first.thinking is True
    assert second.is_continuation
    assert second.thinking is False
    assert second.state is state
    assert second.tool_results[0].continuation_token == "resp-1"
    assert "tool_result" in second.outgoing_text()
    assert [m.sender for m in second.history] == ["user", "assistant"]

    kinds = listener.kinds()
    assert kinds.count("state") == 1
    assert kinds.count("actions") == 1
    assert kinds.index("state") < kinds.index("actions")
    assert listener.actions[0][1] == "Done"


def test_tool_rounds_are_capped(listener):
    backend = ScriptedBackend(answer(tool_call("listFiles", {})))
    executor = ToolExecutor({"listFiles": lambda args: {"ok": True, "files": []}})
    report = make(backend, listener, executor).run_turn(TurnRequest(message="loop", model=MODEL))

    assert report.tool_rounds == SettingsStub.max_tool_rounds
    assert len(backend.requests) == SettingsStub.max_tool_rounds + 1
    assert report.action == "tool_call"
    assert len(listener.actions) == 1


def test_tool_call_without_executor_is_delivered_as_is(listener):
    text = tool_call("listFiles", {})
    backend = ScriptedBackend(answer(text))
    report = make(backend, listener).run_turn(TurnRequest(message="x", model=MODEL))

    assert len(backend.requests) == 1
    assert report.tool_rounds == 0
    assert listener.actions[0][1] == text


def test_file_operation_actions_are_forwarded(listener):
    envelope = {
        "action": "file_operation",
        "operations": [{"type": "create", "path": "hello.py", "content": "print('hi')"}],
        "explanation": "Created hello.py",
        "suggestions": ["Run it"],
    }
    backend = ScriptedBackend(answer(json.dumps(envelope)))
    make(backend, listener).run_turn(TurnRequest(message="make file", model=MODEL))

    raw, final_text, suggestions, file_actions, _ = listener.actions[0]
    assert json.loads(raw)["action"] == "file_operation"
    assert final_text == "Created hello.py"
    assert suggestions == ["Run it"]
    assert [(a.type, a.path) for a in file_actions] == [("create", "hello.py")]


def test_thinking_only_turn_uses_reasoning_as_final_text(listener):
    backend = ScriptedBackend(answer(thinking="just thoughts\n"))
    report = make(backend, listener).run_turn(TurnRequest(message="x", model=MODEL, thinking_enabled=True))

    assert report.success
    assert listener.actions[0][1] == "just thoughts\n"
    assert ("just thoughts\n", True) in listener.updates


def test_stream_updates_are_monotonic_and_complete(listener):
    chunks = ["word " * 3, "more words\n", "x", "y" * 30, "tail"]
    backend = ScriptedBackend(answer(*chunks))
    make(backend, listener).run_turn(TurnRequest(message="x", model=MODEL, history=[Message("user", "earlier")]))

    lengths = [len(t) for t, thinking in listener.updates if not thinking]
    assert lengths == sorted(lengths)
    assert listener.updates[-1][0] == "".join(chunks)


def test_unexpected_exception_still_completes(listener):
    backend = ScriptedBackend(fail(RuntimeError("bug")))
    report = make(backend, listener).run_turn(TurnRequest(message="x", model=MODEL))

    assert report.error_code == "INTERNAL_ERROR"
    assert listener.errors == ["Error: bug"]
    assert listener.kinds()[-1] == "completed"


def test_credential_error_from_refresh_is_reported(listener):
    calls = {"n": 0}

    def acquire():
        calls["n"] += 1
        if calls["n"] > 1:
            raise ApiError(code="MIDTOKEN_NOT_FOUND", message="gone", http_status=502)
        return "first"

    creds = SessionCredentialManager("fake", acquire)
    backend = ScriptedBackend(fail(unauthorized()), credentials=creds)
    report = make(backend, listener).run_turn(TurnRequest(message="x", model=MODEL))

    assert report.error_code == "AUTH_UNAVAILABLE"
    assert len(backend.requests) == 1


# ---- 真实 Provider + 假 HTTP 的端到端场景 ----

QWEN_MODEL = find_model("qwen3-235b-a22b", "qwen")

QWEN_STREAM = sse(
    '{"response.created": {"chat_id": "abc", "response_id": "resp-1"}}',
    '{"choices": [{"delta": {"phase": "answer", "content": "Hello", "status": "typing"}}]}',
    '{"choices": [{"delta": {"phase": "answer", "content": " world", "status": "finished"}}]}',
)


def test_openai_style_stream_end_to_end(fake_http, listener):
    fake_http.route(
        "POST",
        "/openai",
        FakeResponse(
            lines=sse(
                '{"choices":[{"delta":{"content":"Hi"}}]}',
                '{"choices":[{"delta":{"content":" there"}}]}',
                '{"choices":[{"delta":{"content":"!"}}]}',
                "[DONE]",
            )
        ),
    )
    backend = PollinationsBackend(SettingsStub())
    report = make(backend, listener).run_turn(
        TurnRequest(message="Hello", model=POLLINATIONS_MODELS[0], state=ConversationState())
    )

    assert report.success
    assert report.final_text == "Hi there!"
    assert len(listener.actions) == 1
    assert listener.actions[0][1] == "Hi there!"
    answer_updates = [text for text, thinking in listener.updates if not thinking]
    assert answer_updates
    assert len(answer_updates[-1]) == len("Hi there!")
    assert fake_http.calls_to("/openai")[0]["json"]["messages"][-1] == {"role": "user", "content": "Hello"}


def test_qwen_rate_limit_refreshes_midtoken_then_streams(fake_http, listener):
    fake_http.route(
        "GET",
        "wu.json",
        FakeResponse(text="umx.wu('TOKEN-1');"),
        FakeResponse(text="umx.wu('TOKEN-2');"),
    )
    fake_http.route(
        "POST",
        "/chat/completions",
        FakeResponse(status_code=429, text="slow down"),
        FakeResponse(lines=QWEN_STREAM),
    )
    state = ConversationState(conversation_id="abc", last_parent_id="resp-0", session_cookies={"ssxmod": "old"})
    report = make(QwenBackend(SettingsStub()), listener).run_turn(TurnRequest(message="hi", model=QWEN_MODEL, state=state))

    assert report.success
    assert report.attempts == 2
    assert report.credential_refreshes == 1
    assert listener.errors == []
    assert [a[1] for a in listener.actions] == ["Hello world"]
    assert len(fake_http.calls_to("wu.json")) == 2
    tokens = [c["headers"]["bx-umidtoken"] for c in fake_http.calls_to("/chat/completions")]
    assert tokens == ["TOKEN-1", "TOKEN-2"]
    assert state.session_cookies == {}


def test_qwen_second_unauthorized_reports_without_another_refresh(fake_http, listener):
    fake_http.route("GET", "wu.json", FakeResponse(text="umx.wu('TOKEN-1');"), FakeResponse(text="umx.wu('TOKEN-2');"))
    fake_http.route("POST", "/chat/completions", FakeResponse(status_code=401, text="denied"))
    backend = QwenBackend(SettingsStub())
    state = ConversationState(conversation_id="abc")
    report = make(backend, listener).run_turn(TurnRequest(message="hi", model=QWEN_MODEL, state=state))

    assert not report.success
    assert report.credential_refreshes == 1
    assert backend.credentials.forced_refreshes == 1
    assert len(fake_http.calls_to("/chat/completions")) == 2
    assert len(fake_http.calls_to("wu.json")) == 2
    assert listener.errors == ["qwen rejected credentials (HTTP 401)"]
    assert listener.kinds()[-1] == "completed"


def test_second_turn_continues_existing_conversation(fake_http, listener):
    fake_http.route("GET", "wu.json", FakeResponse(text="umx.wu('TOKEN-1');"))
    fake_http.route("POST", "/chats/new", FakeResponse(json_data={"success": True, "data": {"id": "abc"}}))
    fake_http.route("POST", "/chat/completions", FakeResponse(lines=QWEN_STREAM))
    orchestrator = make(QwenBackend(SettingsStub()), listener)
    state = ConversationState()

    orchestrator.run_turn(TurnRequest(message="first", model=QWEN_MODEL, state=state))
    assert state.conversation_id == "abc"
    orchestrator.run_turn(TurnRequest(message="second", model=QWEN_MODEL, state=state))

    assert len(fake_http.calls_to("/chats/new")) == 1
    second = fake_http.calls_to("/chat/completions")[1]
    assert second["params"] == {"chat_id": "abc"}
    assert second["json"]["parent_id"] == "resp-1"
    assert listener.errors == []
    assert len(listener.actions) == 2


def test_kimi_captcha_on_device_register_is_auth_unavailable(fake_http, listener):
    fake_http.route("POST", "/device/register", FakeResponse(text="<html>captcha</html>"))
    report = make(KimiBackend(SettingsStub()), listener).run_turn(
        TurnRequest(message="hi", model=find_model("k2", "kimi"))
    )

    assert report.error_code == "AUTH_UNAVAILABLE"
    assert report.attempts == 1
    assert len(listener.errors) == 1
    assert listener.errors[0].startswith("Authentication unavailable for kimi")


def test_openrouter_gateway_page_is_retried_as_empty_stream(fake_http, listener):
    fake_http.route("POST", "/chat/completions", FakeResponse(text="<html>gateway</html>"))
    report = make(OpenRouterBackend(SettingsStub()), listener).run_turn(
        TurnRequest(message="hi", model=OPENROUTER_MODELS[0])
    )

    assert report.error_code == "EMPTY_STREAM"
    assert report.attempts == 2
    assert len(fake_http.calls_to("/chat/completions")) == 2
    assert listener.errors == ["No response from provider"]
