"""重试与续写编排器。

一轮对话（run_turn）的完整流程：

1. on_request_started；
2. 调用 ProviderBackend.stream_turn，外层由 tenacity.Retrying 限定尝试次数：
   - 会话凭证类 Provider 返回非 2xx：强制刷新凭证后重试；
   - 流结束但没有任何文本：记录原始流后重试（不刷新凭证）；
   - 传输错误：在还没有产出任何文本时重试；
3. 最终文本被识别为 tool_call 信封时执行工具，把结果作为续写请求提交到同一会话，
   直到模型给出最终回答或达到 max_tool_rounds；
4. 成功时 on_actions_processed，失败时 on_error；
5. 无论成功失败，最后都会调用 on_request_completed。

会话状态的变化在每次 Provider 调用结束后按快照去重，通过 on_conversation_state_updated 发出。
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationState
from chat_core.domain.events import ChatListener
from chat_core.domain.exceptions import ApiError, BusinessError, EmptyStreamError, NetworkError
from chat_core.domain.models import FileAction, Message, ParsedResponse, PlanStep, ToolCallResult, WebSource
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ProviderBackend, TurnRequest
from chat_core.providers.response_parser import parse_response
from chat_core.streaming.sink import StreamResult, StreamSink
from chat_core.streaming.throttle import ThrottleConfig
from chat_core.tools.definitions import parse_tool_calls
from chat_core.tools.executor import ToolExecutor


@dataclass
class TurnReport:
    """一轮对话的结果摘要，供调用方与测试检查。"""

    trace_id: str
    success: bool = False
    final_text: str = ""
    raw_payload: str = ""
    thinking: str = ""
    web_sources: List[WebSource] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    file_actions: List[FileAction] = field(default_factory=list)
    plan_steps: List[PlanStep] = field(default_factory=list)
    action: str = "text"
    attempts: int = 0
    credential_refreshes: int = 0
    tool_rounds: int = 0
    tool_results: List[ToolCallResult] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    # 最近一次已通知的会话状态快照
    state_snapshot: Optional[Tuple[Optional[str], Optional[str], Optional[str]]] = field(default=None, repr=False)


class TurnOrchestrator:
    def __init__(
        self,
        backend: ProviderBackend,
        listener: ChatListener,
        tool_executor: Optional[ToolExecutor] = None,
        cfg=settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._backend = backend
        self._listener = listener
        self._tool_executor = tool_executor
        self._settings = cfg
        self._clock = clock
        self._throttle = ThrottleConfig.from_settings(cfg)
        self._max_attempts = max(1, int(getattr(cfg, "max_attempts", 2)))
        self._max_tool_rounds = max(0, int(getattr(cfg, "max_tool_rounds", 5)))

    def run_turn(self, request: TurnRequest) -> TurnReport:
        """执行一轮对话。不向外抛出业务异常，结果通过回调与 TurnReport 给出。"""

        start_time = time.time()
        trace_id = f"tr-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {
            "trace_id": trace_id,
            "provider": self._backend.name,
            "model": request.model.model_id,
        }
        request.log_ctx = log_ctx
        report = TurnReport(trace_id=trace_id, state_snapshot=request.state.snapshot())
        state = request.state

        self._log(
            logging.INFO,
            "turn.start",
            log_ctx,
            conversation_id=state.conversation_id,
            phase=state.phase.value,
            history_len=len(request.history),
            thinking=request.thinking,
            web_search=request.web_search,
        )
        self._listener.on_request_started()
        try:
            self._run(request, report, log_ctx)
        except BusinessError as e:
            report.error = e.message
            report.error_code = e.code
            self._log(logging.ERROR, "turn.failed", log_ctx, code=e.code, error=e.message, http_status=e.http_status)
            self._listener.on_error(e.message)
        except Exception as e:
            report.error = f"Error: {e}"
            report.error_code = "INTERNAL_ERROR"
            logger.error("turn.crashed", exc_info=True, extra={"extra": {**log_ctx, "error": str(e)}})
            self._listener.on_error(report.error)
        finally:
            self._publish_state(state, report, log_ctx)
            self._log(
                logging.INFO,
                "turn.completed",
                log_ctx,
                success=report.success,
                attempts=report.attempts,
                tool_rounds=report.tool_rounds,
                elapsed_seconds=round(time.time() - start_time, 2),
            )
            self._listener.on_request_completed()
        return report

    # ---- 工具续写循环 ----

    def _run(self, request: TurnRequest, report: TurnReport, log_ctx: Dict[str, Any]) -> None:
        current = request
        while True:
            result = self._call_with_retry(current, report, log_ctx)
            self._publish_state(request.state, report, log_ctx)
            parsed = parse_response(result.final_text)
            if not self._should_continue(parsed, report, log_ctx):
                self._deliver(request, result, parsed, report, log_ctx)
                return
            results = self._execute_tools(parsed, request.state, log_ctx)
            if not results:
                self._deliver(request, result, parsed, report, log_ctx)
                return
            report.tool_rounds += 1
            report.tool_results.extend(results)
            history = list(current.history) + [
                Message(sender="user", content=current.outgoing_text()),
                Message(sender="assistant", content=result.final_text),
            ]
            current = replace(current, history=history, tool_results=results, attachments=[])
            self._log(logging.INFO, "turn.continuation", log_ctx, round=report.tool_rounds)

    def _should_continue(self, parsed: ParsedResponse, report: TurnReport, log_ctx: Dict[str, Any]) -> bool:
        if not parsed.is_tool_call:
            return False
        if self._tool_executor is None:
            self._log(logging.WARNING, "tool.no_executor", log_ctx)
            return False
        if report.tool_rounds >= self._max_tool_rounds:
            self._log(logging.WARNING, "tool.round_limit", log_ctx, max_tool_rounds=self._max_tool_rounds)
            return False
        return True

    def _execute_tools(
        self,
        parsed: ParsedResponse,
        state: ConversationState,
        log_ctx: Dict[str, Any],
    ) -> List[ToolCallResult]:
        token = state.last_parent_id or state.conversation_id
        results: List[ToolCallResult] = []
        for call in parse_tool_calls(parsed.tool_calls):
            self._log(logging.INFO, "tool.call", log_ctx, tool_name=call.name, args=call.arguments)
            payload = self._tool_executor.execute_call(call)
            self._log(logging.INFO, "tool.result", log_ctx, tool_name=call.name, ok=payload.get("ok"))
            results.append(
                ToolCallResult(name=call.name, arguments=call.arguments, result=payload, continuation_token=token)
            )
        return results

    # ---- 单次调用 + 重试 ----

    def _call_with_retry(self, request: TurnRequest, report: TurnReport, log_ctx: Dict[str, Any]) -> StreamResult:
        credentials = getattr(self._backend, "credentials", None)
        # 上一次尝试是否已经推送过文本；推送过就不再重试
        progress = {"partial": False}

        def retryable(exc: BaseException) -> bool:
            if progress["partial"]:
                return False
            if isinstance(exc, EmptyStreamError):
                return True
            if isinstance(exc, ApiError):
                return credentials is not None
            return isinstance(exc, NetworkError)

        def before_next_attempt(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            self._log(
                logging.WARNING,
                "turn.retry",
                log_ctx,
                attempt=retry_state.attempt_number,
                code=getattr(exc, "code", None),
                http_status=getattr(exc, "http_status", None),
            )
            # 空流只重试，认证类失败先丢弃凭证与会话 cookie
            if isinstance(exc, ApiError) and credentials is not None:
                credentials.ensure_credential(force_refresh=True)
                request.state.clear_cookies()
                report.credential_refreshes += 1

        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception(retryable),
            before_sleep=before_next_attempt,
            reraise=True,
        )
        result: Optional[StreamResult] = None
        for attempt in retrying:
            with attempt:
                report.attempts += 1
                result = self._attempt(request, log_ctx, attempt.retry_state.attempt_number, progress)
        return result

    def _attempt(
        self,
        request: TurnRequest,
        log_ctx: Dict[str, Any],
        attempt_number: int,
        progress: Dict[str, bool],
    ) -> StreamResult:
        self._log(logging.INFO, "turn.attempt", log_ctx, attempt=attempt_number, continuation=request.is_continuation)
        sink = StreamSink(
            self._listener.on_stream_update,
            self._throttle,
            self._clock,
            on_state_changed=lambda: self._log(logging.INFO, "state.changed", log_ctx, state=request.state.snapshot()),
        )
        try:
            self._backend.stream_turn(request, sink)
        finally:
            result = sink.close()
            progress["partial"] = not result.is_empty

        if result.is_empty:
            self._log(logging.WARNING, "stream.empty", log_ctx, attempt=attempt_number, raw=result.raw[:4000])
            raise EmptyStreamError(
                code="EMPTY_STREAM",
                message="No response from provider",
                http_status=502,
                provider=self._backend.name,
            )
        self._log(
            logging.INFO,
            "turn.stream_done",
            log_ctx,
            attempt=attempt_number,
            answer_len=len(result.answer),
            thinking_len=len(result.thinking),
            finish_reason=result.finish_reason,
        )
        return result

    # ---- 回调 ----

    def _deliver(
        self,
        request: TurnRequest,
        result: StreamResult,
        parsed: ParsedResponse,
        report: TurnReport,
        log_ctx: Dict[str, Any],
    ) -> None:
        final_text = result.final_text
        if parsed.action in ("file_operation", "plan", "json_response") and parsed.explanation:
            final_text = parsed.explanation
        report.success = True
        report.final_text = final_text
        report.raw_payload = result.raw
        report.thinking = result.thinking
        report.web_sources = list(result.web_sources)
        report.suggestions = list(parsed.suggestions)
        report.file_actions = list(parsed.file_actions)
        report.plan_steps = list(parsed.plan_steps)
        report.action = parsed.action
        self._log(
            logging.INFO,
            "turn.delivered",
            log_ctx,
            action=parsed.action,
            file_actions=len(parsed.file_actions),
            web_sources=len(result.web_sources),
        )
        self._listener.on_actions_processed(
            result.raw,
            final_text,
            list(parsed.suggestions),
            list(parsed.file_actions),
            request.model.display_name,
        )

    def _publish_state(self, state: ConversationState, report: TurnReport, log_ctx: Dict[str, Any]) -> None:
        snapshot = state.snapshot()
        if snapshot == report.state_snapshot:
            return
        report.state_snapshot = snapshot
        self._log(
            logging.INFO,
            "state.updated",
            log_ctx,
            conversation_id=state.conversation_id,
            last_parent_id=state.last_parent_id,
        )
        self._listener.on_conversation_state_updated(state)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
