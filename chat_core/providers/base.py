"""Provider 抽象接口。

上层编排器不直接依赖具体厂商的 HTTP 协议，而是依赖此处的两个协议：

- ProviderBackend: 每个厂商一个实现（QwenBackend、GlmBackend 等），负责把一次
  TurnRequest 转成具体的 HTTP 请求，驱动解码器，把增量写入 StreamSink。
  它只执行“一次尝试”，重试、工具续写与回调都由编排器负责。
- ProviderClient: 对外的 fetch_models / send_message 契约，由 api.service.ChatClient 实现。

同时提供各 Provider 共用的 HTTP 辅助函数：超时构造、状态码映射与网络错误包装。
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from chat_core.auth.credential_manager import SessionCredentialManager
from chat_core.domain.conversation import ConversationState
from chat_core.domain.exceptions import ApiError, NetworkError, error_for_status
from chat_core.domain.models import Attachment, Message, Model, ToolCallResult
from chat_core.streaming.sink import StreamSink
from chat_core.tools.definitions import ToolSpec, build_tool_result_message


@dataclass
class TurnRequest:
    """一次 Provider 调用所需的全部输入。

    tool_results 非空时表示这是工具续写请求：发送的用户消息是 tool_result 信封，
    并且关闭推理模式。
    """

    message: str
    model: Model
    history: Sequence[Message] = ()
    state: ConversationState = field(default_factory=ConversationState)
    thinking_enabled: bool = False
    web_search_enabled: bool = False
    enabled_tools: List[ToolSpec] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    tool_results: List[ToolCallResult] = field(default_factory=list)
    system_prompt: Optional[str] = None
    log_ctx: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_continuation(self) -> bool:
        return bool(self.tool_results)

    @property
    def thinking(self) -> bool:
        """模型不支持推理时忽略该开关。"""
        return self.thinking_enabled and self.model.supports_thinking and not self.is_continuation

    @property
    def web_search(self) -> bool:
        return self.web_search_enabled and self.model.supports_web_search

    def outgoing_text(self) -> str:
        """实际作为用户消息发送的文本。"""

        if self.is_continuation:
            return build_tool_result_message(self.tool_results)
        text = self.message
        for att in self.attachments:
            if att.is_text:
                text += f"\n\n[附件: {att.name}]\n```\n{att.content}\n```"
        return text


class ProviderBackend(Protocol):
    """单个厂商的协议实现。

    - name / display_name: Provider 名称，用于日志与错误信息。
    - credentials: 轮换凭证管理器；静态密钥或无需认证的 Provider 为 None。
    - fetch_models(): 查询模型目录，失败时抛出异常，由 ChatClient 降级到静态列表。
    - stream_turn(request, sink): 执行一次请求；增量写入 sink，会话状态变化时就地修改
      request.state 并调用 sink.state_changed()。
    """

    name: str
    display_name: str
    credentials: Optional[SessionCredentialManager]

    def fetch_models(self) -> List[Model]:
        ...

    def stream_turn(self, request: TurnRequest, sink: StreamSink) -> None:
        ...


class ProviderClient(Protocol):
    """对外的 Provider 契约。send_message 立即返回，回调在工作线程中触发。"""

    def fetch_models(self) -> List[Model]:
        ...

    def send_message(
        self,
        message: str,
        model: Model,
        history: Sequence[Message],
        state: ConversationState,
        thinking_enabled: bool = False,
        web_search_enabled: bool = False,
        enabled_tools: Optional[List[ToolSpec]] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> threading.Thread:
        ...


# ---- 共用 HTTP 辅助 ----


def build_timeout(cfg) -> httpx.Timeout:
    """连接/写入使用 http_timeout，流式单次读取使用 stream_read_timeout。"""

    connect = getattr(cfg, "http_timeout", 30.0)
    return httpx.Timeout(connect, read=getattr(cfg, "stream_read_timeout", connect))


def response_text(resp) -> str:
    """读取响应正文。流式响应需要先 read() 才能访问 text。"""

    read = getattr(resp, "read", None)
    if callable(read):
        try:
            read()
        except (httpx.HTTPError, httpx.StreamError):
            return ""
    return getattr(resp, "text", "") or ""


def raise_for_status(resp, provider: str) -> None:
    """非 2xx 状态码统一映射到异常体系。"""

    if resp.status_code < 400:
        return
    raise error_for_status(resp.status_code, response_text(resp), provider)


def network_error(provider: str, exc: Exception) -> NetworkError:
    return NetworkError(
        code="NETWORK_ERROR",
        message=f"{provider} network error: {exc}",
        http_status=503,
        provider=provider,
    )


def json_body(resp, provider: str) -> Any:
    """解析 JSON 正文。2xx 但正文不是 JSON（例如验证码页面）时抛出 BAD_PAYLOAD。"""

    try:
        return resp.json()
    except ValueError as e:
        raise ApiError(
            code="BAD_PAYLOAD",
            message=f"{provider} returned a non-JSON body",
            http_status=502,
            provider=provider,
            body=response_text(resp)[:400],
        ) from e
