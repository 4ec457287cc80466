"""对外 API 服务模块。

ChatClient 把某个 ProviderBackend 包装成 ProviderClient 契约：

- fetch_models(): 查询模型目录，任何网络或解析失败都降级到内置静态列表，不向外抛出；
- send_message(...): 立即返回，整轮对话在后台线程中执行，结果只通过 ChatListener 回调给出。

另外提供 create_client 便捷函数，以及把会话状态自动落盘的 StatePersistingListener。
"""

import threading
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Union

import httpx

from chat_core.agents.orchestrator import TurnOrchestrator, TurnReport
from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationState, ConversationStateStore
from chat_core.domain.events import ChatListener
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Attachment, FileAction, Message, Model
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonStateStore
from chat_core.prompts import load_system_prompt
from chat_core.providers import create_backend
from chat_core.providers.base import ProviderBackend, TurnRequest
from chat_core.providers.registry import PROVIDER_REGISTRY, fallback_models, find_model
from chat_core.tools.definitions import ToolSpec
from chat_core.tools.executor import ToolExecutor, default_tool_specs, default_tools


class ChatClient:
    """单个 Provider 的对外客户端。

    同一个 ConversationState 的两轮 send_message 需要由调用方串行化
    （例如等待上一轮的 on_request_completed，或 join 返回的线程）。
    """

    def __init__(
        self,
        backend: ProviderBackend,
        listener: ChatListener,
        tool_executor: Optional[ToolExecutor] = None,
        cfg=settings,
        store: Optional[JsonStateStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self._listener = listener
        self._tool_executor = tool_executor
        self._settings = cfg
        self._store = store
        self._orchestrator = TurnOrchestrator(backend, listener, tool_executor=tool_executor, cfg=cfg, clock=clock)

    @property
    def provider(self) -> str:
        return self.backend.name

    def fetch_models(self) -> List[Model]:
        try:
            models = self.backend.fetch_models()
        except (BusinessError, httpx.HTTPError, ValueError) as e:
            logger.warning(
                "models.fetch_failed",
                extra={"extra": {"provider": self.provider, "error": getattr(e, "message", str(e))}},
            )
            models = []
        if not models:
            models = fallback_models(self.provider)
            logger.info("models.fallback", extra={"extra": {"provider": self.provider, "count": len(models)}})
        self._cache_catalog()
        return models

    def build_request(
        self,
        message: str,
        model: Model,
        history: Sequence[Message],
        state: ConversationState,
        thinking_enabled: bool = False,
        web_search_enabled: bool = False,
        enabled_tools: Optional[List[ToolSpec]] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> TurnRequest:
        tools = list(enabled_tools or [])
        if not tools and self._tool_executor is not None:
            tools = default_tool_specs()
        return TurnRequest(
            message=message,
            model=model,
            history=list(history),
            state=state,
            thinking_enabled=thinking_enabled,
            web_search_enabled=web_search_enabled,
            enabled_tools=tools,
            attachments=list(attachments or []),
            system_prompt=load_system_prompt("tools" if tools else "general"),
        )

    def run_turn(self, *args, **kwargs) -> TurnReport:
        """同步执行一轮对话（参数同 send_message）。"""
        return self._orchestrator.run_turn(self.build_request(*args, **kwargs))

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
        request = self.build_request(
            message,
            model,
            history,
            state,
            thinking_enabled=thinking_enabled,
            web_search_enabled=web_search_enabled,
            enabled_tools=enabled_tools,
            attachments=attachments,
        )
        worker = threading.Thread(
            target=self._worker,
            args=(request,),
            name=f"chat-{self.provider}",
            daemon=True,
        )
        worker.start()
        return worker

    def _worker(self, request: TurnRequest) -> None:
        try:
            self._orchestrator.run_turn(request)
        except Exception as e:
            # 监听器回调本身抛出的异常，只记录，不让它跨出工作线程
            logger.error(
                "listener.failed",
                exc_info=True,
                extra={"extra": {"provider": self.provider, "error": str(e)}},
            )

    def _cache_catalog(self) -> None:
        raw = getattr(self.backend, "last_catalog_raw", None)
        if self._store is None or raw is None:
            return
        try:
            self._store.save_blob(
                f"catalog_{self.provider}",
                {
                    "provider": self.provider,
                    "fetched_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                    "data": raw,
                },
            )
        except BusinessError as e:
            logger.warning("models.cache_failed", extra={"extra": {"provider": self.provider, "error": e.message}})


class StatePersistingListener:
    """包装另一个 ChatListener，在会话状态变化时先落盘再转发。"""

    def __init__(self, inner: ChatListener, store: ConversationStateStore, chat_key: str):
        self._inner = inner
        self._store = store
        self._chat_key = chat_key

    def on_request_started(self) -> None:
        self._inner.on_request_started()

    def on_request_completed(self) -> None:
        self._inner.on_request_completed()

    def on_stream_update(self, partial_text: str, is_thinking: bool) -> None:
        self._inner.on_stream_update(partial_text, is_thinking)

    def on_actions_processed(
        self,
        raw_payload: str,
        final_text: str,
        suggestions: List[str],
        file_actions: List[FileAction],
        model_display_name: str,
    ) -> None:
        self._inner.on_actions_processed(raw_payload, final_text, suggestions, file_actions, model_display_name)

    def on_error(self, message: str) -> None:
        self._inner.on_error(message)

    def on_conversation_state_updated(self, state: ConversationState) -> None:
        try:
            self._store.save_state(self._chat_key, state)
        except BusinessError as e:
            logger.error(
                "state.persist_failed",
                extra={"extra": {"chat_key": self._chat_key, "error": e.message}},
            )
        self._inner.on_conversation_state_updated(state)


def resolve_provider(model: Union[Model, str, None], cfg=None) -> Optional[str]:
    """确定模型所属的 Provider 名称。

    - Model 实例直接取 Model.provider（模型目录返回的都是 Model）；
    - 字符串先查静态模型表，再当作 Provider 名称；
    - 都无法识别时记录告警并返回 None，由 create_backend 使用 default_provider。
    """

    if not model:
        return None
    if isinstance(model, Model):
        return model.provider
    found = find_model(model)
    if found is not None:
        return found.provider
    if model.lower() in PROVIDER_REGISTRY:
        return model.lower()
    fallback = getattr(cfg or settings, "default_provider", "qwen")
    logger.warning(
        "client.unknown_model",
        extra={"extra": {"model": model, "fallback_provider": fallback}},
    )
    return None


def create_client(
    model: Union[Model, str, None],
    listener: ChatListener,
    enable_tools: bool = False,
    workspace_root: Optional[str] = None,
    cfg=None,
    store: Optional[JsonStateStore] = None,
) -> ChatClient:
    """按模型（Model 实例、模型 ID 或 Provider 名称）创建 ChatClient。

    model 为 None 或无法识别时使用配置中的 default_provider。enable_tools 为 True 时挂载
    默认的只读工具集（readFile / listFiles / listProjectTree / searchInProject）。
    """

    cfg = cfg or settings
    backend = create_backend(resolve_provider(model, cfg), cfg=cfg, store=store)
    executor = ToolExecutor(default_tools(workspace_root)) if enable_tools else None
    return ChatClient(backend, listener, tool_executor=executor, cfg=cfg, store=store)
