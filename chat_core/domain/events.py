"""核心对外暴露的回调协议。

UI / 调用层只通过这组回调与核心交互：

- on_request_started / on_request_completed: 每一轮的无条件首尾信号；
- on_stream_update: 经节流的增量文本（累计文本，而非片段）；
- on_actions_processed: 成功终态；
- on_error: 失败终态（之前可能已经发出过部分增量）；
- on_conversation_state_updated: 会话 ID 或续写指针变化时触发。

回调在工作线程中被调用，调用方不应在回调里阻塞。
"""

from typing import List, Protocol

from chat_core.domain.conversation import ConversationState
from chat_core.domain.models import FileAction


class ChatListener(Protocol):
    def on_request_started(self) -> None:
        ...

    def on_request_completed(self) -> None:
        ...

    def on_stream_update(self, partial_text: str, is_thinking: bool) -> None:
        ...

    def on_actions_processed(
        self,
        raw_payload: str,
        final_text: str,
        suggestions: List[str],
        file_actions: List[FileAction],
        model_display_name: str,
    ) -> None:
        ...

    def on_error(self, message: str) -> None:
        ...

    def on_conversation_state_updated(self, state: ConversationState) -> None:
        ...
