"""会话状态模型。

ConversationState 由调用方持有（每个聊天一个实例），按引用传入每一轮请求，
由当前 Provider 客户端就地修改，调用方负责在两次应用会话之间持久化。

状态机只有两个状态：

- NEW: 还没有 conversation_id，Provider 需要先发起“创建会话”请求；
- ACTIVE: 已有 conversation_id，之后每一轮都走“继续会话”请求。

同一个 ConversationState 不允许并发发送消息，调用方需要串行化每一轮。
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple


class ConversationPhase(str, Enum):
    NEW = "new"
    ACTIVE = "active"


@dataclass
class ConversationState:
    """单个聊天的会话/续写指针。

    - conversation_id: Provider 分配的会话 ID，首轮创建后写回，正常轮次中不会被清空。
    - last_parent_id: 最近一条回复的 ID，下一轮请求以它作为 parent。
    - continuation_token: Provider 特定的续写指针（没有则为 None）。
    - session_cookies: 进入 ACTIVE 时捕获的会话 cookie，后续请求需要带上以命中同一后端。
    - provider: 创建该会话的 Provider 名称。
    """

    conversation_id: Optional[str] = None
    last_parent_id: Optional[str] = None
    continuation_token: Optional[str] = None
    session_cookies: Dict[str, str] = field(default_factory=dict)
    provider: Optional[str] = None

    @property
    def phase(self) -> ConversationPhase:
        return ConversationPhase.ACTIVE if self.conversation_id else ConversationPhase.NEW

    @property
    def is_new(self) -> bool:
        return self.phase is ConversationPhase.NEW

    def activate(self, conversation_id: str, provider: Optional[str] = None) -> bool:
        """写入 Provider 返回的会话 ID，返回状态是否发生变化。"""

        if not conversation_id:
            raise ValueError("conversation_id must be a non-empty string")
        changed = conversation_id != self.conversation_id
        self.conversation_id = conversation_id
        if provider and not self.provider:
            self.provider = provider
        return changed

    def advance(self, parent_id: Optional[str]) -> bool:
        """更新续写指针（最近一条回复 ID）。空值忽略。"""

        if not parent_id or parent_id == self.last_parent_id:
            return False
        self.last_parent_id = parent_id
        return True

    def capture_cookies(self, cookies: Dict[str, str]) -> bool:
        merged = {**self.session_cookies, **{k: v for k, v in cookies.items() if v}}
        if merged == self.session_cookies:
            return False
        self.session_cookies = merged
        return True

    def clear_cookies(self) -> None:
        self.session_cookies = {}

    def reset(self) -> None:
        """开启新聊天时调用，回到 NEW 状态。"""
        self.conversation_id = None
        self.last_parent_id = None
        self.continuation_token = None
        self.session_cookies = {}
        self.provider = None

    def snapshot(self) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """用于判断状态是否变化的轻量快照（不含 cookie）。"""
        return (self.conversation_id, self.last_parent_id, self.continuation_token)

    # ---- 序列化 ----

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "last_parent_id": self.last_parent_id,
            "continuation_token": self.continuation_token,
            "session_cookies": dict(self.session_cookies),
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ConversationState":
        data = data or {}
        return cls(
            conversation_id=data.get("conversation_id") or data.get("conversationId"),
            last_parent_id=data.get("last_parent_id") or data.get("lastParentId"),
            continuation_token=data.get("continuation_token"),
            session_cookies=dict(data.get("session_cookies") or {}),
            provider=data.get("provider"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "ConversationState":
        if not raw:
            return cls()
        return cls.from_dict(json.loads(raw))


class ConversationStateStore(Protocol):
    """会话状态的持久化协议（由调用方提供或使用 JsonStateStore）。"""

    def load_state(self, chat_key: str) -> ConversationState:
        ...

    def save_state(self, chat_key: str, state: ConversationState) -> None:
        ...

    def delete_state(self, chat_key: str) -> None:
        ...
