"""统一的模型、消息与流式数据结构。

本模块定义各 Provider 之间共享的标准数据结构：

- Model / ModelCapabilities: 可用模型及其能力标记，来自静态表或 Provider 的模型列表接口。
- Message: 一条历史消息，history 按时间顺序（最早在前）传入每次请求构建。
- StreamDelta: 单次流式调用内单调增长的文本缓冲区。
- ToolCallResult: 外部工具执行结果，供续写请求使用。
- SessionCredential: 轮换型 Provider 的短期凭证。

所有 Provider 客户端都只依赖这些模型，并负责在各自的 JSON 与这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple


Sender = Literal["user", "assistant"]

# Provider 名称，与 registry 中的配置一一对应
ProviderName = Literal["qwen", "glm", "kimi", "pollinations", "cloudflare", "openrouter"]


@dataclass(frozen=True)
class ModelCapabilities:
    """模型能力集合。构造后不可变。"""

    thinking: bool = False
    web_search: bool = False
    vision: bool = False
    document: bool = False
    video: bool = False
    audio: bool = False
    citations: bool = False
    thinking_budget: bool = False
    mcp: bool = False
    single_round: bool = False
    max_context_length: int = 0
    max_generation_length: int = 0
    max_thinking_generation_length: int = 0
    max_summary_generation_length: int = 0
    file_limits: Tuple[Tuple[str, int], ...] = ()
    modalities: Tuple[str, ...] = ()
    chat_types: Tuple[str, ...] = ()
    mcp_tools: Tuple[str, ...] = ()
    abilities: Tuple[Tuple[str, int], ...] = ()

    def has_ability(self, name: str) -> bool:
        """abilities 中数值等级大于 0 视为具备该能力。"""
        return dict(self.abilities).get(name, 0) > 0

    def supports_modality(self, modality: str) -> bool:
        return modality in self.modalities

    def file_limit(self, key: str) -> Optional[int]:
        return dict(self.file_limits).get(key)

    def summary(self) -> str:
        parts: List[str] = []
        if self.thinking:
            parts.append("Thinking")
        if self.web_search:
            parts.append("Web Search")
        if self.vision:
            parts.append("Vision")
        if self.document:
            parts.append("Documents")
        if self.video:
            parts.append("Video")
        if self.audio:
            parts.append("Audio")
        if self.citations:
            parts.append("Citations")
        if self.mcp:
            parts.append("MCP Tools")
        return ", ".join(parts) if parts else "Basic Chat"

    def context_length_display(self) -> str:
        n = self.max_context_length
        if n <= 0:
            return "Unknown"
        if n >= 1_000_000:
            value = n / 1_000_000
            return f"{value:g}M" if value == int(value) else f"{value:.1f}M"
        if n >= 1000:
            return f"{n // 1000}K" if n % 1000 == 0 else f"{n / 1000:.0f}K"
        return str(n)


@dataclass(frozen=True)
class Model:
    """一个可选模型：标识、展示名、所属 Provider 与能力集。"""

    model_id: str
    display_name: str
    provider: str
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)

    @property
    def supports_thinking(self) -> bool:
        return self.capabilities.thinking

    @property
    def supports_web_search(self) -> bool:
        return self.capabilities.web_search


@dataclass(frozen=True)
class Message:
    """一条历史消息。"""

    sender: Sender
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def role(self) -> str:
        return "user" if self.sender == "user" else "assistant"


@dataclass(frozen=True)
class Attachment:
    """随消息发送的附件。文本类附件以内联方式拼接到用户消息中。"""

    name: str
    content: str
    mime_type: str = "text/plain"

    @property
    def is_text(self) -> bool:
        return self.mime_type.startswith("text/") or self.mime_type in ("application/json", "application/xml")


@dataclass(frozen=True)
class WebSource:
    """联网搜索引用来源。"""

    url: str
    title: str
    snippet: str = ""
    favicon: Optional[str] = None


class StreamDelta:
    """单次流式调用内的增量文本缓冲区。

    只能追加，长度在流期间单调不减；is_thinking 区分推理文本与回答文本。
    """

    __slots__ = ("is_thinking", "_parts", "_length")

    def __init__(self, is_thinking: bool = False):
        self.is_thinking = is_thinking
        self._parts: List[str] = []
        self._length = 0

    def append(self, fragment: Optional[str]) -> int:
        if fragment:
            self._parts.append(fragment)
            self._length += len(fragment)
        return self._length

    @property
    def text(self) -> str:
        if len(self._parts) > 1:
            self._parts = ["".join(self._parts)]
        return self._parts[0] if self._parts else ""

    def __len__(self) -> int:
        return self._length

    def __bool__(self) -> bool:
        return self._length > 0


@dataclass(frozen=True)
class FileAction:
    """模型提出的一项文件操作（由调用方的文件管理层执行）。"""

    type: str
    path: str = ""
    content: Optional[str] = None
    old_path: Optional[str] = None
    new_path: Optional[str] = None
    search: Optional[str] = None
    replace: Optional[str] = None
    diff: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class PlanStep:
    id: str
    title: str
    kind: str = "file"


@dataclass(frozen=True)
class ToolCallResult:
    """一次工具执行结果。

    continuation_token 记录触发该工具调用时会话的续写指针，
    续写请求据此与原请求关联。
    """

    name: str
    arguments: Dict[str, Any]
    result: Dict[str, Any]
    continuation_token: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "result": self.result}


@dataclass
class SessionCredential:
    """短期会话凭证：不透明 token 及获取时间。"""

    token: str
    acquired_at: float
    uses: int = 0


@dataclass
class ParsedResponse:
    """最终文本解析结果。

    action 取值："text"（普通文本）、"tool_call"、"file_operation"、"plan" 等。
    """

    action: str
    explanation: str
    suggestions: List[str] = field(default_factory=list)
    file_actions: List[FileAction] = field(default_factory=list)
    plan_steps: List[PlanStep] = field(default_factory=list)
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    raw_json: Optional[str] = None

    @property
    def is_tool_call(self) -> bool:
        return self.action == "tool_call" and bool(self.tool_calls)
