"""单次流式调用的累积器。

Provider 客户端只需要把解码出的片段交给 StreamSink：

- append_answer / append_thinking: 追加到对应的 StreamDelta 并经节流器回调；
- record_raw: 记录原始事件文本（空流诊断与 raw payload 回传）；
- add_web_source: 按 url 去重收集联网来源；
- state_changed: 通知编排器会话状态可能已变化。

close() 对两个通道都做一次强制回调，返回本次调用的 StreamResult。
"""

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from chat_core.domain.models import StreamDelta, WebSource
from chat_core.streaming.throttle import EmissionThrottle, ThrottleConfig


@dataclass
class StreamResult:
    answer: str
    thinking: str
    raw: str
    web_sources: List[WebSource] = field(default_factory=list)
    finish_reason: Optional[str] = None

    @property
    def final_text(self) -> str:
        """有回答用回答，否则退回到推理文本。"""
        return self.answer if self.answer else self.thinking

    @property
    def is_empty(self) -> bool:
        return not self.answer and not self.thinking


class StreamSink:
    def __init__(
        self,
        on_update: Callable[[str, bool], None],
        config: Optional[ThrottleConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_changed: Optional[Callable[[], None]] = None,
    ):
        self.answer = StreamDelta(is_thinking=False)
        self.thinking = StreamDelta(is_thinking=True)
        self._answer_throttle = EmissionThrottle(lambda text: on_update(text, False), config, clock)
        self._thinking_throttle = EmissionThrottle(lambda text: on_update(text, True), config, clock)
        self._on_state_changed = on_state_changed
        self._raw: List[str] = []
        self._seen_urls: Set[str] = set()
        self.web_sources: List[WebSource] = []
        self.finish_reason: Optional[str] = None
        self.closed = False

    def record_raw(self, text: str) -> None:
        self._raw.append(text)

    def append_answer(self, fragment: Optional[str]) -> None:
        if fragment:
            self.answer.append(fragment)
            self._answer_throttle.offer(self.answer.text)

    def append_thinking(self, fragment: Optional[str]) -> None:
        if fragment:
            self.thinking.append(fragment)
            self._thinking_throttle.offer(self.thinking.text)

    def add_web_source(self, source: WebSource) -> bool:
        if not source.url or source.url in self._seen_urls:
            return False
        self._seen_urls.add(source.url)
        self.web_sources.append(source)
        return True

    def state_changed(self) -> None:
        if self._on_state_changed is not None:
            self._on_state_changed()

    @property
    def raw_text(self) -> str:
        return "\n".join(self._raw)

    def close(self) -> StreamResult:
        if not self.closed:
            self.closed = True
            self._thinking_throttle.finish(self.thinking.text)
            self._answer_throttle.finish(self.answer.text)
        return StreamResult(
            answer=self.answer.text,
            thinking=self.thinking.text,
            raw=self.raw_text,
            web_sources=list(self.web_sources),
            finish_reason=self.finish_reason,
        )
