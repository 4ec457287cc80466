"""增量输出节流器。

对一个不断增长的缓冲区，满足以下任一条件时才回调一次：

- 距上次回调已超过 ``interval_ms``；
- 距上次回调新增字符数达到 ``min_chars``；
- 缓冲区最后一个字符是换行（段落/行边界立即输出）。

流结束时调用 ``finish``：只要最后一次回调的长度与最终长度不同，就强制再回调一次，
保证尾部文本不会丢失。所有 Provider 共用这一套规则。
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ThrottleConfig:
    interval_ms: float = 40.0
    min_chars: int = 24
    emit_on_newline: bool = True

    @classmethod
    def from_settings(cls, cfg) -> "ThrottleConfig":
        return cls(
            interval_ms=cfg.throttle_interval_ms,
            min_chars=cfg.throttle_min_chars,
            emit_on_newline=cfg.throttle_emit_on_newline,
        )


@dataclass
class ThrottleState:
    """节流器的全部可变状态，显式随每次调用传递。"""

    last_emit_time: float
    last_emitted_length: int = 0
    emissions: int = 0


def should_emit(state: ThrottleState, text: str, now: float, config: ThrottleConfig) -> bool:
    length = len(text)
    if length == state.last_emitted_length:
        return False
    if (now - state.last_emit_time) * 1000.0 >= config.interval_ms:
        return True
    if length - state.last_emitted_length >= config.min_chars:
        return True
    return config.emit_on_newline and text.endswith("\n")


def mark_emitted(state: ThrottleState, text: str, now: float) -> None:
    state.last_emit_time = now
    state.last_emitted_length = len(text)
    state.emissions += 1


class EmissionThrottle:
    """把节流规则与回调绑定在一起的小对象。

    时钟从流开始（构造时）计时，因此第一次基于时间的回调发生在开流 interval_ms 之后。
    """

    def __init__(
        self,
        emit: Callable[[str], None],
        config: Optional[ThrottleConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._emit = emit
        self._config = config or ThrottleConfig()
        self._clock = clock
        self.state = ThrottleState(last_emit_time=clock())

    def offer(self, text: str) -> bool:
        now = self._clock()
        if not should_emit(self.state, text, now, self._config):
            return False
        self._emit(text)
        mark_emitted(self.state, text, now)
        return True

    def finish(self, text: str) -> bool:
        if len(text) == self.state.last_emitted_length:
            return False
        self._emit(text)
        mark_emitted(self.state, text, self._clock())
        return True
