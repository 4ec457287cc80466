"""事件流（SSE 风格）解码器。

把逐行读取的响应体切分为事件块：

- 非空行累积到当前事件缓冲区（ACCUMULATING）；
- 空行结束当前事件并交给 Provider 的事件处理逻辑（FLUSHED）；
- 读取超时、连接中断或流结束时，把残留的缓冲内容作为最后一个事件冲刷出去。

部分 Provider（例如 Cloudflare 的 ``0:`` 数据流）每行即一个事件、中间没有空行，
此时使用 ``line_delimited=True``。
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import httpx

from chat_core.infrastructure.logging.logger import logger

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# 这些异常表示底层连接已无法继续读取，解码器把它们当作流结束处理
STREAM_END_ERRORS = (httpx.TimeoutException, httpx.ReadError, httpx.RemoteProtocolError, httpx.StreamClosed)


class DecoderState(str, Enum):
    ACCUMULATING = "accumulating"
    FLUSHED = "flushed"


@dataclass
class SseEvent:
    """一个事件块（原始行，不含结尾空行）。"""

    lines: List[str] = field(default_factory=list)

    @property
    def name(self) -> Optional[str]:
        for line in self.lines:
            if line.startswith("event:"):
                return line[6:].strip()
        return None

    def payloads(self, prefix: str = DATA_PREFIX) -> List[str]:
        """返回所有带 prefix 的行去掉前缀后的内容。"""
        out: List[str] = []
        for line in self.lines:
            if line.startswith(prefix):
                out.append(line[len(prefix):].strip())
        return out

    @property
    def raw(self) -> str:
        return "\n".join(self.lines)


class SseDecoder:
    """两状态的行解码器。"""

    def __init__(self, line_delimited: bool = False):
        self.line_delimited = line_delimited
        self.state = DecoderState.FLUSHED
        self._buffer: List[str] = []
        self.ended_by: Optional[str] = None

    def feed(self, line: str) -> Optional[SseEvent]:
        """输入一行（不含换行符），若该行结束了一个事件则返回它。"""

        line = line.rstrip("\r")
        if not line.strip():
            return self._flush()
        if self.line_delimited:
            self._buffer.append(line)
            return self._flush()
        self._buffer.append(line)
        self.state = DecoderState.ACCUMULATING
        return None

    def close(self) -> Optional[SseEvent]:
        """流结束：冲刷残留事件。"""
        return self._flush()

    def _flush(self) -> Optional[SseEvent]:
        self.state = DecoderState.FLUSHED
        if not self._buffer:
            return None
        event = SseEvent(lines=self._buffer)
        self._buffer = []
        return event

    def iter_events(self, lines: Iterable[str]) -> Iterator[SseEvent]:
        """驱动整条流。读取超时/中断视为流结束，先冲刷再退出。"""

        try:
            for line in lines:
                event = self.feed(line)
                if event is not None:
                    yield event
            self.ended_by = "eof"
        except STREAM_END_ERRORS as exc:
            self.ended_by = type(exc).__name__
            logger.log(
                logging.WARNING,
                "stream.read_interrupted",
                extra={"extra": {"error": str(exc), "error_type": type(exc).__name__}},
            )
        tail = self.close()
        if tail is not None:
            yield tail


def iter_json_payloads(
    lines: Iterable[str],
    prefix: str = DATA_PREFIX,
    line_delimited: bool = False,
    on_raw: Optional[Callable[[str], None]] = None,
    log_ctx: Optional[Dict[str, Any]] = None,
) -> Iterator[Any]:
    """解码事件流并逐个产出解析后的 JSON 负载。

    - 没有 prefix 的事件直接跳过；
    - 空负载跳过，遇到 ``[DONE]`` 停止；
    - 无法解析的负载记录日志后跳过，不中断整条流。

    on_raw 会收到每个事件的原始文本，用于空流诊断与 raw payload 回传。
    """

    decoder = SseDecoder(line_delimited=line_delimited)
    for event in decoder.iter_events(lines):
        if on_raw is not None:
            on_raw(event.raw)
        for payload in event.payloads(prefix):
            if not payload:
                continue
            if payload == DONE_SENTINEL:
                return
            try:
                yield json.loads(payload)
            except json.JSONDecodeError as exc:
                logger.log(
                    logging.WARNING,
                    "stream.payload_skipped",
                    extra={"extra": {**(log_ctx or {}), "error": str(exc), "payload": payload[:200]}},
                )
