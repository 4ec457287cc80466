"""所有 Provider 共用的事件流解码与增量输出节流。"""

from chat_core.streaming.sink import StreamResult, StreamSink
from chat_core.streaming.sse import SseDecoder, SseEvent, iter_json_payloads
from chat_core.streaming.throttle import EmissionThrottle, ThrottleConfig

__all__ = [
    "EmissionThrottle",
    "SseDecoder",
    "SseEvent",
    "StreamResult",
    "StreamSink",
    "ThrottleConfig",
    "iter_json_payloads",
]
