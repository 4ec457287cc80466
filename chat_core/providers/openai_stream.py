"""OpenAI 风格 chat/completions 的共用处理。

GLM、Pollinations 与 OpenRouter 的请求体和流式 chunk 结构基本一致：

- 请求: {"model", "messages": [{"role", "content"}], "stream"}
- 增量: {"choices": [{"delta": {"content", "reasoning_content"}, "finish_reason"}]}

这里负责组装 messages、把单个 chunk 写入 StreamSink，以及驱动整条流。
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence

from chat_core.domain.models import Message, WebSource
from chat_core.streaming.sink import StreamSink
from chat_core.streaming.sse import iter_json_payloads


def build_openai_messages(
    history: Sequence[Message],
    user_text: str,
    system_prompt: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """system + 历史（跳过空消息）+ 本轮用户消息。"""

    msgs: List[Dict[str, Any]] = []
    if system_prompt:
        msgs.append({"role": "system", "content": system_prompt})
    for m in history:
        if not m.content:
            continue
        msgs.append({"role": m.role, "content": m.content})
    msgs.append({"role": "user", "content": user_text})
    return msgs


def apply_openai_chunk(data: Any, sink: StreamSink) -> Optional[str]:
    """把一个 chunk 写入 sink，返回 finish_reason（没有则为 None）。"""

    if not isinstance(data, dict):
        return None
    _collect_web_sources(data.get("web_search"), sink)
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0] if isinstance(choices[0], dict) else {}
    delta = choice.get("delta")
    if isinstance(delta, dict):
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str):
            sink.append_thinking(reasoning)
        content = delta.get("content")
        if isinstance(content, str):
            if delta.get("thinking"):
                sink.append_thinking(content)
            else:
                sink.append_answer(content)
    else:
        # 非流式兜底：整条 message 一次给出
        message = choice.get("message")
        if isinstance(message, dict):
            reasoning = message.get("reasoning_content") or message.get("reasoning")
            if isinstance(reasoning, str):
                sink.append_thinking(reasoning)
            content = message.get("content")
            if isinstance(content, str):
                sink.append_answer(content)
    finish = choice.get("finish_reason")
    if finish:
        sink.finish_reason = str(finish)
    return finish or None


def consume_openai_stream(lines: Iterable[str], sink: StreamSink, log_ctx: Optional[Dict[str, Any]] = None) -> None:
    """驱动一条 OpenAI 风格事件流，finish_reason 为 stop 时结束本轮。"""

    for data in iter_json_payloads(lines, on_raw=sink.record_raw, log_ctx=log_ctx):
        if apply_openai_chunk(data, sink) == "stop":
            break


def _collect_web_sources(raw: Any, sink: StreamSink) -> None:
    if isinstance(raw, dict):
        raw = raw.get("results")
    if not isinstance(raw, list):
        return
    for item in raw:
        if not isinstance(item, dict):
            continue
        url = item.get("link") or item.get("url")
        if not url:
            continue
        sink.add_web_source(
            WebSource(
                url=str(url),
                title=str(item.get("title") or url),
                snippet=str(item.get("content") or item.get("snippet") or ""),
                favicon=item.get("icon") or item.get("media"),
            )
        )
