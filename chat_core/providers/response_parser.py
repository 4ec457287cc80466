"""模型最终文本的结构化解析。

模型可以直接回答 Markdown 文本，也可以输出一个 JSON 信封（裸 JSON 或 ```json 代码块）：

- {"action": "tool_call", "tool_calls": [...]}       请求执行工具，编排器会发起续写
- {"action": "file_operation", "operations": [...]}  提出文件修改，交给调用方的文件管理层
- {"action": "plan", "steps": [...]}                 多步计划

无法识别为信封的文本一律按普通文本处理，解析失败不会抛出异常。
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from chat_core.domain.models import FileAction, ParsedResponse, PlanStep
from chat_core.infrastructure.logging.logger import logger

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_ANY_FENCE = re.compile(r"```\s*([\s\S]*?)```")


def looks_like_json(text: Optional[str]) -> bool:
    if not text or not text.strip():
        return False
    t = text.strip()
    return (t.startswith("{") and t.endswith("}")) or (t.startswith("[") and t.endswith("]"))


def extract_json_from_code_block(content: Optional[str]) -> Optional[str]:
    """优先提取 ```json 代码块；其次是内容看起来像 JSON 的普通代码块。"""

    if not content or not content.strip():
        return None
    m = _JSON_FENCE.search(content)
    if m:
        return m.group(1).strip()
    m = _ANY_FENCE.search(content)
    if m:
        extracted = m.group(1).strip()
        if looks_like_json(extracted):
            return extracted
    return None


def find_json_candidate(text: str) -> Optional[str]:
    candidate = extract_json_from_code_block(text)
    if candidate is None and looks_like_json(text):
        candidate = text.strip()
    return candidate


def parse_response(text: str) -> ParsedResponse:
    """把最终文本解析为 ParsedResponse。"""

    candidate = find_json_candidate(text or "")
    if candidate is None:
        return _plain(text)
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError as exc:
        logger.log(
            logging.INFO,
            "response.json_invalid",
            extra={"extra": {"error": str(exc), "snippet": candidate[:200]}},
        )
        return _plain(text)
    if not isinstance(obj, dict):
        return _plain(text)

    action = str(obj.get("action") or "")
    if action == "tool_call":
        calls = obj.get("tool_calls")
        if isinstance(calls, list) and calls:
            return ParsedResponse(
                action="tool_call",
                explanation=_str(obj.get("explanation")),
                tool_calls=[c for c in calls if isinstance(c, dict)],
                raw_json=candidate,
            )
        return _plain(text)
    if action == "file_operation":
        return ParsedResponse(
            action="file_operation",
            explanation=_str(obj.get("explanation")),
            suggestions=_str_list(obj.get("suggestions")),
            file_actions=_file_actions(obj.get("operations")),
            raw_json=candidate,
        )
    if action == "plan":
        return ParsedResponse(
            action="plan",
            explanation=_str(obj.get("explanation") or obj.get("goal")),
            suggestions=_str_list(obj.get("suggestions")),
            plan_steps=_plan_steps(obj.get("steps")),
            raw_json=candidate,
        )
    # 其他 JSON：保留原文，同时带出 explanation/suggestions（如果有）
    explanation = _str(obj.get("explanation"))
    return ParsedResponse(
        action="json_response",
        explanation=explanation or text,
        suggestions=_str_list(obj.get("suggestions")),
        raw_json=candidate,
    )


def _plain(text: Optional[str]) -> ParsedResponse:
    return ParsedResponse(action="text", explanation=text or "")


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def _opt(op: Dict[str, Any], key: str) -> Optional[str]:
    value = op.get(key)
    return str(value) if value is not None else None


def _file_actions(raw: Any) -> List[FileAction]:
    actions: List[FileAction] = []
    if not isinstance(raw, list):
        return actions
    for op in raw:
        if not isinstance(op, dict) or not op.get("type"):
            continue
        actions.append(
            FileAction(
                type=str(op["type"]),
                path=str(op.get("path") or ""),
                content=_opt(op, "content"),
                old_path=_opt(op, "oldPath"),
                new_path=_opt(op, "newPath"),
                search=_opt(op, "search"),
                replace=_opt(op, "replace"),
                diff=_opt(op, "diff"),
                description=_opt(op, "description"),
            )
        )
    return actions


def _plan_steps(raw: Any) -> List[PlanStep]:
    steps: List[PlanStep] = []
    if not isinstance(raw, list):
        return steps
    for idx, item in enumerate(raw):
        if isinstance(item, str):
            steps.append(PlanStep(id=f"s{idx + 1}", title=item))
        elif isinstance(item, dict) and item.get("title"):
            steps.append(
                PlanStep(
                    id=str(item.get("id") or f"s{idx + 1}"),
                    title=str(item["title"]),
                    kind=str(item.get("kind") or "file"),
                )
            )
    return steps
