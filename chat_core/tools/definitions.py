"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给模型（ToolSpec / ToolParam，序列化为 OpenAI function 格式）；
- 在续写流程中保存模型发起的工具调用（ToolCall），并构造 tool_result 续写消息。

模型通过在回答中输出如下 JSON 信封发起工具调用::

    {"action": "tool_call", "tool_calls": [{"name": "listFiles", "args": {"path": "."}}]}
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from chat_core.domain.models import ToolCallResult


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolSpec:
    """一个可供模型调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)

    def to_openai(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            schema = param.schema or {"type": "string"}
            if param.description:
                schema = {**schema, "description": param.description}
            properties[name] = schema
            if param.required:
                required.append(name)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": required,
                },
            },
        }


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求。"""

    name: str
    arguments: Dict[str, Any]
    id: str = ""


def specs_to_json(specs: Sequence[ToolSpec]) -> List[Dict[str, Any]]:
    return [spec.to_openai() for spec in specs]


def parse_tool_calls(raw_calls: Any) -> List[ToolCall]:
    """解析信封中的 tool_calls 数组，忽略缺少 name 的条目。"""

    calls: List[ToolCall] = []
    if not isinstance(raw_calls, list):
        return calls
    for idx, item in enumerate(raw_calls):
        if not isinstance(item, dict):
            continue
        name = item.get("name") or (item.get("function") or {}).get("name")
        if not name:
            continue
        args = item.get("args")
        if args is None:
            args = item.get("arguments")
        calls.append(ToolCall(name=str(name), arguments=_parse_arguments(args), id=str(item.get("id") or f"tool_call_{idx}")))
    return calls


def build_tool_result_message(results: Sequence[ToolCallResult]) -> str:
    """构造续写请求中以用户消息发送的 tool_result 信封。"""

    payload = {"action": "tool_result", "results": [r.to_payload() for r in results]}
    return "```json\n" + json.dumps(payload, ensure_ascii=False) + "\n```\n"


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return parsed if isinstance(parsed, dict) else {"_raw": raw}
    return {}
