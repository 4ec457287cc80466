"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 system prompt 文本：

- "tools": 启用工具时使用，约定 tool_call / file_operation 的 JSON 信封格式；
- "general": 普通对话。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent

_PROMPT_FILES = {
    "tools": "tools_system.md",
    "general": "general_system.md",
}


def load_system_prompt(kind: str = "general", locale: str = "zh") -> str:
    """根据提示词类型和语言加载系统提示词文本，未知类型按 general 处理。"""

    fname = PROMPTS_DIR / locale / _PROMPT_FILES.get(kind, _PROMPT_FILES["general"])
    return fname.read_text(encoding="utf-8")
