from typing import Callable, Dict, Any, List, Optional, Union
from pathlib import Path
import fnmatch
import logging
import re

from chat_core.config.settings import settings
from chat_core.infrastructure.logging.logger import logger
from .definitions import ToolCall, ToolParam, ToolSpec


ToolFunc = Callable[[Dict[str, Any]], Dict[str, Any]]
MAX_READ_CHARS = 20000
MAX_TREE_ENTRIES = 2000
MAX_SEARCH_RESULTS = 2000
SKIP_DIRS = {".git", "node_modules", "build", "dist", ".gradle", ".idea", "__pycache__", ".venv"}


class ToolExecutor:
    """同步工具执行器。

    execute 永远返回结构化结果：成功为 ``{"ok": True, ...}``，
    未注册的工具或执行中的异常返回 ``{"ok": False, "error": ...}``，不向外抛出。
    """

    def __init__(self, tools: Dict[str, ToolFunc]):
        self._tools = tools

    def execute(self, name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        func = self._tools.get(name)
        if func is None:
            return {"ok": False, "error": f"Unknown tool: {name}"}
        try:
            return func(dict(args or {}))
        except Exception as exc:
            logger.log(
                logging.WARNING,
                "tool.failed",
                extra={"extra": {"tool_name": name, "error": str(exc)}},
            )
            return {"ok": False, "error": str(exc) or type(exc).__name__}

    def execute_call(self, call: ToolCall) -> Dict[str, Any]:
        return self.execute(call.name, call.arguments)


def _coerce_root(root: Optional[Union[str, Path]]) -> Path:
    if root is None:
        root = getattr(settings, "workspace_root", None) or Path.cwd()
    return Path(root).expanduser().resolve()


def _resolve_path(raw: str, root: Path) -> Optional[Path]:
    text = (raw or "").strip() or "."
    candidate = Path(text).expanduser()
    resolved = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
    if not _is_within_root(resolved, root):
        return None
    return resolved


def _is_within_root(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix() or "."
    except ValueError:
        return str(path)


def _make_read_file_tool(root: Path) -> ToolFunc:
    def _run(args: Dict[str, Any]) -> Dict[str, Any]:
        raw = str(args.get("path") or "")
        path = _resolve_path(raw, root)
        if not path or not path.is_file():
            return {"ok": False, "error": f"File not found: {raw}"}
        content = path.read_text(encoding="utf-8", errors="replace")
        result: Dict[str, Any] = {"ok": True}
        if len(content) > MAX_READ_CHARS:
            content = content[:MAX_READ_CHARS]
            result["message"] = f"File read (truncated): {raw}"
        else:
            result["message"] = f"File read: {raw}"
        result["content"] = content
        return result

    return _run


def _make_list_files_tool(root: Path) -> ToolFunc:
    def _run(args: Dict[str, Any]) -> Dict[str, Any]:
        raw = str(args.get("path") or ".")
        directory = _resolve_path(raw, root)
        if not directory or not directory.is_dir():
            return {"ok": False, "error": f"Directory not found: {raw}"}
        files = []
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            files.append(
                {
                    "name": child.name,
                    "type": "directory" if child.is_dir() else "file",
                    "size": child.stat().st_size if child.is_file() else 0,
                }
            )
        return {"ok": True, "files": files, "message": f"Directory listed: {raw}"}

    return _run


def _make_project_tree_tool(root: Path) -> ToolFunc:
    def _run(args: Dict[str, Any]) -> Dict[str, Any]:
        raw = str(args.get("path") or ".")
        start = _resolve_path(raw, root)
        if not start or not start.exists():
            return {"ok": False, "error": f"Path not found: {raw}"}
        depth = max(0, min(5, int(args.get("depth", 2))))
        max_entries = max(10, min(MAX_TREE_ENTRIES, int(args.get("maxEntries", 500))))
        lines: List[str] = []

        def walk(node: Path, level: int) -> None:
            if len(lines) >= max_entries:
                return
            indent = "  " * level
            lines.append(f"{indent}{node.name}/" if node.is_dir() else f"{indent}{node.name}")
            if not node.is_dir() or level >= depth:
                return
            for child in sorted(node.iterdir(), key=lambda p: (p.is_file(), p.name)):
                if child.is_dir() and child.name in SKIP_DIRS:
                    continue
                walk(child, level + 1)

        walk(start, 0)
        if len(lines) >= max_entries:
            lines.append("... truncated ...")
        return {"ok": True, "tree": "\n".join(lines)}

    return _run


def _make_search_tool(root: Path) -> ToolFunc:
    def _run(args: Dict[str, Any]) -> Dict[str, Any]:
        query = str(args.get("query") or "")
        if not query:
            return {"ok": False, "error": "empty query"}
        start = _resolve_path(str(args.get("path") or "."), root)
        if not start or not start.exists():
            return {"ok": False, "error": f"Path not found: {args.get('path')}"}
        limit = max(1, min(MAX_SEARCH_RESULTS, int(args.get("maxResults", 100))))
        flags = re.IGNORECASE if args.get("caseInsensitive") else 0
        pattern = re.compile(query if args.get("regex") else re.escape(query), flags)
        glob = str(args.get("pattern") or "*")
        matches: List[Dict[str, Any]] = []
        candidates = [start] if start.is_file() else start.rglob("*")
        for path in candidates:
            if not path.is_file() or any(part in SKIP_DIRS for part in path.parts):
                continue
            if not fnmatch.fnmatch(path.name, glob):
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(content.splitlines(), start=1):
                if pattern.search(line):
                    matches.append({"file": _relative(path, root), "line": line_no, "text": line.strip()[:300]})
                    if len(matches) >= limit:
                        return {"ok": True, "matches": matches, "truncated": True}
        return {"ok": True, "matches": matches}

    return _run


def default_tools(workspace_root: Optional[Union[str, Path]] = None) -> Dict[str, ToolFunc]:
    root = _coerce_root(workspace_root)
    return {
        "readFile": _make_read_file_tool(root),
        "listFiles": _make_list_files_tool(root),
        "listProjectTree": _make_project_tree_tool(root),
        "searchInProject": _make_search_tool(root),
    }


def default_tool_specs() -> List[ToolSpec]:
    return [
        ToolSpec(
            name="readFile",
            description="Read the contents of a file from the project workspace.",
            params={
                "path": ToolParam(
                    name="path",
                    description="相对项目根目录的文件路径",
                    required=True,
                    schema={"type": "string"},
                )
            },
        ),
        ToolSpec(
            name="listFiles",
            description="List files and directories in a directory within the project workspace.",
            params={
                "path": ToolParam(
                    name="path",
                    description="目录路径，默认为项目根目录",
                    required=True,
                    schema={"type": "string"},
                ),
            },
        ),
        ToolSpec(
            name="listProjectTree",
            description="List the project tree from a path with depth and entry limits.",
            params={
                "path": ToolParam(name="path", description="起始目录", required=False, schema={"type": "string"}),
                "depth": ToolParam(
                    name="depth",
                    description="递归深度 0-5，默认 2",
                    required=False,
                    schema={"type": "integer", "minimum": 0, "maximum": 5},
                ),
                "maxEntries": ToolParam(
                    name="maxEntries",
                    description="最多返回条目数，默认 500",
                    required=False,
                    schema={"type": "integer", "minimum": 10, "maximum": MAX_TREE_ENTRIES},
                ),
            },
        ),
        ToolSpec(
            name="searchInProject",
            description="Search project files for a query. Supports regex when enabled.",
            params={
                "query": ToolParam(name="query", description="需要匹配的文本", required=True, schema={"type": "string"}),
                "path": ToolParam(name="path", description="搜索起点，默认为项目根目录", required=False, schema={"type": "string"}),
                "maxResults": ToolParam(
                    name="maxResults",
                    description="最大返回条数，默认 100",
                    required=False,
                    schema={"type": "integer", "minimum": 1, "maximum": MAX_SEARCH_RESULTS},
                ),
                "regex": ToolParam(name="regex", description="query 是否为正则", required=False, schema={"type": "boolean"}),
                "caseInsensitive": ToolParam(
                    name="caseInsensitive",
                    description="是否忽略大小写",
                    required=False,
                    schema={"type": "boolean"},
                ),
            },
        ),
    ]
