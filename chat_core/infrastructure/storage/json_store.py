import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationState, ConversationStateStore
from chat_core.domain.exceptions import StoreError

_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]+")


class JsonStateStore(ConversationStateStore):
    """基于 JSON 文件的本地存储。

    目录结构::

        <root>/states/<chat_key>.json    会话状态
        <root>/cache/<name>.json         凭证、模型目录原始响应等缓存
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._state_root = self._root / "states"
        self._cache_root = self._root / "cache"
        self._state_root.mkdir(parents=True, exist_ok=True)
        self._cache_root.mkdir(parents=True, exist_ok=True)

    # ---- 会话状态 ----

    def load_state(self, chat_key: str) -> ConversationState:
        path = self._state_path(chat_key)
        if not path.exists():
            return ConversationState()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e), chat_key=chat_key)
        return ConversationState.from_dict(data.get("state"))

    def save_state(self, chat_key: str, state: ConversationState) -> None:
        obj = {
            "chat_key": chat_key,
            "updated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "state": state.to_dict(),
        }
        self._write_atomic(self._state_path(chat_key), obj)

    def delete_state(self, chat_key: str) -> None:
        path = self._state_path(chat_key)
        if not path.exists():
            return
        try:
            path.unlink()
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e), chat_key=chat_key)

    # ---- 通用缓存 ----

    def save_blob(self, name: str, data: Dict[str, Any]) -> None:
        self._write_atomic(self._cache_root / f"{self._safe(name)}.json", data)

    def load_blob(self, name: str) -> Optional[Dict[str, Any]]:
        path = self._cache_root / f"{self._safe(name)}.json"
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def delete_blob(self, name: str) -> None:
        path = self._cache_root / f"{self._safe(name)}.json"
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e), name=name)

    # ---- 内部 ----

    def _state_path(self, chat_key: str) -> Path:
        if not chat_key:
            raise StoreError(code="INVALID_CHAT_KEY", message="chat_key must not be empty")
        return self._state_root / f"{self._safe(chat_key)}.json"

    @staticmethod
    def _safe(key: str) -> str:
        return _SAFE_KEY.sub("_", key)

    @staticmethod
    def _write_atomic(path: Path, obj: Dict[str, Any]) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.json.tmp")
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
