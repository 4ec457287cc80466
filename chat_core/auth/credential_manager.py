"""会话凭证管理器。

为需要轮换 token 的 Provider（Qwen midtoken、Kimi 设备 token）提供当前可用的凭证：

- 首次使用时才获取（lazy）；
- 缓存 token 及其获取时间，可选地按使用次数 / 存活时间自动轮换；
- ``ensure_credential(force_refresh=True)`` 丢弃缓存并重新获取；
- 获取失败对调用方是硬错误（CredentialUnavailableError），内部不重试。

同一时刻只允许一个线程获取或替换缓存值。管理器按进程显式构造并注入到 Provider，
不使用惰性全局单例。
"""

import logging
import threading
import time
from typing import Callable, Optional

from chat_core.domain.exceptions import BusinessError, CredentialUnavailableError
from chat_core.domain.models import SessionCredential
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonStateStore


class SessionCredentialManager:
    def __init__(
        self,
        name: str,
        acquire: Callable[[], str],
        max_uses: Optional[int] = None,
        max_age_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        store: Optional[JsonStateStore] = None,
        on_invalidate: Optional[Callable[[], None]] = None,
    ):
        self.name = name
        self._acquire = acquire
        self._max_uses = max_uses
        self._max_age = max_age_seconds
        self._clock = clock
        self._store = store
        self._on_invalidate = on_invalidate
        self._lock = threading.Lock()
        self._credential: Optional[SessionCredential] = None
        self.acquisitions = 0
        self.forced_refreshes = 0
        self._load_persisted()

    @property
    def _blob_name(self) -> str:
        return f"credential_{self.name}"

    def ensure_credential(self, force_refresh: bool = False) -> str:
        """返回当前可用 token；必要时获取新的。"""

        with self._lock:
            if force_refresh:
                self.forced_refreshes += 1
                self._log(logging.WARNING, "credential.force_refresh")
                self._invalidate_locked()
            cred = self._credential
            if cred is not None and not self._expired(cred):
                cred.uses += 1
                return cred.token
            if cred is not None:
                self._log(logging.INFO, "credential.expired", uses=cred.uses, age=round(self._clock() - cred.acquired_at, 1))
                self._invalidate_locked()
            return self._acquire_locked()

    def peek(self) -> Optional[SessionCredential]:
        with self._lock:
            return self._credential

    def invalidate(self) -> None:
        with self._lock:
            self._invalidate_locked()

    # ---- 内部 ----

    def _expired(self, cred: SessionCredential) -> bool:
        if self._max_uses is not None and cred.uses >= self._max_uses:
            return True
        if self._max_age is not None and (self._clock() - cred.acquired_at) >= self._max_age:
            return True
        return False

    def _acquire_locked(self) -> str:
        self._log(logging.INFO, "credential.acquire")
        try:
            token = self._acquire()
        except BusinessError as exc:
            self._log(logging.ERROR, "credential.acquire_failed", error=exc.message, code=exc.code)
            raise self._unavailable(exc.message) from exc
        except (ValueError, KeyError, TypeError) as exc:
            # 凭证接口返回了无法解析的内容
            self._log(logging.ERROR, "credential.acquire_failed", error=str(exc), code="BAD_PAYLOAD")
            raise self._unavailable(f"unexpected response ({exc})") from exc
        if not token:
            raise self._unavailable("empty token")
        self.acquisitions += 1
        self._credential = SessionCredential(token=token, acquired_at=self._clock(), uses=1)
        if self._store is not None:
            self._store.save_blob(self._blob_name, {"token": token, "acquired_at": self._credential.acquired_at})
        return token

    def _unavailable(self, reason: str) -> CredentialUnavailableError:
        return CredentialUnavailableError(
            code="AUTH_UNAVAILABLE",
            message=f"Authentication unavailable for {self.name}: {reason}",
            http_status=503,
            provider=self.name,
        )

    def _invalidate_locked(self) -> None:
        self._credential = None
        if self._store is not None:
            self._store.delete_blob(self._blob_name)
        if self._on_invalidate is not None:
            self._on_invalidate()

    def _load_persisted(self) -> None:
        if self._store is None:
            return
        data = self._store.load_blob(self._blob_name)
        if data and data.get("token"):
            # 持久化的 token 不知道真实年龄，从加载时刻重新计时
            self._credential = SessionCredential(token=str(data["token"]), acquired_at=self._clock(), uses=0)
            self._log(logging.INFO, "credential.loaded")

    def _log(self, level: int, message: str, **fields) -> None:
        logger.log(level, message, extra={"extra": {"provider": self.name, **fields}})
