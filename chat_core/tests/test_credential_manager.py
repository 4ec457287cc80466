import tempfile
import threading

import pytest

from chat_core.auth.credential_manager import SessionCredentialManager
from chat_core.domain.exceptions import ApiError, CredentialUnavailableError
from chat_core.infrastructure.storage.json_store import JsonStateStore


class Counter:
    def __init__(self):
        self.n = 0

    def __call__(self) -> str:
        self.n += 1
        return f"tok-{self.n}"


def test_lazy_acquire_and_reuse():
    acquire = Counter()
    mgr = SessionCredentialManager("qwen", acquire)
    assert acquire.n == 0
    assert mgr.ensure_credential() == "tok-1"
    assert mgr.ensure_credential() == "tok-1"
    assert acquire.n == 1


def test_force_refresh_replaces_cached_token():
    acquire = Counter()
    invalidated = []
    mgr = SessionCredentialManager("qwen", acquire, on_invalidate=lambda: invalidated.append(True))
    mgr.ensure_credential()
    assert mgr.ensure_credential(force_refresh=True) == "tok-2"
    assert mgr.forced_refreshes == 1
    assert invalidated == [True]


def test_rotates_after_max_uses():
    acquire = Counter()
    mgr = SessionCredentialManager("qwen", acquire, max_uses=2)
    assert [mgr.ensure_credential() for _ in range(5)] == ["tok-1", "tok-1", "tok-2", "tok-2", "tok-3"]


def test_rotates_after_max_age():
    now = [1000.0]
    acquire = Counter()
    mgr = SessionCredentialManager("qwen", acquire, max_age_seconds=300, clock=lambda: now[0])
    assert mgr.ensure_credential() == "tok-1"
    now[0] += 299
    assert mgr.ensure_credential() == "tok-1"
    now[0] += 1
    assert mgr.ensure_credential() == "tok-2"


def test_acquire_failure_is_credential_unavailable():
    def fail():
        raise ApiError(code="MIDTOKEN_NOT_FOUND", message="no token", http_status=502)

    mgr = SessionCredentialManager("qwen", fail)
    with pytest.raises(CredentialUnavailableError) as exc:
        mgr.ensure_credential()
    assert exc.value.code == "AUTH_UNAVAILABLE"
    assert mgr.peek() is None


def test_unparseable_response_is_credential_unavailable():
    for error in (ValueError("Expecting value"), KeyError("access_token"), TypeError("bad")):

        def acquire(error=error):
            raise error

        mgr = SessionCredentialManager("kimi", acquire)
        with pytest.raises(CredentialUnavailableError) as exc:
            mgr.ensure_credential()
        assert exc.value.code == "AUTH_UNAVAILABLE"
        assert mgr.acquisitions == 0


def test_empty_token_is_credential_unavailable():
    mgr = SessionCredentialManager("kimi", lambda: "")
    with pytest.raises(CredentialUnavailableError):
        mgr.ensure_credential()


def test_concurrent_callers_share_one_acquisition():
    acquire = Counter()
    gate = threading.Event()

    def slow_acquire():
        gate.wait(1.0)
        return acquire()

    mgr = SessionCredentialManager("qwen", slow_acquire)
    results = []
    threads = [threading.Thread(target=lambda: results.append(mgr.ensure_credential())) for _ in range(8)]
    for t in threads:
        t.start()
    gate.set()
    for t in threads:
        t.join()
    assert results == ["tok-1"] * 8
    assert acquire.n == 1


def test_token_persisted_across_instances():
    with tempfile.TemporaryDirectory() as d:
        store = JsonStateStore(root=d)
        first = Counter()
        SessionCredentialManager("kimi", first, store=store).ensure_credential()

        second = Counter()
        mgr = SessionCredentialManager("kimi", second, store=store)
        assert mgr.ensure_credential() == "tok-1"
        assert second.n == 0

        mgr.invalidate()
        assert store.load_blob("credential_kimi") is None
