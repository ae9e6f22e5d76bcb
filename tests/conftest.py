# tests/conftest.py
"""
Shared fixtures for ClinicGuard tests.

Provides a controllable clock and an in-memory stand-in for RedisService
that honours TTLs against that clock and can simulate an outage.
"""

import fnmatch
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from clinic_guard.core.config import Settings
from clinic_guard.core.exceptions import redis_error
from clinic_guard.models.security_models import ThreatEvent
from clinic_guard.services.rate_limiter import RateLimiter
from clinic_guard.services.redis_service import RedisConfig, RedisService
from clinic_guard.services.security_monitor import SecurityMonitor
from clinic_guard.services.session_manager import SessionManager
from clinic_guard.services.session_store import SessionStore

# clinic_guard.main calls setup_logging() at import; keep that import from
# attaching file handlers (under ./logs) that leak into the logging tests.
_saved_log_to_file = os.environ.get("LOG_TO_FILE")
os.environ["LOG_TO_FILE"] = "false"
import clinic_guard.main  # noqa: E402,F401
if _saved_log_to_file is None:
    del os.environ["LOG_TO_FILE"]
else:
    os.environ["LOG_TO_FILE"] = _saved_log_to_file

START_TIME = 1_700_000_000.0


class FakeClock:
    """Epoch-seconds clock that only moves when told to"""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryRedisService(RedisService):
    """
    RedisService double backed by dicts.

    Values are serialized like the real service, so records round-trip
    through JSON. Set `available = False` to make every call fail.
    """

    def __init__(self, clock: FakeClock, name: str = "InMemoryRedis"):
        super().__init__(RedisConfig(url="memory://"), name=name)
        self.clock = clock
        self.available = True
        self.values: Dict[str, Any] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.sets: Dict[str, set] = {}
        self.lists: Dict[str, List[Any]] = {}
        self.expiry: Dict[str, float] = {}
        self._sequence = 0

    async def _initialize_client(self):
        return self

    async def _cleanup(self) -> None:
        pass

    # -- helpers -------------------------------------------------------------

    def _check(self, operation: str, key: Optional[str] = None) -> None:
        if not self.available:
            raise redis_error("Store unavailable", key=key, operation=operation)

    def _expire_if_due(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and self.clock() >= deadline:
            self._drop(key)

    def _drop(self, key: str) -> bool:
        existed = any(key in d for d in (self.values, self.zsets, self.sets, self.lists))
        self.values.pop(key, None)
        self.zsets.pop(key, None)
        self.sets.pop(key, None)
        self.lists.pop(key, None)
        self.expiry.pop(key, None)
        return existed

    def _present(self, key: str) -> bool:
        self._expire_if_due(key)
        return any(key in d for d in (self.values, self.zsets, self.sets, self.lists))

    def _write(self, key: str, value: Any, ttl: Optional[int], serialize_json: bool = True) -> None:
        self._drop(key)
        self.values[key] = self._serialize(value) if serialize_json else value
        if ttl:
            self.expiry[key] = self.clock() + ttl

    def keys(self, pattern: str = "*") -> List[str]:
        all_keys = set(self.values) | set(self.zsets) | set(self.sets) | set(self.lists)
        return sorted(k for k in all_keys if self._present(k) and fnmatch.fnmatch(k, pattern))

    # -- RedisService API ----------------------------------------------------

    async def get(self, key: str, default: Any = None, deserialize_json: bool = True) -> Any:
        self._check("get", key)
        self._expire_if_due(key)
        if key not in self.values:
            return default
        value = self.values[key]
        return self._deserialize(value) if deserialize_json else value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, serialize_json: bool = True) -> bool:
        self._check("set", key)
        self._write(key, value, ttl, serialize_json)
        return True

    async def delete(self, *keys: str) -> int:
        self._check("delete", keys[0] if keys else None)
        return sum(1 for key in keys if self._drop(key))

    async def exists(self, *keys: str) -> int:
        self._check("exists", keys[0] if keys else None)
        return sum(1 for key in keys if self._present(key))

    async def expire(self, key: str, seconds: int) -> bool:
        self._check("expire", key)
        if not self._present(key):
            return False
        self.expiry[key] = self.clock() + seconds
        return True

    async def ttl(self, key: str) -> int:
        self._check("ttl", key)
        if not self._present(key):
            return -2
        if key not in self.expiry:
            return -1
        return int(self.expiry[key] - self.clock())

    async def sadd(self, key: str, *members: str) -> int:
        self._check("sadd", key)
        self._expire_if_due(key)
        current = self.sets.setdefault(key, set())
        added = len(set(members) - current)
        current.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        self._check("srem", key)
        self._expire_if_due(key)
        current = self.sets.get(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        return removed

    async def smembers(self, key: str) -> List[str]:
        self._check("smembers", key)
        self._expire_if_due(key)
        return sorted(self.sets.get(key, set()))

    async def record_event(self, key: str, now: int, window: int, ttl: int) -> int:
        self._check("record_event", key)
        self._expire_if_due(key)
        entries = self.zsets.setdefault(key, {})
        for member in [m for m, score in entries.items() if score <= now - window]:
            del entries[member]
        self._sequence += 1
        entries[f"{now}-{self._sequence}"] = now
        self.expiry[key] = self.clock() + ttl
        return len(entries)

    async def count_events(self, key: str, now: int, window: int) -> int:
        self._check("count_events", key)
        self._expire_if_due(key)
        entries = self.zsets.get(key, {})
        for member in [m for m, score in entries.items() if score <= now - window]:
            del entries[member]
        return len(entries)

    async def atomic_write(
        self,
        set_items: Optional[Dict[str, Tuple[Any, Optional[int]]]] = None,
        delete_keys: Sequence[str] = ()
    ) -> None:
        self._check("atomic_write")
        for key, (value, ttl) in (set_items or {}).items():
            self._write(key, value, ttl)
        for key in delete_keys:
            self._drop(key)

    async def set_if_true(self, key: str, value: Any, field: str, ttl: int) -> bool:
        self._check("set_if_true", key)
        current = await self.get(key)
        if not isinstance(current, dict) or current.get(field) is not True:
            return False
        self._write(key, value, ttl)
        return True

    async def push_capped(self, key: str, value: Any, max_length: int, ttl: int) -> int:
        self._check("push_capped", key)
        self._expire_if_due(key)
        items = self.lists.setdefault(key, [])
        items.insert(0, self._serialize(value))
        del items[max_length:]
        self.expiry[key] = self.clock() + ttl
        return len(items)

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        self._check("list_range", key)
        self._expire_if_due(key)
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        return [self._deserialize(item) for item in items[start:stop]]

    async def health_check(self) -> Dict[str, Any]:
        if not self.available:
            return {"healthy": False, "status": "error", "details": {"error": "Store unavailable"}}
        return {"healthy": True, "status": "connected", "details": {"backend": "memory"}}


class RecordingThreatSink:
    """Collects threats instead of writing them anywhere"""

    def __init__(self):
        self.events: List[ThreatEvent] = []
        self.alerts: List[ThreatEvent] = []

    async def record_event(self, threat: ThreatEvent) -> None:
        self.events.append(threat)

    async def send_alert(self, threat: ThreatEvent) -> None:
        self.alerts.append(threat)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    """Settings isolated from the environment and any .env file"""
    return Settings(
        _env_file=None,
        API_KEY="test-api-key",
        SESSION_COOKIE_SECURE=False,
    )


@pytest.fixture
async def counter_store(clock):
    store = InMemoryRedisService(clock, name="CounterStore")
    await store.initialize()
    return store


@pytest.fixture
async def session_redis(clock):
    store = InMemoryRedisService(clock, name="SessionStore")
    await store.initialize()
    return store


@pytest.fixture
def rate_limiter(counter_store, test_settings, clock):
    return RateLimiter(counter_store, test_settings, clock=clock)


@pytest.fixture
def session_store(session_redis, test_settings):
    return SessionStore(session_redis, test_settings.SESSION_ABSOLUTE_HOURS * 3600)


@pytest.fixture
def session_manager(session_store, rate_limiter, test_settings, clock):
    return SessionManager(session_store, rate_limiter, test_settings, clock=clock)


@pytest.fixture
def threat_sink():
    return RecordingThreatSink()


@pytest.fixture
def security_monitor(session_manager, rate_limiter, counter_store, test_settings, threat_sink, clock):
    return SecurityMonitor(
        session_manager,
        rate_limiter,
        counter_store,
        test_settings,
        threat_sink=threat_sink,
        clock=clock,
    )
