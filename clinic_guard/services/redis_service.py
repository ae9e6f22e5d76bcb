# clinic_guard/services/redis_service.py
"""
Async Redis client for ClinicGuard's two stores.

The same class backs the counter store (rate limit windows, blocks,
escalation, whitelist, login failure counters) and the session store
(session records, token index, per-user sets, device records). Values are
JSON encoded; every call runs under a per-call timeout; sliding-window
updates run as one MULTI/EXEC batch.

Every failure, including "not connected", is raised as RedisServiceError.
Whether that fails open or closed is the caller's decision.
"""
import asyncio
import os
import json
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Sequence, Tuple, Awaitable
from uuid import uuid4

import redis.asyncio as redis

from clinic_guard.core.service_base import BaseService, StoreConfig
from clinic_guard.core.exceptions import RedisServiceError, redis_error

logger = logging.getLogger(__name__)

COUNTER_STORE_URL_ENV_VARS = (
    "REDIS_DIRECT_URI",
    "REDIS_DIRECT_URL",
    "REDIS_URL",
)

SESSION_STORE_URL_ENV_VARS = (
    "SESSION_REDIS_URL",
)

# Replace a JSON record only while one of its boolean fields is still true.
# KEYS[1] record key; ARGV[1] new value, ARGV[2] ttl seconds, ARGV[3] field name
SET_IF_TRUE_LUA = """
local current = redis.call('GET', KEYS[1])
if not current then
    return 0
end
local ok, record = pcall(cjson.decode, current)
if not ok or type(record) ~= 'table' or record[ARGV[3]] ~= true then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[2]))
return 1
"""


@dataclass
class RedisConfig(StoreConfig):
    """Connection pool settings for one Redis store"""
    decode_responses: bool = True
    socket_timeout: float = 5.0
    max_connections: int = 50
    retry_on_timeout: bool = True
    health_check_interval: int = 30


class RedisService(BaseService[RedisConfig]):
    """
    Async Redis service backing the counter store and the session store.
    """

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        url_env_vars: Sequence[str] = COUNTER_STORE_URL_ENV_VARS,
        name: str = "RedisService"
    ):
        """
        Args:
            config: Explicit connection settings; None reads the URL from url_env_vars
            url_env_vars: Checked in order, first one set wins
            name: Label for logs, health output and failure metrics
        """
        self._url_source = None
        self._url_env_vars = tuple(url_env_vars)

        super().__init__(config or RedisConfig(), name, logger)

        if config is None:
            self.config.url = self._get_redis_url()

    def _get_redis_url(self) -> Optional[str]:
        """Get Redis URL from the first environment variable that is set."""
        for var in self._url_env_vars:
            if url := os.environ.get(var):
                self._url_source = var
                self.logger.info(f"Using Redis URL from {var}")
                return url

        return None

    async def _initialize_client(self) -> Optional[redis.Redis]:
        """Build the pool; an unreachable server is logged, not fatal"""
        if not self.config.url:
            self.logger.warning(
                f"{self.service_name} disabled - set one of: {', '.join(self._url_env_vars)}"
            )
            return None

        client = redis.from_url(
            self.config.url,
            decode_responses=self.config.decode_responses,
            socket_timeout=self.config.socket_timeout,
            max_connections=self.config.max_connections,
            retry_on_timeout=self.config.retry_on_timeout,
            health_check_interval=self.config.health_check_interval
        )

        try:
            await client.ping()
            self.logger.info(f"{self.service_name} connection successful")
        except Exception as e:
            # Keep the client: the pool reconnects once Redis is reachable again
            self.logger.warning(f"{self.service_name} not reachable at startup: {e}")

        return client

    async def _call(self, operation: str, key: Optional[str], awaitable: Awaitable[Any]) -> Any:
        """
        Run one store call with the configured timeout.

        The call is shielded: if the surrounding request is cancelled or the
        timeout fires, the command already sent is allowed to finish.
        """
        try:
            return await asyncio.wait_for(
                asyncio.shield(awaitable),
                timeout=self.config.operation_timeout
            )
        except asyncio.TimeoutError:
            self._record_failure(operation)
            self.logger.error(f"{self.service_name} {operation} timed out for key '{key}'")
            raise redis_error(f"Redis {operation} timed out", key=key, operation=operation)
        except RedisServiceError:
            self._record_failure(operation)
            raise
        except Exception as e:
            self._record_failure(operation)
            self.logger.error(f"{self.service_name} {operation} failed for key '{key}': {e}")
            raise redis_error(f"Redis {operation} failed: {e}", key=key, operation=operation)

    def _require_client(self, operation: str, key: Optional[str] = None) -> redis.Redis:
        if not self._client:
            self._record_failure(operation)
            raise redis_error(
                f"{self.service_name} is not connected", key=key, operation=operation
            )
        return self._client

    @staticmethod
    def _serialize(value: Any) -> Any:
        if not isinstance(value, (str, bytes)):
            return json.dumps(value)
        return value

    @staticmethod
    def _deserialize(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass
        return value

    async def get(
        self,
        key: str,
        default: Any = None,
        deserialize_json: bool = True
    ) -> Any:
        """
        Read a key, decoding JSON unless deserialize_json is False.

        Missing keys return `default`; store failures raise.
        """
        client = self._require_client("get", key)
        value = await self._call("get", key, client.get(key))

        if value is None:
            return default
        return self._deserialize(value) if deserialize_json else value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        serialize_json: bool = True
    ) -> bool:
        """Write a key, JSON-encoding non-strings; ttl in seconds uses SETEX"""
        client = self._require_client("set", key)

        if serialize_json:
            value = self._serialize(value)

        command = client.setex(key, ttl, value) if ttl else client.set(key, value)
        await self._call("set", key, command)
        return True

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = self._require_client("delete", keys[0])
        return await self._call("delete", keys[0], client.delete(*keys))

    async def exists(self, *keys: str) -> int:
        """How many of `keys` are present"""
        if not keys:
            return 0
        client = self._require_client("exists", keys[0])
        return await self._call("exists", keys[0], client.exists(*keys))

    async def expire(self, key: str, seconds: int) -> bool:
        client = self._require_client("expire", key)
        return bool(await self._call("expire", key, client.expire(key, seconds)))

    async def ttl(self, key: str) -> int:
        """Remaining seconds; Redis conventions -1 (no TTL) and -2 (missing) pass through"""
        client = self._require_client("ttl", key)
        return await self._call("ttl", key, client.ttl(key))

    async def sadd(self, key: str, *members: str) -> int:
        """Add members to a set"""
        client = self._require_client("sadd", key)
        return await self._call("sadd", key, client.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        """Remove members from a set"""
        client = self._require_client("srem", key)
        return await self._call("srem", key, client.srem(key, *members))

    async def smembers(self, key: str) -> List[str]:
        """All members of a set, decoded to strings"""
        client = self._require_client("smembers", key)
        members = await self._call("smembers", key, client.smembers(key))
        return [m.decode() if isinstance(m, bytes) else m for m in members]

    async def record_event(self, key: str, now: int, window: int, ttl: int) -> int:
        """
        Record one event in a sliding window and return the window count.

        Purge, insert, count and TTL refresh run as one MULTI/EXEC batch so
        concurrent requests on the same key never interleave.

        Args:
            key: Sorted set holding event timestamps
            now: Current epoch seconds (score of the new entry)
            window: Window length in seconds
            ttl: TTL applied to the key

        Returns:
            Cardinality of the window after insertion
        """
        client = self._require_client("record_event", key)

        pipe = client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - window)
        pipe.zadd(key, {f"{now}-{uuid4().hex}": now})
        pipe.zcard(key)
        pipe.expire(key, ttl)

        results = await self._call("record_event", key, pipe.execute())
        return int(results[2] or 0)

    async def count_events(self, key: str, now: int, window: int) -> int:
        """Purge expired entries and return the window count without inserting"""
        client = self._require_client("count_events", key)

        pipe = client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - window)
        pipe.zcard(key)

        results = await self._call("count_events", key, pipe.execute())
        return int(results[1] or 0)

    async def atomic_write(
        self,
        set_items: Optional[Dict[str, Tuple[Any, Optional[int]]]] = None,
        delete_keys: Sequence[str] = ()
    ) -> None:
        """
        Write and delete several keys in one MULTI/EXEC batch.

        Args:
            set_items: key -> (value, ttl); values are JSON-serialized
            delete_keys: keys removed in the same batch
        """
        set_items = set_items or {}
        first_key = next(iter(set_items), None) or (delete_keys[0] if delete_keys else None)
        client = self._require_client("atomic_write", first_key)

        pipe = client.pipeline(transaction=True)
        for key, (value, ttl) in set_items.items():
            if ttl:
                pipe.setex(key, ttl, self._serialize(value))
            else:
                pipe.set(key, self._serialize(value))
        if delete_keys:
            pipe.delete(*delete_keys)

        await self._call("atomic_write", first_key, pipe.execute())

    async def set_if_true(self, key: str, value: Any, field: str, ttl: int) -> bool:
        """
        Overwrite a JSON record only if the stored copy still has `field` set to true.

        The check and the write run as one server-side script, so a record
        flipped to false by a concurrent writer is never resurrected.

        Returns:
            True if the write happened, False if the record is missing or the field is not true
        """
        client = self._require_client("set_if_true", key)
        written = await self._call(
            "set_if_true",
            key,
            client.eval(SET_IF_TRUE_LUA, 1, key, self._serialize(value), ttl, field)
        )
        return int(written or 0) == 1

    async def push_capped(self, key: str, value: Any, max_length: int, ttl: int) -> int:
        """LPUSH a JSON value, trim the list to max_length and refresh its TTL in one batch"""
        client = self._require_client("push_capped", key)

        pipe = client.pipeline(transaction=True)
        pipe.lpush(key, self._serialize(value))
        pipe.ltrim(key, 0, max_length - 1)
        pipe.llen(key)
        pipe.expire(key, ttl)

        results = await self._call("push_capped", key, pipe.execute())
        return int(results[2] or 0)

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        """Decoded list items, newest first for lists filled by push_capped"""
        client = self._require_client("list_range", key)
        items = await self._call("list_range", key, client.lrange(key, start, end))
        return [self._deserialize(item) for item in items]

    def _health(self, healthy: bool, status: str, **details: Any) -> Dict[str, Any]:
        return {
            "healthy": healthy,
            "status": status,
            "details": {"url_source": self._url_source, **details},
        }

    async def health_check(self) -> Dict[str, Any]:
        """
        Ping the store and report pool-level info.

        Status is one of disabled, not_connected, connected or error. The
        store health endpoint turns any unhealthy store into a 503.
        """
        if not self.config.url:
            return self._health(False, "disabled", message=f"{self.service_name} not configured")
        if not self._client:
            return self._health(False, "not_connected", error="Client not initialized")

        try:
            await self._call("ping", None, self._client.ping())
            info = await self._call("info", None, self._client.info())
        except RedisServiceError as e:
            return self._health(False, "error", error=e.message)

        return self._health(
            True,
            "connected",
            redis_version=info.get("redis_version", "unknown"),
            connected_clients=info.get("connected_clients", 0),
            used_memory_human=info.get("used_memory_human", "unknown"),
        )

    async def _cleanup(self) -> None:
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                self.logger.warning(f"Error closing Redis client: {e}")

    def is_connected(self) -> bool:
        return self._client is not None


async def create_redis_service(
    url: Optional[str] = None,
    url_env_vars: Sequence[str] = COUNTER_STORE_URL_ENV_VARS,
    name: str = "RedisService",
    **kwargs
) -> RedisService:
    """
    Build and connect one store client.

    With no url the first set variable in url_env_vars is used; kwargs
    override RedisConfig pool fields either way.
    """
    config = RedisConfig(url=url, **kwargs) if url is not None else None
    service = RedisService(config, url_env_vars=url_env_vars, name=name)
    if config is None:
        for field_name, value in kwargs.items():
            setattr(service.config, field_name, value)

    await service.initialize()
    return service
