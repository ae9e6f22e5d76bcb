# tests/services/test_redis_service.py
"""
Unit tests for the Redis Service.

Uses mock-first approach to test without requiring a real Redis instance.
"""
import asyncio
import json
import pytest
from unittest.mock import Mock, AsyncMock, patch

from clinic_guard.services.redis_service import (
    RedisService,
    RedisConfig,
    SESSION_STORE_URL_ENV_VARS,
    create_redis_service,
)
from clinic_guard.core.exceptions import RedisServiceError, ServiceError


@pytest.fixture
def mock_config():
    """Create a test configuration"""
    return RedisConfig(
        url="redis://localhost:6379/0",
        decode_responses=True,
        socket_timeout=5.0,
        operation_timeout=0.5
    )


@pytest.fixture
def mock_pipeline():
    """Pipeline whose commands are queued synchronously and executed once"""
    pipe = Mock()
    pipe.execute = AsyncMock(return_value=[0, 1, 1, True])
    return pipe


@pytest.fixture
def mock_redis_client(mock_pipeline):
    """Create a mock Redis client"""
    client = AsyncMock()

    client.ping = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.setex = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.exists = AsyncMock(return_value=1)
    client.expire = AsyncMock(return_value=True)
    client.ttl = AsyncMock(return_value=3600)
    client.sadd = AsyncMock(return_value=1)
    client.srem = AsyncMock(return_value=1)
    client.smembers = AsyncMock(return_value={"a", b"b"})
    client.info = AsyncMock(return_value={
        "redis_version": "7.0.0",
        "connected_clients": 5,
        "used_memory_human": "1.5M"
    })
    client.aclose = AsyncMock()
    client.pipeline = Mock(return_value=mock_pipeline)

    return client


@pytest.fixture
async def redis_service(mock_config, mock_redis_client):
    """Create a Redis service with mocked client"""
    service = RedisService(mock_config)

    with patch('clinic_guard.services.redis_service.redis.from_url', return_value=mock_redis_client):
        await service.initialize()

    return service


class TestRedisServiceLifecycle:
    """Initialization, configuration and shutdown"""

    async def test_initialization(self, mock_config, mock_redis_client):
        """Test service initialization"""
        service = RedisService(mock_config)

        assert service.config == mock_config
        assert not service.is_initialized

        with patch('clinic_guard.services.redis_service.redis.from_url', return_value=mock_redis_client):
            await service.initialize()

        assert service.is_initialized
        assert service.is_connected()
        mock_redis_client.ping.assert_called_once()

    async def test_initialization_is_idempotent(self, mock_config, mock_redis_client):
        service = RedisService(mock_config)

        with patch('clinic_guard.services.redis_service.redis.from_url', return_value=mock_redis_client) as from_url:
            await service.initialize()
            await service.ensure_initialized()
            await service.initialize()

        from_url.assert_called_once()

    async def test_initialization_from_env(self):
        """Test initialization from environment variables"""
        with patch.dict('os.environ', {
            'REDIS_DIRECT_URI': 'redis://direct:6379',
            'REDIS_URL': 'redis://standard:6379'
        }):
            service = RedisService()

            assert service.config.url == 'redis://direct:6379'
            assert service._url_source == 'REDIS_DIRECT_URI'

    async def test_session_store_reads_its_own_variable(self):
        """The session store never falls back to the counter store URL"""
        with patch.dict('os.environ', {'REDIS_URL': 'redis://counter:6379'}, clear=True):
            service = RedisService(url_env_vars=SESSION_STORE_URL_ENV_VARS, name="SessionStore")

            assert service.config.url is None

        with patch.dict('os.environ', {'SESSION_REDIS_URL': 'redis://sessions:6379'}, clear=True):
            service = RedisService(url_env_vars=SESSION_STORE_URL_ENV_VARS, name="SessionStore")

            assert service.config.url == 'redis://sessions:6379'

    async def test_no_redis_url(self):
        """Test behavior when no Redis URL is configured"""
        with patch.dict('os.environ', {}, clear=True):
            service = RedisService()

            await service.initialize()
            assert service.is_initialized
            assert not service.is_connected()

            with pytest.raises(RedisServiceError):
                await service.get("any")

    async def test_unreachable_at_startup_keeps_client(self, mock_config):
        """A failed ping is logged; the pool reconnects later"""
        service = RedisService(mock_config)

        failing_client = AsyncMock()
        failing_client.ping.side_effect = Exception("Connection refused")

        with patch('clinic_guard.services.redis_service.redis.from_url', return_value=failing_client):
            await service.initialize()

        assert service.is_initialized
        assert service.is_connected()

    async def test_client_creation_failure_raises_service_error(self, mock_config):
        service = RedisService(mock_config)

        with patch('clinic_guard.services.redis_service.redis.from_url', side_effect=ValueError("bad url")):
            with pytest.raises(ServiceError):
                await service.initialize()

        assert not service.is_initialized

    async def test_shutdown(self, redis_service, mock_redis_client):
        await redis_service.shutdown()

        mock_redis_client.aclose.assert_called_once()
        assert not redis_service.is_initialized
        assert not redis_service.is_connected()

    async def test_create_redis_service(self, mock_redis_client):
        with patch('clinic_guard.services.redis_service.redis.from_url', return_value=mock_redis_client):
            service = await create_redis_service(
                url="redis://localhost:6379/1", name="CounterStore", operation_timeout=1.5
            )

        assert service.is_initialized
        assert service.service_name == "CounterStore"
        assert service.config.operation_timeout == 1.5


class TestRedisServiceOperations:
    """Key/value, set and error conversion"""

    async def test_get_json(self, redis_service, mock_redis_client):
        """Test getting JSON value with auto-deserialization"""
        mock_redis_client.get.return_value = '{"level": 1, "lastEscalation": 42}'

        result = await redis_service.get("rate_limit:api_calls:1.2.3.4:escalation")

        assert result == {"level": 1, "lastEscalation": 42}

    async def test_get_plain_string(self, redis_service, mock_redis_client):
        mock_redis_client.get.return_value = "not json"

        assert await redis_service.get("key") == "not json"

    async def test_get_without_deserialization(self, redis_service, mock_redis_client):
        mock_redis_client.get.return_value = '{"a": 1}'

        assert await redis_service.get("key", deserialize_json=False) == '{"a": 1}'

    async def test_get_default(self, redis_service, mock_redis_client):
        mock_redis_client.get.return_value = None

        assert await redis_service.get("missing_key", default="fallback") == "fallback"

    async def test_set_json(self, redis_service, mock_redis_client):
        """Test setting dict value with auto-serialization"""
        data = {"level": 0, "blockTime": 1, "unblockTime": 61}

        result = await redis_service.set("test_key", data)

        assert result is True
        mock_redis_client.set.assert_called_once_with("test_key", json.dumps(data))

    async def test_set_with_ttl(self, redis_service, mock_redis_client):
        await redis_service.set("test_key", "value", ttl=3600)

        mock_redis_client.setex.assert_called_once_with("test_key", 3600, "value")

    async def test_delete_and_exists(self, redis_service, mock_redis_client):
        mock_redis_client.delete.return_value = 2

        assert await redis_service.delete("key1", "key2") == 2
        mock_redis_client.delete.assert_called_once_with("key1", "key2")

        assert await redis_service.exists("key1") == 1
        assert await redis_service.delete() == 0

    async def test_smembers_decodes_bytes(self, redis_service):
        assert sorted(await redis_service.smembers("user_sessions:u1")) == ["a", "b"]

    async def test_driver_error_becomes_redis_service_error(self, redis_service, mock_redis_client):
        mock_redis_client.get.side_effect = ConnectionError("reset by peer")

        with pytest.raises(RedisServiceError) as exc_info:
            await redis_service.get("some_key")

        assert exc_info.value.key == "some_key"
        assert exc_info.value.operation == "get"
        assert redis_service.get_metrics()["failed_operations"] == {"get": 1}

    async def test_disconnected_calls_are_counted(self):
        with patch.dict('os.environ', {}, clear=True):
            service = RedisService(name="CounterStore")
        await service.initialize()

        with pytest.raises(RedisServiceError):
            await service.record_event("k", now=1000, window=60, ttl=120)

        metrics = service.get_metrics()
        assert metrics["connected"] is False
        assert metrics["failed_operations"] == {"record_event": 1}

    async def test_operation_timeout(self, redis_service, mock_redis_client):
        """A slow store call is cut off by the per-call timeout"""
        redis_service.config.operation_timeout = 0.01

        async def slow_get(key):
            await asyncio.sleep(0.1)
            return "late"

        mock_redis_client.get.side_effect = slow_get

        with pytest.raises(RedisServiceError) as exc_info:
            await redis_service.get("slow_key")

        assert "timed out" in exc_info.value.message
        await asyncio.sleep(0.15)


class TestSlidingWindowBatch:
    """The atomic MULTI/EXEC batch behind the rate limiter"""

    async def test_record_event_runs_one_transaction(self, redis_service, mock_redis_client, mock_pipeline):
        mock_pipeline.execute.return_value = [2, 1, 7, True]

        count = await redis_service.record_event("rate_limit:api_calls:1.2.3.4", now=1000, window=60, ttl=120)

        assert count == 7
        mock_redis_client.pipeline.assert_called_once_with(transaction=True)
        mock_pipeline.zremrangebyscore.assert_called_once_with("rate_limit:api_calls:1.2.3.4", 0, 940)
        member_scores = mock_pipeline.zadd.call_args[0][1]
        assert list(member_scores.values()) == [1000]
        mock_pipeline.zcard.assert_called_once_with("rate_limit:api_calls:1.2.3.4")
        mock_pipeline.expire.assert_called_once_with("rate_limit:api_calls:1.2.3.4", 120)
        mock_pipeline.execute.assert_awaited_once()

    async def test_record_event_members_are_unique(self, redis_service, mock_pipeline):
        """Two events in the same second must both be counted"""
        await redis_service.record_event("k", now=1000, window=60, ttl=120)
        await redis_service.record_event("k", now=1000, window=60, ttl=120)

        first = mock_pipeline.zadd.call_args_list[0][0][1]
        second = mock_pipeline.zadd.call_args_list[1][0][1]
        assert first.keys() != second.keys()

    async def test_count_events_does_not_insert(self, redis_service, mock_pipeline):
        mock_pipeline.execute.return_value = [0, 3]

        assert await redis_service.count_events("k", now=1000, window=60) == 3
        mock_pipeline.zadd.assert_not_called()

    async def test_atomic_write(self, redis_service, mock_redis_client, mock_pipeline):
        await redis_service.atomic_write(
            set_items={
                "rate_limit:login_attempts:ip:block": ({"level": 0}, 120),
                "flag": ("1", None),
            },
            delete_keys=["rate_limit:login_attempts:ip"],
        )

        mock_redis_client.pipeline.assert_called_once_with(transaction=True)
        mock_pipeline.setex.assert_called_once_with(
            "rate_limit:login_attempts:ip:block", 120, json.dumps({"level": 0})
        )
        mock_pipeline.set.assert_called_once_with("flag", "1")
        mock_pipeline.delete.assert_called_once_with("rate_limit:login_attempts:ip")
        mock_pipeline.execute.assert_awaited_once()

    async def test_pipeline_failure_is_converted(self, redis_service, mock_pipeline):
        mock_pipeline.execute.side_effect = OSError("connection lost")

        with pytest.raises(RedisServiceError):
            await redis_service.record_event("k", now=1000, window=60, ttl=120)


class TestConditionalWrites:
    """Check-and-set and capped lists"""

    async def test_set_if_true_runs_script_on_the_record(self, redis_service, mock_redis_client):
        mock_redis_client.eval = AsyncMock(return_value=1)

        written = await redis_service.set_if_true("session:abc", {"is_active": True}, "is_active", 3600)

        assert written is True
        script, numkeys, key, value, ttl, field = mock_redis_client.eval.call_args[0]
        assert "cjson.decode" in script
        assert (numkeys, key, ttl, field) == (1, "session:abc", 3600, "is_active")
        assert json.loads(value) == {"is_active": True}

    async def test_set_if_true_reports_refused_write(self, redis_service, mock_redis_client):
        mock_redis_client.eval = AsyncMock(return_value=0)

        assert await redis_service.set_if_true("session:abc", {}, "is_active", 60) is False

    async def test_set_if_true_failure_is_converted(self, redis_service, mock_redis_client):
        mock_redis_client.eval = AsyncMock(side_effect=OSError("connection lost"))

        with pytest.raises(RedisServiceError):
            await redis_service.set_if_true("session:abc", {}, "is_active", 60)

    async def test_push_capped_trims_in_one_transaction(self, redis_service, mock_redis_client, mock_pipeline):
        mock_pipeline.execute.return_value = [51, True, 50, True]

        length = await redis_service.push_capped("security:events:clinic-1", {"a": 1}, 50, 600)

        assert length == 50
        mock_redis_client.pipeline.assert_called_once_with(transaction=True)
        mock_pipeline.lpush.assert_called_once_with("security:events:clinic-1", json.dumps({"a": 1}))
        mock_pipeline.ltrim.assert_called_once_with("security:events:clinic-1", 0, 49)
        mock_pipeline.expire.assert_called_once_with("security:events:clinic-1", 600)

    async def test_list_range_decodes_items(self, redis_service, mock_redis_client):
        mock_redis_client.lrange = AsyncMock(return_value=['{"a": 1}', '{"a": 2}'])

        assert await redis_service.list_range("k", 0, 1) == [{"a": 1}, {"a": 2}]
        mock_redis_client.lrange.assert_awaited_once_with("k", 0, 1)


class TestHealthCheck:

    async def test_health_check_connected(self, redis_service):
        health = await redis_service.health_check()

        assert health["healthy"] is True
        assert health["status"] == "connected"
        assert health["details"]["redis_version"] == "7.0.0"

    async def test_health_check_disabled(self):
        with patch.dict('os.environ', {}, clear=True):
            service = RedisService()

        health = await service.health_check()

        assert health["healthy"] is False
        assert health["status"] == "disabled"

    async def test_health_check_error(self, redis_service, mock_redis_client):
        mock_redis_client.ping.side_effect = Exception("down")

        health = await redis_service.health_check()

        assert health["healthy"] is False
        assert health["status"] == "error"
