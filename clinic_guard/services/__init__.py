"""
Security services.

- RedisService: async store client shared by the components
- RateLimiter: sliding windows and escalating blocks
- SessionManager: session lifecycle on the persistent session store
- SecurityMonitor: threat heuristics and automatic responses
"""

from .redis_service import RedisService, RedisConfig, create_redis_service
from .rate_limiter import RateLimiter
from .session_store import SessionStore
from .session_manager import SessionManager
from .security_monitor import SecurityMonitor, LoggingThreatSink

__all__ = [
    'RedisService',
    'RedisConfig',
    'create_redis_service',
    'RateLimiter',
    'SessionStore',
    'SessionManager',
    'SecurityMonitor',
    'LoggingThreatSink',
]
