# clinic_guard/services/session_store.py
"""
Persistent session store.

Keys (session store, separate from the counter store):
    session:{id}                          Session JSON
    session_token:{sha256(token)}         session id
    user_sessions:{userId}                set of session ids
    device:{userId}:{fingerprintHash}     DeviceFingerprint JSON

Raises RedisServiceError on any store failure; SessionManager decides what
that means for the caller.
"""

import logging
from typing import List, Optional

from clinic_guard.models.security_models import DeviceFingerprint, Session
from clinic_guard.services.redis_service import RedisService

logger = logging.getLogger(__name__)

# Kept one day past the absolute timeout so terminal sessions stay inspectable
SESSION_RETENTION_SECONDS = 86400


class SessionStore:
    """Typed access to session and device records"""

    def __init__(self, redis_service: RedisService, absolute_lifetime_seconds: int):
        self.redis = redis_service
        self.record_ttl = absolute_lifetime_seconds + SESSION_RETENTION_SECONDS

    @staticmethod
    def session_key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def token_key(token_hash: str) -> str:
        return f"session_token:{token_hash}"

    @staticmethod
    def user_sessions_key(user_id: str) -> str:
        return f"user_sessions:{user_id}"

    @staticmethod
    def device_key(user_id: str, fingerprint_hash: str) -> str:
        return f"device:{user_id}:{fingerprint_hash}"

    async def add(self, session: Session) -> None:
        """Write a new session with its token index and user membership"""
        await self.redis.atomic_write(set_items={
            self.session_key(session.id): (session.model_dump(mode="json"), self.record_ttl),
            self.token_key(session.token_hash): (session.id, self.record_ttl),
        })
        await self.redis.sadd(self.user_sessions_key(session.user_id), session.id)
        await self.redis.expire(self.user_sessions_key(session.user_id), self.record_ttl)

    async def save_if_active(self, session: Session) -> bool:
        """
        Write a session back only while the stored record is still active.

        Inactive is terminal: a refresh racing a revoke or expiry loses.
        Returns False when the stored copy is gone or already inactive.
        """
        return await self.redis.set_if_true(
            self.session_key(session.id),
            session.model_dump(mode="json"),
            "is_active",
            self.record_ttl
        )

    async def get(self, session_id: str) -> Optional[Session]:
        data = await self.redis.get(self.session_key(session_id))
        if not isinstance(data, dict):
            return None
        return Session.model_validate(data)

    async def get_id_by_token_hash(self, token_hash: str) -> Optional[str]:
        session_id = await self.redis.get(self.token_key(token_hash), deserialize_json=False)
        return session_id if isinstance(session_id, str) else None

    async def get_user_session_ids(self, user_id: str) -> List[str]:
        return await self.redis.smembers(self.user_sessions_key(user_id))

    async def get_user_sessions(self, user_id: str) -> List[Session]:
        """All stored sessions of a user; ids whose record has expired are pruned"""
        sessions = []
        stale = []
        for session_id in await self.get_user_session_ids(user_id):
            session = await self.get(session_id)
            if session is None:
                stale.append(session_id)
            else:
                sessions.append(session)

        if stale:
            await self.redis.srem(self.user_sessions_key(user_id), *stale)
            logger.debug(f"Pruned {len(stale)} expired session ids for user {user_id}")

        return sessions

    async def get_device(self, user_id: str, fingerprint_hash: str) -> Optional[DeviceFingerprint]:
        data = await self.redis.get(self.device_key(user_id, fingerprint_hash))
        if not isinstance(data, dict):
            return None
        return DeviceFingerprint.model_validate(data)

    async def save_device(self, device: DeviceFingerprint) -> None:
        await self.redis.set(
            self.device_key(device.user_id, device.fingerprint_hash),
            device.model_dump(mode="json")
        )
