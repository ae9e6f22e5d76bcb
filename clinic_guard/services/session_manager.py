# clinic_guard/services/session_manager.py
"""
Session lifecycle: issue, validate, refresh and revoke.

Every session carries two independent clocks. The idle deadline moves
forward on activity; the absolute deadline is fixed at creation. Role-based
idle windows are resolved once, at creation, and stored on the record.

Validation fails closed: a store outage yields an invalid result with
reason store_unavailable and degraded=True, never an exception.
"""

import hashlib
import json
import logging
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from clinic_guard.core.config import Settings, settings as default_settings
from clinic_guard.core.exceptions import (
    RedisServiceError,
    SessionCreationDenied,
    session_store_error,
)
from clinic_guard.core.rate_limit_config import LimitType, get_rate_limit_message
from clinic_guard.models.security_models import (
    DeviceFingerprint,
    DeviceInfo,
    InvalidReason,
    RevokeReason,
    Session,
    SessionStatus,
    SessionValidationResult,
)
from clinic_guard.services.rate_limiter import RateLimiter
from clinic_guard.services.session_store import SessionStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Compared against when no session matches, so unknown tokens take the same path
_NO_MATCH_HASH = hashlib.sha256(b"").hexdigest()


def hash_token(token: Optional[str]) -> str:
    """SHA-256 of the raw token; the token itself is never stored or inspected"""
    return hashlib.sha256((token or "").encode("utf-8", "surrogatepass")).hexdigest()


_BROWSER_PATTERNS = (
    ("Edge", re.compile(r"edg(?:e|a|ios)?/([\d.]+)")),
    ("Firefox", re.compile(r"(?:firefox|fxios)/([\d.]+)")),
    ("Chrome", re.compile(r"(?:chrome|crios)/([\d.]+)")),
    ("Safari", re.compile(r"version/([\d.]+).*safari")),
)


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """
    Coarse device, OS and browser classification of a User-Agent string.

    Unrecognized strings yield "unknown" for every field.
    """
    ua = (user_agent or "").lower()

    if "ipad" in ua or "tablet" in ua:
        device = "tablet"
    elif "mobile" in ua or "iphone" in ua or "android" in ua:
        device = "mobile"
    else:
        device = "desktop"

    if "iphone" in ua or "ipad" in ua or "ios" in ua:
        os_name = "iOS"
    elif "android" in ua:
        os_name = "Android"
    elif "windows" in ua:
        os_name = "Windows"
    elif "mac os" in ua or "macintosh" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        os_name = "unknown"

    browser = "unknown"
    version = None
    for name, pattern in _BROWSER_PATTERNS:
        match = pattern.search(ua)
        if match:
            browser, version = name, match.group(1)
            break
    else:
        if "safari" in ua:
            browser = "Safari"

    if os_name == "unknown" and browser == "unknown":
        device = "unknown"

    return DeviceInfo(device=device, os=os_name, browser=browser, version=version)


def compute_device_fingerprint(device_info: DeviceInfo) -> str:
    """Stable hash over the client characteristics that identify a device"""
    payload = json.dumps(
        {
            "device": device_info.device,
            "os": device_info.os,
            "browser": device_info.browser,
            "screen": device_info.screen,
            "timezone": device_info.timezone,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SessionManager:
    """
    Issues and checks sessions against the persistent session store.

    Session creation is gated by the session_creation rate limit and by the
    per-user concurrent session cap.
    """

    def __init__(
        self,
        session_store: SessionStore,
        rate_limiter: RateLimiter,
        settings: Optional[Settings] = None,
        clock: Clock = time.time
    ):
        self.store = session_store
        self.rate_limiter = rate_limiter
        self.settings = settings or default_settings
        self._clock = clock

        # Metrics for monitoring
        self._creation_count = 0
        self._validation_failures = 0
        self._revocation_count = 0

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @property
    def absolute_lifetime(self) -> timedelta:
        return timedelta(hours=self.settings.SESSION_ABSOLUTE_HOURS)

    async def create_session(
        self,
        user_id: str,
        clinic_id: str,
        device_info: Optional[DeviceInfo] = None,
        *,
        role: str = "staff",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Tuple[Session, str]:
        """
        Create a new session.

        Returns:
            Tuple of (Session, token). Only the token's hash is persisted;
            the token is handed to the client once.

        Raises:
            SessionCreationDenied: session_creation rate limit exceeded
            SessionStoreError: the session store is unavailable
        """
        identifier = ip_address or user_id
        limit = await self.rate_limiter.check_rate_limit(LimitType.SESSION_CREATION, identifier)
        if not limit.allowed:
            logger.warning(f"🚦 Session creation denied for user {user_id} from {identifier}")
            raise SessionCreationDenied(
                get_rate_limit_message(LimitType.SESSION_CREATION, limit.retry_after),
                result=limit,
            )

        if device_info is None:
            device_info = parse_user_agent(user_agent)

        now = self._now()
        idle_minutes = self.settings.idle_minutes_for_role(role)
        token = secrets.token_urlsafe(48)

        session = Session(
            user_id=user_id,
            clinic_id=clinic_id,
            role=role,
            token_hash=hash_token(token),
            ip_address=ip_address,
            last_ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
            device_fingerprint=compute_device_fingerprint(device_info),
            created_at=now,
            last_activity_at=now,
            idle_timeout_at=now + timedelta(minutes=idle_minutes),
            absolute_timeout_at=now + self.absolute_lifetime,
            idle_timeout_minutes=idle_minutes,
        )

        try:
            await self._enforce_session_cap(user_id, now)
            await self.store.add(session)
        except RedisServiceError as e:
            raise session_store_error(
                f"Could not create session: {e.message}", operation="create_session"
            )

        self._creation_count += 1
        logger.info(
            f"🔐 Created session {session.id[:8]}... for user {user_id} "
            f"(role={role}, idle={idle_minutes}min)"
        )
        return session, token

    async def _enforce_session_cap(self, user_id: str, now: datetime) -> None:
        """Revoke least-recently-active sessions until a new one fits"""
        active = [
            s for s in await self.store.get_user_sessions(user_id)
            if s.is_live_at(now)
        ]
        active.sort(key=lambda s: (s.last_activity_at, s.created_at))

        while active and len(active) >= self.settings.MAX_CONCURRENT_SESSIONS:
            oldest = active.pop(0)
            await self._revoke(oldest, RevokeReason.MAX_SESSIONS_EXCEEDED, now)

    async def validate_session(self, token: Optional[str]) -> SessionValidationResult:
        """
        Look up a session by token and check both deadlines.

        Every token, whatever its shape, is hashed and looked up the same way.
        """
        token_hash = hash_token(token)

        try:
            session_id = await self.store.get_id_by_token_hash(token_hash)
            session = await self.store.get(session_id) if session_id else None
        except RedisServiceError as e:
            logger.error(f"Session validation failed closed: {e.message}")
            return SessionValidationResult(
                is_valid=False, reason=InvalidReason.STORE_UNAVAILABLE, degraded=True
            )
        except ValueError as e:
            logger.error(f"Corrupt session record for lookup: {e}")
            session = None

        stored_hash = session.token_hash if session is not None else _NO_MATCH_HASH
        if not secrets.compare_digest(stored_hash, token_hash) or session is None:
            self._validation_failures += 1
            return SessionValidationResult(is_valid=False, reason=InvalidReason.INVALID_TOKEN)

        now = self._now()

        if not session.is_active:
            return SessionValidationResult(
                is_valid=False, session=session, reason=InvalidReason.SESSION_EXPIRED
            )

        if now >= session.idle_timeout_at:
            await self._expire(session, SessionStatus.IDLE_EXPIRED, now)
            return SessionValidationResult(
                is_valid=False, session=session, reason=InvalidReason.IDLE_TIMEOUT
            )

        if now >= session.absolute_timeout_at:
            await self._expire(session, SessionStatus.ABSOLUTE_EXPIRED, now)
            return SessionValidationResult(
                is_valid=False, session=session, reason=InvalidReason.SESSION_EXPIRED
            )

        return SessionValidationResult(is_valid=True, session=session)

    async def _expire(self, session: Session, status: SessionStatus, now: datetime) -> None:
        session.is_active = False
        session.status = status
        session.revoked_at = now
        session.revoked_reason = RevokeReason.TIMEOUT.value
        try:
            written = await self.store.save_if_active(session)
        except RedisServiceError as e:
            # The verdict stands; the next validation repeats the check
            logger.error(f"Could not persist expiry of session {session.id[:8]}...: {e.message}")
            return
        if written:
            logger.info(f"⏰ Session {session.id[:8]}... expired ({status.value})")

    async def refresh_session(self, token: Optional[str], ip_address: Optional[str] = None) -> bool:
        """
        Record activity on a live session and move its idle deadline.

        The absolute deadline is never extended. The address seen at creation
        is kept; the latest one goes to last_ip_address.

        Returns:
            True if a live session was refreshed

        Raises:
            SessionStoreError: the session store is unavailable
        """
        token_hash = hash_token(token)
        try:
            session_id = await self.store.get_id_by_token_hash(token_hash)
            session = await self.store.get(session_id) if session_id else None

            now = self._now()
            if session is None or not session.is_live_at(now):
                return False

            session.last_activity_at = now
            session.idle_timeout_at = now + timedelta(minutes=session.idle_timeout_minutes)
            if ip_address:
                session.last_ip_address = ip_address

            if not await self.store.save_if_active(session):
                logger.info(f"Session {session.id[:8]}... ended during refresh; activity not recorded")
                return False
        except RedisServiceError as e:
            raise session_store_error(
                f"Could not refresh session: {e.message}", operation="refresh_session"
            )

        return True

    async def revoke_session(self, session_id: str, reason: RevokeReason) -> bool:
        """
        Revoke a session. Revoked sessions are terminal.

        Returns:
            True if an active session was revoked, False if unknown or already inactive

        Raises:
            SessionStoreError: the session store is unavailable
        """
        reason = RevokeReason(reason)
        try:
            session = await self.store.get(session_id)
            if session is None or not session.is_active:
                return False
            revoked = await self._revoke(session, reason, self._now())
        except RedisServiceError as e:
            raise session_store_error(
                f"Could not revoke session: {e.message}",
                session_id=session_id,
                operation="revoke_session"
            )
        return revoked

    async def _revoke(self, session: Session, reason: RevokeReason, now: datetime) -> bool:
        session.is_active = False
        session.status = SessionStatus.REVOKED
        session.revoked_at = now
        session.revoked_reason = reason.value
        if not await self.store.save_if_active(session):
            logger.info(f"Session {session.id[:8]}... was already inactive")
            return False

        self._revocation_count += 1
        logger.warning(
            f"🔒 Revoked session {session.id[:8]}... of user {session.user_id} ({reason.value})"
        )
        return True

    async def get_user_sessions(
        self,
        user_id: str,
        clinic_id: Optional[str] = None,
        active_only: bool = True
    ) -> List[Session]:
        """Sessions of a user, most recent activity first"""
        try:
            sessions = await self.store.get_user_sessions(user_id)
        except RedisServiceError as e:
            raise session_store_error(
                f"Could not list sessions: {e.message}", operation="get_user_sessions"
            )

        now = self._now()
        if active_only:
            sessions = [s for s in sessions if s.is_live_at(now)]
        if clinic_id is not None:
            sessions = [s for s in sessions if s.clinic_id == clinic_id]

        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    async def get_active_session_count(self, user_id: str) -> int:
        return len(await self.get_user_sessions(user_id))

    async def revoke_other_sessions(self, current_token: Optional[str], user_id: str) -> int:
        """Log out every other device of the user; returns how many were revoked"""
        current_hash = hash_token(current_token)
        now = self._now()

        revoked = 0
        try:
            for session in await self.store.get_user_sessions(user_id):
                if not session.is_live_at(now):
                    continue
                if secrets.compare_digest(session.token_hash, current_hash):
                    continue
                if await self._revoke(session, RevokeReason.MANUAL_LOGOUT, now):
                    revoked += 1
        except RedisServiceError as e:
            raise session_store_error(
                f"Could not revoke other sessions: {e.message}", operation="revoke_other_sessions"
            )

        return revoked

    async def get_device(self, user_id: str, fingerprint_hash: str) -> Optional[DeviceFingerprint]:
        try:
            return await self.store.get_device(user_id, fingerprint_hash)
        except RedisServiceError as e:
            raise session_store_error(f"Could not load device: {e.message}", operation="get_device")

    async def save_device(self, device: DeviceFingerprint) -> None:
        try:
            await self.store.save_device(device)
        except RedisServiceError as e:
            raise session_store_error(f"Could not save device: {e.message}", operation="save_device")

    def get_metrics(self) -> Dict[str, int]:
        return {
            "total_created": self._creation_count,
            "validation_failures": self._validation_failures,
            "revoked": self._revocation_count,
        }
