# clinic_guard/models/security_models.py
"""
Typed records for rate limiting, sessions and threats.

Store-backed records are Pydantic models serialized only at the store
boundary; call results are plain dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class BlockState(BaseModel):
    """Active block for a (limit type, identifier) pair"""
    model_config = ConfigDict(populate_by_name=True)

    level: int
    blocked_at: int = Field(alias="blockTime")
    unblock_at: int = Field(alias="unblockTime")
    identifier: str
    limit_type: str = Field(alias="type")
    reason: str = "rate_limit_exceeded"

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class EscalationState(BaseModel):
    """Repeat-offence level, kept for 24h independently of any block"""
    model_config = ConfigDict(populate_by_name=True)

    level: int
    last_escalation: int = Field(alias="lastEscalation")

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass
class RateLimitResult:
    """
    Outcome of a rate limit check.

    degraded=True means the store was unreachable and the request was
    allowed by default, not by policy.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: Optional[int] = None
    block_level: Optional[int] = None
    escalated: bool = False
    degraded: bool = False
    whitelisted: bool = False

    def to_headers(self, include_retry_after: bool = False) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
        }
        if include_retry_after:
            headers["Retry-After"] = str(self.retry_after if self.retry_after is not None else 60)
        return headers


@dataclass
class RateLimitStats:
    current_count: int
    is_blocked: bool
    next_reset_time: int
    block_level: Optional[int] = None
    escalation_level: Optional[int] = None
    whitelisted: bool = False


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    ACTIVE = "active"
    IDLE_EXPIRED = "idle_expired"
    ABSOLUTE_EXPIRED = "absolute_expired"
    REVOKED = "revoked"


class InvalidReason(str, Enum):
    INVALID_TOKEN = "invalid_token"
    SESSION_EXPIRED = "session_expired"
    IDLE_TIMEOUT = "idle_timeout"
    STORE_UNAVAILABLE = "store_unavailable"


class RevokeReason(str, Enum):
    MANUAL_LOGOUT = "manual_logout"
    TIMEOUT = "timeout"
    SECURITY_VIOLATION = "security_violation"
    MAX_SESSIONS_EXCEEDED = "max_sessions_exceeded"


class DeviceInfo(BaseModel):
    device: str = "desktop"
    os: str = "unknown"
    browser: str = "unknown"
    version: Optional[str] = None
    screen: Optional[str] = None
    timezone: Optional[str] = None


class Session(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    clinic_id: str
    role: str = "staff"
    token_hash: str
    ip_address: Optional[str] = None
    last_ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    device_fingerprint: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    idle_timeout_at: datetime
    absolute_timeout_at: datetime
    idle_timeout_minutes: int
    is_active: bool = True
    status: SessionStatus = SessionStatus.ACTIVE
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    def is_live_at(self, now: datetime) -> bool:
        """Active and inside both the idle and the absolute window"""
        return self.is_active and now < self.idle_timeout_at and now < self.absolute_timeout_at

    def public_view(self) -> Dict[str, Any]:
        """Session info for API responses, without the token hash"""
        return self.model_dump(mode="json", exclude={"token_hash"})


@dataclass
class SessionValidationResult:
    is_valid: bool
    session: Optional[Session] = None
    reason: Optional[InvalidReason] = None
    degraded: bool = False


class DeviceFingerprint(BaseModel):
    user_id: str
    fingerprint_hash: str
    is_trusted: bool = False
    trust_score: int = 0
    first_seen: datetime = Field(default_factory=utcnow)
    last_used: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Threats
# ---------------------------------------------------------------------------

class ThreatType(str, Enum):
    BRUTE_FORCE_ATTACK = "brute_force_attack"
    SESSION_HIJACK = "session_hijack"
    LOCATION_ANOMALY = "location_anomaly"
    MULTIPLE_DEVICES = "multiple_devices"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ThreatAction(str, Enum):
    LOG = "log"
    ALERT = "alert"
    BLOCK_IP = "block_ip"
    TERMINATE_SESSION = "terminate_session"


class ThreatEvent(BaseModel):
    threat_type: ThreatType
    severity: Severity
    description: str
    evidence: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    clinic_id: Optional[str] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SecurityAlert(ThreatEvent):
    """A handled threat as kept in the per-clinic history"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    actions_taken: List[ThreatAction] = Field(default_factory=list)


@dataclass
class SecurityStatistics:
    total_events: int = 0
    critical_threats: int = 0
    blocked_ips: int = 0
    suspicious_logins: int = 0
    events_by_type: Dict[str, int] = field(default_factory=dict)
    events_by_day: List[Dict[str, Any]] = field(default_factory=list)


class LoginAttempt(BaseModel):
    ip_address: str
    user_agent: str = ""
    success: bool
    user_id: Optional[str] = None
    email: Optional[str] = None
    clinic_id: Optional[str] = None
    failure_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ObservedActivity(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None


@dataclass
class AnomalyCheck:
    """Intermediate verdict of a single heuristic"""
    is_anomalous: bool
    confidence: float = 0.0
    reasons: List[str] = field(default_factory=list)
