# clinic_guard/core/config.py
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class LimitRuleSettings(BaseModel):
    """Raw per-limit-type rule as read from the environment"""
    window_seconds: int
    max_events: int
    block_durations: List[int] = Field(default_factory=lambda: [300])


def _default_rate_limit_rules() -> Dict[str, LimitRuleSettings]:
    return {
        "login_attempts": LimitRuleSettings(
            window_seconds=900, max_events=5, block_durations=[60, 300, 3600, 86400]
        ),
        "api_calls": LimitRuleSettings(
            window_seconds=60, max_events=100, block_durations=[300]
        ),
        "session_creation": LimitRuleSettings(
            window_seconds=300, max_events=3, block_durations=[1800]
        ),
        "mfa_attempts": LimitRuleSettings(
            window_seconds=300, max_events=10, block_durations=[900]
        ),
    }


class Settings(BaseSettings):
    """Application settings, all overridable from the environment"""
    APP_NAME: str = "ClinicGuard"
    DEBUG: bool = False

    # Stores
    REDIS_URL: Optional[str] = None
    SESSION_REDIS_URL: Optional[str] = None
    STORE_CALL_TIMEOUT: float = 2.0

    # Rate limiting
    RATE_LIMIT_SLACK_SECONDS: int = 60
    ESCALATION_TTL_SECONDS: int = 86400
    RATE_LIMIT_RULES: Dict[str, LimitRuleSettings] = Field(default_factory=_default_rate_limit_rules)

    # Sessions
    ROLE_IDLE_MINUTES: Dict[str, int] = Field(
        default_factory=lambda: {"admin": 60, "staff": 30, "viewer": 15}
    )
    DEFAULT_IDLE_MINUTES: int = 30
    SESSION_ABSOLUTE_HOURS: int = 8
    MAX_CONCURRENT_SESSIONS: int = 3
    SESSION_COOKIE_NAME: str = "session_token"
    SESSION_COOKIE_SECURE: bool = True

    # Threat heuristics
    BRUTE_FORCE_THRESHOLD: int = 5
    BRUTE_FORCE_WINDOW_SECONDS: int = 900
    HIJACK_IP_WEIGHT: float = 0.6
    HIJACK_USER_AGENT_WEIGHT: float = 0.3
    HIJACK_DEVICE_WEIGHT: float = 0.3
    HIJACK_AUTOMATION_WEIGHT: float = 0.6
    AUTOMATION_USER_AGENT_PATTERN: str = r"(automated|headless|bot|crawler|spider)"
    LOCATION_HISTORY_MIN_SESSIONS: int = 3
    MULTI_DEVICE_WINDOW_MINUTES: int = 30
    MULTI_DEVICE_THRESHOLD: int = 3
    DEVICE_TRUST_INCREMENT: int = 10
    DEVICE_TRUST_THRESHOLD: int = 80
    THREAT_BLOCK_SECONDS: int = 3600
    THREAT_BLOCK_LIMIT_TYPES: List[str] = Field(
        default_factory=lambda: ["api_calls", "login_attempts"]
    )
    SECURITY_EVENT_HISTORY: int = 1000
    SECURITY_EVENT_RETENTION_DAYS: int = 90

    # Gateway
    LOGIN_PATH: str = "/admin/login"
    UNAUTHORIZED_PATH: str = "/unauthorized"
    PROTECTED_ROUTE_PREFIXES: List[str] = Field(
        default_factory=lambda: ["/dashboard", "/admin", "/staff", "/patients", "/revenue", "/api/clinic"]
    )
    ADMIN_ROUTE_PREFIXES: List[str] = Field(default_factory=lambda: ["/admin"])
    ADMIN_PUBLIC_ROUTES: List[str] = Field(default_factory=lambda: ["/admin/login", "/admin/callback"])
    ADMIN_ROLES: List[str] = Field(default_factory=lambda: ["admin", "clinic_admin", "manager"])

    # Administrative API
    API_KEY: Optional[str] = Field(default=None, alias="CLINIC_GUARD_API_KEY")
    CORS_ORIGINS: List[str] = Field(default_factory=list)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "populate_by_name": True,
    }

    def idle_minutes_for_role(self, role: Optional[str]) -> int:
        """Idle window for a role, falling back to DEFAULT_IDLE_MINUTES"""
        if role and role in self.ROLE_IDLE_MINUTES:
            return self.ROLE_IDLE_MINUTES[role]
        return self.DEFAULT_IDLE_MINUTES


settings = Settings()


def validate_required_settings(config: Optional[Settings] = None) -> bool:
    """Warn about missing store URLs; the service still starts without them"""
    config = config or settings
    missing = []

    if not config.REDIS_URL:
        missing.append("REDIS_URL")

    if not config.SESSION_REDIS_URL:
        missing.append("SESSION_REDIS_URL")

    if missing:
        logger.warning(f"Missing environment variables: {', '.join(missing)}")
        logger.warning("Rate limiting fails open and session validation fails closed without them.")
        return False

    return True
