"""
Rate limiting configuration for ClinicGuard
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from fastapi import Request
from slowapi.util import get_remote_address

from clinic_guard.core.config import Settings, LimitRuleSettings
from clinic_guard.core.exceptions import config_error


class LimitType(str, Enum):
    LOGIN_ATTEMPTS = "login_attempts"
    API_CALLS = "api_calls"
    SESSION_CREATION = "session_creation"
    MFA_ATTEMPTS = "mfa_attempts"


@dataclass(frozen=True)
class LimitRule:
    """Window length W, max events N and the escalation ladder D"""
    window_seconds: int
    max_events: int
    block_durations: Tuple[int, ...]

    def block_duration_for_level(self, level: int) -> int:
        """Duration for an escalation level, clamped to the longest rung"""
        return self.block_durations[min(level, len(self.block_durations) - 1)]


def parse_limit_type(value: Union[str, LimitType]) -> LimitType:
    """Resolve a limit type or raise ConfigurationError"""
    if isinstance(value, LimitType):
        return value
    try:
        return LimitType(value)
    except ValueError:
        raise config_error(f"Unknown rate limit type: {value!r}", component="RateLimiter")


def build_limit_rules(settings: Settings) -> Dict[LimitType, LimitRule]:
    """
    Turn RATE_LIMIT_RULES into typed rules.

    Raises:
        ConfigurationError: unknown limit type, missing rule or invalid numbers
    """
    raw: Dict[str, LimitRuleSettings] = settings.RATE_LIMIT_RULES
    rules: Dict[LimitType, LimitRule] = {}

    for name, rule in raw.items():
        limit_type = parse_limit_type(name)
        if rule.window_seconds <= 0 or rule.max_events <= 0:
            raise config_error(
                f"Window and limit must be positive for {name}", component="RateLimiter"
            )
        if not rule.block_durations or any(d <= 0 for d in rule.block_durations):
            raise config_error(
                f"Block duration ladder for {name} must be non-empty and positive",
                component="RateLimiter"
            )
        rules[limit_type] = LimitRule(
            window_seconds=rule.window_seconds,
            max_events=rule.max_events,
            block_durations=tuple(rule.block_durations),
        )

    missing = [t.value for t in LimitType if t not in rules]
    if missing:
        raise config_error(
            f"No rate limit rule configured for: {', '.join(missing)}", component="RateLimiter"
        )

    return rules


def get_real_ip(request: Request) -> str:
    """
    Get the real IP address, considering proxy headers.
    """
    cf_connecting_ip = request.headers.get("CF-Connecting-IP")
    if cf_connecting_ip:
        return cf_connecting_ip.strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first
        return forwarded_for.split(",")[0].strip()

    return get_remote_address(request)


# Paths skipped entirely by the gateway
SKIPPED_PATH_PREFIXES = ("/static/", "/favicon.ico")
SKIPPED_PATHS = {"/", "/health", "/healthz", "/health/stores"}


def get_path_limit_types(pathname: str) -> List[LimitType]:
    """Limit types applied to a path, in evaluation order"""
    limit_types: List[LimitType] = []

    if pathname.startswith("/api/"):
        limit_types.append(LimitType.API_CALLS)

    if pathname.startswith("/api/auth/") or "/login" in pathname:
        limit_types.append(LimitType.LOGIN_ATTEMPTS)

    if pathname.startswith("/api/mfa/"):
        limit_types.append(LimitType.MFA_ATTEMPTS)

    return limit_types


RATE_LIMIT_ERRORS = {
    LimitType.LOGIN_ATTEMPTS: "Login rate limit exceeded",
    LimitType.API_CALLS: "Rate limit exceeded",
    LimitType.SESSION_CREATION: "Session creation rate limit exceeded",
    LimitType.MFA_ATTEMPTS: "MFA verification rate limit exceeded",
}

RATE_LIMIT_MESSAGES = {
    LimitType.LOGIN_ATTEMPTS: "Too many login attempts. Please wait before trying again.",
    LimitType.API_CALLS: "Too many requests. Please slow down and try again shortly.",
    LimitType.SESSION_CREATION: "Too many sessions created. Please wait before trying again.",
    LimitType.MFA_ATTEMPTS: "Too many MFA verification attempts. Please wait before trying again.",
}


def get_rate_limit_message(limit_type: LimitType, retry_after: Optional[int] = None) -> str:
    """User-facing retry message with a concrete wait time where known"""
    message = RATE_LIMIT_MESSAGES[limit_type]
    if retry_after:
        seconds = int(retry_after)
        if seconds >= 60:
            # Rounded up so the user never retries before the block lifts
            minutes = -(-seconds // 60)
            return f"{message} Retry in {minutes} minute{'s' if minutes != 1 else ''}."
        return f"{message} Retry in {seconds} second{'s' if seconds != 1 else ''}."
    return message
