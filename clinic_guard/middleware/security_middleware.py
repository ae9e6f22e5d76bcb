"""
Security gateway for ClinicGuard.
Runs rate limiting, session validation and threat analysis, in that order,
in front of every request.
"""

import logging
import time
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from clinic_guard.core.config import Settings, settings as default_settings
from clinic_guard.core.exceptions import SessionStoreError, SecurityMonitorError
from clinic_guard.core.rate_limit_config import (
    RATE_LIMIT_ERRORS,
    SKIPPED_PATH_PREFIXES,
    SKIPPED_PATHS,
    LimitType,
    get_path_limit_types,
    get_rate_limit_message,
    get_real_ip,
)
from clinic_guard.models.security_models import (
    ObservedActivity,
    RateLimitResult,
    Session,
    ThreatAction,
)
from clinic_guard.services.rate_limiter import RateLimiter
from clinic_guard.services.security_monitor import SecurityMonitor
from clinic_guard.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

DEVICE_FINGERPRINT_HEADER = "X-Device-Fingerprint"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _matches_prefix(path: str, prefixes: List[str]) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)


def rate_limited_response(limit_type: LimitType, result: RateLimitResult) -> JSONResponse:
    """429 with the retry contract: body {error, message, retryAfter, blockLevel?}"""
    content: Dict[str, object] = {
        "error": RATE_LIMIT_ERRORS[limit_type],
        "message": get_rate_limit_message(limit_type, result.retry_after),
        "retryAfter": result.retry_after,
    }
    if result.block_level is not None:
        content["blockLevel"] = result.block_level

    headers = result.to_headers(include_retry_after=True)
    headers.update(SECURITY_HEADERS)
    return JSONResponse(status_code=429, content=content, headers=headers)


class SecurityGateway:
    """Request-path orchestrator: rate limit -> session -> threat analysis"""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        session_manager: SessionManager,
        security_monitor: SecurityMonitor,
        settings: Optional[Settings] = None
    ):
        self.rate_limiter = rate_limiter
        self.session_manager = session_manager
        self.security_monitor = security_monitor
        self.settings = settings or default_settings

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in SKIPPED_PATHS or path.startswith(SKIPPED_PATH_PREFIXES):
            return await call_next(request)

        start_time = time.time()
        client_ip = get_real_ip(request)

        # 1. Rate limits
        results: List[RateLimitResult] = []
        for limit_type in get_path_limit_types(path):
            result = await self.rate_limiter.check_rate_limit(limit_type, client_ip)
            if not result.allowed:
                logger.warning(f"🚦 {limit_type.value} limit hit by {client_ip} on {path}")
                return rate_limited_response(limit_type, result)
            results.append(result)

        # 2. Session, 3. threat analysis
        if self._is_protected(path):
            token = request.cookies.get(self.settings.SESSION_COOKIE_NAME)
            validation = await self.session_manager.validate_session(token)

            if validation.degraded:
                # Deny without touching the cookie; the session may still be valid
                logger.error(f"🔒 Session store unavailable, denying {path}")
                return JSONResponse(
                    status_code=503,
                    content={"detail": "Session service temporarily unavailable"},
                    headers=dict(SECURITY_HEADERS),
                )

            if not validation.is_valid:
                logger.info(
                    f"🔓 Redirecting to login from {path} "
                    f"(reason={validation.reason.value if validation.reason else None})"
                )
                return self._login_redirect(path, clear_cookie=token is not None)

            session = validation.session
            if _matches_prefix(path, self.settings.ADMIN_ROUTE_PREFIXES) and \
                    session.role not in self.settings.ADMIN_ROLES:
                logger.warning(f"⛔ Role {session.role} denied on {path} for user {session.user_id}")
                return RedirectResponse(url=self.settings.UNAUTHORIZED_PATH, status_code=307)

            if await self._analyze_session(request, session, client_ip):
                return self._login_redirect(path, clear_cookie=True)

            try:
                await self.session_manager.refresh_session(token, client_ip)
            except SessionStoreError as e:
                logger.warning(f"⚠️ Session refresh skipped: {e.message}")

            request.state.session = session

        response = await call_next(request)

        if results:
            response.headers.update(self._tightest(results).to_headers())
        response.headers.update(SECURITY_HEADERS)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)

        if process_time > 1.0:
            logger.warning(f"⏱️ Slow request: {path} took {process_time:.2f}s")

        return response

    def _is_protected(self, path: str) -> bool:
        public = set(self.settings.ADMIN_PUBLIC_ROUTES)
        public.update((self.settings.LOGIN_PATH, self.settings.UNAUTHORIZED_PATH))
        if path in public:
            return False
        return _matches_prefix(path, self.settings.PROTECTED_ROUTE_PREFIXES)

    async def _analyze_session(self, request: Request, session: Session, client_ip: str) -> bool:
        """
        Run session anomaly analysis and act on what it finds.

        Returns:
            True if a threat terminated the session
        """
        observed = ObservedActivity(
            ip_address=client_ip,
            user_agent=request.headers.get("user-agent"),
            device_fingerprint=request.headers.get(DEVICE_FINGERPRINT_HEADER),
        )

        try:
            threats = await self.security_monitor.analyze_session_activity(session, observed)
        except SecurityMonitorError as e:
            logger.warning(f"⚠️ Session analysis failed, continuing on session verdict: {e.message}")
            return False

        terminated = False
        for threat in threats:
            actions = await self.security_monitor.handle_security_threat(threat)
            if ThreatAction.TERMINATE_SESSION in actions:
                terminated = True

        if threats and session.device_fingerprint:
            try:
                await self.security_monitor.record_device_use(
                    session.user_id, session.device_fingerprint, anomalous=True
                )
            except SecurityMonitorError as e:
                logger.warning(f"⚠️ Device use not recorded: {e.message}")

        return terminated

    @staticmethod
    def _tightest(results: List[RateLimitResult]) -> RateLimitResult:
        measured = [r for r in results if not r.degraded] or results
        return min(measured, key=lambda r: r.remaining)

    def _login_redirect(self, path: str, clear_cookie: bool = False) -> RedirectResponse:
        url = f"{self.settings.LOGIN_PATH}?{urlencode({'redirectTo': path})}"
        response = RedirectResponse(url=url, status_code=307)
        if clear_cookie:
            response.delete_cookie(self.settings.SESSION_COOKIE_NAME)
        return response
