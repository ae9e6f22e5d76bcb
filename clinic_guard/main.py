# clinic_guard/main.py
"""
ClinicGuard FastAPI application.

Builds the counter store, the session store and the three security
components at startup, puts the security gateway in front of every request
and exposes session and administrative endpoints.
"""

import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from clinic_guard import __version__
from clinic_guard.core.config import Settings, settings as default_settings, validate_required_settings
from clinic_guard.core.exceptions import (
    ConfigurationError,
    GuardBaseException,
    RedisServiceError,
    SecurityMonitorError,
    SessionCreationDenied,
    SessionStoreError,
    ValidationError,
    validation_error,
)
from clinic_guard.core.logging_config import setup_logging
from clinic_guard.core.rate_limit_config import LimitType, parse_limit_type
from clinic_guard.middleware.security_middleware import SecurityGateway, rate_limited_response
from clinic_guard.models.security_models import DeviceInfo, LoginAttempt, RevokeReason, Session
from clinic_guard.services.rate_limiter import RateLimiter
from clinic_guard.services.redis_service import (
    COUNTER_STORE_URL_ENV_VARS,
    SESSION_STORE_URL_ENV_VARS,
    RedisService,
    create_redis_service,
)
from clinic_guard.services.security_monitor import SecurityMonitor, ThreatSink
from clinic_guard.services.session_manager import SessionManager
from clinic_guard.services.session_store import SessionStore

logger = logging.getLogger(__name__)

# =============================================================================
# API KEY AUTHENTICATION
# =============================================================================

API_KEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)


def get_api_key(config: Settings) -> str:
    """Get API key from settings or generate one for development"""
    api_key = config.API_KEY
    if not api_key:
        api_key = secrets.token_urlsafe(32)
        logger.warning("⚠️ No CLINIC_GUARD_API_KEY set. Generated temporary key.")
        logger.warning("⚠️ Set CLINIC_GUARD_API_KEY environment variable for production!")
        logger.warning(f"⚠️ Temporary key (first 8 chars): {api_key[:8]}...")
    else:
        logger.info("✅ API Key configured from environment")
    return api_key


async def verify_api_key(request: Request, api_key: Optional[str] = Depends(api_key_header)):
    """Verify API key for administrative endpoints"""
    if api_key is None:
        logger.warning("❌ Request without API key")
        raise HTTPException(
            status_code=401,
            detail="Missing API Key. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not secrets.compare_digest(api_key, request.app.state.api_key):
        logger.warning("❌ Invalid API key attempt detected")
        raise HTTPException(
            status_code=401,
            detail="Invalid API Key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return api_key


def get_safe_error_message(error: Exception, context: str = "") -> str:
    """Return a safe error message that doesn't expose internal details"""
    logger.error(f"Error in {context}: {type(error).__name__}: {str(error)}")

    if isinstance(error, HTTPException):
        return error.detail

    if isinstance(error, (RedisServiceError, SessionStoreError, SecurityMonitorError)):
        return "Service temporarily unavailable. Please try again later."
    if isinstance(error, ValidationError):
        return "The request was invalid. Please check your input."

    return "An error occurred. Please try again later."


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_security_monitor(request: Request) -> SecurityMonitor:
    return request.app.state.security_monitor


def get_config(request: Request) -> Settings:
    return request.app.state.settings


def resolve_limit_type(limit_type: str) -> LimitType:
    try:
        return parse_limit_type(limit_type)
    except ConfigurationError:
        raise validation_error("Unknown rate limit type", field="limit_type", value=limit_type)


# =============================================================================
# API MODELS
# =============================================================================

class SessionCreateRequest(BaseModel):
    """
    Sent by the upstream authentication service after it verified the user.

    ip_address and user_agent describe the end user's browser, not the caller.
    """
    user_id: str = Field(min_length=1, max_length=128)
    clinic_id: str = Field(min_length=1, max_length=128)
    role: str = "staff"
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    device_info: Optional[DeviceInfo] = None


class LoginAttemptReport(BaseModel):
    ip_address: str
    user_agent: str = ""
    success: bool
    user_id: Optional[str] = None
    email: Optional[str] = None
    clinic_id: Optional[str] = None
    failure_reason: Optional[str] = None


class WhitelistRequest(BaseModel):
    limit_type: str
    identifier: str = Field(min_length=1)
    ttl: Optional[int] = Field(default=None, gt=0)


class BlockRequest(BaseModel):
    limit_type: str
    identifier: str = Field(min_length=1)
    duration: int = Field(gt=0)
    reason: str = "administrative_block"


class TerminateSessionRequest(BaseModel):
    session_id: str
    reason: RevokeReason = RevokeReason.SECURITY_VIOLATION


class TrustDeviceRequest(BaseModel):
    user_id: str
    fingerprint: str = Field(min_length=1)


# =============================================================================
# APPLICATION
# =============================================================================

def create_app(
    counter_store: Optional[RedisService] = None,
    session_redis: Optional[RedisService] = None,
    config: Optional[Settings] = None,
    threat_sink: Optional[ThreatSink] = None,
    clock: Callable[[], float] = time.time
) -> FastAPI:
    """
    Build the application.

    Stores passed in are used as-is (tests pass in-memory doubles); otherwise
    both Redis services are created from settings at startup.
    """
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan event handler for startup/shutdown"""
        logger.info("=" * 60)
        logger.info(f"🚀 {config.APP_NAME} {__version__} starting...")
        logger.info("=" * 60)

        if not validate_required_settings(config):
            logger.warning("⚠️ Some store URLs are missing - see warnings above")

        counter = counter_store or await create_redis_service(
            url=config.REDIS_URL,
            url_env_vars=COUNTER_STORE_URL_ENV_VARS,
            name="CounterStore",
            operation_timeout=config.STORE_CALL_TIMEOUT,
        )
        sessions = session_redis or await create_redis_service(
            url=config.SESSION_REDIS_URL,
            url_env_vars=SESSION_STORE_URL_ENV_VARS,
            name="SessionStore",
            operation_timeout=config.STORE_CALL_TIMEOUT,
        )
        await counter.ensure_initialized()
        await sessions.ensure_initialized()

        rate_limiter = RateLimiter(counter, config, clock=clock)
        session_store = SessionStore(sessions, config.SESSION_ABSOLUTE_HOURS * 3600)
        session_manager = SessionManager(session_store, rate_limiter, config, clock=clock)
        security_monitor = SecurityMonitor(
            session_manager, rate_limiter, counter, config, threat_sink=threat_sink, clock=clock
        )

        app.state.counter_store = counter
        app.state.session_redis = sessions
        app.state.rate_limiter = rate_limiter
        app.state.session_manager = session_manager
        app.state.security_monitor = security_monitor
        app.state.gateway = SecurityGateway(rate_limiter, session_manager, security_monitor, config)

        logger.info("📋 Configuration:")
        logger.info(f"  - Limit types: {', '.join(t.value for t in rate_limiter.rules)}")
        logger.info(f"  - Max concurrent sessions: {config.MAX_CONCURRENT_SESSIONS}")
        logger.info(f"  - Absolute session lifetime: {config.SESSION_ABSOLUTE_HOURS}h")
        logger.info("✅ Security gateway ready")

        yield

        logger.info(f"🛑 {config.APP_NAME} shutting down...")
        await counter.shutdown()
        await sessions.shutdown()
        logger.info("👋 Goodbye!")

    app = FastAPI(
        title=config.APP_NAME,
        description="Abuse prevention and session security gateway",
        version=__version__,
        lifespan=lifespan,
        debug=config.DEBUG,
        docs_url="/docs" if config.DEBUG else None,
        redoc_url=None,
    )
    app.state.settings = config
    app.state.api_key = get_api_key(config)
    app.state.gateway = None

    @app.middleware("http")
    async def security_gateway(request: Request, call_next):
        """Rate limit, session and threat checks ahead of every route"""
        gateway = request.app.state.gateway
        if gateway is None:
            return await call_next(request)
        return await gateway(request, call_next)

    if config.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
        )

    _register_routes(app)
    return app


def _session_cookie_token(request: Request) -> Optional[str]:
    return request.cookies.get(request.app.state.settings.SESSION_COOKIE_NAME)


async def _require_session(request: Request, session_manager: SessionManager) -> Session:
    result = await session_manager.validate_session(_session_cookie_token(request))
    if result.degraded:
        raise HTTPException(status_code=503, detail="Service temporarily unavailable. Please try again later.")
    if not result.is_valid:
        # Same answer for every reason so tokens cannot be enumerated
        raise HTTPException(status_code=401, detail="Session invalid or expired. Please sign in again.")
    return result.session


def _register_routes(app: FastAPI) -> None:

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/", status_code=200)
    def read_root():
        return {"status": "ok", "version": __version__, "service": "clinic-guard"}

    @app.get("/health", status_code=200)
    def health(request: Request):
        manager = getattr(request.app.state, "session_manager", None)
        return {
            "status": "healthy",
            "sessions": manager.get_metrics() if manager else {},
        }

    @app.get("/healthz", response_class=PlainTextResponse, status_code=200)
    def healthz():
        return "ok"

    @app.get("/health/stores")
    async def store_health(request: Request):
        """Health of the counter store and the session store"""
        counter_store = request.app.state.counter_store
        session_redis = request.app.state.session_redis
        counter = await counter_store.health_check()
        sessions = await session_redis.health_check()
        counter["metrics"] = counter_store.get_metrics()
        sessions["metrics"] = session_redis.get_metrics()

        healthy = counter.get("healthy", False) and sessions.get("healthy", False)
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "healthy": healthy,
                "counter_store": counter,
                "session_store": sessions,
            },
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    @app.post("/api/session", dependencies=[Depends(verify_api_key)])
    async def create_session(
        request: Request,
        req: SessionCreateRequest,
        session_manager: SessionManager = Depends(get_session_manager),
        security_monitor: SecurityMonitor = Depends(get_security_monitor),
        config: Settings = Depends(get_config),
    ):
        """Create a session for an identity verified upstream"""
        try:
            session, token = await session_manager.create_session(
                req.user_id,
                req.clinic_id,
                req.device_info,
                role=req.role,
                ip_address=req.ip_address,
                user_agent=req.user_agent,
            )
        except SessionCreationDenied as e:
            return rate_limited_response(LimitType.SESSION_CREATION, e.result)
        except SessionStoreError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "create_session"))

        try:
            await security_monitor.record_device_use(session.user_id, session.device_fingerprint)
        except SecurityMonitorError as e:
            logger.warning(f"⚠️ Device use not recorded: {e.message}")

        response = JSONResponse(
            status_code=201,
            content={"session": session.public_view(), "session_token": token},
        )
        response.set_cookie(
            config.SESSION_COOKIE_NAME,
            token,
            max_age=config.SESSION_ABSOLUTE_HOURS * 3600,
            httponly=True,
            secure=config.SESSION_COOKIE_SECURE,
            samesite="lax",
        )
        return response

    @app.get("/api/session")
    async def current_session(
        request: Request,
        session_manager: SessionManager = Depends(get_session_manager),
    ):
        session = await _require_session(request, session_manager)
        return {"session": session.public_view()}

    @app.post("/api/session/logout")
    async def logout(
        request: Request,
        session_manager: SessionManager = Depends(get_session_manager),
        config: Settings = Depends(get_config),
    ):
        result = await session_manager.validate_session(_session_cookie_token(request))
        if result.degraded:
            # The session cannot be revoked now, so do not pretend it was
            raise HTTPException(status_code=503, detail="Service temporarily unavailable. Please try again later.")
        if result.session is not None and result.is_valid:
            try:
                await session_manager.revoke_session(result.session.id, RevokeReason.MANUAL_LOGOUT)
            except SessionStoreError as e:
                raise HTTPException(status_code=503, detail=get_safe_error_message(e, "logout"))

        response = JSONResponse(content={"success": True})
        response.delete_cookie(config.SESSION_COOKIE_NAME)
        return response

    @app.post("/api/session/logout-others")
    async def logout_others(
        request: Request,
        session_manager: SessionManager = Depends(get_session_manager),
    ):
        session = await _require_session(request, session_manager)
        try:
            revoked = await session_manager.revoke_other_sessions(
                _session_cookie_token(request), session.user_id
            )
        except SessionStoreError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "logout_others"))
        return {"revoked": revoked}

    # -------------------------------------------------------------------------
    # Login analysis
    # -------------------------------------------------------------------------

    @app.post("/api/security/analyze-login", dependencies=[Depends(verify_api_key)])
    async def report_login_attempt(
        req: LoginAttemptReport,
        security_monitor: SecurityMonitor = Depends(get_security_monitor),
    ):
        """Analyze a login attempt reported by the authentication service"""
        attempt = LoginAttempt(**req.model_dump())
        try:
            threats = await security_monitor.analyze_login_attempt(attempt)
        except SecurityMonitorError as e:
            logger.warning(f"⚠️ Login analysis skipped: {e.message}")
            return {"threats": [], "degraded": True}

        handled: List[Dict[str, Any]] = []
        for threat in threats:
            actions = await security_monitor.handle_security_threat(threat)
            entry = threat.model_dump(mode="json")
            entry["actions"] = [a.value for a in actions]
            handled.append(entry)

        return {"threats": handled, "degraded": False}

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    @app.get("/api/admin/rate-limit/{limit_type}/{identifier}", dependencies=[Depends(verify_api_key)])
    async def rate_limit_stats(
        limit_type: str,
        identifier: str,
        rate_limiter: RateLimiter = Depends(get_rate_limiter),
    ):
        resolved = resolve_limit_type(limit_type)
        try:
            stats = await rate_limiter.get_stats(resolved, identifier)
        except RedisServiceError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "rate_limit_stats"))
        return {"limit_type": resolved.value, "identifier": identifier, **asdict(stats)}

    @app.delete("/api/admin/rate-limit/{limit_type}/{identifier}", dependencies=[Depends(verify_api_key)])
    async def rate_limit_reset(
        limit_type: str,
        identifier: str,
        rate_limiter: RateLimiter = Depends(get_rate_limiter),
    ):
        success = await rate_limiter.reset(resolve_limit_type(limit_type), identifier)
        if not success:
            raise HTTPException(status_code=503, detail="Service temporarily unavailable. Please try again later.")
        return {"success": True}

    @app.post("/api/admin/rate-limit/whitelist", dependencies=[Depends(verify_api_key)])
    async def whitelist_add(
        req: WhitelistRequest,
        rate_limiter: RateLimiter = Depends(get_rate_limiter),
    ):
        success = await rate_limiter.add_to_whitelist(
            resolve_limit_type(req.limit_type), req.identifier, ttl=req.ttl
        )
        if not success:
            raise HTTPException(status_code=503, detail="Service temporarily unavailable. Please try again later.")
        return {"success": True}

    @app.delete(
        "/api/admin/rate-limit/whitelist/{limit_type}/{identifier}",
        dependencies=[Depends(verify_api_key)]
    )
    async def whitelist_remove(
        limit_type: str,
        identifier: str,
        rate_limiter: RateLimiter = Depends(get_rate_limiter),
    ):
        removed = await rate_limiter.remove_from_whitelist(resolve_limit_type(limit_type), identifier)
        return {"success": removed}

    @app.post("/api/admin/rate-limit/block", dependencies=[Depends(verify_api_key)])
    async def block_identifier(
        req: BlockRequest,
        rate_limiter: RateLimiter = Depends(get_rate_limiter),
    ):
        try:
            block = await rate_limiter.block(
                resolve_limit_type(req.limit_type), req.identifier, req.duration, reason=req.reason
            )
        except RedisServiceError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "block"))
        return block.to_store()

    @app.get("/api/admin/security/sessions", dependencies=[Depends(verify_api_key)])
    async def list_sessions(
        user_id: str,
        clinic_id: Optional[str] = None,
        session_manager: SessionManager = Depends(get_session_manager),
    ):
        try:
            sessions = await session_manager.get_user_sessions(user_id, clinic_id=clinic_id)
        except SessionStoreError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "list_sessions"))
        return {"user_id": user_id, "sessions": [s.public_view() for s in sessions]}

    @app.post("/api/admin/security/sessions/terminate", dependencies=[Depends(verify_api_key)])
    async def terminate_session(
        req: TerminateSessionRequest,
        session_manager: SessionManager = Depends(get_session_manager),
    ):
        try:
            success = await session_manager.revoke_session(req.session_id, req.reason)
        except SessionStoreError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "terminate_session"))
        return {"success": success}

    @app.post("/api/admin/security/devices/trust", dependencies=[Depends(verify_api_key)])
    async def trust_device(
        req: TrustDeviceRequest,
        security_monitor: SecurityMonitor = Depends(get_security_monitor),
    ):
        try:
            device = await security_monitor.trust_device(req.user_id, req.fingerprint)
        except SecurityMonitorError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "trust_device"))
        return device.model_dump(mode="json")

    @app.get("/api/admin/security/events", dependencies=[Depends(verify_api_key)])
    async def security_events(
        clinic_id: str,
        limit: int = Query(default=50, ge=1, le=500),
        security_monitor: SecurityMonitor = Depends(get_security_monitor),
    ):
        """Recent handled threats of a clinic, newest first"""
        try:
            alerts = await security_monitor.get_security_alerts(clinic_id, limit)
        except SecurityMonitorError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "security_events"))
        return {"clinic_id": clinic_id, "alerts": [a.model_dump(mode="json") for a in alerts]}

    @app.get("/api/admin/security/stats", dependencies=[Depends(verify_api_key)])
    async def security_stats(
        clinic_id: str,
        days: int = Query(default=30, ge=1, le=365),
        security_monitor: SecurityMonitor = Depends(get_security_monitor),
    ):
        try:
            stats = await security_monitor.get_security_statistics(clinic_id, days)
        except SecurityMonitorError as e:
            raise HTTPException(status_code=503, detail=get_safe_error_message(e, "security_stats"))
        return {"clinic_id": clinic_id, "days": days, **asdict(stats)}

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: ValidationError):
        logger.warning(f"❌ Invalid request to {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"detail": exc.message})

    @app.exception_handler(GuardBaseException)
    async def guard_exception_handler(request: Request, exc: GuardBaseException):
        return JSONResponse(
            status_code=500,
            content={"detail": get_safe_error_message(exc, request.url.path)},
        )


setup_logging()
app = create_app()


# Main entry point
if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting ClinicGuard on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
