# clinic_guard/services/security_monitor.py
"""
Heuristic threat detection for logins and live sessions.

Login attempts are checked for brute force, unfamiliar addresses and bursts
of new devices. Session activity is compared with what the session was
created with. Detected threats are handled by a fixed severity -> actions
table, and kept per clinic in a capped history for the admin dashboard.

Analysis raises SecurityMonitorError on store failures so the caller can
continue without it; handle_security_threat never raises.
"""

import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from clinic_guard.core.config import Settings, settings as default_settings
from clinic_guard.core.exceptions import (
    RedisServiceError,
    SecurityMonitorError,
    SessionStoreError,
    config_error,
)
from clinic_guard.core.logging_config import AUDIT_LOGGER_NAME
from clinic_guard.core.rate_limit_config import LimitType, parse_limit_type
from clinic_guard.models.security_models import (
    AnomalyCheck,
    DeviceFingerprint,
    LoginAttempt,
    ObservedActivity,
    RevokeReason,
    SecurityAlert,
    SecurityStatistics,
    Session,
    Severity,
    ThreatAction,
    ThreatEvent,
    ThreatType,
)
from clinic_guard.services.rate_limiter import RateLimiter
from clinic_guard.services.redis_service import RedisService
from clinic_guard.services.session_manager import SessionManager, parse_user_agent

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

SEVERITY_ACTIONS: Dict[Severity, Tuple[ThreatAction, ...]] = {
    Severity.LOW: (ThreatAction.LOG,),
    Severity.MEDIUM: (ThreatAction.LOG, ThreatAction.ALERT),
    Severity.HIGH: (ThreatAction.LOG, ThreatAction.ALERT, ThreatAction.BLOCK_IP),
    Severity.CRITICAL: (ThreatAction.LOG, ThreatAction.ALERT, ThreatAction.TERMINATE_SESSION),
}

LOGIN_THREAT_TYPES = frozenset({
    ThreatType.BRUTE_FORCE_ATTACK,
    ThreatType.LOCATION_ANOMALY,
    ThreatType.MULTIPLE_DEVICES,
})

UNASSIGNED_CLINIC = "unassigned"

_unmapped = set(Severity) - set(SEVERITY_ACTIONS)
if _unmapped:
    raise config_error(
        f"No threat actions defined for: {sorted(s.value for s in _unmapped)}",
        component="SecurityMonitor"
    )


class ThreatSink(Protocol):
    """Audit destination for threat events"""

    async def record_event(self, threat: ThreatEvent) -> None:
        ...

    async def send_alert(self, threat: ThreatEvent) -> None:
        ...


class LoggingThreatSink:
    """Writes threats as structured log lines on the audit logger"""

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        self.logger = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)

    async def record_event(self, threat: ThreatEvent) -> None:
        self.logger.info(f"security_event {threat.model_dump_json()}")

    async def send_alert(self, threat: ThreatEvent) -> None:
        self.logger.warning(
            f"🚨 SECURITY ALERT [{threat.severity.value}] {threat.threat_type.value}: "
            f"{threat.description} (user={threat.user_id}, ip={threat.ip_address})"
        )


class SecurityMonitor:
    """
    Correlates login and session signals into ThreatEvents and acts on them.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        rate_limiter: RateLimiter,
        counter_store: RedisService,
        settings: Optional[Settings] = None,
        threat_sink: Optional[ThreatSink] = None,
        clock: Clock = time.time
    ):
        self.session_manager = session_manager
        self.rate_limiter = rate_limiter
        self.counter_store = counter_store
        self.settings = settings or default_settings
        self.threat_sink = threat_sink or LoggingThreatSink()
        self._clock = clock

        self._automation_pattern = re.compile(
            self.settings.AUTOMATION_USER_AGENT_PATTERN, re.IGNORECASE
        )
        self._block_limit_types: List[LimitType] = [
            parse_limit_type(t) for t in self.settings.THREAT_BLOCK_LIMIT_TYPES
        ]

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # Login analysis
    # ------------------------------------------------------------------

    async def analyze_login_attempt(self, attempt: LoginAttempt) -> List[ThreatEvent]:
        """
        Run the login heuristics for one attempt.

        Raises:
            SecurityMonitorError: a store needed for the analysis is unavailable
        """
        threats: List[ThreatEvent] = []

        try:
            brute_force = await self._detect_brute_force(attempt)
            if brute_force.is_anomalous:
                threats.append(self._login_threat(
                    attempt,
                    ThreatType.BRUTE_FORCE_ATTACK,
                    Severity.HIGH,
                    f"Repeated failed logins from {attempt.ip_address}",
                    brute_force,
                ))

            if attempt.user_id:
                sessions = await self.session_manager.get_user_sessions(attempt.user_id)

                location = self._detect_location_anomaly(sessions, attempt.ip_address)
                if location.is_anomalous:
                    threats.append(self._login_threat(
                        attempt,
                        ThreatType.LOCATION_ANOMALY,
                        Severity.LOW,
                        f"Login from an address not used by recent sessions: {attempt.ip_address}",
                        location,
                    ))

                if attempt.success:
                    devices = self._detect_multiple_devices(sessions, attempt.user_agent)
                    if devices.is_anomalous:
                        threats.append(self._login_threat(
                            attempt,
                            ThreatType.MULTIPLE_DEVICES,
                            Severity.MEDIUM,
                            "Logins from several devices within a short time",
                            devices,
                        ))
        except (RedisServiceError, SessionStoreError) as e:
            raise SecurityMonitorError(
                f"Login analysis unavailable: {e.message}", analysis="analyze_login_attempt"
            )

        return threats

    def _login_threat(
        self,
        attempt: LoginAttempt,
        threat_type: ThreatType,
        severity: Severity,
        description: str,
        check: AnomalyCheck
    ) -> ThreatEvent:
        return ThreatEvent(
            threat_type=threat_type,
            severity=severity,
            description=description,
            evidence={
                "ip_address": attempt.ip_address,
                "confidence": check.confidence,
                "reasons": check.reasons,
            },
            user_id=attempt.user_id,
            clinic_id=attempt.clinic_id,
            ip_address=attempt.ip_address,
            timestamp=attempt.timestamp,
        )

    @staticmethod
    def _failure_key(scope: str, identifier: str) -> str:
        return f"security:login_failures:{scope}:{identifier}"

    async def _detect_brute_force(self, attempt: LoginAttempt) -> AnomalyCheck:
        """Failed logins per IP and per user within the trailing window"""
        now = int(self._clock())
        window = self.settings.BRUTE_FORCE_WINDOW_SECONDS
        threshold = self.settings.BRUTE_FORCE_THRESHOLD

        scopes = [("ip", attempt.ip_address)]
        if attempt.user_id:
            scopes.append(("user", attempt.user_id))

        counts: Dict[str, int] = {}
        for scope, identifier in scopes:
            key = self._failure_key(scope, identifier)
            if attempt.success:
                counts[scope] = await self.counter_store.count_events(key, now=now, window=window)
            else:
                counts[scope] = await self.counter_store.record_event(
                    key,
                    now=now,
                    window=window,
                    ttl=window + self.settings.RATE_LIMIT_SLACK_SECONDS,
                )

        worst = max(counts.values())
        if worst < threshold:
            return AnomalyCheck(is_anomalous=False, confidence=min(worst / threshold, 1.0))

        reasons = [
            f"{count} failed logins for {scope} within {window}s (threshold {threshold})"
            for scope, count in counts.items()
            if count >= threshold
        ]
        return AnomalyCheck(is_anomalous=True, confidence=1.0, reasons=reasons)

    def _detect_location_anomaly(self, sessions: List[Session], ip_address: str) -> AnomalyCheck:
        if len(sessions) < self.settings.LOCATION_HISTORY_MIN_SESSIONS:
            return AnomalyCheck(is_anomalous=False)

        known = set()
        for session in sessions:
            known.update(ip for ip in (session.ip_address, session.last_ip_address) if ip)

        if ip_address in known:
            return AnomalyCheck(is_anomalous=False)

        return AnomalyCheck(
            is_anomalous=True,
            confidence=0.5,
            reasons=[f"Address not seen in {len(sessions)} active sessions"],
        )

    def _detect_multiple_devices(self, sessions: List[Session], user_agent: str) -> AnomalyCheck:
        since = self._now() - timedelta(minutes=self.settings.MULTI_DEVICE_WINDOW_MINUTES)
        device_types = {s.device_info.device for s in sessions if s.created_at >= since}
        device_types.add(parse_user_agent(user_agent).device)
        device_types.discard("unknown")

        if len(device_types) < self.settings.MULTI_DEVICE_THRESHOLD:
            return AnomalyCheck(is_anomalous=False)

        return AnomalyCheck(
            is_anomalous=True,
            confidence=0.7,
            reasons=[
                f"{len(device_types)} device types within "
                f"{self.settings.MULTI_DEVICE_WINDOW_MINUTES} minutes: {', '.join(sorted(device_types))}"
            ],
        )

    # ------------------------------------------------------------------
    # Session analysis
    # ------------------------------------------------------------------

    def is_automation_user_agent(self, user_agent: Optional[str]) -> bool:
        return bool(user_agent) and self._automation_pattern.search(user_agent) is not None

    async def analyze_session_activity(
        self,
        session: Session,
        observed: ObservedActivity
    ) -> List[ThreatEvent]:
        """
        Compare a request with the session it claims to belong to.

        All mismatches are reported as one session_hijack threat whose
        evidence lists every signal.
        """
        signals: List[str] = []
        confidence = 0.0

        ip_changed = bool(
            observed.ip_address and session.ip_address and observed.ip_address != session.ip_address
        )
        if ip_changed:
            signals.append("ip_address_changed")
            confidence += self.settings.HIJACK_IP_WEIGHT

        ua_changed = bool(
            observed.user_agent and session.user_agent and observed.user_agent != session.user_agent
        )
        if ua_changed:
            signals.append("user_agent_changed")
            confidence += self.settings.HIJACK_USER_AGENT_WEIGHT

        if (
            observed.device_fingerprint
            and session.device_fingerprint
            and observed.device_fingerprint != session.device_fingerprint
        ):
            signals.append("device_fingerprint_changed")
            confidence += self.settings.HIJACK_DEVICE_WEIGHT

        if not signals:
            return []

        automation = self.is_automation_user_agent(observed.user_agent)
        if automation:
            signals.append("automation_user_agent")
            confidence += self.settings.HIJACK_AUTOMATION_WEIGHT

        if automation and ip_changed and ua_changed:
            severity = Severity.CRITICAL
        elif automation or len(signals) >= 2:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM

        return [ThreatEvent(
            threat_type=ThreatType.SESSION_HIJACK,
            severity=severity,
            description="Session used from a different client than it was issued to",
            evidence={
                "session_id": session.id,
                "signals": signals,
                "confidence": round(min(confidence, 1.0), 2),
                "original_ip": session.ip_address,
                "current_ip": observed.ip_address,
                "original_user_agent": session.user_agent,
                "current_user_agent": observed.user_agent,
            },
            user_id=session.user_id,
            clinic_id=session.clinic_id,
            ip_address=observed.ip_address,
            session_id=session.id,
            timestamp=self._now(),
        )]

    # ------------------------------------------------------------------
    # Device trust
    # ------------------------------------------------------------------

    async def is_device_trusted(self, user_id: str, fingerprint: Optional[str]) -> bool:
        """Only an existing record for this exact fingerprint can be trusted"""
        if not fingerprint:
            return False
        try:
            device = await self.session_manager.get_device(user_id, fingerprint)
        except SessionStoreError as e:
            logger.warning(f"⚠️ Device trust lookup failed, treating as untrusted: {e.message}")
            return False

        return device is not None and device.fingerprint_hash == fingerprint and device.is_trusted

    async def record_device_use(
        self,
        user_id: str,
        fingerprint: str,
        anomalous: bool = False
    ) -> DeviceFingerprint:
        """
        Note one use of a device. Trust accumulates only from clean uses.

        Raises:
            SecurityMonitorError: the session store is unavailable
        """
        now = self._now()
        try:
            device = await self.session_manager.get_device(user_id, fingerprint)
            if device is None:
                device = DeviceFingerprint(
                    user_id=user_id, fingerprint_hash=fingerprint, first_seen=now, last_used=now
                )

            device.last_used = now
            if not anomalous:
                device.trust_score = min(device.trust_score + self.settings.DEVICE_TRUST_INCREMENT, 100)
                if device.trust_score >= self.settings.DEVICE_TRUST_THRESHOLD and not device.is_trusted:
                    device.is_trusted = True
                    logger.info(f"📱 Device {fingerprint[:8]}... of user {user_id} is now trusted")

            await self.session_manager.save_device(device)
        except SessionStoreError as e:
            raise SecurityMonitorError(
                f"Could not record device use: {e.message}", analysis="record_device_use"
            )

        return device

    async def trust_device(self, user_id: str, fingerprint: str) -> DeviceFingerprint:
        """
        Mark a device as trusted by administrative decision.

        Raises:
            SecurityMonitorError: the session store is unavailable
        """
        now = self._now()
        try:
            device = await self.session_manager.get_device(user_id, fingerprint)
            if device is None:
                device = DeviceFingerprint(
                    user_id=user_id, fingerprint_hash=fingerprint, first_seen=now, last_used=now
                )
            device.is_trusted = True
            device.trust_score = max(device.trust_score, self.settings.DEVICE_TRUST_THRESHOLD)
            await self.session_manager.save_device(device)
        except SessionStoreError as e:
            raise SecurityMonitorError(f"Could not trust device: {e.message}", analysis="trust_device")

        logger.info(f"📱 Device {fingerprint[:8]}... of user {user_id} trusted by administrator")
        return device

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    async def handle_security_threat(self, threat: ThreatEvent) -> List[ThreatAction]:
        """
        Execute the actions mapped to the threat's severity.

        Returns:
            The actions that completed. Failures are logged, never raised.
        """
        completed: List[ThreatAction] = []

        for action in SEVERITY_ACTIONS[threat.severity]:
            try:
                if await self._execute(action, threat):
                    completed.append(action)
            except Exception:
                logger.error(
                    f"Threat action {action.value} failed for {threat.threat_type.value}",
                    exc_info=True
                )

        await self._record_alert(threat, completed)
        return completed

    async def _execute(self, action: ThreatAction, threat: ThreatEvent) -> bool:
        if action is ThreatAction.LOG:
            logger.warning(
                f"🛡️ Threat detected: {threat.threat_type.value} ({threat.severity.value}) "
                f"user={threat.user_id} ip={threat.ip_address}"
            )
            await self.threat_sink.record_event(threat)
            return True

        if action is ThreatAction.ALERT:
            await self.threat_sink.send_alert(threat)
            return True

        if action is ThreatAction.BLOCK_IP:
            if not threat.ip_address:
                logger.info(f"No address to block for {threat.threat_type.value}")
                return False
            for limit_type in self._block_limit_types:
                await self.rate_limiter.block(
                    limit_type,
                    threat.ip_address,
                    self.settings.THREAT_BLOCK_SECONDS,
                    reason=f"threat:{threat.threat_type.value}",
                )
            return True

        if action is ThreatAction.TERMINATE_SESSION:
            if not threat.session_id:
                logger.info(f"No session to terminate for {threat.threat_type.value}")
                return False
            return await self.session_manager.revoke_session(
                threat.session_id, RevokeReason.SECURITY_VIOLATION
            )

        raise config_error(f"Unhandled threat action: {action}", component="SecurityMonitor")

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @staticmethod
    def events_key(clinic_id: Optional[str]) -> str:
        return f"security:events:{clinic_id or UNASSIGNED_CLINIC}"

    async def _record_alert(self, threat: ThreatEvent, actions: List[ThreatAction]) -> None:
        """Append a handled threat to its clinic's capped history; failures are logged"""
        alert = SecurityAlert(**threat.model_dump(), actions_taken=actions)
        try:
            await self.counter_store.push_capped(
                self.events_key(threat.clinic_id),
                alert.model_dump(mode="json"),
                self.settings.SECURITY_EVENT_HISTORY,
                self.settings.SECURITY_EVENT_RETENTION_DAYS * 86400,
            )
        except RedisServiceError as e:
            logger.error(f"Threat history not updated for {threat.threat_type.value}: {e.message}")

    async def get_security_alerts(self, clinic_id: str, limit: int = 50) -> List[SecurityAlert]:
        """
        Most recent handled threats of a clinic, newest first.

        Raises:
            SecurityMonitorError: the counter store is unavailable
        """
        if limit <= 0:
            return []
        try:
            items = await self.counter_store.list_range(self.events_key(clinic_id), 0, limit - 1)
        except RedisServiceError as e:
            raise SecurityMonitorError(
                f"Security alerts unavailable: {e.message}", analysis="get_security_alerts"
            )

        alerts: List[SecurityAlert] = []
        for item in items:
            try:
                alerts.append(SecurityAlert.model_validate(item))
            except ValueError as e:
                logger.warning(f"Skipping unreadable security alert for clinic {clinic_id}: {e}")
        return alerts

    async def get_security_statistics(self, clinic_id: str, days: int = 30) -> SecurityStatistics:
        """
        Dashboard counters over the clinic's history for the last `days` days.

        critical_threats counts high and critical severities; blocked_ips
        counts distinct addresses whose threat led to a completed block.

        Raises:
            SecurityMonitorError: the counter store is unavailable
        """
        since = self._now() - timedelta(days=days)
        alerts = [
            alert
            for alert in await self.get_security_alerts(clinic_id, self.settings.SECURITY_EVENT_HISTORY)
            if alert.timestamp >= since
        ]

        stats = SecurityStatistics(total_events=len(alerts))
        by_day: Dict[str, int] = {}
        blocked = set()
        for alert in alerts:
            threat_type = alert.threat_type.value
            stats.events_by_type[threat_type] = stats.events_by_type.get(threat_type, 0) + 1

            day = alert.timestamp.astimezone(timezone.utc).date().isoformat()
            by_day[day] = by_day.get(day, 0) + 1

            if alert.severity in (Severity.HIGH, Severity.CRITICAL):
                stats.critical_threats += 1
            if alert.threat_type in LOGIN_THREAT_TYPES:
                stats.suspicious_logins += 1
            if ThreatAction.BLOCK_IP in alert.actions_taken and alert.ip_address:
                blocked.add(alert.ip_address)

        stats.blocked_ips = len(blocked)
        stats.events_by_day = [{"date": day, "count": count} for day, count in sorted(by_day.items())]
        return stats
