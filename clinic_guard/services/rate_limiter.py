# clinic_guard/services/rate_limiter.py
"""
Sliding-window rate limiter with escalating temporary blocks.

Keys (CounterStore):
    rate_limit:{type}:{identifier}             sorted set of event timestamps
    rate_limit:{type}:{identifier}:block       BlockState JSON, TTL = duration + slack
    rate_limit:{type}:{identifier}:escalation  EscalationState JSON, TTL = 24h
    whitelist:{type}:{identifier}              presence flag, optional TTL

Store failures fail open: the request is allowed and the result is marked
degraded. Unknown limit types raise ConfigurationError.
"""

import logging
import time
from typing import Callable, Dict, Optional, Type, TypeVar, Union

from clinic_guard.core.config import Settings, settings as default_settings
from clinic_guard.core.exceptions import RedisServiceError
from clinic_guard.core.rate_limit_config import (
    LimitRule,
    LimitType,
    build_limit_rules,
    parse_limit_type,
)
from clinic_guard.models.security_models import (
    BlockState,
    EscalationState,
    RateLimitResult,
    RateLimitStats,
)
from clinic_guard.services.redis_service import RedisService

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
StateT = TypeVar("StateT", BlockState, EscalationState)


class RateLimiter:
    """
    Distributed rate limiter on top of the counter store.

    Concurrent requests for the same key are serialized by the store's
    MULTI/EXEC batch; different keys never coordinate.
    """

    def __init__(
        self,
        store: RedisService,
        settings: Optional[Settings] = None,
        clock: Clock = time.time
    ):
        self.store = store
        self.settings = settings or default_settings
        self.rules: Dict[LimitType, LimitRule] = build_limit_rules(self.settings)
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def window_key(limit_type: LimitType, identifier: str) -> str:
        return f"rate_limit:{limit_type.value}:{identifier}"

    @classmethod
    def block_key(cls, limit_type: LimitType, identifier: str) -> str:
        return f"{cls.window_key(limit_type, identifier)}:block"

    @classmethod
    def escalation_key(cls, limit_type: LimitType, identifier: str) -> str:
        return f"{cls.window_key(limit_type, identifier)}:escalation"

    @staticmethod
    def whitelist_key(limit_type: LimitType, identifier: str) -> str:
        return f"whitelist:{limit_type.value}:{identifier}"

    def get_rule(self, limit_type: Union[str, LimitType]) -> LimitRule:
        return self.rules[parse_limit_type(limit_type)]

    async def check_rate_limit(
        self,
        limit_type: Union[str, LimitType],
        identifier: str
    ) -> RateLimitResult:
        """
        Count one request and decide whether it is allowed.

        Args:
            limit_type: Which rule to apply
            identifier: IP address, user id or other subject of the limit

        Returns:
            RateLimitResult; never raises for store failures
        """
        limit_type = parse_limit_type(limit_type)
        rule = self.rules[limit_type]

        try:
            return await self._check(limit_type, rule, identifier)
        except RedisServiceError as e:
            logger.warning(
                f"⚠️ Rate limit check degraded for {limit_type.value}, allowing request: {e.message}"
            )
            return RateLimitResult(
                allowed=True,
                limit=0,
                remaining=0,
                reset_time=0,
                degraded=True,
            )

    async def _check(self, limit_type: LimitType, rule: LimitRule, identifier: str) -> RateLimitResult:
        now = self._now()

        if await self.store.exists(self.whitelist_key(limit_type, identifier)):
            return RateLimitResult(
                allowed=True,
                limit=rule.max_events,
                remaining=rule.max_events,
                reset_time=now + rule.window_seconds,
                whitelisted=True,
            )

        block_key = self.block_key(limit_type, identifier)
        block = await self._load_block(block_key)
        if block is not None:
            if now < block.unblock_at:
                return RateLimitResult(
                    allowed=False,
                    limit=rule.max_events,
                    remaining=0,
                    reset_time=block.unblock_at,
                    retry_after=block.unblock_at - now,
                    block_level=block.level,
                )
            await self.store.delete(block_key)

        key = self.window_key(limit_type, identifier)
        count = await self.store.record_event(
            key,
            now=now,
            window=rule.window_seconds,
            ttl=rule.window_seconds + self.settings.RATE_LIMIT_SLACK_SECONDS,
        )
        reset_time = now + rule.window_seconds

        if count <= rule.max_events:
            return RateLimitResult(
                allowed=True,
                limit=rule.max_events,
                remaining=rule.max_events - count,
                reset_time=reset_time,
            )

        block = await self._escalate(limit_type, rule, identifier, now)
        return RateLimitResult(
            allowed=False,
            limit=rule.max_events,
            remaining=0,
            reset_time=block.unblock_at,
            retry_after=block.unblock_at - block.blocked_at,
            block_level=block.level,
            escalated=True,
        )

    async def _load_state(self, key: str, model: Type[StateT]) -> Optional[StateT]:
        """Read a stored state blob; unreadable blobs are logged and dropped"""
        data = await self.store.get(key)
        if data is None:
            return None
        try:
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return model.model_validate(data)
        except ValueError as e:
            logger.error(f"Dropping corrupt rate limit state at {key}: {e}")
            await self.store.delete(key)
            return None

    async def _load_block(self, block_key: str) -> Optional[BlockState]:
        return await self._load_state(block_key, BlockState)

    async def _load_escalation(self, limit_type: LimitType, identifier: str) -> Optional[EscalationState]:
        return await self._load_state(self.escalation_key(limit_type, identifier), EscalationState)

    async def _escalate(
        self,
        limit_type: LimitType,
        rule: LimitRule,
        identifier: str,
        now: int
    ) -> BlockState:
        """Issue the next block on the ladder for a violation"""
        previous = await self._load_escalation(limit_type, identifier)
        level = previous.level + 1 if previous is not None else 0
        duration = rule.block_duration_for_level(level)

        block = await self._write_block(
            limit_type, identifier, level, duration, now, reason="rate_limit_exceeded"
        )

        logger.warning(
            f"🚦 Rate limit exceeded: type={limit_type.value} identifier={identifier} "
            f"level={level} block={duration}s"
        )
        return block

    async def _write_block(
        self,
        limit_type: LimitType,
        identifier: str,
        level: int,
        duration: int,
        now: int,
        reason: str
    ) -> BlockState:
        block = BlockState(
            level=level,
            blocked_at=now,
            unblock_at=now + duration,
            identifier=identifier,
            limit_type=limit_type.value,
            reason=reason,
        )
        escalation = EscalationState(level=level, last_escalation=now)

        # The window is cleared with the block so an expired block starts clean
        await self.store.atomic_write(
            set_items={
                self.block_key(limit_type, identifier): (
                    block.to_store(), duration + self.settings.RATE_LIMIT_SLACK_SECONDS
                ),
                self.escalation_key(limit_type, identifier): (
                    escalation.to_store(), self.settings.ESCALATION_TTL_SECONDS
                ),
            },
            delete_keys=[self.window_key(limit_type, identifier)],
        )
        return block

    async def block(
        self,
        limit_type: Union[str, LimitType],
        identifier: str,
        duration: int,
        reason: str = "administrative_block"
    ) -> BlockState:
        """
        Administrative block, used by support tooling and the security monitor.

        Counts as a violation: the escalation level is raised like any other.

        Raises:
            RedisServiceError: if the block could not be written
        """
        limit_type = parse_limit_type(limit_type)
        now = self._now()
        previous = await self._load_escalation(limit_type, identifier)
        level = previous.level + 1 if previous is not None else 0

        block = await self._write_block(limit_type, identifier, level, duration, now, reason=reason)
        logger.warning(
            f"🚫 Blocked {identifier} for {limit_type.value} ({duration}s, reason={reason})"
        )
        return block

    async def reset(self, limit_type: Union[str, LimitType], identifier: str) -> bool:
        """Clear window, block and escalation state for a key"""
        limit_type = parse_limit_type(limit_type)
        try:
            await self.store.atomic_write(delete_keys=[
                self.window_key(limit_type, identifier),
                self.block_key(limit_type, identifier),
                self.escalation_key(limit_type, identifier),
            ])
        except RedisServiceError as e:
            logger.error(f"Rate limit reset failed for {limit_type.value}:{identifier}: {e.message}")
            return False

        logger.info(f"🔄 Rate limit reset: type={limit_type.value} identifier={identifier}")
        return True

    async def add_to_whitelist(
        self,
        limit_type: Union[str, LimitType],
        identifier: str,
        ttl: Optional[int] = None
    ) -> bool:
        limit_type = parse_limit_type(limit_type)
        try:
            await self.store.set(self.whitelist_key(limit_type, identifier), "1", ttl=ttl)
        except RedisServiceError as e:
            logger.error(f"Whitelist add failed for {limit_type.value}:{identifier}: {e.message}")
            return False

        logger.info(f"✅ Whitelisted {identifier} for {limit_type.value} (ttl={ttl})")
        return True

    async def remove_from_whitelist(self, limit_type: Union[str, LimitType], identifier: str) -> bool:
        limit_type = parse_limit_type(limit_type)
        try:
            return await self.store.delete(self.whitelist_key(limit_type, identifier)) > 0
        except RedisServiceError as e:
            logger.error(f"Whitelist removal failed for {limit_type.value}:{identifier}: {e.message}")
            return False

    async def is_whitelisted(self, limit_type: Union[str, LimitType], identifier: str) -> bool:
        limit_type = parse_limit_type(limit_type)
        try:
            return await self.store.exists(self.whitelist_key(limit_type, identifier)) > 0
        except RedisServiceError as e:
            logger.error(f"Whitelist check failed for {limit_type.value}:{identifier}: {e.message}")
            return False

    async def get_stats(self, limit_type: Union[str, LimitType], identifier: str) -> RateLimitStats:
        """
        Current window count and block/escalation state for support tooling.

        Raises:
            RedisServiceError: the store is unavailable
        """
        limit_type = parse_limit_type(limit_type)
        rule = self.rules[limit_type]
        now = self._now()

        current_count = await self.store.count_events(
            self.window_key(limit_type, identifier), now=now, window=rule.window_seconds
        )
        block = await self._load_block(self.block_key(limit_type, identifier))
        escalation = await self._load_escalation(limit_type, identifier)
        whitelisted = await self.store.exists(self.whitelist_key(limit_type, identifier)) > 0

        return RateLimitStats(
            current_count=current_count,
            is_blocked=block is not None and now < block.unblock_at,
            next_reset_time=now + rule.window_seconds,
            block_level=block.level if block is not None else None,
            escalation_level=escalation.level if escalation is not None else None,
            whitelisted=whitelisted,
        )
