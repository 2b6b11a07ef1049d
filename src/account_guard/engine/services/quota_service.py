"""Quota service — sliding-window rate limiting with reputation feedback.

Rules are in-process configuration. Per (identifier, rule) records live in
the cache as JSON under ``ratelimit:<identifier>:<rule_id>`` and are
pruned to the rule window on every check.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from account_guard.errors.definitions import ErrInvalidRateLimitRule
from account_guard.utils.clock import MS_PER_HOUR, MS_PER_SECOND
from account_guard.utils.locks import KeyedLock

if TYPE_CHECKING:
    from account_guard.engine.client import GuardEngine

logger = logging.getLogger(__name__)

RECORD_PREFIX = "ratelimit:"
LOGIN_RULE = "login"

_HIGH_REPUTATION = 0.7
_LOW_REPUTATION = 0.3
_REPUTATION_BONUS = 0.2
_REPUTATION_PENALTY = 0.3

_ACTIVE_RECORD_WINDOW_MS = 15 * 60 * MS_PER_SECOND

# Dynamic adjustment thresholds
_OVERLOAD_LOAD = 0.8
_OVERLOAD_ERROR_RATE = 0.1
_IDLE_LOAD = 0.3
_IDLE_ERROR_RATE = 0.01
_SHRINK_FACTOR = 0.7
_GROW_FACTOR = 1.2


class RateLimitTier(enum.StrEnum):
    """Service tier a rule belongs to."""

    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class RateLimitRule:
    """A sliding-window quota."""

    rule_id: str
    window_ms: int
    max_requests: int
    tier: RateLimitTier = RateLimitTier.BASIC
    reputation_modifier: float = 1.0

    def __post_init__(self) -> None:
        if not self.rule_id or self.window_ms <= 0 or self.max_requests < 1:
            raise ErrInvalidRateLimitRule
        if self.reputation_modifier <= 0:
            raise ErrInvalidRateLimitRule

    def adjusted_limit(self, reputation: float) -> int:
        """Effective request limit for a caller with *reputation*."""
        bonus = math.floor(self.max_requests * _REPUTATION_BONUS) if reputation > _HIGH_REPUTATION else 0
        penalty = (
            math.floor(self.max_requests * _REPUTATION_PENALTY) if reputation < _LOW_REPUTATION else 0
        )
        return max(1, math.floor(self.max_requests * self.reputation_modifier + bonus - penalty))


DEFAULT_RULES: tuple[RateLimitRule, ...] = (
    RateLimitRule("api:basic", 60 * MS_PER_SECOND, 60, RateLimitTier.BASIC, 1.0),
    RateLimitRule("api:premium", 60 * MS_PER_SECOND, 300, RateLimitTier.PREMIUM, 1.2),
    RateLimitRule("api:enterprise", 60 * MS_PER_SECOND, 1000, RateLimitTier.ENTERPRISE, 1.5),
    RateLimitRule(LOGIN_RULE, 15 * 60 * MS_PER_SECOND, 5),
    RateLimitRule("password_reset", MS_PER_HOUR, 3),
    RateLimitRule("withdrawal", MS_PER_HOUR, 10),
)


@dataclass
class RateLimitRecord:
    """Sliding-window state of one identifier under one rule."""

    identifier: str
    rule_id: str
    requests: list[int] = field(default_factory=list)
    blocked: int = 0
    last_reset: int = 0
    reputation: float = 0.5

    @property
    def last_activity(self) -> int:
        return max([self.last_reset, *self.requests])

    def prune(self, now: int, window_ms: int) -> None:
        """Drop timestamps outside ``(now - window_ms, now]``."""
        window_start = now - window_ms
        self.requests = [ts for ts in self.requests if window_start < ts <= now]

    def to_json(self) -> str:
        return json.dumps(dataclasses.asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> RateLimitRecord:
        data: dict[str, Any] = json.loads(raw)
        return cls(**data)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a quota check.

    ``remaining`` is -1 when the rule is unknown and the check failed open.
    ``retry_after_ms`` is only set on denial.
    """

    allowed: bool
    remaining: int
    reset_at: int
    retry_after_ms: int | None = None


@dataclass(frozen=True)
class BruteForceResult:
    detected: bool
    severity: str
    details: str


@dataclass(frozen=True)
class RecordStatistics:
    total_requests: int
    blocked_requests: int
    current_reputation: float
    adjusted_limit: int


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def record_key(identifier: str, rule_id: str) -> str:
    """Cache key of the record for (*identifier*, *rule_id*)."""
    return f"{RECORD_PREFIX}{identifier}:{rule_id}"


class QuotaService:
    """Business logic for adaptive rate limiting.

    Unknown rules fail open; that is a documented risk, logged and counted.
    Each record is read-modified-written under its own key lock.
    """

    def __init__(self, engine: GuardEngine) -> None:
        self._engine = engine
        self._locks = KeyedLock()
        self._rules: dict[str, RateLimitRule] = {r.rule_id: r for r in DEFAULT_RULES}

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_rule(self, rule: RateLimitRule) -> None:
        """Add or replace a rule."""
        self._rules[rule.rule_id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> RateLimitRule | None:
        return self._rules.get(rule_id)

    def list_rules(self) -> list[RateLimitRule]:
        return list(self._rules.values())

    def adjust_dynamically(self, rule_id: str, system_load: float, error_rate: float) -> int | None:
        """Scale a rule's ``max_requests`` to the current system health.

        Shrinks by 30% under load or errors, grows by 20% when the system is
        quiet, otherwise leaves it unchanged.

        Returns:
            The new ``max_requests``, or None if the rule is unknown.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            return None

        new_max = rule.max_requests
        if system_load > _OVERLOAD_LOAD or error_rate > _OVERLOAD_ERROR_RATE:
            new_max = math.floor(rule.max_requests * _SHRINK_FACTOR)
        elif system_load < _IDLE_LOAD and error_rate < _IDLE_ERROR_RATE:
            new_max = math.floor(rule.max_requests * _GROW_FACTOR)
        new_max = max(1, new_max)

        if new_max != rule.max_requests:
            self._rules[rule_id] = dataclasses.replace(rule, max_requests=new_max)
            logger.info(
                "Adjusted rule %s max_requests %d -> %d (load=%.2f, errors=%.3f)",
                rule_id,
                rule.max_requests,
                new_max,
                system_load,
                error_rate,
            )
        return new_max

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _ttl_seconds(self, rule: RateLimitRule) -> int:
        idle = self._engine.config.rate_limit.idle_record_max_age_ms
        return math.ceil((rule.window_ms + idle) / MS_PER_SECOND)

    async def _load(self, identifier: str, rule_id: str) -> RateLimitRecord | None:
        raw = await self._engine.cache.get(record_key(identifier, rule_id))
        return RateLimitRecord.from_json(raw) if raw is not None else None

    async def _store(self, record: RateLimitRecord, rule: RateLimitRule | None) -> None:
        ttl = self._ttl_seconds(rule) if rule is not None else None
        await self._engine.cache.set(
            record_key(record.identifier, record.rule_id), record.to_json(), ttl=ttl
        )

    async def check(
        self, identifier: str, rule_id: str, reputation: float | None = None
    ) -> RateLimitResult:
        """Count one request by *identifier* against *rule_id*.

        Args:
            identifier: Caller identity (user id, key id, IP, ...).
            rule_id: Rule to enforce.
            reputation: Caller reputation in [0, 1]; None uses the stored one.

        Returns:
            The decision. Denials carry ``retry_after_ms``, the time until the
            oldest in-window request leaves the window.
        """
        now = self._engine.clock.now_ms()
        rule = self._rules.get(rule_id)
        if rule is None:
            logger.warning("Unknown rate limit rule %r, allowing request (fail-open)", rule_id)
            self._record_decision(rule_id, "fail_open")
            return RateLimitResult(allowed=True, remaining=-1, reset_at=now)

        key = record_key(identifier, rule_id)
        async with self._locks.hold(key):
            record = await self._load(identifier, rule_id)
            if record is None:
                record = RateLimitRecord(
                    identifier=identifier,
                    rule_id=rule_id,
                    last_reset=now,
                    reputation=self._engine.config.rate_limit.default_reputation,
                )
            if reputation is not None:
                record.reputation = _clamp(reputation)

            record.prune(now, rule.window_ms)
            limit = rule.adjusted_limit(record.reputation)

            if len(record.requests) >= limit:
                record.blocked += 1
                await self._store(record, rule)
                oldest = record.requests[0] if record.requests else now
                reset_at = oldest + rule.window_ms
                self._record_decision(rule_id, "denied")
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after_ms=max(1, reset_at - now),
                )

            record.requests.append(now)
            await self._store(record, rule)

        self._record_decision(rule_id, "allowed")
        return RateLimitResult(
            allowed=True,
            remaining=limit - len(record.requests),
            reset_at=record.requests[0] + rule.window_ms,
        )

    def _record_decision(self, rule_id: str, decision: str) -> None:
        if self._engine.metrics:
            self._engine.metrics.record_rate_limit(rule_id, decision)

    async def update_reputation(self, identifier: str, rule_id: str, reputation: float) -> bool:
        """Store a new reputation for an existing record.

        Returns:
            False if there is no record for (*identifier*, *rule_id*).
        """
        async with self._locks.hold(record_key(identifier, rule_id)):
            record = await self._load(identifier, rule_id)
            if record is None:
                return False
            record.reputation = _clamp(reputation)
            await self._store(record, self._rules.get(rule_id))
        return True

    async def reset_limit(self, identifier: str, rule_id: str) -> bool:
        """Clear the window and blocked count of a record."""
        async with self._locks.hold(record_key(identifier, rule_id)):
            record = await self._load(identifier, rule_id)
            if record is None:
                return False
            record.requests = []
            record.blocked = 0
            record.last_reset = self._engine.clock.now_ms()
            await self._store(record, self._rules.get(rule_id))
        return True

    async def record_statistics(self, identifier: str, rule_id: str) -> RecordStatistics | None:
        """Current window size, blocked count and reputation of a record."""
        record = await self._load(identifier, rule_id)
        if record is None:
            return None
        rule = self._rules.get(rule_id)
        if rule is not None:
            record.prune(self._engine.clock.now_ms(), rule.window_ms)
        return RecordStatistics(
            total_requests=len(record.requests),
            blocked_requests=record.blocked,
            current_reputation=record.reputation,
            adjusted_limit=rule.adjusted_limit(record.reputation) if rule else -1,
        )

    async def _all_records(self) -> list[RateLimitRecord]:
        records = []
        for key in await self._engine.cache.keys(RECORD_PREFIX):
            raw = await self._engine.cache.get(key)
            if raw is not None:
                records.append(RateLimitRecord.from_json(raw))
        return records

    async def active_records(self) -> list[RateLimitRecord]:
        """Records with a request in the last 15 minutes."""
        cutoff = self._engine.clock.now_ms() - _ACTIVE_RECORD_WINDOW_MS
        return [r for r in await self._all_records() if any(ts > cutoff for ts in r.requests)]

    async def sweep_idle_records(self, max_idle_ms: int | None = None) -> int:
        """Delete records with an empty window and no activity for *max_idle_ms*.

        Each record is examined under its own lock, one at a time.

        Returns:
            Number of records removed.
        """
        if max_idle_ms is None:
            max_idle_ms = self._engine.config.rate_limit.idle_record_max_age_ms
        removed = 0
        for key in await self._engine.cache.keys(RECORD_PREFIX):
            async with self._locks.hold(key):
                raw = await self._engine.cache.get(key)
                if raw is None:
                    continue
                record = RateLimitRecord.from_json(raw)
                now = self._engine.clock.now_ms()
                last_activity = record.last_activity
                rule = self._rules.get(record.rule_id)
                if rule is not None:
                    record.prune(now, rule.window_ms)
                if not record.requests and now - last_activity > max_idle_ms:
                    await self._engine.cache.delete(key)
                    removed += 1
        if removed:
            logger.info("Swept %d idle rate limit records", removed)
        return removed

    # ------------------------------------------------------------------
    # Brute-force detection
    # ------------------------------------------------------------------

    async def detect_brute_force(self, identifier: str) -> BruteForceResult:
        """Classify login pressure on *identifier* from its ``login`` record."""
        record = await self._load(identifier, LOGIN_RULE)
        if record is None:
            return BruteForceResult(detected=False, severity="low", details="No login activity")

        if record.blocked > 10:
            return BruteForceResult(
                detected=True, severity="high", details=f"{record.blocked} blocked login attempts"
            )
        if record.blocked > 5:
            return BruteForceResult(
                detected=True, severity="medium", details=f"{record.blocked} blocked login attempts"
            )
        if len(record.requests) > 20:
            return BruteForceResult(
                detected=True,
                severity="low",
                details=f"{len(record.requests)} login attempts in window",
            )
        return BruteForceResult(detected=False, severity="low", details="Normal activity")
