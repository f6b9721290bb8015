"""Fixed-window rate limiting per (identity, category)."""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from aegis_gateway.core.settings import Settings
from aegis_gateway.services.store import Clock, CounterStore

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"
KEY_PREFIX = "rate_limit"


@dataclass(frozen=True)
class RateLimitRule:
    """Limit and window length for one category."""

    limit: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single :meth:`RateLimiter.check` call.

    ``reset_time`` is an epoch timestamp in milliseconds.
    """

    is_blocked: bool
    remaining: int
    reset_time: int
    limit: int
    retry_after_ms: int | None = None

    def headers(self) -> dict[str, str]:
        """Return the ``X-RateLimit-*`` response headers for this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time // 1000),
            "X-RateLimit-Policy": "fixed-window",
        }
        if self.retry_after_ms is not None:
            headers["Retry-After"] = str(max(1, -(-self.retry_after_ms // 1000)))
        return headers


@dataclass(frozen=True)
class RateLimitEntry:
    """Live counter for one (identity, category) pair."""

    identity: str
    category: str
    count: int
    limit: int
    reset_time: int

    @property
    def is_blocked(self) -> bool:
        """True when the next request in this window would be rejected."""
        return self.count >= self.limit


@dataclass(frozen=True)
class RateLimitStats:
    total: int
    blocked: int
    by_category: dict[str, int]


def rules_from_settings(config: Settings) -> dict[str, RateLimitRule]:
    """Build the category rule table from configuration."""
    return {
        category: RateLimitRule(limit=limit, window_ms=window_seconds * 1000)
        for category, (limit, window_seconds) in config.rate_limits.items()
    }


class RateLimiter:
    """Count requests per (identity, category) inside fixed windows.

    The window for a key starts at its first request and the counter expires
    with it, so the next request after expiry opens a fresh window.
    """

    def __init__(
        self,
        store: CounterStore,
        rules: Mapping[str, RateLimitRule],
        *,
        privileged_prefixes: Iterable[str] = (),
        clock: Clock = time.time,
    ) -> None:
        if DEFAULT_CATEGORY not in rules:
            raise ValueError(f"rate limit rules must define the {DEFAULT_CATEGORY!r} category")
        self._store = store
        self._rules = dict(rules)
        self._privileged = tuple(privileged_prefixes)
        self._clock = clock

    @staticmethod
    def _key(identity: str, category: str) -> str:
        return f"{KEY_PREFIX}:{identity}:{category}"

    def rule_for(self, category: str) -> RateLimitRule:
        """Return the rule for ``category``; unknown categories use the default."""
        return self._rules.get(category, self._rules[DEFAULT_CATEGORY])

    def category_for_path(self, path: str) -> str:
        """Map a request path to its rate-limit category."""
        lowered = path.lower()
        candidates = [
            ("login", ("/auth/login", "/api/auth/login", "/api/v1/auth/login")),
            ("register", ("/auth/register", "/api/auth/register", "/api/v1/auth/register")),
        ]
        for category, prefixes in candidates:
            if category in self._rules and lowered.startswith(prefixes):
                return category
        if "admin" in self._rules and self._privileged and lowered.startswith(self._privileged):
            return "admin"
        if "api" in self._rules and lowered.startswith("/api"):
            return "api"
        return DEFAULT_CATEGORY

    async def check(self, identity: str, category: str) -> RateLimitDecision:
        """Count one request and decide whether it is admitted.

        Args:
            identity: Resolved client identity (usually the client IP)
            category: Rate-limit category, e.g. ``login`` or ``general``

        Returns:
            RateLimitDecision; ``retry_after_ms`` is set only when blocked
        """
        rule = self.rule_for(category)
        state = await self._store.increment(self._key(identity, category), rule.window_ms)
        now_ms = int(self._clock() * 1000)
        remaining = max(0, rule.limit - state.count)
        if state.count > rule.limit:
            retry_after = max(0, state.expires_at_ms - now_ms)
            logger.info(
                "Rate limit exceeded for %s in %s (%d/%d)",
                identity,
                category,
                state.count,
                rule.limit,
            )
            return RateLimitDecision(
                is_blocked=True,
                remaining=0,
                reset_time=state.expires_at_ms,
                limit=rule.limit,
                retry_after_ms=retry_after,
            )
        return RateLimitDecision(
            is_blocked=False,
            remaining=remaining,
            reset_time=state.expires_at_ms,
            limit=rule.limit,
        )

    async def info(self, identity: str, category: str) -> RateLimitDecision:
        """Return the current state for a key without counting a request."""
        rule = self.rule_for(category)
        key = self._key(identity, category)
        now_ms = int(self._clock() * 1000)
        raw = await self._store.get(key)
        ttl = await self._store.ttl_ms(key)
        if raw is None or ttl is None:
            return RateLimitDecision(
                is_blocked=False,
                remaining=rule.limit,
                reset_time=now_ms + rule.window_ms,
                limit=rule.limit,
            )
        count = int(raw)
        blocked = count >= rule.limit
        return RateLimitDecision(
            is_blocked=blocked,
            remaining=max(0, rule.limit - count),
            reset_time=now_ms + ttl,
            limit=rule.limit,
            retry_after_ms=ttl if blocked else None,
        )

    async def reset(self, identity: str, category: str) -> None:
        """Forget the counter for a key, e.g. after a successful login."""
        await self._store.delete(self._key(identity, category))

    @property
    def categories(self) -> tuple[str, ...]:
        return tuple(self._rules)

    @staticmethod
    def _split_key(key: str) -> tuple[str, str] | None:
        # Identities may be IPv6 addresses, so the category is the last field.
        identity, sep, category = key[len(KEY_PREFIX) + 1:].rpartition(":")
        if not sep or not identity or not category:
            return None
        return identity, category

    async def entries(self) -> list[RateLimitEntry]:
        """Return every live counter, ordered by key.

        Keys that expire between listing and reading are skipped.
        """
        now_ms = int(self._clock() * 1000)
        entries: list[RateLimitEntry] = []
        for key in sorted(await self._store.keys(f"{KEY_PREFIX}:")):
            parts = self._split_key(key)
            if parts is None:
                continue
            raw = await self._store.get(key)
            ttl = await self._store.ttl_ms(key)
            if raw is None or ttl is None:
                continue
            identity, category = parts
            entries.append(
                RateLimitEntry(
                    identity=identity,
                    category=category,
                    count=int(raw),
                    limit=self.rule_for(category).limit,
                    reset_time=now_ms + ttl,
                )
            )
        return entries

    async def blocked(self) -> list[RateLimitEntry]:
        """Return the counters whose identity is currently locked out."""
        return [entry for entry in await self.entries() if entry.is_blocked]

    async def stats(self) -> RateLimitStats:
        """Count live counters overall, per category, and those at their limit."""
        entries = await self.entries()
        return RateLimitStats(
            total=len(entries),
            blocked=sum(1 for entry in entries if entry.is_blocked),
            by_category=dict(Counter(entry.category for entry in entries)),
        )
