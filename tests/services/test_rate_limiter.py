# tests/services/test_rate_limiter.py
from __future__ import annotations

from typing import Any

import pytest

from aegis_gateway.core.settings import Settings
from aegis_gateway.services.rate_limiter import (
    RateLimitDecision,
    RateLimiter,
    RateLimitRule,
    rules_from_settings,
)
from aegis_gateway.services.store import MemoryStore


@pytest.fixture()
def limiter(clock: Any) -> RateLimiter:
    rules = {
        "login": RateLimitRule(limit=1, window_ms=60_000),
        "general": RateLimitRule(limit=3, window_ms=60_000),
        "api": RateLimitRule(limit=5, window_ms=60_000),
        "admin": RateLimitRule(limit=2, window_ms=60_000),
    }
    return RateLimiter(
        MemoryStore(clock=clock),
        rules,
        privileged_prefixes=["/api/v1/admin"],
        clock=clock,
    )


@pytest.mark.asyncio
async def test_login_window_blocks_then_resets(limiter: RateLimiter, clock: Any) -> None:
    first = await limiter.check("198.51.100.1", "login")
    second = await limiter.check("198.51.100.1", "login")

    assert first.is_blocked is False
    assert first.remaining == 0
    assert second.is_blocked is True
    assert second.retry_after_ms == 60_000

    clock.advance(61)
    third = await limiter.check("198.51.100.1", "login")
    assert third.is_blocked is False


@pytest.mark.asyncio
async def test_retry_after_shrinks_inside_window(limiter: RateLimiter, clock: Any) -> None:
    await limiter.check("198.51.100.1", "login")
    clock.advance(45)
    blocked = await limiter.check("198.51.100.1", "login")
    assert blocked.is_blocked is True
    assert blocked.retry_after_ms == 15_000


@pytest.mark.asyncio
async def test_window_still_open_at_exactly_its_length(limiter: RateLimiter, clock: Any) -> None:
    await limiter.check("198.51.100.1", "login")
    clock.advance(60)
    at_boundary = await limiter.check("198.51.100.1", "login")
    assert at_boundary.is_blocked is True

    clock.advance(1)
    assert (await limiter.check("198.51.100.1", "login")).is_blocked is False


@pytest.mark.asyncio
async def test_identities_and_categories_are_independent(limiter: RateLimiter) -> None:
    await limiter.check("198.51.100.1", "login")
    assert (await limiter.check("198.51.100.2", "login")).is_blocked is False
    assert (await limiter.check("198.51.100.1", "general")).is_blocked is False


@pytest.mark.asyncio
async def test_unknown_category_uses_general_rule(limiter: RateLimiter) -> None:
    decisions = [await limiter.check("198.51.100.1", "uploads") for _ in range(4)]
    assert [d.is_blocked for d in decisions] == [False, False, False, True]
    assert decisions[0].limit == 3


@pytest.mark.asyncio
async def test_reset_forgets_counter(limiter: RateLimiter) -> None:
    await limiter.check("198.51.100.1", "login")
    await limiter.reset("198.51.100.1", "login")
    assert (await limiter.check("198.51.100.1", "login")).is_blocked is False


@pytest.mark.asyncio
async def test_info_does_not_count(limiter: RateLimiter, clock: Any) -> None:
    fresh = await limiter.info("198.51.100.1", "general")
    assert fresh.remaining == 3
    assert fresh.is_blocked is False

    await limiter.check("198.51.100.1", "general")
    clock.advance(20)
    info = await limiter.info("198.51.100.1", "general")
    again = await limiter.info("198.51.100.1", "general")
    assert info.remaining == again.remaining == 2
    assert info.reset_time == int(clock() * 1000) + 40_000


@pytest.mark.parametrize(
    ("path", "category"),
    [
        ("/auth/login", "login"),
        ("/api/v1/auth/login", "login"),
        ("/auth/register", "register"),
        ("/api/v1/admin/allowed-ips", "admin"),
        ("/api/items", "api"),
        ("/about", "general"),
    ],
)
def test_category_for_path(limiter: RateLimiter, path: str, category: str) -> None:
    # "register" is not configured on this limiter, so it falls through.
    expected = "general" if category == "register" else category
    assert limiter.category_for_path(path) == expected


def test_category_for_path_with_settings_rules() -> None:
    config = Settings(secret_key="x")
    limiter = RateLimiter(
        MemoryStore(),
        rules_from_settings(config),
        privileged_prefixes=config.privileged_prefix_list,
    )
    assert limiter.category_for_path("/auth/register") == "register"
    assert limiter.rule_for("login") == RateLimitRule(limit=5, window_ms=900_000)


def test_rules_require_general_category() -> None:
    with pytest.raises(ValueError):
        RateLimiter(MemoryStore(), {"login": RateLimitRule(1, 1000)})


def test_decision_headers() -> None:
    decision = RateLimitDecision(
        is_blocked=True, remaining=0, reset_time=1_700_000_060_000, limit=5, retry_after_ms=1_500
    )
    headers = decision.headers()
    assert headers["X-RateLimit-Limit"] == "5"
    assert headers["X-RateLimit-Remaining"] == "0"
    assert headers["X-RateLimit-Reset"] == "1700000060"
    assert headers["X-RateLimit-Policy"] == "fixed-window"
    assert headers["Retry-After"] == "2"


@pytest.mark.asyncio
async def test_entries_split_ipv6_identities(limiter: RateLimiter, clock: Any) -> None:
    await limiter.check("2001:db8::1", "login")
    await limiter.check("2001:db8::1", "login")
    await limiter.check("198.51.100.1", "api")

    entries = await limiter.entries()
    assert [(entry.identity, entry.category, entry.count) for entry in entries] == [
        ("198.51.100.1", "api", 1),
        ("2001:db8::1", "login", 2),
    ]
    assert entries[1].is_blocked is True
    assert entries[1].reset_time == int(clock() * 1000) + 60_000


@pytest.mark.asyncio
async def test_stats_and_blocked(limiter: RateLimiter, clock: Any) -> None:
    await limiter.check("198.51.100.1", "login")
    await limiter.check("198.51.100.2", "login")
    await limiter.check("198.51.100.2", "general")

    stats = await limiter.stats()
    assert (stats.total, stats.blocked) == (3, 2)
    assert stats.by_category == {"general": 1, "login": 2}
    assert [entry.identity for entry in await limiter.blocked()] == [
        "198.51.100.1",
        "198.51.100.2",
    ]

    await limiter.reset("198.51.100.1", "login")
    assert [entry.identity for entry in await limiter.blocked()] == ["198.51.100.2"]

    clock.advance(61)
    assert (await limiter.stats()).total == 0
