import time

import pytest

from common.rate_limiter import ActionType, RateLimitManager


@pytest.mark.asyncio
async def test_identities_have_separate_buckets():
    limiter = RateLimitManager({ActionType.VIEW_PLAYER: (1, 0.5), ActionType.LOGIN: (1, 0.5)})
    t0 = time.monotonic()
    await limiter.acquire(ActionType.VIEW_PLAYER, "w-1")
    await limiter.acquire(ActionType.VIEW_PLAYER, "w-2")
    assert time.monotonic() - t0 < 0.25

    await limiter.acquire(ActionType.VIEW_PLAYER, "w-1")
    assert time.monotonic() - t0 >= 0.4


@pytest.mark.asyncio
async def test_penalty_and_forget():
    limiter = RateLimitManager()
    limiter.penalize(ActionType.HOF_PAGE, 5.0, "w-1")
    assert limiter.remaining(ActionType.HOF_PAGE, "w-1") > 4
    assert limiter.remaining(ActionType.HOF_PAGE, "w-2") == 0

    limiter.forget("w-1")
    assert limiter.remaining(ActionType.HOF_PAGE, "w-1") == 0


@pytest.mark.asyncio
async def test_per_identity_actions_without_key_are_unlimited():
    limiter = RateLimitManager({ActionType.HOF_PAGE: (1, 10.0)})
    t0 = time.monotonic()
    for _ in range(3):
        await limiter.acquire(ActionType.HOF_PAGE)
    await limiter.acquire(ActionType.LOGIN)
    assert time.monotonic() - t0 < 0.5
