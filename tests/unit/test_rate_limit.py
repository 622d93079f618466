"""Unit tests for the checkout rate limiter."""

import pytest
from libs.common.rate_limit import CheckoutRateLimiter, _async_storage_uri
from limits.aio.storage import MemoryStorage


@pytest.mark.asyncio
@pytest.mark.unit
async def test_checkout_limiter_moving_window():
    limiter = CheckoutRateLimiter("3 per minute", storage=MemoryStorage())

    decisions = [await limiter.check("10.0.0.1") for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert decisions[0].limit == 3
    assert decisions[0].remaining == 2
    assert decisions[3].remaining == 0
    assert 1 <= decisions[3].retry_after <= 60


@pytest.mark.asyncio
@pytest.mark.unit
async def test_checkout_limiter_keys_are_independent():
    limiter = CheckoutRateLimiter("1 per minute", storage=MemoryStorage())

    assert (await limiter.check("10.0.0.1")).allowed
    assert not (await limiter.check("10.0.0.1")).allowed
    assert (await limiter.check("10.0.0.2")).allowed

    await limiter.reset()
    assert (await limiter.check("10.0.0.1")).allowed


@pytest.mark.asyncio
@pytest.mark.unit
async def test_checkout_limiter_builds_async_storage_from_settings():
    limiter = CheckoutRateLimiter("1 per minute")

    assert isinstance(limiter.storage, MemoryStorage)
    assert (await limiter.check("10.0.0.9")).allowed


@pytest.mark.unit
@pytest.mark.parametrize(
    "uri, expected",
    [
        ("memory://", "async+memory://"),
        ("redis://cache:6379/1", "async+redis://cache:6379/1"),
        ("async+redis://cache:6379", "async+redis://cache:6379"),
    ],
)
def test_storage_uri_maps_to_async_flavour(uri, expected):
    assert _async_storage_uri(uri) == expected
