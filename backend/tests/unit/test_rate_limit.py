import pytest

from sidequests.infra.rate_limit import allow


@pytest.mark.asyncio
async def test_rate_limit_allows_within_budget():
	assert await allow("presence_location", "u5", limit=2, window_seconds=60)
	assert await allow("presence_location", "u5", limit=2, window_seconds=60)


@pytest.mark.asyncio
async def test_rate_limit_blocks_when_budget_exhausted():
	await allow("presence_nearby", "u6", limit=1, window_seconds=60)
	assert not await allow("presence_nearby", "u6", limit=1, window_seconds=60)


@pytest.mark.asyncio
async def test_rate_limit_windows_reset():
	assert await allow("presence_nearby", "u7", limit=1, window_seconds=60, now=120.0)
	assert not await allow("presence_nearby", "u7", limit=1, window_seconds=60, now=150.0)
	assert await allow("presence_nearby", "u7", limit=1, window_seconds=60, now=180.0)
