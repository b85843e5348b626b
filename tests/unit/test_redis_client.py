"""Unit tests for Redis client singleton."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shared.redis_client import close_redis_client, get_redis_client


class TestRedisClient:
    """Tests for Redis client singleton."""

    def test_get_redis_client_returns_instance(self):
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_client = MagicMock()
            mock_from_url.return_value = mock_client
            get_redis_client.cache_clear()

            result = get_redis_client()

            assert result == mock_client
            mock_from_url.assert_called_once()

        get_redis_client.cache_clear()

    def test_get_redis_client_is_singleton(self):
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_from_url.return_value = MagicMock()
            get_redis_client.cache_clear()

            result1 = get_redis_client()
            result2 = get_redis_client()

            assert result1 is result2
            assert mock_from_url.call_count == 1

        get_redis_client.cache_clear()

    def test_redis_client_configured_with_pool(self):
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_from_url.return_value = MagicMock()
            get_redis_client.cache_clear()

            get_redis_client()

            kwargs = mock_from_url.call_args.kwargs
            assert kwargs["max_connections"] == 20
            assert kwargs["decode_responses"] is True
            assert kwargs["retry_on_timeout"] is True

        get_redis_client.cache_clear()

    @pytest.mark.asyncio
    async def test_close_redis_client(self):
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_client = MagicMock()
            mock_client.aclose = AsyncMock()
            mock_from_url.return_value = mock_client
            get_redis_client.cache_clear()

            await close_redis_client()

            mock_client.aclose.assert_awaited_once()

        get_redis_client.cache_clear()
