"""Tests for the Redis fixed-window rate limiter."""
from unittest.mock import MagicMock, patch

import pytest
import redis
from fastapi import HTTPException

from order_gate.services.ratelimit.service import RATE_LIMIT_MESSAGE, RateLimiter, get_client_ip


def _request(host="10.0.0.1", user_agent="pytest", forwarded=None):
    request = MagicMock()
    request.client.host = host
    headers = {"user-agent": user_agent}
    if forwarded:
        headers["X-Forwarded-For"] = forwarded
    request.headers = headers
    return request


class TestHit:
    def test_first_hit_sets_expiry(self):
        client = MagicMock()
        client.incr.return_value = 1
        limiter = RateLimiter("verify", limit=2, window_seconds=60, client=client)
        assert limiter.hit("10.0.0.1", "ua") is True
        client.incr.assert_called_once_with("ratelimit:verify:10.0.0.1:ua")
        client.expire.assert_called_once_with("ratelimit:verify:10.0.0.1:ua", 60)

    def test_over_limit(self):
        client = MagicMock()
        client.incr.return_value = 3
        limiter = RateLimiter("verify", limit=2, window_seconds=60, client=client)
        assert limiter.hit("10.0.0.1", "ua") is False
        client.expire.assert_not_called()

    def test_key_includes_user_agent(self):
        limiter = RateLimiter("api", limit=1, window_seconds=60, client=MagicMock())
        assert limiter.key("1.2.3.4", "a") != limiter.key("1.2.3.4", "b")

    def test_fails_open_without_redis(self):
        client = MagicMock()
        client.incr.side_effect = redis.ConnectionError("down")
        limiter = RateLimiter("verify", limit=1, window_seconds=60, client=client)
        assert limiter.hit("10.0.0.1", "ua") is True


class TestDependency:
    @patch("order_gate.services.ratelimit.service.settings")
    def test_raises_429(self, mock_settings):
        mock_settings.rate_limit_enabled = True
        mock_settings.is_production = False
        client = MagicMock()
        client.incr.return_value = 11
        limiter = RateLimiter("verify", limit=10, window_seconds=60, client=client)
        with pytest.raises(HTTPException) as exc:
            limiter(_request())
        assert exc.value.status_code == 429
        assert exc.value.detail == RATE_LIMIT_MESSAGE

    @patch("order_gate.services.ratelimit.service.settings")
    def test_disabled_skips_redis(self, mock_settings):
        mock_settings.rate_limit_enabled = False
        client = MagicMock()
        RateLimiter("verify", limit=1, window_seconds=60, client=client)(_request())
        client.incr.assert_not_called()


class TestClientIp:
    @patch("order_gate.services.ratelimit.service.settings")
    def test_forwarded_only_from_trusted_proxy_in_production(self, mock_settings):
        mock_settings.is_production = True
        mock_settings.trusted_proxy_ips_set = {"10.0.0.1"}
        assert get_client_ip(_request(forwarded="203.0.113.5, 10.0.0.1")) == "203.0.113.5"
        assert get_client_ip(_request(host="10.0.0.2", forwarded="203.0.113.5")) == "10.0.0.2"

    @patch("order_gate.services.ratelimit.service.settings")
    def test_forwarded_ignored_outside_production(self, mock_settings):
        mock_settings.is_production = False
        mock_settings.trusted_proxy_ips_set = {"10.0.0.1"}
        assert get_client_ip(_request(forwarded="203.0.113.5")) == "10.0.0.1"
