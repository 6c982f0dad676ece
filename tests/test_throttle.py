"""Tests for the in-memory and Redis-backed sliding window throttles."""

from __future__ import annotations

import time

import fakeredis
import pytest

from account_guard.security.throttle import RedisSlidingWindowThrottle, SlidingWindowThrottle


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_memory_throttle_blocks_excess_per_key():
    throttle = SlidingWindowThrottle(max_requests=2, window_seconds=60)
    assert throttle.allow("recovery:acct:g1")
    assert throttle.allow("recovery:acct:g1")
    assert not throttle.allow("recovery:acct:g1")
    assert throttle.allow("recovery:acct:g2")

    throttle.reset("recovery:acct:g1")
    assert throttle.allow("recovery:acct:g1")


def test_redis_throttle_allows_within_threshold(redis_client):
    throttle = RedisSlidingWindowThrottle(redis_client, max_requests=3, window_seconds=1, key_prefix="test")
    key = "recovery:acct:g1"
    assert throttle.allow(key)
    assert throttle.allow(key)
    assert throttle.allow(key)


def test_redis_throttle_blocks_excess(redis_client):
    throttle = RedisSlidingWindowThrottle(redis_client, max_requests=2, window_seconds=1, key_prefix="test")
    key = "recovery:acct:g1"
    assert throttle.allow(key)
    assert throttle.allow(key)
    assert not throttle.allow(key)

    throttle.reset(key)
    assert throttle.allow(key)


def test_redis_throttle_expires_entries(redis_client):
    throttle = RedisSlidingWindowThrottle(redis_client, max_requests=1, window_seconds=1, key_prefix="test")
    key = "recovery:acct:g1"
    assert throttle.allow(key)
    assert not throttle.allow(key)
    time.sleep(1.1)
    assert throttle.allow(key)
