import pytest

from src.seekrouter.rate_limiter import FixedWindowRateLimiter, RateLimitResult, client_key
from src.seekrouter.router import RateLimitConfig


class FakeClock:
  def __init__(self, now: int = 1_000_000) -> None:
    self.now = now

  def __call__(self) -> int:
    return self.now


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


def test_allows_up_to_limit_then_denies(clock: FakeClock) -> None:
  limiter = FixedWindowRateLimiter(clock=clock)
  config = RateLimitConfig(max_requests=3, window_ms=60_000)

  results = [limiter.check("stream:1.2.3.4", config) for _ in range(4)]

  assert [r.allowed for r in results] == [True, True, True, False]
  assert [r.remaining for r in results] == [2, 1, 0, 0]
  assert all(r.reset_at == clock.now + 60_000 for r in results)


def test_window_resets_when_reset_time_is_reached(clock: FakeClock) -> None:
  limiter = FixedWindowRateLimiter(clock=clock)
  config = RateLimitConfig(max_requests=1, window_ms=1_000)

  first = limiter.check("k", config)
  assert first.allowed

  clock.now += 999
  assert not limiter.check("k", config).allowed

  clock.now += 1
  fresh = limiter.check("k", config)
  assert fresh.allowed
  assert fresh.remaining == 0
  assert fresh.reset_at == clock.now + 1_000


def test_keys_are_counted_independently(clock: FakeClock) -> None:
  limiter = FixedWindowRateLimiter(clock=clock)
  config = RateLimitConfig(max_requests=1, window_ms=60_000)

  assert limiter.check("search:a", config).allowed
  assert limiter.check("search:b", config).allowed
  assert limiter.check("stream:a", config).allowed
  assert not limiter.check("search:a", config).allowed


def test_expired_entries_are_cleaned_up_once_per_interval(clock: FakeClock) -> None:
  limiter = FixedWindowRateLimiter(clock=clock, cleanup_interval_ms=10_000)
  config = RateLimitConfig(max_requests=5, window_ms=1_000)
  limiter.check("a", config)
  limiter.check("b", config)
  assert len(limiter) == 2

  clock.now += 5_000
  limiter.check("c", config)
  assert len(limiter) == 3

  clock.now += 5_000
  limiter.check("c", config)
  assert len(limiter) == 1


def test_reset_clears_all_windows(clock: FakeClock) -> None:
  limiter = FixedWindowRateLimiter(clock=clock)
  config = RateLimitConfig(max_requests=1, window_ms=60_000)
  limiter.check("k", config)
  limiter.reset()
  assert limiter.check("k", config).allowed


def test_retry_after_rounds_up_to_whole_seconds() -> None:
  result = RateLimitResult(allowed=False, remaining=0, reset_at=10_001)
  assert result.retry_after_seconds(9_000) == 2
  assert result.retry_after_seconds(10_001) == 0
  assert result.retry_after_seconds(20_000) == 0


@pytest.mark.parametrize(
  ("headers", "expected"),
  [
    ({"x-forwarded-for": "203.0.113.7, 10.0.0.1"}, "203.0.113.7"),
    ({"x-forwarded-for": " 198.51.100.2 "}, "198.51.100.2"),
    ({"x-real-ip": "192.0.2.9"}, "192.0.2.9"),
    ({"x-forwarded-for": "", "x-real-ip": "192.0.2.9"}, "192.0.2.9"),
    ({}, "unknown"),
  ],
)
def test_client_key_prefers_first_forwarded_hop(headers: dict[str, str], expected: str) -> None:
  assert client_key(headers) == expected
