import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping

from .router import RateLimitConfig

CLEANUP_INTERVAL_MS = 60_000
UNKNOWN_CLIENT = "unknown"


@dataclass
class RateLimitEntry:
  count: int
  reset_at: int


@dataclass(frozen=True)
class RateLimitResult:
  allowed: bool
  remaining: int
  reset_at: int

  def retry_after_seconds(self, now_ms: int) -> int:
    return max(0, math.ceil((self.reset_at - now_ms) / 1000))


def _now_ms() -> int:
  return int(time.time() * 1000)


class FixedWindowRateLimiter:
  """Fixed-window request counter keyed by caller identity.

  A window opens on the first request for a key and lasts ``window_ms``; once
  ``now >= reset_at`` the next request opens a fresh window with count 1.
  Expired entries are dropped at most once per ``cleanup_interval_ms``.
  """

  def __init__(
    self,
    *,
    clock: Callable[[], int] = _now_ms,
    cleanup_interval_ms: int = CLEANUP_INTERVAL_MS,
  ):
    self._clock = clock
    self.cleanup_interval_ms = cleanup_interval_ms
    self._entries: Dict[str, RateLimitEntry] = {}
    self._lock = threading.Lock()
    self._last_cleanup = clock()

  def __len__(self) -> int:
    return len(self._entries)

  def now(self) -> int:
    return self._clock()

  def _cleanup_locked(self, now: int) -> None:
    if now - self._last_cleanup < self.cleanup_interval_ms:
      return
    self._last_cleanup = now
    for key in [k for k, entry in self._entries.items() if now >= entry.reset_at]:
      del self._entries[key]

  def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
    now = self._clock()
    with self._lock:
      self._cleanup_locked(now)
      entry = self._entries.get(key)
      if entry is None or now >= entry.reset_at:
        entry = RateLimitEntry(count=1, reset_at=now + config.window_ms)
        self._entries[key] = entry
        return RateLimitResult(True, config.max_requests - 1, entry.reset_at)
      if entry.count >= config.max_requests:
        return RateLimitResult(False, 0, entry.reset_at)
      entry.count += 1
      return RateLimitResult(True, config.max_requests - entry.count, entry.reset_at)

  def reset(self) -> None:
    with self._lock:
      self._entries.clear()


def client_key(headers: Mapping[str, str]) -> str:
  forwarded = headers.get("x-forwarded-for")
  if forwarded:
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
      return first_hop
  real_ip = headers.get("x-real-ip")
  if real_ip and real_ip.strip():
    return real_ip.strip()
  return UNKNOWN_CLIENT
