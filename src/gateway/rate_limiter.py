import asyncio
import time
from typing import Dict


class TokenBucket:
  def __init__(self, rpm: int):
    self.capacity = max(1, rpm)
    self.tokens = self.capacity
    self.window_start = int(time.time() // 60)

  def try_take(self) -> float:
    now_min = int(time.time() // 60)
    if now_min != self.window_start:
      self.window_start = now_min
      self.tokens = self.capacity
    if self.tokens > 0:
      self.tokens -= 1
      return 0.0
    now = time.time()
    return 60 - (now % 60)


class Guard:
  """Paces calls to one upstream: a per-minute bucket and a concurrency cap."""

  def __init__(self, rpm: int | None, concurrency: int):
    self.bucket = TokenBucket(rpm) if rpm else None
    self.sem = asyncio.Semaphore(max(1, concurrency))

  async def __aenter__(self) -> "Guard":
    while self.bucket is not None:
      delay = self.bucket.try_take()
      if delay <= 0:
        break
      await asyncio.sleep(delay)
    await self.sem.acquire()
    return self

  async def __aexit__(self, exc_type, exc, tb):
    self.sem.release()


class ProviderGuards:
  """One guard per provider name, rebuilt when its rpm hint changes."""

  def __init__(self, concurrency: int):
    self.concurrency = concurrency
    self.guards: Dict[str, tuple[int | None, Guard]] = {}

  def get(self, name: str, rpm: int | None) -> Guard:
    existing = self.guards.get(name)
    if existing is not None and existing[0] == rpm:
      return existing[1]
    guard = Guard(rpm, self.concurrency)
    self.guards[name] = (rpm, guard)
    return guard
