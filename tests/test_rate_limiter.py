import pytest

import src.gateway.rate_limiter as rate_limiter
from src.gateway.rate_limiter import Guard, ProviderGuards


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> list[float]:
  fake_time = 0.0
  sleeps: list[float] = []

  async def fake_sleep(delay: float) -> None:
    nonlocal fake_time
    sleeps.append(delay)
    fake_time += delay

  def fake_time_func() -> float:
    return fake_time

  monkeypatch.setattr(rate_limiter.time, "time", fake_time_func)
  monkeypatch.setattr(rate_limiter.asyncio, "sleep", fake_sleep)
  return sleeps


@pytest.mark.anyio
async def test_guard_does_not_exceed_single_rpm(fake_clock: list[float]) -> None:
  guard = Guard(rpm=1, concurrency=1)

  async def acquire_once() -> None:
    async with guard:
      pass

  await acquire_once()
  assert fake_clock == []

  await acquire_once()
  assert fake_clock == [60.0]

  await acquire_once()
  assert fake_clock == [60.0, 60.0]


@pytest.mark.anyio
async def test_guard_without_rpm_never_sleeps(fake_clock: list[float]) -> None:
  guard = Guard(rpm=None, concurrency=2)
  for _ in range(50):
    async with guard:
      pass
  assert fake_clock == []


@pytest.mark.anyio
async def test_guard_releases_slot_on_error(fake_clock: list[float]) -> None:
  guard = Guard(rpm=None, concurrency=1)
  with pytest.raises(RuntimeError):
    async with guard:
      raise RuntimeError("boom")
  async with guard:
    pass
  assert not guard.sem.locked()


def test_provider_guards_reuse_and_rebuild() -> None:
  guards = ProviderGuards(concurrency=3)
  first = guards.get("tenant", 60)
  assert guards.get("tenant", 60) is first
  assert first.sem._value == 3

  rebuilt = guards.get("tenant", 120)
  assert rebuilt is not first
  assert rebuilt.bucket is not None and rebuilt.bucket.capacity == 120

  unpaced = guards.get("openai", None)
  assert unpaced.bucket is None
