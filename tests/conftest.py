import asyncio
import heapq
import itertools
from typing import Any, Dict, List, Tuple

import pytest

from tmdb_images import StateStore


class VirtualClock:
    """Deterministic stand-in for asyncio.sleep / time.monotonic.

    Sleepers park on futures; the clock only moves when a test drives it,
    jumping straight to the earliest deadline.
    """

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []
        self._timers: List[Tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._timers, (self.now + seconds, next(self._seq), future))
        await future

    async def settle(self, rounds: int = 50) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    def _fire_next(self) -> None:
        deadline, _, future = heapq.heappop(self._timers)
        self.now = max(self.now, deadline)
        if not future.done():
            future.set_result(None)

    async def run_until_complete(self, awaitable, max_steps: int = 100000):
        task = asyncio.ensure_future(awaitable)
        for _ in range(max_steps):
            await self.settle()
            if task.done():
                return task.result()
            if not self._timers:
                raise AssertionError("task is stuck: no timers left to fire")
            self._fire_next()
        raise AssertionError("task did not finish within max_steps")

    async def run_until_idle(self, max_steps: int = 100000) -> None:
        for _ in range(max_steps):
            await self.settle()
            if not self._timers:
                return
            self._fire_next()
        raise AssertionError("timers still pending after max_steps")


class FakeTransport:
    """Records every GET and replays scripted outcomes per exact URL."""

    def __init__(self, clock: VirtualClock = None, default: Any = None):
        self.clock = clock
        self.default = {} if default is None else default
        self.calls: List[Tuple[float, str]] = []
        self._scripts: Dict[str, List[Any]] = {}

    def script(self, url: str, *outcomes: Any) -> None:
        self._scripts.setdefault(url, []).extend(outcomes)

    @property
    def urls(self) -> List[str]:
        return [url for _, url in self.calls]

    @property
    def times(self) -> List[float]:
        return [at for at, _ in self.calls]

    async def get_json(self, url: str) -> Any:
        self.calls.append((self.clock.now if self.clock else 0.0, url))
        await asyncio.sleep(0)
        outcomes = self._scripts.get(url)
        if outcomes:
            outcome = outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return self.default


class FakeNow:
    def __init__(self, value: int = 1_700_000_000_000):
        self.value = value

    def __call__(self) -> int:
        return self.value


CONFIG_PAYLOAD = {
    "images": {
        "secure_base_url": "https://image.tmdb.org/t/p/",
        "poster_sizes": ["w92", "w154", "w185", "w342", "w500", "w780", "original"],
        "backdrop_sizes": ["w300", "w780", "w1280", "original"],
        "still_sizes": ["w92", "w185", "w300", "original"],
    }
}


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def transport(clock):
    return FakeTransport(clock)


@pytest.fixture
def now_ms():
    return FakeNow()


@pytest.fixture
def store():
    state = StateStore(":memory:")
    yield state
    state.close()
