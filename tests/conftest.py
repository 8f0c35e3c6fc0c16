"""Shared fakes for pipeline tests."""
import asyncio

import pytest


class FakeClock:
    """Monotonic clock in seconds, advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance_ms(self, ms: float) -> None:
        self.t += ms / 1000.0

    def set_ms(self, ms: float) -> None:
        self.t = ms / 1000.0


class RecordingSleep:
    """Records requested delays and yields to the loop without waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeStream:
    """Stands in for capture.AudioStream."""

    def __init__(self, frames=None, pcm_blocks=None):
        self.active = True
        self.frames = list(frames or [])
        self.pcm_blocks = list(pcm_blocks or [])
        self.pending = bytearray()
        self.stopped = False

    def frequency_data(self):
        if self.frames:
            return self.frames.pop(0)
        return [0] * 128

    def drain(self) -> bytes:
        data = bytes(self.pending)
        self.pending.clear()
        return data

    def stop(self):
        self.active = False
        self.stopped = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


def frame(level: float, bins: int = 128):
    """A spectrum frame whose mean is `level`."""
    return [level] * bins


async def drain_loop(times: int = 5) -> None:
    """Give scheduled tasks a few turns of the event loop."""
    for _ in range(times):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    """Poll `predicate` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
