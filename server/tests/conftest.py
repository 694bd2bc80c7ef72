from __future__ import annotations

import pytest

from bellserver.class_map import default_index


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class FakeConnection:
    def __init__(self, remote_address: tuple[str, int] = ("127.0.0.1", 50000)) -> None:
        self.remote_address = remote_address


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def class_index():
    return default_index()


@pytest.fixture
def label_index(class_index):
    """Map display name -> class index for building batches by label."""
    return {label: i for i, label in enumerate(class_index.labels) if label}


@pytest.fixture
def make_conn():
    """Factory for hashable stand-ins of a device connection."""
    counter = iter(range(50000, 60000))

    def _make(host: str = "127.0.0.1") -> FakeConnection:
        return FakeConnection((host, next(counter)))

    return _make
