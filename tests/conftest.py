from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable

import pytest

from record_fetcher.errors import TransferError
from record_fetcher.models import Config, Segment
from record_fetcher.task import TaskContext


class FakeProber:
    def __init__(self, durations: dict[str, float | Exception] | None = None, default: float = 10.0):
        self.durations = durations or {}
        self.default = default
        self.calls: list[Path] = []
        self._lock = threading.Lock()

    def probe(self, media_path: Path) -> float:
        with self._lock:
            self.calls.append(media_path)
        value = self.durations.get(media_path.name, self.default)
        if isinstance(value, Exception):
            raise value
        return value

    def probe_total(self, media_paths) -> float:
        return sum(self.probe(path) for path in media_paths)


class FakeRunner:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    def run(self, args, total, on_progress=None, timeout=None) -> None:
        with self._lock:
            self.calls.append(list(args))
        if self.error is not None:
            raise self.error
        Path(args[-1]).write_bytes(b"remuxed")
        if on_progress is not None:
            on_progress(total, total)

    @property
    def remux_calls(self) -> list[list[str]]:
        return [call for call in self.calls if "-bsf:v" in call]

    @property
    def concat_calls(self) -> list[list[str]]:
        return [call for call in self.calls if "-bsf:a" in call]


class FakeTransfer:
    def __init__(self, fail_indices: set[int] | None = None, delay: float = 0.0):
        self.fail_indices = fail_indices or set()
        self.delay = delay
        self.calls: list[int] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, segment: Segment, destination: Path, on_progress) -> int:
        with self._lock:
            self.calls.append(segment.index)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                threading.Event().wait(self.delay)
            if segment.index in self.fail_indices:
                raise TransferError("连接被重置")
            destination.write_bytes(b"x" * segment.size)
            on_progress(segment.size, segment.size)
            return segment.size
        finally:
            with self._lock:
                self.active -= 1


def make_segments(count: int, size: int = 16, duration_ms: int = 10_000) -> list[Segment]:
    return [
        Segment(
            index=i,
            url=f"https://cdn.example.com/record/part-{i}.flv?token=abc",
            size=size,
            duration_ms=duration_ms,
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def config() -> Config:
    return Config(stagger_sec=0.0, progress_interval_sec=0.0)


@pytest.fixture
def make_ctx(config: Config) -> Callable[..., TaskContext]:
    def factory(
        prober: FakeProber | None = None,
        runner: FakeRunner | None = None,
        transfer: FakeTransfer | None = None,
    ) -> TaskContext:
        return TaskContext(
            config=config,
            prober=prober or FakeProber(),
            runner=runner or FakeRunner(),
            transfer=transfer or FakeTransfer(),
        )

    return factory
