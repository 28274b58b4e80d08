from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Literal
from urllib.parse import urlparse


TaskState = Literal[
    "QUEUED",
    "TRANSFERRING",
    "TRANSFERRED",
    "REMUXING",
    "VERIFYING",
    "COMPLETED",
    "FAILED",
]
ProgressUnit = Literal["bytes", "seconds"]

TERMINAL_STATES: frozenset[str] = frozenset({"COMPLETED", "FAILED"})

# 两条快速通道：输出已存在直接完成；原始文件大小吻合则跳过下载
TRANSITIONS: dict[str, frozenset[str]] = {
    "QUEUED": frozenset({"TRANSFERRING", "TRANSFERRED", "COMPLETED"}),
    "TRANSFERRING": frozenset({"TRANSFERRED", "FAILED"}),
    "TRANSFERRED": frozenset({"REMUXING"}),
    "REMUXING": frozenset({"VERIFYING", "FAILED"}),
    "VERIFYING": frozenset({"COMPLETED", "FAILED"}),
    "COMPLETED": frozenset(),
    "FAILED": frozenset(),
}

REMUX_SUFFIX = ".ts"


@dataclass(frozen=True)
class ToolPaths:
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"


@dataclass(frozen=True)
class Config:
    tools: ToolPaths = field(default_factory=ToolPaths)
    output_dir: Path = Path("downloads")
    concurrency: int = 2
    rate_limit_bps: int | None = None
    remux_timeout_sec: int = 900
    concat_timeout_sec: int = 1200
    probe_timeout_sec: int = 10
    segment_tolerance_sec: float = 3.0
    record_tolerance_sec: float = 10.0
    progress_interval_sec: float = 0.12
    stagger_sec: float = 0.02
    stagger_cap_sec: float = 1.0
    download_timeout: tuple[float, float] = (10, 30)


@dataclass(frozen=True)
class Segment:
    index: int
    url: str
    size: int
    duration_ms: int
    backup_url: str | None = None

    @property
    def duration_sec(self) -> float:
        return self.duration_ms / 1000

    @property
    def filename(self) -> str:
        try:
            path = urlparse(self.url).path
        except ValueError:
            path = ""
        name = PurePosixPath(path).name.replace(":", "-")
        if name:
            return name
        digest = hashlib.sha256(self.url.split("?", 1)[0].encode("utf-8")).hexdigest()
        return f"{digest}.flv"

    @property
    def remux_filename(self) -> str:
        return str(PurePosixPath(self.filename).with_suffix(REMUX_SUFFIX))


@dataclass(frozen=True)
class SelectionSet:
    select_all: bool = False
    indices: frozenset[int] = frozenset()

    @classmethod
    def all(cls) -> SelectionSet:
        return cls(select_all=True)

    @classmethod
    def of(cls, indices: Iterable[int]) -> SelectionSet:
        # 序号从 1 开始，0 没有意义，直接忽略
        return cls(indices=frozenset(i for i in indices if i > 0))

    def contains(self, index: int) -> bool:
        if index <= 0:
            return False
        return self.select_all or index in self.indices

    def count(self, total: int | None = None) -> int:
        if not self.select_all:
            return len(self.indices)
        if total is None:
            raise ValueError("选择了全部分段，但分段总数未知")
        return total

    def resolve(self, total: int) -> list[int]:
        return [i for i in range(1, total + 1) if self.contains(i)]

    def is_full(self, total: int) -> bool:
        return total > 0 and len(self.resolve(total)) == total

    def __str__(self) -> str:
        if self.select_all:
            return "all"
        return ",".join(str(i) for i in sorted(self.indices))


@dataclass(frozen=True)
class RecordInfo:
    record_id: str
    title: str = ""
    start_time: datetime | None = None
    quality: str = "未知"


@dataclass(frozen=True)
class Job:
    record: RecordInfo
    segments: tuple[Segment, ...]
    selection: SelectionSet
    output_dir: Path
    concurrency: int = 2
    rate_limit_bps: int | None = None
    merge: bool = True

    @property
    def total_duration_sec(self) -> float:
        return sum(segment.duration_sec for segment in self.segments)


@dataclass(frozen=True)
class ProgressEvent:
    label: str
    step: str
    filename: str
    current: float
    total: float
    unit: ProgressUnit


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class SegmentTask:
    segment: Segment
    directory: Path
    sink: ProgressCallback | None = None
    state: TaskState = "QUEUED"
    step: str = "等待中"
    filename: str = ""
    output_path: Path | None = None
    error: str = ""

    def __post_init__(self) -> None:
        if not self.filename:
            self.filename = self.segment.filename

    @property
    def index(self) -> int:
        return self.segment.index

    @property
    def label(self) -> str:
        return f"第{self.segment.index}部分"

    @property
    def raw_path(self) -> Path:
        return self.directory / self.segment.filename

    @property
    def remux_path(self) -> Path:
        return self.directory / self.segment.remux_filename

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_advance(self, state: TaskState) -> bool:
        return state in TRANSITIONS[self.state]

    def advance(self, state: TaskState, step: str | None = None) -> None:
        if not self.can_advance(state):
            raise ValueError(f"非法的状态转换: {self.state} -> {state}")
        self.state = state
        if step is not None:
            self.step = step

    def emit(self, current: float, total: float, unit: ProgressUnit) -> None:
        if self.sink is None:
            return
        self.sink(
            ProgressEvent(
                label=self.label,
                step=self.step,
                filename=self.filename,
                current=current,
                total=total,
                unit=unit,
            )
        )


class ResultMap:
    def __init__(self) -> None:
        self._paths: dict[int, Path] = {}
        self._lock = threading.Lock()

    def set(self, index: int, path: Path) -> None:
        with self._lock:
            self._paths[index] = path

    def get(self, index: int) -> Path | None:
        with self._lock:
            return self._paths.get(index)

    def snapshot(self) -> dict[int, Path]:
        with self._lock:
            return dict(self._paths)

    def ordered_paths(self) -> list[Path]:
        with self._lock:
            return [self._paths[i] for i in sorted(self._paths)]

    def __contains__(self, index: object) -> bool:
        with self._lock:
            return index in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)


@dataclass(frozen=True)
class SegmentOutcome:
    index: int
    succeeded: bool
    output_path: Path | None
    reason: str = ""


@dataclass(frozen=True)
class SegmentReport:
    outcomes: tuple[SegmentOutcome, ...]

    @property
    def succeeded(self) -> list[SegmentOutcome]:
        return [item for item in self.outcomes if item.succeeded]

    @property
    def failed(self) -> list[SegmentOutcome]:
        return [item for item in self.outcomes if not item.succeeded]


@dataclass
class JobResult:
    results: dict[int, Path]
    report: SegmentReport
    merged_path: Path | None = None
    manifest_path: Path | None = None
    skipped_existing: bool = False


@dataclass(frozen=True)
class ParseFailure:
    index: int
    raw: str
    error: str
