from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol, Sequence

from .errors import IntegrityError, SegmentError
from .ffmpeg_pipeline import ProgressFn, remux_args
from .models import Config, Segment, SegmentTask


log = logging.getLogger(__name__)

Transfer = Callable[[Segment, Path, Callable[[int, int], None]], int]


class Prober(Protocol):
    def probe(self, media_path: Path) -> float: ...

    def probe_total(self, media_paths: Sequence[Path]) -> float: ...


class Runner(Protocol):
    def run(
        self,
        args: Sequence[str],
        total: float,
        on_progress: ProgressFn | None = None,
        timeout: float | None = None,
    ) -> None: ...


@dataclass(frozen=True)
class TaskContext:
    config: Config
    prober: Prober
    runner: Runner
    transfer: Transfer


def duration_matches(expected_sec: float, actual_sec: float, tolerance_sec: float) -> bool:
    return abs(expected_sec - actual_sec) < tolerance_sec


def execute_task(task: SegmentTask, ctx: TaskContext) -> Path:
    """
    驱动单个分段走完 下载 -> 解包 -> 检查 的状态机，返回 TS 文件路径。

    失败时任务进入 FAILED，原始文件保留以供人工检查，异常继续向上抛出。
    非 SegmentError 的异常同样会让任务失败，错误信息标记为未预期错误。
    """
    try:
        return _run_state_machine(task, ctx)
    except Exception as exc:
        task.error = str(exc) if isinstance(exc, SegmentError) else f"未预期错误: {exc}"
        if task.can_advance("FAILED"):
            task.advance("FAILED", "已出错")
        raise


def _run_state_machine(task: SegmentTask, ctx: TaskContext) -> Path:
    segment = task.segment
    raw_path = task.raw_path
    remux_path = task.remux_path

    # 已经解包过（例如之前单独下载过该分段），直接作为结果
    if remux_path.is_file():
        log.debug("%s 已存在，跳过处理", remux_path.name)
        task.filename = remux_path.name
        task.advance("COMPLETED", "已存在")
        size = remux_path.stat().st_size
        task.emit(size, size, "bytes")
        task.output_path = remux_path
        return remux_path

    if raw_path.is_file() and raw_path.stat().st_size == segment.size:
        log.debug("%s 已下载，跳过下载", raw_path.name)
        task.advance("TRANSFERRED", "已下载")
        task.emit(segment.size, segment.size, "bytes")
    else:
        task.advance("TRANSFERRING", "下载中")
        task.emit(0, segment.size, "bytes")
        ctx.transfer(segment, raw_path, lambda current, total: task.emit(current, total, "bytes"))
        task.advance("TRANSFERRED")

    task.advance("REMUXING", "解包中")
    task.filename = remux_path.name
    try:
        total = ctx.prober.probe(raw_path)
        ctx.runner.run(
            remux_args(raw_path, remux_path),
            total,
            lambda current, total: task.emit(current, total, "seconds"),
            timeout=ctx.config.remux_timeout_sec,
        )

        task.advance("VERIFYING", "检查中")
        actual = ctx.prober.probe(remux_path)
        log.debug(
            "检查 %s 时长：期望 %.3fs，实际 %.3fs",
            remux_path.name,
            segment.duration_sec,
            actual,
        )
        if not duration_matches(segment.duration_sec, actual, ctx.config.segment_tolerance_sec):
            raise IntegrityError(
                f"解包后时长不符：期望 {segment.duration_sec:.2f}s，实际 {actual:.2f}s"
            )
    except Exception:
        # 未通过检查的 TS 不能留下，否则下次会被当作已完成；原始文件保留
        remux_path.unlink(missing_ok=True)
        raise

    raw_path.unlink(missing_ok=True)
    task.output_path = remux_path
    task.advance("COMPLETED", "已完成")
    return remux_path
