from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import partial
from pathlib import Path
from typing import Callable

from .artifact import (
    MANIFEST_FILENAME,
    build_merged_filename,
    build_report,
    merge_segments,
    should_assemble,
    write_manifest,
)
from .downloader import transfer_segment
from .errors import ProbeError, SegmentError, SelectionError
from .ffmpeg_pipeline import DurationProber, ProcessRunner
from .models import (
    Config,
    Job,
    JobResult,
    ProgressCallback,
    ProgressEvent,
    ResultMap,
    SegmentTask,
)
from .rate_limiter import TokenBucket
from .task import TaskContext, duration_matches, execute_task


log = logging.getLogger(__name__)

LogCallback = Callable[[str], None]

MERGE_LABEL = "合并"


def build_context(config: Config, rate_limit_bps: int | None = None) -> TaskContext:
    limiter = TokenBucket(rate_limit_bps) if rate_limit_bps and rate_limit_bps > 0 else None
    return TaskContext(
        config=config,
        prober=DurationProber(config.tools.ffprobe, timeout_sec=config.probe_timeout_sec),
        runner=ProcessRunner(config.tools.ffmpeg),
        transfer=partial(
            transfer_segment,
            limiter=limiter,
            interval_sec=config.progress_interval_sec,
            timeout=config.download_timeout,
        ),
    )


def effective_worker_count(concurrency: int, task_count: int) -> int:
    if task_count <= 0:
        return 0
    return max(1, min(concurrency, task_count))


def process_job(
    job: Job,
    config: Config,
    ctx: TaskContext | None = None,
    log_cb: LogCallback | None = None,
    progress_cb: ProgressCallback | None = None,
) -> JobResult:
    total = len(job.segments)
    segments_by_index = {segment.index: segment for segment in job.segments}
    if sorted(segments_by_index) != list(range(1, total + 1)):
        raise SelectionError(f"分段序号必须为 1~{total} 且不重复")

    indices = job.selection.resolve(total)
    if not indices:
        raise SelectionError(f"选择的分段 {job.selection} 不在 1~{total} 范围内")

    job.output_dir.mkdir(parents=True, exist_ok=True)
    _log(log_cb, f"下载目录: {job.output_dir}")

    if ctx is None:
        ctx = build_context(config, job.rate_limit_bps)

    merged_path = job.output_dir / build_merged_filename(job.record)
    full_selection = job.selection.is_full(total)

    if job.merge and full_selection and _merged_file_complete(job, merged_path, ctx, config):
        _log(log_cb, f"完整回放文件已存在，跳过下载: {merged_path.name}")
        # 结果与首次运行一致：每个分段对应其（合并后已删除的）TS 路径
        results = {
            index: job.output_dir / segments_by_index[index].remux_filename
            for index in indices
        }
        return JobResult(
            results=results,
            report=build_report(indices, results),
            merged_path=merged_path,
            skipped_existing=True,
        )

    tasks = [
        SegmentTask(segment=segments_by_index[index], directory=job.output_dir, sink=progress_cb)
        for index in indices
    ]

    results = run_workers(tasks, ctx, job.concurrency, log_cb=log_cb)
    snapshot = results.snapshot()
    failures = {task.index: task.error for task in tasks if task.index not in snapshot}
    report = build_report(indices, snapshot, failures)

    job_result = JobResult(results=snapshot, report=report)
    if not should_assemble(job.selection, total, snapshot):
        if full_selection:
            _log(log_cb, f"有 {len(report.failed)} 个分段未成功，跳过合并")
        for outcome in report.outcomes:
            if outcome.succeeded:
                _log(log_cb, f"第{outcome.index}部分下载完成: {outcome.output_path}")
            else:
                _log(log_cb, f"第{outcome.index}部分下载不成功: {outcome.reason}")
        return job_result

    if job.merge:
        _log(log_cb, f"合并为单个视频: {merged_path.name}")
        merge_segments(
            snapshot,
            merged_path,
            ctx.runner,
            ctx.prober,
            on_progress=_merge_progress(progress_cb, merged_path.name),
            timeout=config.concat_timeout_sec,
        )
        job_result.merged_path = merged_path
        _log(log_cb, f"完整回放下载完毕: {merged_path}")
    else:
        manifest_path = job.output_dir / MANIFEST_FILENAME
        write_manifest(results.ordered_paths(), manifest_path, ctx.prober)
        job_result.manifest_path = manifest_path
        _log(log_cb, f"已生成播放列表: {manifest_path}")

    return job_result


def run_workers(
    tasks: list[SegmentTask],
    ctx: TaskContext,
    concurrency: int,
    log_cb: LogCallback | None = None,
) -> ResultMap:
    results = ResultMap()
    worker_count = effective_worker_count(concurrency, len(tasks))
    if worker_count == 0:
        return results
    if worker_count != concurrency:
        _log(log_cb, f"自动调整下载并发数: {concurrency} -> {worker_count}")

    ordered = sorted(tasks, key=lambda item: item.index)
    completed_count = 0

    # 执行器内部队列即共享任务队列，退出 with 时等待所有 worker 结束
    with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="segment") as executor:
        futures = {
            executor.submit(_run_task, task=task, ctx=ctx, results=results): task
            for task in ordered
        }

        for future in as_completed(futures):
            task = futures[future]
            future.result()
            completed_count += 1
            if task.state == "COMPLETED":
                _log(
                    log_cb,
                    f"[{completed_count}/{len(ordered)}] 第{task.index}部分{task.step} -> {task.filename}",
                )
            else:
                _log(
                    log_cb,
                    f"[{completed_count}/{len(ordered)}] 第{task.index}部分失败 -> {task.error}",
                )

    return results


def _run_task(task: SegmentTask, ctx: TaskContext, results: ResultMap) -> None:
    # 错开各任务的启动时间，避免同时发起大量连接
    delay = min(ctx.config.stagger_sec * task.index, ctx.config.stagger_cap_sec)
    if delay > 0:
        time.sleep(delay)

    try:
        output_path = execute_task(task, ctx)
    except SegmentError as exc:
        log.error("第%d部分处理出错: %s", task.index, exc)
        return
    except Exception:  # noqa: BLE001
        log.exception("第%d部分出现未预期错误", task.index)
        return

    results.set(task.index, output_path)


def _merged_file_complete(job: Job, merged_path: Path, ctx: TaskContext, config: Config) -> bool:
    if not merged_path.is_file():
        return False
    try:
        duration = ctx.prober.probe(merged_path)
    except ProbeError as exc:
        log.warning("检查完整回放文件出错: %s", exc)
        return False
    return duration_matches(job.total_duration_sec, duration, config.record_tolerance_sec)


def _merge_progress(progress_cb: ProgressCallback | None, filename: str) -> Callable[[float, float], None] | None:
    if progress_cb is None:
        return None

    def report(current: float, total: float) -> None:
        progress_cb(
            ProgressEvent(
                label=MERGE_LABEL,
                step=MERGE_LABEL,
                filename=filename,
                current=current,
                total=total,
                unit="seconds",
            )
        )

    return report


def _log(log_cb: LogCallback | None, message: str) -> None:
    log.info(message)
    if log_cb:
        log_cb(message)
