from __future__ import annotations

import csv
import io
import logging
import math
import os
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from .errors import AssemblyError, ProbeError, RemuxError
from .ffmpeg_pipeline import ProgressFn, concat_args
from .input_parser import sanitize_filename
from .models import RecordInfo, SegmentOutcome, SegmentReport, SelectionSet
from .task import Prober, Runner


log = logging.getLogger(__name__)

MANIFEST_FILENAME = "playlist.m3u8"
MERGED_SUFFIX = "-complete.mp4"
PLAYLIST_VERSION = 7
START_TIME_FORMAT = "%Y-%m-%d %H-%M-%S"


def build_merged_filename(record: RecordInfo) -> str:
    parts = []
    if record.start_time is not None:
        parts.append(record.start_time.strftime(START_TIME_FORMAT))
    parts.extend([record.record_id, record.title, record.quality])
    stem = "-".join(part for part in parts if part)
    return sanitize_filename(stem) + MERGED_SUFFIX


def should_assemble(selection: SelectionSet, total: int, results: Mapping[int, Path]) -> bool:
    return selection.is_full(total) and len(results) == total


def merge_segments(
    results: Mapping[int, Path],
    output_path: Path,
    runner: Runner,
    prober: Prober,
    on_progress: ProgressFn | None = None,
    timeout: float | None = None,
) -> Path:
    if output_path.exists():
        raise AssemblyError(f"文件 {output_path} 已经存在")
    if not results:
        raise AssemblyError("没有可合并的分段")

    # 完成顺序不确定，按分段序号排序后再拼接
    ordered = [results[index] for index in sorted(results)]
    try:
        total = prober.probe_total(ordered)
        runner.run(concat_args(ordered, output_path), total, on_progress, timeout=timeout)
    except (ProbeError, RemuxError) as exc:
        raise AssemblyError(f"合并视频分段出错: {exc}") from exc

    for path in ordered:
        try:
            path.unlink()
            log.debug("删除中间文件 %s", path.name)
        except FileNotFoundError:
            continue
    return output_path


def render_manifest(entries: Sequence[tuple[str, float]]) -> str:
    if not entries:
        raise AssemblyError("没有可写入播放列表的分段")

    # 最长分段时长四舍五入（.5 向上进位，不用 round 的银行家舍入）再加 1 秒
    target_duration = math.floor(max(duration for _, duration in entries) + 0.5) + 1
    lines = [
        "#EXTM3U",
        f"#EXT-X-VERSION:{PLAYLIST_VERSION}",
        f"#EXT-X-TARGETDURATION:{target_duration}",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "",
    ]
    for uri, duration in entries:
        lines.append(f"#EXTINF:{duration:f},")
        lines.append(uri)
        lines.append("")
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


def write_manifest(media_paths: Iterable[Path], manifest_path: Path, prober: Prober) -> Path:
    base_dir = manifest_path.parent
    entries: list[tuple[str, float]] = []
    for media_path in media_paths:
        if not media_path.is_file():
            raise AssemblyError(f"分段文件不存在: {media_path}")
        try:
            duration = prober.probe(media_path)
        except ProbeError as exc:
            raise AssemblyError(f"探测分段时长出错: {exc}") from exc
        uri = Path(os.path.relpath(media_path, base_dir)).as_posix()
        entries.append((uri, duration))

    content = render_manifest(entries)
    manifest_path.write_text(content, encoding="utf-8")
    return manifest_path


def build_report(
    indices: Iterable[int],
    results: Mapping[int, Path],
    failures: Mapping[int, str] | None = None,
) -> SegmentReport:
    failures = failures or {}
    outcomes: list[SegmentOutcome] = []
    for index in sorted(set(indices)):
        path = results.get(index)
        if path is not None:
            outcomes.append(SegmentOutcome(index=index, succeeded=True, output_path=path))
        else:
            outcomes.append(
                SegmentOutcome(
                    index=index,
                    succeeded=False,
                    output_path=None,
                    reason=failures.get(index) or "未完成",
                )
            )
    return SegmentReport(outcomes=tuple(outcomes))


def build_result_csv(report: SegmentReport) -> bytes:
    sio = io.StringIO(newline="")
    writer = csv.writer(sio)
    writer.writerow(["index", "status", "output_path", "error"])

    for outcome in report.outcomes:
        writer.writerow(
            [
                outcome.index,
                "SUCCESS" if outcome.succeeded else "FAILED",
                str(outcome.output_path) if outcome.output_path else "",
                outcome.reason,
            ]
        )

    return sio.getvalue().encode("utf-8-sig")
