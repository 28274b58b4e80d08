from __future__ import annotations

import logging
import re
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import IO, Callable, Sequence

from .errors import ProbeError, RemuxError


log = logging.getLogger(__name__)

ProgressFn = Callable[[float, float], None]

# ffmpeg -progress 输出示例：out_time=00:29:13.066011
_TIMESTAMP_PATTERN = re.compile(r"^(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")
_STDERR_TAIL_LINES = 20
_READER_JOIN_TIMEOUT_SEC = 5


def parse_timestamp(text: str) -> float:
    match = _TIMESTAMP_PATTERN.match(text.strip())
    if match is None:
        raise ValueError(f"无法解析的时间戳: {text!r}")
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def remux_args(raw_path: Path, output_path: Path) -> list[str]:
    # FLV 中的 H.264 为 AVCC 格式，写入 MPEG-TS 前需转为 Annex B
    return [
        "-y",
        "-i",
        str(raw_path),
        "-c",
        "copy",
        "-bsf:v",
        "h264_mp4toannexb",
        "-f",
        "mpegts",
        str(output_path),
    ]


def concat_args(input_paths: Sequence[Path], output_path: Path) -> list[str]:
    return [
        "-n",
        "-i",
        "concat:" + "|".join(str(path) for path in input_paths),
        "-c",
        "copy",
        "-bsf:a",
        "aac_adtstoasc",
        "-movflags",
        "faststart",
        "-f",
        "mp4",
        str(output_path),
    ]


class DurationProber:
    def __init__(self, ffprobe_bin: str, timeout_sec: float = 10):
        self.ffprobe_bin = ffprobe_bin
        self.timeout_sec = timeout_sec

    def probe(self, media_path: Path) -> float:
        cmd = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1",
            str(media_path),
        ]

        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout_sec,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProbeError(f"ffprobe 超时: {media_path.name}") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise ProbeError(f"ffprobe 失败: {stderr or exc}") from exc
        except OSError as exc:
            raise ProbeError(f"无法启动 ffprobe: {exc}") from exc

        for line in completed.stdout.splitlines():
            key, _, value = line.strip().partition("=")
            if key != "duration":
                continue
            try:
                duration = float(value)
            except ValueError as exc:
                raise ProbeError(f"ffprobe 输出无法解析: {line.strip()}") from exc
            log.debug("探测时长 %s = %.3fs", media_path.name, duration)
            return duration

        raise ProbeError(f"ffprobe 未返回时长: {media_path.name}")

    def probe_total(self, media_paths: Sequence[Path]) -> float:
        return sum(self.probe(path) for path in media_paths)


class ProcessRunner:
    """
    运行 ffmpeg 并解析其 `-progress` 输出。

    ffmpeg 自身报告的总时长并不总是存在，所以进度总量由调用方事先用
    `DurationProber` 探测后传入。
    """

    def __init__(self, ffmpeg_bin: str, timeout_sec: float | None = None):
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout_sec = timeout_sec

    def build_command(self, args: Sequence[str]) -> list[str]:
        cleaned: list[str] = []
        skip_next = False
        for arg in args:
            if skip_next:
                skip_next = False
                continue
            if arg == "-nostats":
                continue
            if arg == "-progress":
                skip_next = True
                continue
            cleaned.append(arg)
        return [self.ffmpeg_bin, "-hide_banner", "-nostdin", "-progress", "pipe:1", "-nostats", *cleaned]

    def run(
        self,
        args: Sequence[str],
        total: float,
        on_progress: ProgressFn | None = None,
        timeout: float | None = None,
    ) -> None:
        if total <= 0:
            raise RemuxError("总时长未知，无法计算进度")

        timeout = timeout if timeout is not None else self.timeout_sec
        cmd = self.build_command(args)
        log.debug("运行 ffmpeg: %s", " ".join(cmd))

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise RemuxError(f"无法启动 ffmpeg: {exc}") from exc

        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        with proc:
            readers = [
                threading.Thread(
                    target=_read_progress,
                    args=(proc.stdout, total, on_progress),
                    daemon=True,
                ),
                threading.Thread(
                    target=_drain,
                    args=(proc.stderr, stderr_tail),
                    daemon=True,
                ),
            ]
            for reader in readers:
                reader.start()

            try:
                returncode = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired as exc:
                proc.kill()
                proc.wait()
                _join_readers(readers)
                raise RemuxError(f"ffmpeg 处理超时（{timeout:g} 秒）") from exc

            _join_readers(readers)

        if returncode != 0:
            message = next((line for line in reversed(stderr_tail) if line), "")
            raise RemuxError(message or f"ffmpeg 执行失败（退出码 {returncode}）")

        if on_progress is not None:
            on_progress(total, total)


def _join_readers(readers: Sequence[threading.Thread]) -> None:
    for reader in readers:
        reader.join(timeout=_READER_JOIN_TIMEOUT_SEC)
        if reader.is_alive():
            # 子进程已结束但管道仍被占用（例如被孙进程继承）
            log.warning("ffmpeg 输出读取线程未能在 %ss 内结束", _READER_JOIN_TIMEOUT_SEC)


def _read_progress(stream: IO[str] | None, total: float, on_progress: ProgressFn | None) -> None:
    if stream is None:
        return
    for line in stream:
        if on_progress is None:
            continue
        key, _, value = line.strip().partition("=")
        if key != "out_time":
            continue
        try:
            current = parse_timestamp(value)
        except ValueError:
            continue
        on_progress(min(current, total), total)


def _drain(stream: IO[str] | None, tail: deque[str]) -> None:
    if stream is None:
        return
    for line in stream:
        tail.append(line.strip())
