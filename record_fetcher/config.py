from __future__ import annotations

import os
import shutil
from pathlib import Path

from .input_parser import parse_rate_limit
from .models import Config, ToolPaths


DEFAULT_OUTPUT_DIR = Path("downloads")
MAX_CONCURRENCY = 16


def _read_positive_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _read_positive_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _read_rate_limit(env_name: str) -> int | None:
    raw = os.getenv(env_name)
    if not raw:
        return None
    try:
        return parse_rate_limit(raw)
    except ValueError:
        return None


def _locate(env_name: str, binary: str) -> str:
    configured = os.getenv(env_name)
    if configured:
        return configured
    return shutil.which(binary) or binary


def load_config() -> Config:
    return Config(
        tools=ToolPaths(
            ffmpeg=_locate("RF_FFMPEG_BIN", "ffmpeg"),
            ffprobe=_locate("RF_FFPROBE_BIN", "ffprobe"),
        ),
        output_dir=Path(os.getenv("RF_OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR))).expanduser(),
        concurrency=min(_read_positive_int("RF_CONCURRENCY", 2), MAX_CONCURRENCY),
        rate_limit_bps=_read_rate_limit("RF_RATE_LIMIT"),
        remux_timeout_sec=_read_positive_int("RF_REMUX_TIMEOUT_SEC", 900),
        concat_timeout_sec=_read_positive_int("RF_CONCAT_TIMEOUT_SEC", 1200),
        probe_timeout_sec=_read_positive_int("RF_PROBE_TIMEOUT_SEC", 10),
        segment_tolerance_sec=_read_positive_float("RF_SEGMENT_TOLERANCE_SEC", 3.0),
        record_tolerance_sec=_read_positive_float("RF_RECORD_TOLERANCE_SEC", 10.0),
    )


def validate_runtime(config: Config) -> list[str]:
    errors: list[str] = []
    if shutil.which(config.tools.ffmpeg) is None:
        errors.append(f"未找到 ffmpeg 可执行文件: {config.tools.ffmpeg}")
    if shutil.which(config.tools.ffprobe) is None:
        errors.append(f"未找到 ffprobe 可执行文件: {config.tools.ffprobe}")
    return errors
