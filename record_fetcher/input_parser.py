from __future__ import annotations

import json
import re
from datetime import datetime
from io import BytesIO
from typing import Any
from urllib.parse import urlparse

import pandas as pd

from .errors import SelectionError
from .models import ParseFailure, RecordInfo, Segment, SelectionSet


REQUIRED_COLUMNS = {"url", "size", "duration"}
DURATION_ALIASES = ("duration", "length")
INVALID_FILENAME_CHARS = set('<>:"/\\|?*')

_RATE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmg]?)(i?)(b?)(?:/s)?$", re.IGNORECASE)
_RATE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def sanitize_filename(raw: str, fallback: str = "record") -> str:
    cleaned_chars: list[str] = []
    for char in raw.strip():
        code = ord(char)
        if char in INVALID_FILENAME_CHARS or code < 32 or code == 127:
            cleaned_chars.append("_")
        else:
            cleaned_chars.append(char)
    cleaned = "".join(cleaned_chars).rstrip(" .")
    return cleaned if cleaned else fallback


def is_valid_public_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def parse_selection(text: str) -> SelectionSet:
    value = text.strip()
    if not value:
        raise SelectionError("没有指定要下载的分段")
    if value.lower() == "all":
        return SelectionSet.all()

    indices: list[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            number = int(part)
        except ValueError as exc:
            raise SelectionError(f"无效的选择: {part}") from exc
        if number < 0:
            raise SelectionError(f"无效的选择: {part}")
        indices.append(number)

    selection = SelectionSet.of(indices)
    if selection.count() == 0:
        raise SelectionError("没有选择要下载的分段")
    return selection


def parse_rate_limit(text: str) -> int | None:
    value = text.strip()
    if not value:
        return None
    match = _RATE_PATTERN.match(value)
    if match is None:
        raise ValueError(f"无法解析的限速: {text}")
    number, unit, _, _ = match.groups()
    rate = int(float(number) * _RATE_UNITS[unit.lower()])
    return rate if rate > 0 else None


def parse_record_info(payload: dict[str, Any]) -> RecordInfo:
    record_id = str(payload.get("rid") or payload.get("record_id") or "").strip()
    if not record_id:
        raise ValueError("缺少直播回放 ID")

    start_time: datetime | None = None
    raw_start = payload.get("start_timestamp")
    if raw_start not in (None, ""):
        try:
            start_time = datetime.fromtimestamp(int(raw_start))
        except (TypeError, ValueError, OverflowError, OSError):
            start_time = None

    return RecordInfo(
        record_id=record_id,
        title=str(payload.get("title") or "").strip(),
        start_time=start_time,
        quality=str(payload.get("quality") or "未知").strip() or "未知",
    )


def parse_segments(payload: str | bytes | list[Any] | dict[str, Any]) -> tuple[list[Segment], list[ParseFailure]]:
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            return [], [ParseFailure(index=0, raw="", error=f"JSON 解析失败: {exc}")]

    # 兼容接口原始返回：{"list": [...], ...}
    if isinstance(payload, dict):
        payload = payload.get("list")
    if not isinstance(payload, list):
        return [], [ParseFailure(index=0, raw="", error="分段列表格式错误：需为数组")]

    segments: list[Segment] = []
    failures: list[ParseFailure] = []
    for position, item in enumerate(payload, start=1):
        if not isinstance(item, dict):
            failures.append(ParseFailure(index=position, raw=str(item), error="分段描述需为对象"))
            continue
        duration = next((item.get(key) for key in DURATION_ALIASES if item.get(key) is not None), None)
        segment, error = _build_segment(
            index=position,
            url=_to_text(item.get("url")),
            size=item.get("size"),
            duration=duration,
            backup_url=_to_text(item.get("backup_url")),
        )
        if segment is None:
            failures.append(ParseFailure(index=position, raw=_to_text(item.get("url")), error=error))
        else:
            segments.append(segment)

    return segments, failures


def parse_segments_csv(csv_bytes: bytes) -> tuple[list[Segment], list[ParseFailure]]:
    try:
        df = pd.read_csv(BytesIO(csv_bytes), dtype=object, encoding="utf-8-sig")
    except Exception as exc:  # noqa: BLE001
        return [], [ParseFailure(index=0, raw="", error=f"CSV 解析失败: {exc}")]

    df.columns = [_normalize_header(col) for col in df.columns]
    if "duration" not in df.columns and "length" in df.columns:
        df = df.rename(columns={"length": "duration"})
    if not REQUIRED_COLUMNS.issubset(set(df.columns)):
        return [], [ParseFailure(index=0, raw="", error="CSV 缺少必需表头: url,size,duration")]

    segments: list[Segment] = []
    failures: list[ParseFailure] = []
    has_backup = "backup_url" in df.columns

    for position, row in enumerate(df.to_dict(orient="records"), start=1):
        url = _to_text(row.get("url"))
        segment, error = _build_segment(
            index=position,
            url=url,
            size=_to_text(row.get("size")),
            duration=_to_text(row.get("duration")),
            backup_url=_to_text(row.get("backup_url")) if has_backup else "",
        )
        if segment is None:
            failures.append(ParseFailure(index=position, raw=url, error=error))
        else:
            segments.append(segment)

    return segments, failures


def _build_segment(
    index: int,
    url: str,
    size: object,
    duration: object,
    backup_url: str,
) -> tuple[Segment | None, str]:
    if not url:
        return None, "url 不能为空"
    if not is_valid_public_url(url):
        return None, "url 非法：仅支持公开 http/https 链接"
    if backup_url and not is_valid_public_url(backup_url):
        return None, "backup_url 非法：仅支持公开 http/https 链接"

    size_value = _to_non_negative_int(size)
    if size_value is None:
        return None, "size 需为非负整数（字节）"
    duration_value = _to_non_negative_int(duration)
    if duration_value is None:
        return None, "duration 需为非负整数（毫秒）"

    return (
        Segment(
            index=index,
            url=url,
            size=size_value,
            duration_ms=duration_value,
            backup_url=backup_url or None,
        ),
        "",
    )


def _normalize_header(value: object) -> str:
    return "".join(str(value).strip().lower().split())


def _to_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _to_non_negative_int(value: object) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value >= 0 else None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number >= 0 else None
