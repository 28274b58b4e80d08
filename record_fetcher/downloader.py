from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

import requests

from .errors import TransferError
from .models import Segment
from .rate_limiter import TokenBucket


log = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
CHUNK_SIZE = 256 * 1024

TransferProgress = Callable[[int, int], None]


def transfer_segment(
    segment: Segment,
    destination: Path,
    on_progress: TransferProgress | None = None,
    limiter: TokenBucket | None = None,
    interval_sec: float = 0.12,
    timeout: tuple[float, float] = (10, 30),
) -> int:
    urls = [segment.url]
    if segment.backup_url and segment.backup_url != segment.url:
        urls.append(segment.backup_url)

    last_error: TransferError | None = None
    for url in urls:
        try:
            return download_file(
                url=url,
                destination=destination,
                expected_size=segment.size,
                on_progress=on_progress,
                limiter=limiter,
                interval_sec=interval_sec,
                timeout=timeout,
            )
        except TransferError as exc:
            last_error = exc
            destination.unlink(missing_ok=True)
            log.warning("第%d部分下载失败（%s）: %s", segment.index, url, exc)

    raise last_error if last_error else TransferError("下载失败")


def download_file(
    url: str,
    destination: Path,
    expected_size: int,
    on_progress: TransferProgress | None = None,
    limiter: TokenBucket | None = None,
    interval_sec: float = 0.12,
    timeout: tuple[float, float] = (10, 30),
) -> int:
    bytes_written = 0
    last_report = time.monotonic()

    try:
        with requests.get(
            url,
            stream=True,
            timeout=timeout,
            allow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        ) as response:
            response.raise_for_status()

            with destination.open("wb") as out_file:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    if limiter is not None:
                        limiter.consume(len(chunk))

                    out_file.write(chunk)
                    bytes_written += len(chunk)

                    now = time.monotonic()
                    if on_progress and now - last_report >= interval_sec:
                        on_progress(bytes_written, expected_size)
                        last_report = now
    except requests.RequestException as exc:
        raise TransferError(f"下载出错: {exc}") from exc
    except OSError as exc:
        raise TransferError(f"写入文件出错: {exc}") from exc

    if on_progress:
        on_progress(bytes_written, expected_size)

    if expected_size and bytes_written != expected_size:
        log.warning(
            "%s 实际大小 %d 与声明大小 %d 不一致",
            destination.name,
            bytes_written,
            expected_size,
        )
    return bytes_written
