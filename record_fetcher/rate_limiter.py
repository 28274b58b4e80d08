from __future__ import annotations

import logging
import threading
import time
from typing import Callable


log = logging.getLogger(__name__)


class TokenBucket:
    """
    整个任务共享的下载限速器。

    所有并发下载都从同一个桶里取令牌，因此限制的是总速率而不是单个 worker 的速率。
    `consume` 在锁内预约令牌（允许欠账），在锁外睡眠补足差额。
    """

    def __init__(
        self,
        rate_bps: float,
        burst: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate_bps <= 0:
            raise ValueError("限速必须为正数")
        self._rate = float(rate_bps)
        self._capacity = float(burst) if burst is not None else self._rate
        self._clock = clock
        self._sleep = sleep
        # 桶初始为空，整体耗时不低于 总字节数 / 速率
        self._tokens = 0.0
        self._updated = clock()
        self._lock = threading.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    def consume(self, amount: int) -> float:
        if amount <= 0:
            return 0.0

        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._updated)
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
            self._updated = now
            self._tokens -= amount
            wait = -self._tokens / self._rate if self._tokens < 0 else 0.0

        if wait > 0:
            log.debug("限速等待 %.3fs（%d 字节）", wait, amount)
            self._sleep(wait)
        return wait
