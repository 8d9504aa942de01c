"""超时与取消：网络调用与计时器赛跑、墙钟预算、请求序号比较（被新请求取代的结果丢弃）。"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from .errors import SupersededRequestError, TransportTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


async def call_with_timeout(run: Callable[[], Awaitable[T]], timeout: float | None, context: str) -> T:
    """
    在 timeout 秒内等待 run()；计时器先到时取消底层请求并抛出 TransportTimeoutError。
    timeout 为 None 或 <= 0 时不限时。调用方自身被取消时 CancelledError 原样向上传播。
    """
    if not timeout or timeout <= 0:
        return await run()
    try:
        return await asyncio.wait_for(run(), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning("[timeout] %s 超时 %.1fs", context, timeout)
        raise TransportTimeoutError(f"Timeout: {context}") from e


class Deadline:
    """从创建时刻起算的墙钟预算。clock 可注入，便于测试。"""

    def __init__(self, budget: float, clock: Clock = time.monotonic):
        self._clock = clock
        self.budget = budget
        self.started_at = clock()

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return self.budget - self.elapsed()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def clamp(self, timeout: float) -> float:
        """单次调用的超时不超过剩余预算。"""
        return max(0.001, min(timeout, self.remaining()))


class RequestSequencer:
    """
    同一调用方的请求序号。每次 begin() 得到更大的序号；
    结果返回前若已有更新的请求开始，则丢弃该结果。
    """

    def __init__(self) -> None:
        self._latest = 0

    def begin(self) -> int:
        self._latest += 1
        return self._latest

    def is_current(self, seq: int) -> bool:
        return seq == self._latest

    async def run(self, run: Callable[[], Awaitable[T]]) -> T:
        seq = self.begin()
        try:
            result = await run()
        except Exception as e:
            # 已被取代的请求失败时同样不报告
            if not self.is_current(seq):
                raise self._superseded(seq) from e
            raise
        if not self.is_current(seq):
            raise self._superseded(seq)
        return result

    def _superseded(self, seq: int) -> SupersededRequestError:
        logger.info("[sequencer] 请求 #%d 已被 #%d 取代，丢弃结果", seq, self._latest)
        return SupersededRequestError(f"request {seq} superseded by {self._latest}")
