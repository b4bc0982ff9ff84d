import time
from typing import Callable, Dict


class RateLimiter:
    """
    按用户的最小间隔限流：距上一条被接受的消息不足 min_interval 秒的消息直接丢弃。

    说明：
        - 只记录每个用户最后一次被接受的时间戳（后写覆盖）；
        - 被丢弃的消息不会刷新时间戳，也不会排队；
        - min_interval <= 0 时关闭限流。
    """

    def __init__(self, min_interval_seconds: float = 2.0, clock: Callable[[], float] = time.time):
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._last_accepted: Dict[str, float] = {}
        self.dropped = 0

    @property
    def enabled(self) -> bool:
        return self.min_interval_seconds > 0

    def allow(self, user_id: str) -> bool:
        """
        返回 True 表示接受本条消息并记录时间戳。
        """
        if not self.enabled:
            return True
        now = self._clock()
        last = self._last_accepted.get(user_id)
        if last is not None and now - last < self.min_interval_seconds:
            self.dropped += 1
            return False
        self._last_accepted[user_id] = now
        return True

    def sweep(self, now: float) -> int:
        """清除距上次接受已达到限流间隔的记录，返回清除数量。"""
        stale = [uid for uid, ts in self._last_accepted.items() if now - ts >= self.min_interval_seconds]
        for uid in stale:
            del self._last_accepted[uid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._last_accepted)
