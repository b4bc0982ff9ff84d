import time
from typing import Any, Callable, Dict, List

from app.types import Turn


USER = "user"
ASSISTANT = "assistant"


class SessionStore:
    """
    内存会话存储：每个用户一份有上限的最近消息，空闲超时后整体清除。

    说明：
        - 使用字典维护 userId -> {turns: List[Turn], last_activity: float}；
        - 会话在第一次 append 时惰性创建，只会被 clear 或 sweep 删除；
        - 所有方法都是同步的单步操作，在单线程事件循环中无需加锁。

    参数：
        max_turns: 保留的最近消息条数（user 与 assistant 各算一条），默认 10
        timeout_seconds: 空闲超时，默认 1800 秒（30 分钟）
        clock: 时间函数，默认 time.time（测试可注入）

    方法：
        append(user_id, role, text): 追加一条消息，超限时丢弃最旧的
        history(user_id): 返回消息列表（未知用户返回空列表）
        clear(user_id): 删除会话（幂等）
        sweep(now): 清除所有空闲超时的会话，返回清除数量
    """

    def __init__(self, max_turns: int = 10, timeout_seconds: float = 1800, clock: Callable[[], float] = time.time):
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.max_turns = max_turns
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def append(self, user_id: str, role: str, text: str) -> None:
        if role not in (USER, ASSISTANT):
            raise ValueError(f"unknown role: {role!r}")
        now = self._clock()
        session = self._sessions.setdefault(user_id, {"turns": [], "last_activity": now})
        turns: List[Turn] = session["turns"]
        turns.append(Turn(role=role, text=text, created_at=now))
        # 窗口限制：FIFO，仅保留最近 max_turns 条
        if len(turns) > self.max_turns:
            del turns[: len(turns) - self.max_turns]
        session["last_activity"] = now

    def history(self, user_id: str) -> List[Turn]:
        session = self._sessions.get(user_id)
        if not session:
            return []
        return list(session["turns"])

    def last_activity(self, user_id: str) -> float:
        session = self._sessions.get(user_id)
        return session["last_activity"] if session else 0.0

    def clear(self, user_id: str) -> None:
        self._sessions.pop(user_id, None)

    def sweep(self, now: float) -> int:
        expired = [
            uid for uid, session in self._sessions.items()
            if now - session["last_activity"] > self.timeout_seconds
        ]
        for uid in expired:
            del self._sessions[uid]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "turns": sum(len(s["turns"]) for s in self._sessions.values()),
        }
