"""重连策略

显式状态机：Disconnected → Connecting → Connected，
Disconnected 之下可以带有一个 ReconnectScheduled(attempt, due_at) 子状态。
延迟 = base_delay * 2^(attempt-1)，连续失败 max_attempts 次后停止，
之后必须由应用重新调用 connect()。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from taskwire.core.log_utils import Logger


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ReconnectScheduled:
    attempt: int
    delay: float
    due_at: float


class ReconnectionPolicy:
    def __init__(self, base_delay: float = 1.0, max_attempts: int = 5) -> None:
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.attempts = 0
        self.pending: Optional[ReconnectScheduled] = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * 2 ** (attempt - 1)

    def schedule(self, now: float) -> Optional[ReconnectScheduled]:
        """
        记录一次失败并安排下一次重连。

        Returns:
            下一次尝试；已达上限时返回 None
        """
        if self.exhausted:
            self.pending = None
            Logger.warning("已达到最大重连次数，需要重新调用 connect()", attempts=self.attempts)
            return None

        self.attempts += 1
        delay = self.delay_for(self.attempts)
        self.pending = ReconnectScheduled(attempt=self.attempts, delay=delay, due_at=now + delay)
        Logger.event("RECONNECT", f"{delay:g}s 后重连", attempt=self.attempts)
        return self.pending

    def begin_attempt(self, scheduled: ReconnectScheduled) -> bool:
        """到期时调用；被应用的 connect() 取代后返回 False"""
        if self.pending is not scheduled:
            return False
        self.pending = None
        return True

    def supersede(self) -> None:
        """应用主动 connect() 取代已安排的重连"""
        self.pending = None

    def on_connected(self) -> None:
        self.attempts = 0
        self.pending = None

    def reset(self) -> None:
        self.attempts = 0
        self.pending = None
